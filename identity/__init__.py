"""identity/ -- Authentication, session-token and role/claim management for identity-core.

Layer rule: identity/ imports only stdlib + third-party libraries + core/.
Session boundaries (HTTP handlers, CLIs) import from identity/, not the other
way around.
"""
