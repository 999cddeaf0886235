"""
identity/errors.py -- Typed failures returned by the identity core.

Every failure the core produces is one of these exceptions. Nothing here is
fatal to the process; a session boundary maps them to transport responses
(e.g. Unauthorized family -> 401, ValidationFailed -> 400, NotFound -> 404).

LockedOut and TwoFactorRequired subclass Unauthorized so a boundary that only
cares about "not signed in" can catch one type, while one that renders a
specific message can still tell them apart.

Input-shape errors are NOT represented here: request models in
identity/schemas.py raise pydantic.ValidationError at construction time,
before any business rule runs.
"""

from __future__ import annotations


class IdentityError(Exception):
    """Base class for every identity-core failure."""

    code = "identity_error"

    def __init__(self, message: str = "Identity operation failed.") -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthorized(IdentityError):
    """Bad credential, forged/failed external token, or rejected refresh token.

    The message is deliberately generic. Reasons are logged, never returned.
    """

    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized.") -> None:
        super().__init__(message)


class LockedOut(Unauthorized):
    code = "locked_out"

    def __init__(self, message: str = "The account is locked out.") -> None:
        super().__init__(message)


class TwoFactorRequired(Unauthorized):
    code = "two_factor_required"

    def __init__(self, message: str = "Two-factor authentication is required.") -> None:
        super().__init__(message)


class SetPasswordConflict(IdentityError):
    """SetPassword on an account that already has a password."""

    code = "password_already_set"

    def __init__(self, message: str = "The user already has a password.") -> None:
        super().__init__(message)


class ValidationFailed(IdentityError):
    """Aggregate of store-reported validation errors, all returned together."""

    code = "validation_failed"

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed.")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "errors": self.errors}


class NotFound(IdentityError):
    """A referenced user, role, claim or provider configuration does not exist."""

    code = "not_found"


class ProviderNotConfigured(NotFound):
    """A known provider variant with no client id/secret configured.

    This is a deployment configuration error, not an authentication failure.
    """

    code = "provider_not_configured"


class NotSupported(IdentityError):
    """An external provider name outside the supported set."""

    code = "not_supported"


class StoreError(IdentityError):
    """The Credential Store failed to persist or invalidate a record."""

    code = "store_error"
