"""
identity/store.py -- SQLAlchemy Core Credential Store.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_credential / _row_to_record are the mappers. The token issuer and
session manager never touch SQL directly.

The store owns everything credential-internal: password hashing (bcrypt),
password/username/email policy, lockout counters, and purpose-scoped
one-time tokens (reset password, confirm email, change phone, ...). Policy
violations are collected into a StoreResult -- every problem at once, never
only the first -- and the caller decides how to surface them.

Async model:
  Every public method is a coroutine. The blocking SQLAlchemy work runs in a
  worker thread via asyncio.to_thread so an event loop serving many sessions
  is never blocked on disk I/O.

Concurrency:
  On SQLite every transaction starts with BEGIN IMMEDIATE (WAL journal).
  Writers serialize on the database lock, so a compare-and-swap such as
  "DELETE refresh token WHERE value = :presented" always sees the latest
  committed row. replace_refresh_token() relies on this: of two concurrent
  redemptions of the same value exactly one deletes the row.

  UNIQUE(user_id, name) on refresh_tokens makes "one record per user and
  app" a schema guarantee, not just a code convention.

Security:
  All queries use bound parameters. No f-strings in SQL.
  password_sign_in() always runs bcrypt, even for unknown usernames.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import hmac
import logging
import re
import secrets
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from identity.errors import StoreError
from identity.models import Claim, Credential, ExternalLoginLink, RefreshTokenRecord, Role

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("identitycore.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(256), nullable=False, unique=True),
    Column("email", String(256)),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("phone_number", String(32)),
    Column("phone_number_confirmed", Integer, nullable=False, server_default="0"),
    Column("password_hash", Text),  # NULL for password-less (external) accounts
    Column("lockout_enabled", Integer, nullable=False, server_default="1"),
    Column("lockout_end", String(32)),  # ISO 8601, NULL when not locked
    Column("access_failed_count", Integer, nullable=False, server_default="0"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("security_stamp", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(256), nullable=False, unique=True),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), primary_key=True),
    Column("role_id", String(36), primary_key=True),
)

# Surrogate autoincrement keys give claims a stable insertion order; "first
# claim of a type" means lowest id.
_user_claims = Table(
    "user_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("claim_type", String(256), nullable=False),
    Column("claim_value", Text, nullable=False),
)

_role_claims = Table(
    "role_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", String(36), nullable=False, index=True),
    Column("claim_type", String(256), nullable=False),
    Column("claim_value", Text, nullable=False),
)

_user_logins = Table(
    "user_logins",
    _metadata,
    Column("provider", String(64), nullable=False),
    Column("provider_key", String(256), nullable=False),
    Column("user_id", String(36), nullable=False, index=True),
    UniqueConstraint("provider", "provider_key", name="uq_user_logins_provider_key"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False),
    Column("name", String(128), nullable=False),  # appId
    Column("value", String(128), nullable=False),
    Column("scheme", String(32), nullable=False),
    Column("expire_at", String(32), nullable=False),
    UniqueConstraint("user_id", "name", name="uq_refresh_tokens_user_app"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and hand transaction control to SQLAlchemy.

    isolation_level=None stops pysqlite from issuing its own deferred BEGIN,
    so _begin_immediate() below decides how every transaction starts.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _begin_immediate(conn) -> None:
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash. Computed once at module load so the
# first sign-in is not measurably slower than later ones.
_DUMMY_HASH: str = hash_password("identitycore_timing_dummy")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SignInStatus(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    LOCKED_OUT = "locked_out"
    REQUIRES_TWO_FACTOR = "requires_two_factor"


@dataclass
class StoreResult:
    """Outcome of a store mutation. Empty errors means success."""

    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @classmethod
    def failed(cls, *errors: str) -> StoreResult:
        return cls(list(errors))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_USERNAME_RE = re.compile(r"^[A-Za-z0-9\-._@+]+$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")

# Purpose tokens are signed with a key derived from the JWT secret, so a
# purpose token can never verify as an access token or vice versa.
_PURPOSE_KEY_LABEL = b"identitycore.purpose-tokens"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


def _new_stamp() -> str:
    return secrets.token_hex(16)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for credentials, roles, claims, external logins and refresh tokens.

    Usage:
        store = CredentialStore(settings)
        result = await store.create_user(Credential(username="alice", email="a@x.com"), "Abcd1234!")
        user = await store.find_by_name("alice")
        store.close()
    """

    def __init__(self, settings: Settings, db_url: str | None = None) -> None:
        db_url = db_url or settings.database_url
        self._password_policy = settings.password
        self._lockout = settings.lockout
        self._require_unique_email = settings.require_unique_email
        self._purpose_token_ttl = timedelta(hours=settings.purpose_token_hours)
        self._purpose_key = hmac.new(
            settings.jwt.secret_key.encode("utf-8"), _PURPOSE_KEY_LABEL, hashlib.sha256
        ).hexdigest()

        # An in-memory database lives on a single shared connection; units of
        # work on it must not interleave across worker threads.
        self._memory_lock: threading.Lock | None = None
        kwargs: dict = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in db_url or db_url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
                self._memory_lock = threading.Lock()
        self.engine: Engine = create_engine(db_url, **kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
            event.listen(self.engine, "begin", _begin_immediate)
        _metadata.create_all(self.engine)

    async def _run(self, fn):
        """Run a blocking unit of work in a worker thread, mapping driver errors to StoreError."""

        def _guarded():
            try:
                if self._memory_lock is None:
                    return fn()
                with self._memory_lock:
                    return fn()
            except SQLAlchemyError as e:
                logger.error("Credential store operation failed: %s", e)
                raise StoreError("The credential store operation failed.") from e

        return await asyncio.to_thread(_guarded)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _password_errors(self, password: str) -> list[str]:
        policy = self._password_policy
        errors: list[str] = []
        if len(password) < policy.required_length:
            errors.append(f"Passwords must be at least {policy.required_length} characters.")
        if policy.require_digit and not any(c.isdigit() for c in password):
            errors.append("Passwords must have at least one digit ('0'-'9').")
        if policy.require_lowercase and not any(c.islower() for c in password):
            errors.append("Passwords must have at least one lowercase ('a'-'z').")
        if policy.require_uppercase and not any(c.isupper() for c in password):
            errors.append("Passwords must have at least one uppercase ('A'-'Z').")
        if policy.require_non_alphanumeric and all(c.isalnum() for c in password):
            errors.append("Passwords must have at least one non alphanumeric character.")
        return errors

    def _username_errors(self, conn, username: str, user_id: str | None = None) -> list[str]:
        if not _USERNAME_RE.match(username):
            return [f"Username '{username}' is invalid, can only contain letters, digits or -._@+."]
        row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        if row is not None and row.id != user_id:
            return [f"Username '{username}' is already taken."]
        return []

    def _email_errors(self, conn, email: str | None, user_id: str | None = None) -> list[str]:
        if email is None:
            return []
        if not _EMAIL_RE.match(email):
            return [f"Email '{email}' is invalid."]
        if self._require_unique_email:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is not None and row.id != user_id:
                return [f"Email '{email}' is already taken."]
        return []

    # ------------------------------------------------------------------
    # Credential queries
    # ------------------------------------------------------------------

    async def create_user(self, credential: Credential, password: str | None = None) -> StoreResult:
        """Validate and insert a credential. On success credential.id and friends are filled in.

        Username, email and password problems are all reported together.
        """
        hashed = None
        if password is not None and not self._password_errors(password):
            hashed = await asyncio.to_thread(hash_password, password)

        def _create() -> StoreResult:
            with self.engine.begin() as conn:
                errors = self._username_errors(conn, credential.username)
                errors += self._email_errors(conn, credential.email)
                if password is not None:
                    errors += self._password_errors(password)
                if errors:
                    return StoreResult(errors)
                credential.id = str(uuid.uuid4())
                credential.security_stamp = _new_stamp()
                credential.created_at = _now_iso()
                credential.lockout_enabled = self._lockout.allowed_for_new_users
                credential.password_hash = hashed
                try:
                    conn.execute(_users.insert().values(**_credential_to_row(credential)))
                except IntegrityError:
                    credential.id = None
                    return StoreResult.failed(f"Username '{credential.username}' is already taken.")
            return StoreResult()

        return await self._run(_create)

    async def delete_user(self, user_id: str) -> StoreResult:
        """Delete a credential together with its roles, claims, logins and refresh tokens."""

        def _delete() -> StoreResult:
            with self.engine.begin() as conn:
                conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
                conn.execute(_user_claims.delete().where(_user_claims.c.user_id == user_id))
                conn.execute(_user_logins.delete().where(_user_logins.c.user_id == user_id))
                conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
                result = conn.execute(_users.delete().where(_users.c.id == user_id))
            if result.rowcount == 0:
                return StoreResult.failed(f"User '{user_id}' does not exist.")
            return StoreResult()

        return await self._run(_delete)

    async def _find_one(self, clause) -> Credential | None:
        def _query() -> Credential | None:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(clause)).fetchone()
            return _row_to_credential(row) if row is not None else None

        return await self._run(_query)

    async def find_by_id(self, user_id: str) -> Credential | None:
        return await self._find_one(_users.c.id == user_id)

    async def find_by_name(self, username: str) -> Credential | None:
        """Look up a credential by exact username (case-sensitive)."""
        return await self._find_one(_users.c.username == username)

    async def find_by_email(self, email: str) -> Credential | None:
        return await self._find_one(_users.c.email == email)

    async def find_by_phone_number(self, phone_number: str) -> Credential | None:
        return await self._find_one(_users.c.phone_number == phone_number)

    async def find_by_login(self, provider: str, provider_key: str) -> Credential | None:
        """Resolve an ExternalLoginLink to its credential. None if no link exists."""

        def _query() -> Credential | None:
            with self.engine.connect() as conn:
                link = conn.execute(
                    _user_logins.select().where(
                        (_user_logins.c.provider == provider) & (_user_logins.c.provider_key == provider_key)
                    )
                ).fetchone()
                if link is None:
                    return None
                row = conn.execute(_users.select().where(_users.c.id == link.user_id)).fetchone()
            return _row_to_credential(row) if row is not None else None

        return await self._run(_query)

    async def update_user(self, user_id: str, **fields) -> bool:
        """Update plain fields on a credential. Returns False if user_id was not found.

        Boolean fields are converted to int for SQLite. Secrets (password_hash,
        security_stamp) have dedicated methods and are rejected here.
        """
        if {"password_hash", "security_stamp", "id"} & set(fields):
            raise ValueError("update_user() cannot change id, password_hash or security_stamp")
        values = {k: (int(v) if isinstance(v, bool) else v) for k, v in fields.items()}

        def _update() -> bool:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            return result.rowcount > 0

        return await self._run(_update)

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    async def password_sign_in(self, username: str, password: str, lockout_on_failure: bool) -> SignInStatus:
        """Check a username/password pair and maintain lockout counters.

        Always runs bcrypt whether or not the user exists. A successful
        check resets the failure counter. When lockout_on_failure is set and
        the credential has lockout enabled, reaching the configured number of
        failures locks the account for lockout_minutes.

        bcrypt runs outside any write transaction; only the counter update
        takes the database lock.
        """
        user = await self.find_by_name(username)
        if user is None or user.password_hash is None:
            await asyncio.to_thread(verify_password, password, _DUMMY_HASH)
            return SignInStatus.FAILED
        if user.lockout_enabled and user.lockout_end is not None and user.lockout_end > _now():
            return SignInStatus.LOCKED_OUT

        if await asyncio.to_thread(verify_password, password, user.password_hash):
            if user.access_failed_count or user.lockout_end is not None:
                await self.update_user(user.id, access_failed_count=0, lockout_end=None)
            if user.two_factor_enabled:
                return SignInStatus.REQUIRES_TWO_FACTOR
            return SignInStatus.SUCCESS

        if not (lockout_on_failure and user.lockout_enabled):
            return SignInStatus.FAILED

        def _record_failure() -> SignInStatus:
            with self.engine.begin() as conn:
                failures = conn.execute(
                    _users.select().with_only_columns(_users.c.access_failed_count).where(_users.c.id == user.id)
                ).scalar_one() + 1
                if failures < self._lockout.max_failed_access_attempts:
                    conn.execute(_users.update().where(_users.c.id == user.id).values(access_failed_count=failures))
                    return SignInStatus.FAILED
                lockout_end = _now() + timedelta(minutes=self._lockout.lockout_minutes)
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user.id)
                    .values(access_failed_count=0, lockout_end=lockout_end.isoformat())
                )
            logger.warning("Credential %s locked out after %d failed sign-ins", user.id, failures)
            return SignInStatus.LOCKED_OUT

        return await self._run(_record_failure)

    async def check_password(self, credential: Credential, password: str) -> bool:
        if credential.password_hash is None:
            await asyncio.to_thread(verify_password, password, _DUMMY_HASH)
            return False
        return await asyncio.to_thread(verify_password, password, credential.password_hash)

    async def has_password(self, credential: Credential) -> bool:
        current = await self.find_by_id(credential.id)
        return current is not None and current.password_hash is not None

    async def _set_password_hash(self, credential: Credential, password: str) -> StoreResult:
        errors = self._password_errors(password)
        if errors:
            return StoreResult(errors)
        hashed = await asyncio.to_thread(hash_password, password)
        stamp = _new_stamp()

        def _update() -> StoreResult:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.update().where(_users.c.id == credential.id).values(password_hash=hashed, security_stamp=stamp)
                )
            if result.rowcount == 0:
                return StoreResult.failed(f"User '{credential.id}' does not exist.")
            credential.password_hash = hashed
            credential.security_stamp = stamp
            return StoreResult()

        return await self._run(_update)

    async def add_password(self, credential: Credential, password: str) -> StoreResult:
        if await self.has_password(credential):
            return StoreResult.failed("User already has a password set.")
        return await self._set_password_hash(credential, password)

    async def change_password(self, credential: Credential, old_password: str, new_password: str) -> StoreResult:
        if not await self.check_password(credential, old_password):
            return StoreResult.failed("Incorrect password.")
        return await self._set_password_hash(credential, new_password)

    async def reset_password(self, credential: Credential, token: str, new_password: str) -> StoreResult:
        if not self._verify_purpose_token(credential, "ResetPassword", token):
            return StoreResult.failed("Invalid token.")
        return await self._set_password_hash(credential, new_password)

    # ------------------------------------------------------------------
    # Username, email, phone
    # ------------------------------------------------------------------

    async def set_username(self, credential: Credential, new_username: str) -> StoreResult:
        def _update() -> StoreResult:
            with self.engine.begin() as conn:
                errors = self._username_errors(conn, new_username, user_id=credential.id)
                if errors:
                    return StoreResult(errors)
                stamp = _new_stamp()
                conn.execute(
                    _users.update()
                    .where(_users.c.id == credential.id)
                    .values(username=new_username, security_stamp=stamp)
                )
            credential.username = new_username
            credential.security_stamp = stamp
            return StoreResult()

        return await self._run(_update)

    async def change_email(self, credential: Credential, new_email: str, token: str) -> StoreResult:
        """Apply an email change proven by a ChangeEmail token. The new address counts as confirmed."""
        if not self._verify_purpose_token(credential, f"ChangeEmail:{new_email}", token):
            return StoreResult.failed("Invalid token.")

        def _update() -> StoreResult:
            with self.engine.begin() as conn:
                errors = self._email_errors(conn, new_email, user_id=credential.id)
                if errors:
                    return StoreResult(errors)
                stamp = _new_stamp()
                conn.execute(
                    _users.update()
                    .where(_users.c.id == credential.id)
                    .values(email=new_email, email_confirmed=1, security_stamp=stamp)
                )
            credential.email = new_email
            credential.email_confirmed = True
            credential.security_stamp = stamp
            return StoreResult()

        return await self._run(_update)

    async def confirm_email(self, credential: Credential, token: str) -> StoreResult:
        if not self._verify_purpose_token(credential, f"ConfirmEmail:{credential.email}", token):
            return StoreResult.failed("Invalid token.")
        await self.update_user(credential.id, email_confirmed=True)
        credential.email_confirmed = True
        return StoreResult()

    async def change_phone_number(self, credential: Credential, new_phone_number: str, token: str) -> StoreResult:
        """Apply a phone change proven by a ChangePhoneNumber token. The new number starts out unconfirmed."""
        if not self._verify_purpose_token(credential, f"ChangePhoneNumber:{new_phone_number}", token):
            return StoreResult.failed("Invalid token.")
        stamp = _new_stamp()

        def _update() -> StoreResult:
            with self.engine.begin() as conn:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == credential.id)
                    .values(phone_number=new_phone_number, phone_number_confirmed=0, security_stamp=stamp)
                )
            credential.phone_number = new_phone_number
            credential.phone_number_confirmed = False
            credential.security_stamp = stamp
            return StoreResult()

        return await self._run(_update)

    async def confirm_phone_number(self, credential: Credential, token: str) -> StoreResult:
        if not self._verify_purpose_token(credential, f"ConfirmPhoneNumber:{credential.phone_number}", token):
            return StoreResult.failed("Invalid token.")
        await self.update_user(credential.id, phone_number_confirmed=True)
        credential.phone_number_confirmed = True
        return StoreResult()

    # ------------------------------------------------------------------
    # Purpose-scoped one-time tokens
    # ------------------------------------------------------------------

    def generate_purpose_token(self, credential: Credential, purpose: str) -> str:
        """Sign a token bound to (credential, purpose, security stamp).

        Purposes that carry a target value embed it, e.g. "ChangeEmail:new@x.com",
        so a token minted for one address cannot apply another. Any change of the
        security stamp (password, username, email or phone change) revokes it.
        """
        payload = {
            "sub": credential.id,
            "purpose": purpose,
            "stamp": credential.security_stamp,
            "exp": _now() + self._purpose_token_ttl,
        }
        return jwt.encode(payload, self._purpose_key, algorithm="HS256")

    def _verify_purpose_token(self, credential: Credential, purpose: str, token: str) -> bool:
        try:
            payload = jwt.decode(token, self._purpose_key, algorithms=["HS256"])
        except JWTError:
            return False
        return (
            payload.get("sub") == credential.id
            and payload.get("purpose") == purpose
            and hmac.compare_digest(str(payload.get("stamp", "")), credential.security_stamp or "")
        )

    # ------------------------------------------------------------------
    # External logins
    # ------------------------------------------------------------------

    async def add_login(self, credential: Credential, provider: str, provider_key: str) -> StoreResult:
        def _insert() -> StoreResult:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _user_logins.insert().values(provider=provider, provider_key=provider_key, user_id=credential.id)
                    )
            except IntegrityError:
                return StoreResult.failed(f"A user with this {provider} login already exists.")
            return StoreResult()

        return await self._run(_insert)

    async def remove_login(self, credential: Credential, provider: str, provider_key: str) -> StoreResult:
        def _delete() -> StoreResult:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _user_logins.delete().where(
                        (_user_logins.c.provider == provider)
                        & (_user_logins.c.provider_key == provider_key)
                        & (_user_logins.c.user_id == credential.id)
                    )
                )
                if result.rowcount == 0:
                    return StoreResult.failed(f"The {provider} login is not linked to this user.")
                conn.execute(
                    _users.update().where(_users.c.id == credential.id).values(security_stamp=_new_stamp())
                )
            return StoreResult()

        return await self._run(_delete)

    async def get_logins(self, user_id: str) -> list[ExternalLoginLink]:
        def _query() -> list[ExternalLoginLink]:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _user_logins.select().where(_user_logins.c.user_id == user_id).order_by(_user_logins.c.provider)
                ).fetchall()
            return [ExternalLoginLink(provider=r.provider, provider_key=r.provider_key, user_id=r.user_id) for r in rows]

        return await self._run(_query)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def list_roles(self) -> list[Role]:
        """Return all roles ordered by name."""

        def _query() -> list[Role]:
            with self.engine.connect() as conn:
                rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            return [Role(id=r.id, name=r.name) for r in rows]

        return await self._run(_query)

    async def _find_role(self, clause) -> Role | None:
        def _query() -> Role | None:
            with self.engine.connect() as conn:
                row = conn.execute(_roles.select().where(clause)).fetchone()
            return Role(id=row.id, name=row.name) if row is not None else None

        return await self._run(_query)

    async def find_role_by_name(self, name: str) -> Role | None:
        return await self._find_role(_roles.c.name == name)

    async def find_role_by_id(self, role_id: str) -> Role | None:
        return await self._find_role(_roles.c.id == role_id)

    async def create_role(self, role: Role) -> StoreResult:
        def _insert() -> StoreResult:
            role_id = str(uuid.uuid4())
            try:
                with self.engine.begin() as conn:
                    conn.execute(_roles.insert().values(id=role_id, name=role.name))
            except IntegrityError:
                return StoreResult.failed(f"Role name '{role.name}' is already taken.")
            role.id = role_id
            return StoreResult()

        return await self._run(_insert)

    async def delete_role(self, role: Role) -> StoreResult:
        def _delete() -> StoreResult:
            with self.engine.begin() as conn:
                conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role.id))
                conn.execute(_role_claims.delete().where(_role_claims.c.role_id == role.id))
                result = conn.execute(_roles.delete().where(_roles.c.id == role.id))
            if result.rowcount == 0:
                return StoreResult.failed(f"Role '{role.name}' does not exist.")
            return StoreResult()

        return await self._run(_delete)

    async def get_user_roles(self, user_id: str) -> list[str]:
        """Return the names of the user's roles, ordered by name."""

        def _query() -> list[str]:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    _roles.select()
                    .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
                    .where(_user_roles.c.user_id == user_id)
                    .order_by(_roles.c.name)
                ).fetchall()
            return [r.name for r in rows]

        return await self._run(_query)

    async def add_to_roles(self, user_id: str, role_names: Iterable[str]) -> StoreResult:
        """Link a user to each named role in one transaction.

        Unknown roles and existing memberships are all reported; nothing is
        linked unless every name is valid.
        """
        names = list(role_names)

        def _link() -> StoreResult:
            with self.engine.begin() as conn:
                errors: list[str] = []
                role_ids: list[str] = []
                for name in names:
                    role = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
                    if role is None:
                        errors.append(f"Role '{name}' does not exist.")
                        continue
                    linked = conn.execute(
                        _user_roles.select().where(
                            (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role.id)
                        )
                    ).fetchone()
                    if linked is not None:
                        errors.append(f"User already in role '{name}'.")
                        continue
                    role_ids.append(role.id)
                if errors:
                    return StoreResult(errors)
                for role_id in role_ids:
                    conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            return StoreResult()

        return await self._run(_link)

    async def remove_from_role(self, user_id: str, role_name: str) -> StoreResult:
        def _unlink() -> StoreResult:
            with self.engine.begin() as conn:
                role = conn.execute(_roles.select().where(_roles.c.name == role_name)).fetchone()
                if role is None:
                    return StoreResult.failed(f"Role '{role_name}' does not exist.")
                result = conn.execute(
                    _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role.id))
                )
            if result.rowcount == 0:
                return StoreResult.failed(f"User is not in role '{role_name}'.")
            return StoreResult()

        return await self._run(_unlink)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    async def _get_claims(self, table: Table, owner_column, owner_id: str) -> list[Claim]:
        def _query() -> list[Claim]:
            with self.engine.connect() as conn:
                rows = conn.execute(table.select().where(owner_column == owner_id).order_by(table.c.id)).fetchall()
            return [Claim(r.claim_type, r.claim_value) for r in rows]

        return await self._run(_query)

    async def _add_claims(self, table: Table, owner: str, owner_id: str, claims: Iterable[Claim]) -> StoreResult:
        rows = [{owner: owner_id, "claim_type": c.type, "claim_value": c.value} for c in claims]

        def _insert() -> StoreResult:
            if rows:
                with self.engine.begin() as conn:
                    conn.execute(table.insert(), rows)
            return StoreResult()

        return await self._run(_insert)

    async def _remove_claim(self, table: Table, owner_column, owner_id: str, claim: Claim) -> StoreResult:
        """Delete the earliest-assigned row holding exactly this (type, value)."""

        def _delete() -> StoreResult:
            with self.engine.begin() as conn:
                row = conn.execute(
                    table.select()
                    .where(
                        (owner_column == owner_id)
                        & (table.c.claim_type == claim.type)
                        & (table.c.claim_value == claim.value)
                    )
                    .order_by(table.c.id)
                    .limit(1)
                ).fetchone()
                if row is None:
                    return StoreResult.failed(f"Claim '{claim.type}' does not exist.")
                conn.execute(table.delete().where(table.c.id == row.id))
            return StoreResult()

        return await self._run(_delete)

    async def get_user_claims(self, user_id: str) -> list[Claim]:
        """Return the user's claims in insertion order."""
        return await self._get_claims(_user_claims, _user_claims.c.user_id, user_id)

    async def add_user_claims(self, user_id: str, claims: Iterable[Claim]) -> StoreResult:
        return await self._add_claims(_user_claims, "user_id", user_id, claims)

    async def remove_user_claim(self, user_id: str, claim: Claim) -> StoreResult:
        return await self._remove_claim(_user_claims, _user_claims.c.user_id, user_id, claim)

    async def get_role_claims(self, role_id: str) -> list[Claim]:
        """Return the role's claims in insertion order."""
        return await self._get_claims(_role_claims, _role_claims.c.role_id, role_id)

    async def add_role_claims(self, role_id: str, claims: Iterable[Claim]) -> StoreResult:
        return await self._add_claims(_role_claims, "role_id", role_id, claims)

    async def remove_role_claim(self, role_id: str, claim: Claim) -> StoreResult:
        return await self._remove_claim(_role_claims, _role_claims.c.role_id, role_id, claim)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    async def find_refresh_token(self, user_id: str, name: str) -> RefreshTokenRecord | None:
        def _query() -> RefreshTokenRecord | None:
            with self.engine.connect() as conn:
                row = conn.execute(
                    _refresh_tokens.select().where(
                        (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.name == name)
                    )
                ).fetchone()
            return _row_to_record(row) if row is not None else None

        return await self._run(_query)

    async def replace_refresh_token(self, record: RefreshTokenRecord, expected_value: str | None = None) -> bool:
        """Invalidate the current record for (user_id, name) and insert `record`, atomically.

        expected_value=None: unconditional rotation (new sign-in). Whatever
            record exists for the pair is deleted.
        expected_value set: compare-and-swap (refresh redemption). Only a
            record whose value equals expected_value is deleted; when none is,
            nothing is inserted and False is returned -- the presented token
            was already rotated by a concurrent redemption.

        Raises StoreError if the database rejects either statement.
        """

        def _swap() -> bool:
            with self.engine.begin() as conn:
                clause = (_refresh_tokens.c.user_id == record.user_id) & (_refresh_tokens.c.name == record.name)
                if expected_value is not None:
                    clause = clause & (_refresh_tokens.c.value == expected_value)
                deleted = conn.execute(_refresh_tokens.delete().where(clause))
                if expected_value is not None and deleted.rowcount != 1:
                    return False
                conn.execute(
                    _refresh_tokens.insert().values(
                        user_id=record.user_id,
                        name=record.name,
                        value=record.value,
                        scheme=record.scheme,
                        expire_at=record.expire_at.isoformat(),
                    )
                )
            return True

        return await self._run(_swap)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _credential_to_row(c: Credential) -> dict:
    return {
        "id": c.id,
        "username": c.username,
        "email": c.email,
        "email_confirmed": int(c.email_confirmed),
        "phone_number": c.phone_number,
        "phone_number_confirmed": int(c.phone_number_confirmed),
        "password_hash": c.password_hash,
        "lockout_enabled": int(c.lockout_enabled),
        "lockout_end": c.lockout_end.isoformat() if c.lockout_end else None,
        "access_failed_count": c.access_failed_count,
        "two_factor_enabled": int(c.two_factor_enabled),
        "security_stamp": c.security_stamp,
        "created_at": c.created_at,
    }


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        username=row.username,
        email=row.email,
        email_confirmed=bool(row.email_confirmed),
        phone_number=row.phone_number,
        phone_number_confirmed=bool(row.phone_number_confirmed),
        password_hash=row.password_hash,
        lockout_enabled=bool(row.lockout_enabled),
        lockout_end=_parse_dt(row.lockout_end),
        access_failed_count=row.access_failed_count,
        two_factor_enabled=bool(row.two_factor_enabled),
        security_stamp=row.security_stamp,
        created_at=row.created_at,
    )


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        user_id=row.user_id,
        name=row.name,
        value=row.value,
        scheme=row.scheme,
        expire_at=datetime.fromisoformat(row.expire_at),
    )
