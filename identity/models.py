"""
identity/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, near-zero logic). Stores own
persistence, the token issuer and session manager do the work.

Claims are frozen dataclasses so (type, value) pairs compare and hash
structurally. Claim sets are kept as ordered tuples and merged with
merge_claims(), never keyed by type -- a claim type may carry many values
(e.g. several "role" claims).

Layer rule: no imports from core/ or from other identity/ modules.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

DEFAULT_APP_ID = "Default"

# Sentinel user id carried by tokens from the storeless admin sign-in.
ADMIN_USER_ID = "00000000-0000-0000-0000-000000000000"
ADMINISTRATOR_ROLE = "Administrator"

# Scheme tag stored with every refresh-token record.
REFRESH_TOKEN_SCHEME = "Bearer"

# ---------------------------------------------------------------------------
# Claim types written into access tokens
# ---------------------------------------------------------------------------

CLAIM_JTI = "jti"
CLAIM_SUBJECT = "sub"
CLAIM_EMAIL = "email"
CLAIM_NAME = "name"
CLAIM_NAME_IDENTIFIER = "nameid"
CLAIM_APP_ID = "appId"
CLAIM_ROLE = "role"


@dataclass(frozen=True)
class Claim:
    type: str
    value: str


def merge_claims(*sources: Iterable[Claim]) -> tuple[Claim, ...]:
    """Union claim sources in order, dropping exact (type, value) duplicates."""
    seen: set[Claim] = set()
    merged: list[Claim] = []
    for source in sources:
        for claim in source:
            if claim not in seen:
                seen.add(claim)
                merged.append(claim)
    return tuple(merged)


@dataclass
class Credential:
    """A user identity record as held by the Credential Store.

    password_hash is None for password-less accounts (external sign-up).
    security_stamp changes whenever a credential secret changes; purpose
    tokens embed it so outstanding tokens die with the old stamp.
    """

    username: str
    email: str | None = None
    id: str | None = None
    email_confirmed: bool = False
    phone_number: str | None = None
    phone_number_confirmed: bool = False
    password_hash: str | None = None
    lockout_enabled: bool = True
    lockout_end: datetime | None = None
    access_failed_count: int = 0
    two_factor_enabled: bool = False
    security_stamp: str | None = None
    created_at: str | None = None


@dataclass
class Role:
    name: str
    id: str | None = None


@dataclass
class ExternalLoginLink:
    provider: str
    provider_key: str  # provider's stable subject id
    user_id: str


@dataclass
class ExternalProfile:
    id: str
    name: str | None = None
    email: str | None = None


@dataclass
class LoginProviderConfig:
    name: str
    client_id: str
    client_secret: str = ""


@dataclass
class AccessTokenData:
    """Everything needed to sign one access token. Built per issuance, never stored."""

    user_id: str | None = None
    user_name: str | None = None
    user_email: str | None = None
    app_id: str = DEFAULT_APP_ID
    claims: tuple[Claim, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class RefreshToken:
    token: str
    expire_at: datetime

    def to_dict(self) -> dict:
        return {"token": self.token, "expireAt": self.expire_at.isoformat()}


@dataclass
class AccessToken:
    app_id: str
    user_id: str
    token: str
    expire_at: datetime
    refresh_token: RefreshToken | None = None

    def to_dict(self) -> dict:
        return {
            "appId": self.app_id,
            "userId": self.user_id,
            "token": self.token,
            "expireAt": self.expire_at.isoformat(),
            "refreshToken": self.refresh_token.to_dict() if self.refresh_token else None,
        }


@dataclass
class RefreshTokenRecord:
    """Persisted refresh token. At most one row per (user_id, name)."""

    user_id: str
    name: str  # the appId the token was issued for
    value: str
    expire_at: datetime
    scheme: str = REFRESH_TOKEN_SCHEME


# ---------------------------------------------------------------------------
# One-time token results
# ---------------------------------------------------------------------------


@dataclass
class ResetPasswordToken:
    token: str
    email: str


@dataclass
class ConfirmEmailToken:
    token: str
    email: str


@dataclass
class ChangeEmailToken:
    token: str
    email: str
    new_email: str


@dataclass
class ConfirmPhoneNumberToken:
    token: str
    phone_number: str


@dataclass
class ChangePhoneNumberToken:
    token: str
    phone_number: str
    new_phone_number: str
