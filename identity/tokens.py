"""
identity/tokens.py -- Access-token signing and refresh-token rotation.

Security design decisions:
  JWT: python-jose with HS256. Access tokens carry jti, sub, email, name,
       nameid and appId plus the caller's claims. Those six and
       iss/aud/nbf/exp are owned by the issuer: a caller claim of any of
       these types is dropped, so name and appId always decode as single
       strings. A claim type that occurs more than once serializes as a
       JSON list.

  Verification fails closed: the header must say HS256 before the signature
       is even checked, and every failure raises Unauthorized. The reason is
       logged at WARNING, never returned to the caller.

  Refresh tokens: secrets.token_urlsafe(64), stored server-side keyed by
       (user id, appId). Issuance and redemption both go through
       CredentialStore.replace_refresh_token(), which deletes the previous
       record and inserts the new one in one transaction. Redemption passes
       the presented value as a compare-and-swap guard, so of two concurrent
       redemptions of the same value at most one succeeds.

  Timestamps are truncated to whole seconds. JWT exp is an integer, so this
       keeps AccessToken.expire_at exactly equal to the signed exp claim.

Layer rule: may import identity.models / identity.errors and core.config.
Never imports identity.manager.
"""

from __future__ import annotations

import hmac
import json
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from identity.errors import StoreError, Unauthorized
from identity.models import (
    CLAIM_APP_ID,
    CLAIM_EMAIL,
    CLAIM_JTI,
    CLAIM_NAME,
    CLAIM_NAME_IDENTIFIER,
    CLAIM_ROLE,
    CLAIM_SUBJECT,
    AccessToken,
    AccessTokenData,
    Claim,
    Credential,
    RefreshToken,
    RefreshTokenRecord,
    merge_claims,
)

if TYPE_CHECKING:
    from core.config import Settings
    from identity.store import CredentialStore

logger = logging.getLogger("identitycore.tokens")

_ALGORITHM = "HS256"
_LEEWAY_SECONDS = 300

# Claims the issuer writes itself. Caller claims of these types are dropped.
_RESERVED_CLAIMS = frozenset(
    {
        CLAIM_JTI,
        CLAIM_SUBJECT,
        CLAIM_EMAIL,
        CLAIM_NAME,
        CLAIM_NAME_IDENTIFIER,
        CLAIM_APP_ID,
        "iss",
        "aud",
        "exp",
        "nbf",
        "iat",
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def claims_to_payload(claims: tuple[Claim, ...]) -> dict:
    """Fold an ordered claim tuple into a JWT payload dict.

    A type seen once maps to its value; a type seen again becomes a list in
    first-seen order.
    """
    payload: dict = {}
    for claim in claims:
        if claim.type not in payload:
            payload[claim.type] = claim.value
        elif isinstance(payload[claim.type], list):
            payload[claim.type].append(claim.value)
        else:
            payload[claim.type] = [payload[claim.type], claim.value]
    return payload


class TokenIssuer:
    """Signs access tokens and issues/redeems rotated refresh tokens.

    store may be None for storeless deployments; only the refresh operations
    and issue_for_credential() need it. clock is injectable for tests and must
    return an aware UTC datetime.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._jwt = settings.jwt
        self._store = store
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock().replace(microsecond=0)

    def _require_store(self) -> CredentialStore:
        if self._store is None:
            raise StoreError("No credential store is configured.")
        return self._store

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, data: AccessTokenData) -> AccessToken:
        """Sign an access token for the given data. Pure apart from the clock."""
        user_id = data.user_id or ""
        base = (
            Claim(CLAIM_JTI, data.id),
            Claim(CLAIM_SUBJECT, user_id),
            Claim(CLAIM_EMAIL, data.user_email or ""),
            Claim(CLAIM_NAME, data.user_name or ""),
            Claim(CLAIM_NAME_IDENTIFIER, user_id),
            Claim(CLAIM_APP_ID, data.app_id),
        )
        extra = [c for c in data.claims if c.type not in _RESERVED_CLAIMS]
        payload = claims_to_payload(merge_claims(base, extra))

        now = self._now()
        expire_at = now + timedelta(hours=self._jwt.access_hours)
        payload.update(
            {
                "nbf": now,
                "exp": expire_at,
                "iss": self._jwt.issuer,
                "aud": self._jwt.audience,
            }
        )
        token = jwt.encode(payload, self._jwt.secret_key, algorithm=_ALGORITHM)
        return AccessToken(app_id=data.app_id, user_id=user_id, token=token, expire_at=expire_at)

    def verify_access_token(self, token: str, verify_expiry: bool = True) -> dict:
        """Decode a token produced by this issuer. Raises Unauthorized on any failure.

        Checks signature, issuer and audience, and nbf/exp against the wall
        clock with a 5 minute leeway. With verify_expiry=False an expired token
        still decodes; refresh relies on this since it normally runs after the
        access token has lapsed.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            logger.warning("Rejected access token: malformed header (%s)", e)
            raise Unauthorized() from e
        if header.get("alg") != _ALGORITHM:
            logger.warning("Rejected access token: unexpected algorithm %r", header.get("alg"))
            raise Unauthorized()

        try:
            return jwt.decode(
                token,
                self._jwt.secret_key,
                algorithms=[_ALGORITHM],
                audience=self._jwt.audience,
                issuer=self._jwt.issuer,
                options={
                    "leeway": _LEEWAY_SECONDS,
                    "verify_exp": verify_expiry,
                    "require_aud": True,
                    "require_iss": True,
                    "require_exp": True,
                },
            )
        except JWTError as e:
            logger.warning("Rejected access token: %s", e)
            raise Unauthorized() from e

    async def issue_for_credential(self, credential: Credential, app_id: str, refreshable: bool) -> AccessToken:
        """Issue an access token carrying the credential's claims, roles and role claims."""
        store = self._require_store()
        user_claims = await store.get_user_claims(credential.id)
        role_names = await store.get_user_roles(credential.id)
        role_claims: list[Claim] = []
        for name in role_names:
            role = await store.find_role_by_name(name)
            if role is not None:
                role_claims.extend(await store.get_role_claims(role.id))

        data = AccessTokenData(
            user_id=credential.id,
            user_name=credential.username,
            user_email=credential.email,
            app_id=app_id,
            claims=merge_claims(user_claims, [Claim(CLAIM_ROLE, n) for n in role_names], role_claims),
        )
        access = self.issue_access_token(data)
        if refreshable:
            access.refresh_token = await self.issue_refresh_token(credential, app_id)
        return access

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def _new_refresh_record(self, user_id: str, app_id: str) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            user_id=user_id,
            name=app_id,
            value=secrets.token_urlsafe(64),
            expire_at=self._now() + timedelta(hours=self._jwt.refresh_hours),
        )

    async def issue_refresh_token(self, credential: Credential, app_id: str) -> RefreshToken:
        """Rotate the refresh token for (credential, app_id). Any prior value stops working.

        Raises StoreError if the store cannot replace the record.
        """
        store = self._require_store()
        record = self._new_refresh_record(credential.id, app_id)
        await store.replace_refresh_token(record)
        return RefreshToken(token=record.value, expire_at=record.expire_at)

    async def redeem_refresh_token(self, token: str, refresh_token: str) -> AccessToken:
        """Exchange an (expired) access token plus its refresh value for a new pair.

        Every failure raises a bare Unauthorized; the reason goes to the log.
        """
        store = self._require_store()
        payload = self.verify_access_token(token, verify_expiry=False)

        user_name = payload.get(CLAIM_NAME)
        app_id = payload.get(CLAIM_APP_ID)
        if not isinstance(user_name, str) or not user_name or not isinstance(app_id, str) or not app_id:
            logger.warning("Refresh rejected: token is missing the name or appId claim")
            raise Unauthorized()

        try:
            credential = await store.find_by_name(user_name)
            if credential is None:
                logger.warning("Refresh rejected: user %r not found", user_name)
                raise Unauthorized()
            record = await store.find_refresh_token(credential.id, app_id)
            if record is None:
                logger.warning("Refresh rejected: no refresh token for user %s app %r", credential.id, app_id)
                raise Unauthorized()
            if not hmac.compare_digest(record.value.encode("utf-8"), refresh_token.encode("utf-8")):
                logger.warning("Refresh rejected: value mismatch for user %s app %r", credential.id, app_id)
                raise Unauthorized()
            if record.expire_at <= self._now():
                logger.warning("Refresh rejected: token expired at %s for user %s", record.expire_at, credential.id)
                raise Unauthorized()

            # Built before the swap: a store failure here leaves the presented value redeemable.
            access = await self.issue_for_credential(credential, app_id, refreshable=False)
            new_record = self._new_refresh_record(credential.id, app_id)
            if not await store.replace_refresh_token(new_record, expected_value=refresh_token):
                logger.warning("Refresh rejected: token for user %s app %r was already redeemed", credential.id, app_id)
                raise Unauthorized()
        except StoreError as e:
            logger.warning("Refresh rejected: store failure (%s)", e)
            raise Unauthorized() from e

        access.refresh_token = RefreshToken(token=new_record.value, expire_at=new_record.expire_at)
        logger.info("Refresh token rotated for user %s app %r", credential.id, app_id)
        return access


def describe_token(token: str) -> str:
    """Pretty-print the unverified claims of a token (CLI helper)."""
    return json.dumps(jwt.get_unverified_claims(token), indent=2, sort_keys=True)
