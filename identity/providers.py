"""
identity/providers.py -- External provider token validation (Facebook, Google, Microsoft).

Each provider is a subclass of ExternalProvider that declares a `name`;
subclassing registers the variant, so ProviderRegistry resolves names without
a dispatcher switch. Only providers with a client id in EXTERNAL_LOGINS are
active.

Supported providers:
  Facebook  -- Graph API debug_token introspection; subject = data.user_id.
  Google    -- RS256 ID token verified against Google's JWKS (OIDC discovery);
               subject = sub. Profile comes from the verified ID token claims.
  Microsoft -- RS256 ID token verified against the common-tenant JWKS. The
               issuer differs per tenant, so only audience and lifetime are
               checked; subject = oid. Profile from Graph /me.

Security notes:
  Any transport error, non-2xx, malformed JSON, missing field or JWT failure
  collapses to Unauthorized. The reason is logged at WARNING; the presented
  token never is (httpx error text can echo query strings, so only the error
  type and status are logged).

  asyncio.CancelledError is never caught. Cancelling the calling task aborts
  the in-flight httpx request and returns its connection to the pool.

HTTP:
  One long-lived httpx.AsyncClient per registry. Discovery documents and JWKS
  are cached by OpenIdMetadataCache and refreshed after the configured TTL.

Layer rule: may import identity.models / identity.errors and core.config.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, ClassVar

import httpx
from jose import JWTError, jwt

from identity.errors import NotSupported, ProviderNotConfigured, Unauthorized
from identity.models import ExternalProfile, LoginProviderConfig

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("identitycore.providers")

FACEBOOK_GRAPH_URL = "https://graph.facebook.com"
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
MICROSOFT_DISCOVERY_URL = "https://login.microsoftonline.com/common/.well-known/openid-configuration"
MICROSOFT_GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"

_ID_TOKEN_ALGORITHM = "RS256"
_LEEWAY_SECONDS = 300

# Failures that mean "the provider did not vouch for this token".
_REJECTIONS = (httpx.HTTPError, JWTError, ValueError, KeyError, TypeError)


async def _get_json(http: httpx.AsyncClient, url: str, **kwargs) -> dict:
    """GET a URL and return its JSON object body. Raises on non-2xx or non-object JSON."""
    response = await http.get(url, **kwargs)
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object from {httpx.URL(url).host}")
    return data


def _describe(error: Exception) -> str:
    if isinstance(error, httpx.HTTPStatusError):
        return f"HTTP {error.response.status_code}"
    if isinstance(error, httpx.HTTPError):
        return type(error).__name__
    return f"{type(error).__name__}: {error}"


# ---------------------------------------------------------------------------
# OIDC metadata cache
# ---------------------------------------------------------------------------


class OpenIdMetadataCache:
    """Discovery document + JWKS per discovery URL, refreshed after ttl_seconds.

    Readers of a fresh entry never wait. A refresh holds the per-URL lock, so
    concurrent callers that find the entry stale share one fetch.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        ttl_seconds: float = 86400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._http = http
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, dict, dict]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _fresh(self, url: str) -> tuple[dict, dict] | None:
        entry = self._entries.get(url)
        if entry is not None and self._clock() - entry[0] < self._ttl:
            return entry[1], entry[2]
        return None

    async def get(self, discovery_url: str, force_refresh: bool = False) -> tuple[dict, dict]:
        """Return (discovery document, JWKS) for discovery_url."""
        if not force_refresh:
            cached = self._fresh(discovery_url)
            if cached is not None:
                return cached

        lock = self._locks.setdefault(discovery_url, asyncio.Lock())
        async with lock:
            # Another task may have refreshed while this one waited.
            if not force_refresh:
                cached = self._fresh(discovery_url)
                if cached is not None:
                    return cached
            metadata = await _get_json(self._http, discovery_url)
            jwks_uri = metadata["jwks_uri"]
            jwks = await _get_json(self._http, jwks_uri)
            if not isinstance(jwks.get("keys"), list):
                raise ValueError("JWKS document has no keys")
            self._entries[discovery_url] = (self._clock(), metadata, jwks)
            logger.info("Loaded OIDC metadata from %s (%d keys)", discovery_url, len(jwks["keys"]))
            return metadata, jwks

    def clear(self) -> None:
        self._entries.clear()


# ---------------------------------------------------------------------------
# Provider variants
# ---------------------------------------------------------------------------


class ExternalProvider(ABC):
    """One external identity provider. Subclasses register themselves by `name`."""

    name: ClassVar[str]
    _variants: ClassVar[dict[str, type[ExternalProvider]]] = {}

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        ExternalProvider._variants[cls.name.lower()] = cls

    @classmethod
    def variant(cls, name: str) -> type[ExternalProvider]:
        """Resolve a provider name (case-insensitive). Raises NotSupported."""
        try:
            return cls._variants[name.lower()]
        except KeyError:
            raise NotSupported(f"External provider '{name}' is not supported.") from None

    def __init__(self, config: LoginProviderConfig, http: httpx.AsyncClient, metadata: OpenIdMetadataCache) -> None:
        self.config = config
        self._http = http
        self._metadata = metadata

    @classmethod
    def is_configured(cls, config: LoginProviderConfig) -> bool:
        return bool(config.client_id)

    @abstractmethod
    async def validate(self, token: str) -> str:
        """Verify the presented token and return the provider's subject id."""

    @abstractmethod
    async def profile(self, token: str, subject: str | None = None) -> ExternalProfile:
        """Fetch the profile behind a presented token."""

    async def _verify_id_token(self, discovery_url: str, token: str, issuer: Iterable[str] | None) -> dict:
        """Verify an RS256 ID token against the provider's JWKS.

        A kid missing from the cached key set triggers one forced refresh, so
        provider key rotation does not wait out the cache TTL.
        """
        header = jwt.get_unverified_header(token)
        if header.get("alg") != _ID_TOKEN_ALGORITHM:
            raise JWTError(f"unexpected algorithm {header.get('alg')!r}")
        _, jwks = await self._metadata.get(discovery_url)
        kid = header.get("kid")
        if kid and not any(key.get("kid") == kid for key in jwks["keys"]):
            _, jwks = await self._metadata.get(discovery_url, force_refresh=True)
        return jwt.decode(
            token,
            jwks,
            algorithms=[_ID_TOKEN_ALGORITHM],
            audience=self.config.client_id,
            issuer=tuple(issuer) if issuer is not None else None,
            options={"leeway": _LEEWAY_SECONDS, "verify_iss": issuer is not None, "verify_at_hash": False},
        )


class FacebookProvider(ExternalProvider):
    name = "Facebook"

    @classmethod
    def is_configured(cls, config: LoginProviderConfig) -> bool:
        # debug_token needs an app access token: client_id|client_secret
        return bool(config.client_id and config.client_secret)

    async def validate(self, token: str) -> str:
        body = await _get_json(
            self._http,
            f"{FACEBOOK_GRAPH_URL}/debug_token",
            params={"input_token": token, "access_token": f"{self.config.client_id}|{self.config.client_secret}"},
        )
        data = body.get("data")
        if not isinstance(data, dict) or data.get("is_valid") is not True:
            raise ValueError("token is not valid")
        if str(data.get("app_id")) != self.config.client_id:
            raise ValueError("token was issued to a different app")
        subject = data.get("user_id")
        if not subject:
            raise ValueError("token carries no user_id")
        return str(subject)

    async def profile(self, token: str, subject: str | None = None) -> ExternalProfile:
        subject = subject or await self.validate(token)
        body = await _get_json(
            self._http,
            f"{FACEBOOK_GRAPH_URL}/{subject}",
            params={"fields": "id,name,email", "access_token": token},
        )
        return ExternalProfile(id=str(body["id"]), name=body.get("name"), email=body.get("email"))


class GoogleProvider(ExternalProvider):
    name = "Google"

    async def _claims(self, token: str) -> dict:
        return await self._verify_id_token(GOOGLE_DISCOVERY_URL, token, issuer=GOOGLE_ISSUERS)

    async def validate(self, token: str) -> str:
        return str((await self._claims(token))["sub"])

    async def profile(self, token: str, subject: str | None = None) -> ExternalProfile:
        claims = await self._claims(token)
        return ExternalProfile(id=str(claims["sub"]), name=claims.get("name"), email=claims.get("email"))


class MicrosoftProvider(ExternalProvider):
    name = "Microsoft"

    async def validate(self, token: str) -> str:
        claims = await self._verify_id_token(MICROSOFT_DISCOVERY_URL, token, issuer=None)
        return str(claims["oid"])

    async def profile(self, token: str, subject: str | None = None) -> ExternalProfile:
        body = await _get_json(self._http, MICROSOFT_GRAPH_ME_URL, headers={"Authorization": f"Bearer {token}"})
        return ExternalProfile(id=str(body["id"]), name=body.get("displayName"), email=body.get("mail"))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Configured provider instances sharing one HTTP pool and metadata cache.

    Usage:
        async with ProviderRegistry.from_settings(settings) as providers:
            subject = await providers.validate_access_token("Google", id_token)
    """

    def __init__(
        self,
        configs: Iterable[LoginProviderConfig],
        http: httpx.AsyncClient | None = None,
        *,
        timeout_seconds: float = 10.0,
        metadata_ttl_seconds: float = 86400,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout_seconds)
        self.metadata = OpenIdMetadataCache(self._http, ttl_seconds=metadata_ttl_seconds)
        self._providers: dict[str, ExternalProvider] = {}
        for config in configs:
            try:
                variant = ExternalProvider.variant(config.name)
            except NotSupported:
                logger.warning("Ignoring external login %r: not a supported provider", config.name)
                continue
            if not variant.is_configured(config):
                logger.warning("Ignoring external login %r: client credentials incomplete", config.name)
                continue
            self._providers[variant.name] = variant(config, self._http, self.metadata)
            logger.info("%s external login registered", variant.name)

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient | None = None) -> ProviderRegistry:
        return cls(
            [
                LoginProviderConfig(name=c.name, client_id=c.client_id, client_secret=c.client_secret)
                for c in settings.external_logins
            ],
            http,
            timeout_seconds=settings.http_timeout_seconds,
            metadata_ttl_seconds=settings.oidc_cache_ttl_seconds,
        )

    def get(self, name: str) -> ExternalProvider:
        """Return the configured provider. NotSupported for unknown names,
        ProviderNotConfigured for known but unconfigured ones."""
        variant = ExternalProvider.variant(name)
        provider = self._providers.get(variant.name)
        if provider is None:
            raise ProviderNotConfigured(f"External provider '{variant.name}' is not configured.")
        return provider

    def list_providers(self) -> list[str]:
        return sorted(self._providers)

    async def validate_access_token(self, provider: str, token: str) -> str:
        """Return the provider's stable subject id for token. Raises Unauthorized."""
        p = self.get(provider)
        try:
            return await p.validate(token)
        except _REJECTIONS as e:
            logger.warning("%s token validation failed: %s", p.name, _describe(e))
            raise Unauthorized() from e

    async def fetch_profile(self, provider: str, token: str, subject: str | None = None) -> ExternalProfile:
        p = self.get(provider)
        try:
            return await p.profile(token, subject)
        except _REJECTIONS as e:
            logger.warning("%s profile fetch failed: %s", p.name, _describe(e))
            raise Unauthorized() from e

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ProviderRegistry:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
