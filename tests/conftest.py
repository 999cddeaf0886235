"""
tests/conftest.py -- Shared fixtures for identity-core tests.

This module provides:
  - make_settings(): Settings built from keyword overrides, never from .env
  - store: file-backed CredentialStore under tmp_path
  - FakeProviderAPI: an httpx.MockTransport handler standing in for the
    Facebook Graph API, Google and Microsoft OIDC endpoints, and Graph /me
  - registry / manager: ProviderRegistry and SessionManager wired to the fake
  - FakeBoundary: records what the manager asked of the session boundary

Design: stores use a real SQLite file, not :memory:, because store work runs
in worker threads (asyncio.to_thread) and the concurrency tests need
independent connections contending for the same database lock.

ID tokens for Google and Microsoft are signed with an RSA key generated once
per test session; its public half is served as the providers' JWKS.
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator, Generator

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from core.config import (
    AdminUserSettings,
    ExternalLoginSettings,
    JwtSettings,
    LockoutSettings,
    Settings,
)
from identity.manager import SessionManager
from identity.models import Credential
from identity.providers import ProviderRegistry
from identity.store import CredentialStore

SECRET_KEY = "test-secret-key-0123456789-abcdefghijklmnop"
ISSUER = "identity-core-tests"

FACEBOOK_APP_ID = "fb-app-1"
FACEBOOK_APP_SECRET = "fb-secret-1"
GOOGLE_CLIENT_ID = "google-client.apps.googleusercontent.com"
MICROSOFT_CLIENT_ID = "00000000-aaaa-bbbb-cccc-000000000001"

ADMIN_PASSWORD = "Adm1n!Secret"
STRONG_PASSWORD = "Abcd1234!"

GOOGLE_JWKS_URI = "https://www.googleapis.com/oauth2/v3/certs"
MICROSOFT_JWKS_URI = "https://login.microsoftonline.com/common/discovery/v2.0/keys"


def make_settings(**overrides) -> Settings:
    """Settings for tests. Keyword overrides replace whole top-level fields."""
    values = {
        "debug": False,
        "jwt": JwtSettings(issuer=ISSUER, secret_key=SECRET_KEY, access_hours=1, refresh_hours=24),
        "lockout": LockoutSettings(allowed_for_new_users=True, max_failed_access_attempts=3, lockout_minutes=5),
        "admin_user": AdminUserSettings(username="admin", password=ADMIN_PASSWORD, email="admin@example.com"),
        "default_roles": [],
        "external_logins": [
            ExternalLoginSettings(name="Facebook", client_id=FACEBOOK_APP_ID, client_secret=FACEBOOK_APP_SECRET),
            ExternalLoginSettings(name="Google", client_id=GOOGLE_CLIENT_ID),
            ExternalLoginSettings(name="Microsoft", client_id=MICROSOFT_CLIENT_ID),
        ],
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store(settings, tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(settings, db_url=f"sqlite:///{tmp_path / 'identity.db'}")
    yield s
    s.close()


async def create_user(
    store: CredentialStore, username: str = "alice", email: str = "a@x.com", password: str = STRONG_PASSWORD
) -> Credential:
    credential = Credential(username=username, email=email)
    result = await store.create_user(credential, password)
    assert result.succeeded, result.errors
    return credential


# ---------------------------------------------------------------------------
# RSA signing keys for provider ID tokens
# ---------------------------------------------------------------------------


class SigningKey:
    def __init__(self, kid: str) -> None:
        self.kid = kid
        private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = private.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
        public_pem = private.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        self.public_jwk = {**jwk.construct(public_pem, "RS256").to_dict(), "kid": kid, "use": "sig"}

    def sign(self, claims: dict) -> str:
        return jwt.encode(claims, self.private_pem, algorithm="RS256", headers={"kid": self.kid})


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    return SigningKey("test-key-1")


@pytest.fixture(scope="session")
def rogue_key() -> SigningKey:
    """A key the providers never publish; tokens signed with it are forgeries."""
    return SigningKey("test-key-1")


def id_token_claims(audience: str, issuer: str, lifetime: int = 3600, **claims) -> dict:
    now = int(time.time())
    return {"aud": audience, "iss": issuer, "iat": now, "nbf": now, "exp": now + lifetime, **claims}


# ---------------------------------------------------------------------------
# Fake provider HTTP API
# ---------------------------------------------------------------------------


class FakeProviderAPI:
    """MockTransport handler emulating every provider endpoint the core calls.

    facebook_tokens maps a user access token to its debug_token `data`
    payload; graph_me_tokens maps a Microsoft bearer token to its /me body.
    """

    def __init__(self, signing_key: SigningKey) -> None:
        self.signing_key = signing_key
        self.requests: list[httpx.Request] = []
        self.facebook_tokens: dict[str, dict] = {}
        self.facebook_profiles: dict[str, dict] = {}
        self.graph_me_tokens: dict[str, dict] = {}
        self.fail_with: int | None = None

    def count(self, host: str, path_suffix: str = "") -> int:
        return sum(1 for r in self.requests if r.url.host == host and r.url.path.endswith(path_suffix))

    def add_facebook_user(self, token: str, user_id: str, name: str = "Fb User", email: str = "fb@example.com") -> None:
        self.facebook_tokens[token] = {"is_valid": True, "app_id": FACEBOOK_APP_ID, "user_id": user_id}
        self.facebook_profiles[user_id] = {"id": user_id, "name": name, "email": email}

    def google_token(self, key: SigningKey | None = None, **overrides) -> str:
        claims = id_token_claims(GOOGLE_CLIENT_ID, "https://accounts.google.com", sub="google-sub-1")
        claims.update(name="Gina Google", email="gina@example.com")
        claims.update(overrides)
        return (key or self.signing_key).sign(claims)

    def microsoft_token(self, key: SigningKey | None = None, **overrides) -> str:
        claims = id_token_claims(
            MICROSOFT_CLIENT_ID, "https://login.microsoftonline.com/some-tenant/v2.0", sub="ms-sub", oid="ms-oid-1"
        )
        claims.update(overrides)
        return (key or self.signing_key).sign(claims)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, text="upstream failure")

        host, path = request.url.host, request.url.path
        jwks = {"keys": [self.signing_key.public_jwk]}

        if host == "accounts.google.com" and path.endswith("openid-configuration"):
            return httpx.Response(200, json={"issuer": "https://accounts.google.com", "jwks_uri": GOOGLE_JWKS_URI})
        if host == "www.googleapis.com":
            return httpx.Response(200, json=jwks)
        if host == "login.microsoftonline.com" and path.endswith("openid-configuration"):
            return httpx.Response(200, json={"issuer": "https://login.microsoftonline.com/{tenantid}/v2.0", "jwks_uri": MICROSOFT_JWKS_URI})
        if host == "login.microsoftonline.com" and path.endswith("/keys"):
            return httpx.Response(200, json=jwks)

        if host == "graph.facebook.com" and path == "/debug_token":
            if request.url.params.get("access_token") != f"{FACEBOOK_APP_ID}|{FACEBOOK_APP_SECRET}":
                return httpx.Response(400, json={"error": {"message": "bad app token"}})
            data = self.facebook_tokens.get(request.url.params.get("input_token", ""), {"is_valid": False})
            return httpx.Response(200, json={"data": data})
        if host == "graph.facebook.com":
            profile = self.facebook_profiles.get(path.lstrip("/"))
            return httpx.Response(200, json=profile) if profile else httpx.Response(404, json={})

        if host == "graph.microsoft.com" and path == "/v1.0/me":
            token = request.headers.get("Authorization", "").removeprefix("Bearer ")
            me = self.graph_me_tokens.get(token)
            return httpx.Response(200, json=me) if me else httpx.Response(401, json={})

        return httpx.Response(404, json={})


@pytest.fixture
def provider_api(signing_key) -> FakeProviderAPI:
    return FakeProviderAPI(signing_key)


@pytest_asyncio.fixture
async def http_client(provider_api) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider_api.handler))
    yield client
    await client.aclose()


@pytest.fixture
def registry(settings, http_client) -> ProviderRegistry:
    return ProviderRegistry.from_settings(settings, http=http_client)


@pytest.fixture
def manager(settings, store, registry) -> SessionManager:
    return SessionManager(settings, store, providers=registry)


# ---------------------------------------------------------------------------
# Session boundary double
# ---------------------------------------------------------------------------


class FakeBoundary:
    def __init__(self, user_name: str | None = None) -> None:
        self.user_name = user_name
        self.signed_in: list[tuple[str, bool]] = []
        self.refreshed: list[str] = []
        self.signed_out = False

    def current_user_name(self) -> str | None:
        return self.user_name

    async def sign_in(self, credential: Credential, remember_me: bool) -> None:
        self.signed_in.append((credential.id, remember_me))
        self.user_name = credential.username

    async def sign_out(self) -> None:
        self.signed_out = True
        self.user_name = None

    async def refresh_sign_in(self, credential: Credential) -> None:
        self.refreshed.append(credential.id)


@pytest.fixture
def boundary() -> FakeBoundary:
    return FakeBoundary()
