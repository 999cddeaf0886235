"""Unit tests for identity/tokens.py -- access-token signing and refresh rotation.

Covers:
- Claim set: base claims, caller claims, de-duplication, repeated types as lists
- expire_at equals the signed exp; 5 minute verification leeway
- Fail-closed verification (wrong key, wrong algorithm, garbage)
- Refresh rotation: single use, concurrent redemption, expiry, reissue
- Caller claims never shadow name/appId; store failures during refresh stay opaque
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from conftest import ISSUER, SECRET_KEY, create_user
from identity.errors import StoreError, Unauthorized
from identity.models import AccessTokenData, Claim, Role
from identity.tokens import TokenIssuer


def _decode(token: str) -> dict:
    return jwt.decode(token, SECRET_KEY, algorithms=["HS256"], audience=ISSUER, options={"verify_exp": False})


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


class TestIssueAccessToken:
    def test_base_claims(self, settings):
        issuer = TokenIssuer(settings)
        data = AccessTokenData(user_id="u-1", user_name="alice", user_email="a@x.com")
        token = issuer.issue_access_token(data)
        payload = _decode(token.token)
        assert payload["sub"] == "u-1"
        assert payload["nameid"] == "u-1"
        assert payload["name"] == "alice"
        assert payload["email"] == "a@x.com"
        assert payload["appId"] == "Default"
        assert payload["jti"] == data.id
        assert payload["iss"] == ISSUER
        assert payload["aud"] == ISSUER
        assert token.user_id == "u-1"
        assert token.refresh_token is None

    def test_missing_user_id_becomes_empty_subject(self, settings):
        token = TokenIssuer(settings).issue_access_token(AccessTokenData())
        payload = _decode(token.token)
        assert payload["sub"] == ""
        assert payload["nameid"] == ""

    def test_each_issuance_gets_fresh_jti(self, settings):
        issuer = TokenIssuer(settings)
        first = _decode(issuer.issue_access_token(AccessTokenData(user_id="u")).token)
        second = _decode(issuer.issue_access_token(AccessTokenData(user_id="u")).token)
        assert first["jti"] != second["jti"]

    def test_repeated_claim_types_serialize_as_list(self, settings):
        claims = (Claim("role", "Admin"), Claim("role", "Reader"), Claim("role", "Admin"), Claim("dept", "ops"))
        token = TokenIssuer(settings).issue_access_token(AccessTokenData(user_id="u", claims=claims))
        payload = _decode(token.token)
        assert payload["role"] == ["Admin", "Reader"]
        assert payload["dept"] == "ops"

    def test_caller_cannot_override_registered_claims(self, settings):
        claims = (Claim("iss", "evil"), Claim("aud", "evil"), Claim("sub", "someone-else"))
        token = TokenIssuer(settings).issue_access_token(AccessTokenData(user_id="u", claims=claims))
        payload = _decode(token.token)
        assert payload["iss"] == ISSUER
        assert payload["aud"] == ISSUER
        assert payload["sub"] == "u"

    def test_expiry_matches_exp_claim(self, settings):
        t = datetime(2024, 5, 1, 12, 0, 0, 987654, tzinfo=timezone.utc)
        token = TokenIssuer(settings, clock=lambda: t).issue_access_token(AccessTokenData(user_id="u"))
        payload = _decode(token.token)
        assert token.expire_at == t.replace(microsecond=0) + timedelta(hours=settings.jwt.access_hours)
        assert payload["exp"] == int(token.expire_at.timestamp())
        assert payload["nbf"] == int(t.replace(microsecond=0).timestamp())

    def test_to_dict_shape(self, settings):
        token = TokenIssuer(settings).issue_access_token(AccessTokenData(user_id="u", app_id="web"))
        d = token.to_dict()
        assert set(d) == {"appId", "userId", "token", "expireAt", "refreshToken"}
        assert d["appId"] == "web"
        assert d["refreshToken"] is None


class TestVerifyAccessToken:
    def _issued_ago(self, settings, past: timedelta) -> str:
        hours = timedelta(hours=settings.jwt.access_hours)
        issued_at = datetime.now(timezone.utc) - hours - past
        return TokenIssuer(settings, clock=lambda: issued_at).issue_access_token(AccessTokenData(user_id="u")).token

    def test_round_trip(self, settings):
        issuer = TokenIssuer(settings)
        token = issuer.issue_access_token(AccessTokenData(user_id="u-9"))
        assert issuer.verify_access_token(token.token)["sub"] == "u-9"

    def test_accepts_four_minutes_past_expiry(self, settings):
        token = self._issued_ago(settings, timedelta(minutes=4))
        assert TokenIssuer(settings).verify_access_token(token)["sub"] == "u"

    def test_rejects_ten_minutes_past_expiry(self, settings):
        token = self._issued_ago(settings, timedelta(minutes=10))
        with pytest.raises(Unauthorized):
            TokenIssuer(settings).verify_access_token(token)

    def test_expired_token_decodes_without_expiry_check(self, settings):
        token = self._issued_ago(settings, timedelta(days=3))
        assert TokenIssuer(settings).verify_access_token(token, verify_expiry=False)["sub"] == "u"

    def test_wrong_secret_rejected(self, settings):
        forged = jwt.encode({"sub": "u", "iss": ISSUER, "aud": ISSUER, "exp": 4102444800}, "x" * 40, algorithm="HS256")
        with pytest.raises(Unauthorized):
            TokenIssuer(settings).verify_access_token(forged)

    def test_other_algorithm_rejected_even_with_right_secret(self, settings):
        token = jwt.encode({"sub": "u", "iss": ISSUER, "aud": ISSUER, "exp": 4102444800}, SECRET_KEY, algorithm="HS512")
        with pytest.raises(Unauthorized):
            TokenIssuer(settings).verify_access_token(token)

    def test_wrong_audience_rejected(self, settings):
        token = jwt.encode({"sub": "u", "iss": ISSUER, "aud": "other", "exp": 4102444800}, SECRET_KEY, algorithm="HS256")
        with pytest.raises(Unauthorized):
            TokenIssuer(settings).verify_access_token(token)

    def test_garbage_rejected(self, settings):
        with pytest.raises(Unauthorized):
            TokenIssuer(settings).verify_access_token("not-a-jwt")


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TestIssueForCredential:
    @pytest.mark.asyncio
    async def test_includes_roles_role_claims_and_user_claims(self, settings, store):
        alice = await create_user(store)
        role = Role(name="Editor")
        await store.create_role(role)
        await store.add_role_claims(role.id, [Claim("permission", "articles.write")])
        await store.add_to_roles(alice.id, ["Editor"])
        await store.add_user_claims(alice.id, [Claim("dept", "news")])

        token = await TokenIssuer(settings, store).issue_for_credential(alice, "cms", refreshable=False)
        payload = _decode(token.token)
        assert payload["role"] == "Editor"
        assert payload["permission"] == "articles.write"
        assert payload["dept"] == "news"
        assert payload["appId"] == "cms"

    @pytest.mark.asyncio
    async def test_refreshable_persists_record(self, settings, store):
        alice = await create_user(store)
        token = await TokenIssuer(settings, store).issue_for_credential(alice, "Default", refreshable=True)
        record = await store.find_refresh_token(alice.id, "Default")
        assert token.refresh_token is not None
        assert record.value == token.refresh_token.token
        assert record.expire_at == token.refresh_token.expire_at
        assert record.scheme == "Bearer"


class TestRedeemRefreshToken:
    @pytest.mark.asyncio
    async def test_redeem_rotates_value(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)

        second = await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
        assert second.refresh_token.token != first.refresh_token.token
        assert issuer.verify_access_token(second.token)["sub"] == alice.id
        record = await store.find_refresh_token(alice.id, "Default")
        assert record.value == second.refresh_token.token

    @pytest.mark.asyncio
    async def test_redeemed_value_never_redeems_again(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(first.token, first.refresh_token.token)

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_at_most_one_succeeds(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)

        results = await asyncio.gather(
            *(issuer.redeem_refresh_token(first.token, first.refresh_token.token) for _ in range(5)),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert all(isinstance(f, Unauthorized) for f in failures)
        record = await store.find_refresh_token(alice.id, "Default")
        assert record.value == successes[0].refresh_token.token

    @pytest.mark.asyncio
    async def test_expired_record_rejected_on_exact_match(self, settings, store):
        alice = await create_user(store)
        long_ago = datetime.now(timezone.utc) - timedelta(hours=settings.jwt.refresh_hours + 1)
        old = await TokenIssuer(settings, store, clock=lambda: long_ago).issue_for_credential(
            alice, "Default", refreshable=True
        )
        with pytest.raises(Unauthorized):
            await TokenIssuer(settings, store).redeem_refresh_token(old.token, old.refresh_token.token)

    @pytest.mark.asyncio
    async def test_mismatched_value_rejected(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(first.token, "not-the-value")
        # A failed attempt leaves the genuine value usable.
        assert await issuer.redeem_refresh_token(first.token, first.refresh_token.token)

    @pytest.mark.asyncio
    async def test_reissue_invalidates_previous_value(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        second = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
        assert await issuer.redeem_refresh_token(second.token, second.refresh_token.token)

    @pytest.mark.asyncio
    async def test_app_scopes_are_independent(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        web = await issuer.issue_for_credential(alice, "web", refreshable=True)
        mobile = await issuer.issue_for_credential(alice, "mobile", refreshable=True)
        assert (await issuer.redeem_refresh_token(web.token, web.refresh_token.token)).app_id == "web"
        assert (await issuer.redeem_refresh_token(mobile.token, mobile.refresh_token.token)).app_id == "mobile"

    @pytest.mark.asyncio
    async def test_unknown_user_rejected(self, settings, store):
        issuer = TokenIssuer(settings, store)
        token = issuer.issue_access_token(AccessTokenData(user_id="ghost", user_name="ghost"))
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(token.token, "whatever")

    @pytest.mark.asyncio
    async def test_token_without_name_rejected(self, settings, store):
        issuer = TokenIssuer(settings, store)
        token = issuer.issue_access_token(AccessTokenData(user_id="u"))
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(token.token, "whatever")

    @pytest.mark.asyncio
    async def test_forged_access_token_rejected(self, settings, store):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        forged = jwt.encode(
            {"name": "alice", "appId": "Default", "iss": ISSUER, "aud": ISSUER, "exp": 4102444800},
            "y" * 40,
            algorithm="HS256",
        )
        with pytest.raises(Unauthorized):
            await issuer.redeem_refresh_token(forged, first.refresh_token.token)

    @pytest.mark.asyncio
    async def test_user_claims_shadowing_issuer_claims_do_not_block_refresh(self, settings, store):
        alice = await create_user(store)
        await store.add_user_claims(
            alice.id, [Claim("name", "Alice Display"), Claim("appId", "other"), Claim("email", "alias@x.com")]
        )
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)
        payload = issuer.verify_access_token(first.token)
        assert payload["name"] == "alice"
        assert payload["appId"] == "Default"
        assert payload["email"] == "a@x.com"

        second = await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
        assert second.user_id == alice.id

    @pytest.mark.asyncio
    async def test_store_failure_while_issuing_keeps_value_redeemable(self, settings, store, monkeypatch):
        alice = await create_user(store)
        issuer = TokenIssuer(settings, store)
        first = await issuer.issue_for_credential(alice, "Default", refreshable=True)

        async def broken(user_id):
            raise StoreError()

        with monkeypatch.context() as m:
            m.setattr(store, "get_user_claims", broken)
            with pytest.raises(Unauthorized) as exc:
                await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
        assert type(exc.value) is Unauthorized

        record = await store.find_refresh_token(alice.id, "Default")
        assert record.value == first.refresh_token.token
        assert await issuer.redeem_refresh_token(first.token, first.refresh_token.token)
