"""
identity/manager.py -- Session Manager: the single entry point of the identity core.

Orchestrates sign-in, sign-up, sign-out, refresh and account-mutation
workflows over the Credential Store, the External Provider Validator, the
Token Issuer and the Role/Claim Administrator. Every outcome is a return
value or an identity.errors exception; nothing here is fatal.

Session boundary:
  Workflows that touch the caller's interactive session (external sign-in,
  sign-out, password change) take an optional SessionBoundary. The manager
  never reaches into transport state itself.

Storeless mode:
  With store=None, sign_in() falls back to the configured admin user
  (sign_in_admin) and every store-backed workflow raises StoreError.

Layer rule: may import everything under identity/ and core.config.
"""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Protocol

from identity.errors import (
    LockedOut,
    NotFound,
    SetPasswordConflict,
    StoreError,
    TwoFactorRequired,
    Unauthorized,
    ValidationFailed,
)
from identity.models import (
    ADMIN_USER_ID,
    ADMINISTRATOR_ROLE,
    CLAIM_ROLE,
    DEFAULT_APP_ID,
    AccessToken,
    AccessTokenData,
    ChangeEmailToken,
    ChangePhoneNumberToken,
    Claim,
    ConfirmEmailToken,
    ConfirmPhoneNumberToken,
    Credential,
    ResetPasswordToken,
    merge_claims,
)
from identity.providers import ProviderRegistry
from identity.roles import RoleClaimAdministrator
from identity.store import SignInStatus
from identity.tokens import TokenIssuer

if TYPE_CHECKING:
    from core.config import Settings
    from identity import schemas
    from identity.store import CredentialStore, StoreResult

logger = logging.getLogger("identitycore.manager")


class SessionBoundary(Protocol):
    """What the manager needs from the request handler that owns the session."""

    def current_user_name(self) -> str | None:
        """Name of the signed-in principal, or None when anonymous."""

    async def sign_in(self, credential: Credential, remember_me: bool) -> None: ...

    async def sign_out(self) -> None: ...

    async def refresh_sign_in(self, credential: Credential) -> None: ...


def _raise_for(result: StoreResult) -> None:
    if not result.succeeded:
        raise ValidationFailed(result.errors)


class SessionManager:
    """Identity workflows.

    Usage:
        settings = get_settings()
        store = CredentialStore(settings)
        manager = SessionManager(settings, store)
        token = await manager.sign_in(Login(username="alice", password="Abcd1234!"))
        await manager.aclose()
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore | None = None,
        *,
        providers: ProviderRegistry | None = None,
        issuer: TokenIssuer | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.issuer = issuer or TokenIssuer(settings, store)
        self.providers = providers or ProviderRegistry.from_settings(settings)
        self.roles = RoleClaimAdministrator(store) if store is not None else None

    async def aclose(self) -> None:
        await self.providers.aclose()

    def _require_store(self) -> CredentialStore:
        if self.store is None:
            raise StoreError("No credential store is configured.")
        return self.store

    async def _user_by_id(self, user_id: str) -> Credential:
        user = await self._require_store().find_by_id(user_id)
        if user is None:
            raise NotFound(f"User '{user_id}' was not found.")
        return user

    async def _user_by_email(self, email: str) -> Credential:
        user = await self._require_store().find_by_email(email)
        if user is None:
            raise NotFound(f"No user with email '{email}'.")
        return user

    async def _user_by_phone_number(self, phone_number: str) -> Credential:
        user = await self._require_store().find_by_phone_number(phone_number)
        if user is None:
            raise NotFound(f"No user with phone number '{phone_number}'.")
        return user

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    async def sign_in(self, login: schemas.Login) -> AccessToken:
        """Password sign-in. Without a store this is the admin sign-in."""
        if self.store is None:
            return await self.sign_in_admin(login)

        status = await self.store.password_sign_in(
            login.username, login.password, lockout_on_failure=self.settings.lockout.allowed_for_new_users
        )
        if status is SignInStatus.LOCKED_OUT:
            logger.warning("Sign-in refused for %r: locked out", login.username)
            raise LockedOut()
        if status is SignInStatus.REQUIRES_TWO_FACTOR:
            raise TwoFactorRequired()
        if status is not SignInStatus.SUCCESS:
            logger.warning("Sign-in failed for %r", login.username)
            raise Unauthorized()

        credential = await self.store.find_by_name(login.username)
        if credential is None:
            raise Unauthorized()
        token = await self.issuer.issue_for_credential(credential, login.app_id or DEFAULT_APP_ID, login.refreshable)
        logger.info("User %s signed in (app %r)", credential.id, token.app_id)
        return token

    async def sign_in_admin(self, login: schemas.Login) -> AccessToken:
        """Storeless sign-in as the configured admin user. No lockout, no refresh token."""
        admin = self.settings.admin_user
        username_ok = hmac.compare_digest(login.username.encode("utf-8"), admin.username.encode("utf-8"))
        password_ok = hmac.compare_digest(login.password.encode("utf-8"), admin.password.encode("utf-8"))
        if not (admin.password and username_ok and password_ok):
            logger.warning("Admin sign-in failed for %r", login.username)
            raise Unauthorized()

        data = AccessTokenData(
            user_id=ADMIN_USER_ID,
            user_name=admin.username,
            user_email=admin.email,
            app_id=login.app_id or DEFAULT_APP_ID,
            claims=(Claim(CLAIM_ROLE, ADMINISTRATOR_ROLE),),
        )
        return self.issuer.issue_access_token(data)

    async def sign_in_external(
        self, login: schemas.LoginExternal, boundary: SessionBoundary | None = None
    ) -> AccessToken | None:
        """Sign in through a linked external login.

        Returns None when the provider vouches for the token but no local
        account is linked to it; the caller decides whether to offer sign-up.
        """
        store = self._require_store()
        subject = await self.providers.validate_access_token(login.provider, login.access_token)
        credential = await store.find_by_login(self.providers.get(login.provider).name, subject)
        if credential is None:
            logger.info("No account linked to %s subject", login.provider)
            return None
        if boundary is not None:
            await boundary.sign_in(credential, login.remember_me)
        return await self.issuer.issue_for_credential(credential, login.app_id or DEFAULT_APP_ID, login.refreshable)

    async def sign_in_external_transient(self, login: schemas.LoginExternalTransient) -> AccessToken:
        """Issue a token straight from the provider profile. Nothing is stored."""
        subject = await self.providers.validate_access_token(login.provider, login.access_token)
        profile = await self.providers.fetch_profile(login.provider, login.access_token, subject)
        claims = merge_claims(
            [Claim(t, v) for t, v in login.claims.items()],
            [Claim(CLAIM_ROLE, r) for r in login.roles],
        )
        data = AccessTokenData(user_id=profile.id, user_name=profile.name, user_email=profile.email, claims=claims)
        return self.issuer.issue_access_token(data)

    async def sign_in_refresh(self, login: schemas.LoginRefresh) -> AccessToken:
        self._require_store()
        return await self.issuer.redeem_refresh_token(login.token, login.refresh_token)

    def list_external_providers(self) -> list[str]:
        return self.providers.list_providers()

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    async def sign_out(self, boundary: SessionBoundary) -> None:
        user_name = boundary.current_user_name()
        if not user_name:
            raise Unauthorized()
        if await self._require_store().find_by_name(user_name) is None:
            raise NotFound(f"User '{user_name}' was not found.")
        await boundary.sign_out()

    # ------------------------------------------------------------------
    # Sign-up
    # ------------------------------------------------------------------

    async def _assign_sign_up_roles_and_claims(
        self, credential: Credential, roles: list[str], claims: dict[str, str]
    ) -> None:
        """Assign requested + default roles and the requested claims.

        A failure deletes the half-created credential before raising, so a
        rejected sign-up leaves nothing behind.
        """
        store = self._require_store()
        role_names = list(dict.fromkeys([*roles, *self.settings.default_roles]))
        errors: list[str] = []
        if role_names:
            errors += (await store.add_to_roles(credential.id, role_names)).errors
        if not errors and claims:
            errors += (await store.add_user_claims(credential.id, [Claim(t, v) for t, v in claims.items()])).errors
        if errors:
            await store.delete_user(credential.id)
            raise ValidationFailed(errors)

    async def sign_up(self, sign_up: schemas.SignUp) -> Credential:
        store = self._require_store()
        credential = Credential(username=sign_up.username, email=sign_up.email)
        _raise_for(await store.create_user(credential, sign_up.password))
        await self._assign_sign_up_roles_and_claims(credential, sign_up.roles, sign_up.claims)
        logger.info("User %s signed up", credential.id)
        return credential

    async def sign_up_external(
        self, sign_up: schemas.SignUpExternal, boundary: SessionBoundary | None = None
    ) -> Credential:
        """Create a password-less account (username = email) linked to an external login."""
        store = self._require_store()
        login = sign_up.external_login
        subject = await self.providers.validate_access_token(login.provider, login.access_token)
        provider_name = self.providers.get(login.provider).name

        credential = Credential(username=sign_up.email, email=sign_up.email)
        _raise_for(await store.create_user(credential))
        result = await store.add_login(credential, provider_name, subject)
        if not result.succeeded:
            await store.delete_user(credential.id)
            raise ValidationFailed(result.errors)
        await self._assign_sign_up_roles_and_claims(credential, sign_up.roles, sign_up.claims)

        if boundary is not None:
            await boundary.sign_in(credential, login.remember_me)
        logger.info("User %s signed up with %s", credential.id, provider_name)
        return credential

    async def delete_user(self, user_id: str) -> None:
        user = await self._user_by_id(user_id)
        _raise_for(await self._require_store().delete_user(user.id))
        logger.info("User %s deleted", user.id)

    # ------------------------------------------------------------------
    # Account mutations
    # ------------------------------------------------------------------

    async def remove_external_login(
        self, request: schemas.RemoveExternalLogin, boundary: SessionBoundary | None = None
    ) -> None:
        """Unlink an external login. The caller proves ownership with a current provider token.

        The link is resolved from the subject the provider vouches for, never
        from a caller-supplied key. When a boundary with a signed-in principal
        is given, the link must belong to that principal.
        """
        store = self._require_store()
        subject = await self.providers.validate_access_token(request.provider, request.access_token)
        provider_name = self.providers.get(request.provider).name
        credential = await store.find_by_login(provider_name, subject)
        if credential is None:
            raise NotFound(f"No account is linked to this {provider_name} login.")
        if boundary is not None:
            user_name = boundary.current_user_name()
            if user_name and user_name != credential.username:
                logger.warning("Refused to unlink %s login of user %s for %r", provider_name, credential.id, user_name)
                raise Unauthorized()
        _raise_for(await store.remove_login(credential, provider_name, subject))
        if boundary is not None:
            await boundary.refresh_sign_in(credential)

    async def set_username(self, request: schemas.SetUsername) -> None:
        user = await self._user_by_id(request.user_id)
        _raise_for(await self._require_store().set_username(user, request.new_username))

    async def set_password(self, request: schemas.SetPassword) -> None:
        """Give a password-less account its first password."""
        store = self._require_store()
        user = await self._user_by_id(request.user_id)
        if await store.has_password(user):
            raise SetPasswordConflict()
        _raise_for(await store.add_password(user, request.new_password))

    async def reset_password(self, request: schemas.ResetPassword) -> None:
        user = await self._user_by_email(request.email)
        _raise_for(await self._require_store().reset_password(user, request.token, request.password))

    async def change_password(self, request: schemas.ChangePassword, boundary: SessionBoundary | None = None) -> None:
        user = await self._user_by_id(request.user_id)
        _raise_for(await self._require_store().change_password(user, request.old_password, request.new_password))
        if boundary is not None:
            await boundary.refresh_sign_in(user)

    async def change_email(self, request: schemas.ChangeEmail) -> None:
        user = await self._user_by_id(request.user_id)
        _raise_for(await self._require_store().change_email(user, request.new_email, request.token))

    async def confirm_email(self, request: schemas.ConfirmEmail) -> None:
        user = await self._user_by_email(request.email)
        _raise_for(await self._require_store().confirm_email(user, request.token))

    async def change_phone_number(self, request: schemas.ChangePhoneNumber) -> None:
        """Apply a phone change. The new number starts out unconfirmed."""
        user = await self._user_by_id(request.user_id)
        _raise_for(await self._require_store().change_phone_number(user, request.new_phone_number, request.token))

    async def confirm_phone_number(self, request: schemas.ConfirmPhoneNumber) -> None:
        user = await self._user_by_phone_number(request.phone_number)
        _raise_for(await self._require_store().confirm_phone_number(user, request.token))

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    async def generate_reset_password_token(self, email: str) -> ResetPasswordToken:
        user = await self._user_by_email(email)
        token = self._require_store().generate_purpose_token(user, "ResetPassword")
        return ResetPasswordToken(token=token, email=email)

    async def generate_confirm_email_token(self, email: str) -> ConfirmEmailToken:
        user = await self._user_by_email(email)
        token = self._require_store().generate_purpose_token(user, f"ConfirmEmail:{email}")
        return ConfirmEmailToken(token=token, email=email)

    async def generate_change_email_token(self, email: str, new_email: str) -> ChangeEmailToken:
        store = self._require_store()
        user = await self._user_by_email(email)
        holder = await store.find_by_email(new_email)
        if holder is not None and holder.id != user.id:
            raise ValidationFailed([f"Email '{new_email}' is already taken."])
        token = store.generate_purpose_token(user, f"ChangeEmail:{new_email}")
        return ChangeEmailToken(token=token, email=email, new_email=new_email)

    async def generate_confirm_phone_number_token(self, phone_number: str) -> ConfirmPhoneNumberToken:
        user = await self._user_by_phone_number(phone_number)
        token = self._require_store().generate_purpose_token(user, f"ConfirmPhoneNumber:{phone_number}")
        return ConfirmPhoneNumberToken(token=token, phone_number=phone_number)

    async def generate_change_phone_number_token(
        self, phone_number: str, new_phone_number: str
    ) -> ChangePhoneNumberToken:
        store = self._require_store()
        user = await self._user_by_phone_number(phone_number)
        holder = await store.find_by_phone_number(new_phone_number)
        if holder is not None and holder.id != user.id:
            raise ValidationFailed([f"Phone number '{new_phone_number}' is already taken."])
        token = store.generate_purpose_token(user, f"ChangePhoneNumber:{new_phone_number}")
        return ChangePhoneNumberToken(token=token, phone_number=phone_number, new_phone_number=new_phone_number)
