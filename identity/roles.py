"""
identity/roles.py -- Role and claim administration over the Credential Store.

Thin orchestration: resolve the user or role, call the store, and turn store
outcomes into typed errors (missing entity -> NotFound, store validation
errors -> ValidationFailed).

Claims of one type may carry several values. Lists come back in insertion
order, and get_*_claim / remove_*_claim act on the earliest-assigned claim of
the requested type.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from identity.errors import NotFound, ValidationFailed
from identity.models import Claim, Credential, Role

if TYPE_CHECKING:
    from identity.store import CredentialStore, StoreResult

logger = logging.getLogger("identitycore.roles")


def _raise_for(result: StoreResult) -> None:
    if not result.succeeded:
        raise ValidationFailed(result.errors)


class RoleClaimAdministrator:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    async def _user(self, user_id: str) -> Credential:
        user = await self._store.find_by_id(user_id)
        if user is None:
            raise NotFound(f"User '{user_id}' was not found.")
        return user

    async def _role_by_id(self, role_id: str) -> Role:
        role = await self._store.find_role_by_id(role_id)
        if role is None:
            raise NotFound(f"Role '{role_id}' was not found.")
        return role

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def get_roles(self) -> list[Role]:
        """All roles, ordered by name."""
        return await self._store.list_roles()

    async def create_role(self, name: str) -> Role:
        role = Role(name=name)
        _raise_for(await self._store.create_role(role))
        logger.info("Role %r created", name)
        return role

    async def delete_role(self, name: str) -> None:
        role = await self._store.find_role_by_name(name)
        if role is None:
            raise NotFound(f"Role '{name}' was not found.")
        _raise_for(await self._store.delete_role(role))
        logger.info("Role %r deleted", name)

    async def get_user_roles(self, user_id: str) -> list[str]:
        user = await self._user(user_id)
        return await self._store.get_user_roles(user.id)

    async def assign_user_role(self, user_id: str, role_name: str) -> None:
        user = await self._user(user_id)
        if await self._store.find_role_by_name(role_name) is None:
            raise NotFound(f"Role '{role_name}' was not found.")
        _raise_for(await self._store.add_to_roles(user.id, [role_name]))

    async def remove_user_role(self, user_id: str, role_name: str) -> None:
        user = await self._user(user_id)
        if await self._store.find_role_by_name(role_name) is None:
            raise NotFound(f"Role '{role_name}' was not found.")
        _raise_for(await self._store.remove_from_role(user.id, role_name))

    # ------------------------------------------------------------------
    # User claims
    # ------------------------------------------------------------------

    async def get_user_claims(self, user_id: str) -> list[Claim]:
        user = await self._user(user_id)
        return await self._store.get_user_claims(user.id)

    async def get_user_claim(self, user_id: str, claim_type: str) -> Claim | None:
        """Earliest-assigned claim of claim_type, or None."""
        claims = await self.get_user_claims(user_id)
        return next((c for c in claims if c.type == claim_type), None)

    async def assign_user_claim(self, user_id: str, claim_type: str, claim_value: str) -> Claim:
        user = await self._user(user_id)
        claim = Claim(claim_type, claim_value)
        _raise_for(await self._store.add_user_claims(user.id, [claim]))
        return claim

    async def remove_user_claim(self, user_id: str, claim_type: str) -> None:
        claim = await self.get_user_claim(user_id, claim_type)
        if claim is None:
            raise NotFound(f"Claim '{claim_type}' was not found.")
        _raise_for(await self._store.remove_user_claim(user_id, claim))

    # ------------------------------------------------------------------
    # Role claims
    # ------------------------------------------------------------------

    async def get_role_claims(self, role_id: str) -> list[Claim]:
        role = await self._role_by_id(role_id)
        return await self._store.get_role_claims(role.id)

    async def get_role_claim(self, role_id: str, claim_type: str) -> Claim | None:
        claims = await self.get_role_claims(role_id)
        return next((c for c in claims if c.type == claim_type), None)

    async def assign_role_claim(self, role_id: str, claim_type: str, claim_value: str) -> Claim:
        role = await self._role_by_id(role_id)
        claim = Claim(claim_type, claim_value)
        _raise_for(await self._store.add_role_claims(role.id, [claim]))
        return claim

    async def remove_role_claim(self, role_id: str, claim_type: str) -> None:
        claim = await self.get_role_claim(role_id, claim_type)
        if claim is None:
            raise NotFound(f"Claim '{claim_type}' was not found.")
        _raise_for(await self._store.remove_role_claim(role_id, claim))
