"""
identity/schemas.py -- Request models for every identity workflow.

These Pydantic v2 models define the input contract of the Session Manager.
They are intentionally separate from the dataclasses in identity/models.py,
which own the internal domain representation.

Shape rules (required fields, empty strings, obviously malformed emails)
fail here with pydantic.ValidationError, at construction time, before the
manager touches the store or the network. Business rules (duplicate
username, weak password, wrong token) are the store's job and surface later
as identity.errors.ValidationFailed.

Secrets (passwords, tokens) are never whitespace-stripped.
"""

from __future__ import annotations

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Shared field types
# ---------------------------------------------------------------------------

_NonEmpty = Annotated[str, Field(min_length=1)]
_Username = Annotated[str, Field(min_length=1, max_length=256)]
_Password = Annotated[str, Field(min_length=1, max_length=255)]
_Email = Annotated[str, Field(min_length=3, max_length=256, pattern=r"^[^@\s]+@[^@\s]+$")]
_Phone = Annotated[str, Field(min_length=3, max_length=32, pattern=r"^\+?[0-9 ()\-]+$")]


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


# ---------------------------------------------------------------------------
# Sign-in
# ---------------------------------------------------------------------------


class Login(_Request):
    username: _Username
    password: _Password
    app_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    remember_me: bool = False
    refreshable: bool = False


class LoginExternal(_Request):
    provider: _NonEmpty
    access_token: _NonEmpty
    app_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    remember_me: bool = False
    refreshable: bool = False


class LoginExternalTransient(_Request):
    """Storeless external sign-in. claims maps claim type -> value."""

    provider: _NonEmpty
    access_token: _NonEmpty
    claims: dict[str, str] = Field(default_factory=dict)
    roles: list[str] = Field(default_factory=list)


class LoginRefresh(_Request):
    token: _NonEmpty
    refresh_token: _NonEmpty


# ---------------------------------------------------------------------------
# Sign-up
# ---------------------------------------------------------------------------


class SignUp(_Request):
    username: _Username
    password: _Password
    email: _Email
    roles: list[str] = Field(default_factory=list)
    claims: dict[str, str] = Field(default_factory=dict)

    @field_validator("roles")
    @classmethod
    def roles_not_blank(cls, values: list[str]) -> list[str]:
        if any(not v.strip() for v in values):
            raise ValueError("role names must not be blank")
        return values


class SignUpExternal(_Request):
    email: _Email
    external_login: LoginExternal
    roles: list[str] = Field(default_factory=list)
    claims: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Account mutations
# ---------------------------------------------------------------------------


class RemoveExternalLogin(_Request):
    """Unlink the external login the presented provider token belongs to."""

    provider: _NonEmpty
    access_token: _NonEmpty


class SetUsername(_Request):
    user_id: _NonEmpty
    new_username: _Username


class SetPassword(_Request):
    user_id: _NonEmpty
    new_password: _Password


class ResetPassword(_Request):
    email: _Email
    token: _NonEmpty
    password: _Password


class ChangePassword(_Request):
    user_id: _NonEmpty
    old_password: _Password
    new_password: _Password


class ChangeEmail(_Request):
    user_id: _NonEmpty
    new_email: _Email
    token: _NonEmpty


class ConfirmEmail(_Request):
    email: _Email
    token: _NonEmpty


class ChangePhoneNumber(_Request):
    user_id: _NonEmpty
    new_phone_number: _Phone
    token: _NonEmpty


class ConfirmPhoneNumber(_Request):
    phone_number: _Phone
    token: _NonEmpty
