from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from authcore.config import MAX_PASSWORD_LENGTH


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize so visually identical addresses compare equal."""
    return unicodedata.normalize("NFKC", value)


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: str
    data: Optional[Any] = None
    errors: Optional[List[str]] = None


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _strip_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_CamelModel):
    email: str
    # Strength rules are reported in full by the credential policy, not here
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH * 4)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: Optional[str]) -> Optional[str]:
        return _strip_name(value)


class LoginRequest(_CamelModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH * 4)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Malformed addresses fall through to a uniform credentials failure
        return _normalize_unicode(value.strip().lower())


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=4096)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=MAX_PASSWORD_LENGTH * 4
    )
    new_password: str = Field(
        ..., alias="newPassword", max_length=MAX_PASSWORD_LENGTH * 4
    )


class PasswordResetRequest(_CamelModel):
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("email")
    @classmethod
    def _normalize_reset_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip().lower()) or None


class PasswordResetConfirm(_CamelModel):
    token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("token", "resetToken"),
        max_length=256,
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_PASSWORD_LENGTH * 4
    )


class ProfileUpdateRequest(_CamelModel):
    """Only the fields present in the body are changed; blank clears a name."""

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_profile_names(cls, value: Optional[str]) -> Optional[str]:
        return _strip_name(value)

    def changes(self) -> dict:
        return {name: getattr(self, name) for name in self.model_fields_set}


class PasswordStrengthRequest(_CamelModel):
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH * 4)
