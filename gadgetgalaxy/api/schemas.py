from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gadgetgalaxy.storage.models import ROLES, Account

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

INVALID_EMAIL = "Please provide a valid email"
INVALID_NAME = "Name must be between 2 and 50 characters"


def _validate_email(value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Email is required")
    normalized = unicodedata.normalize("NFKC", value.strip()).lower()
    if len(normalized) > 254:
        raise ValueError(INVALID_EMAIL)
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError(INVALID_EMAIL)
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError(INVALID_EMAIL)
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValueError(INVALID_EMAIL)
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError(INVALID_EMAIL)
    return normalized


def _validate_name(value: Optional[str]) -> str:
    trimmed = (value or "").strip()
    if not 2 <= len(trimmed) <= 50:
        raise ValueError(INVALID_NAME)
    return trimmed


def _validate_password_strength(value: Optional[str], label: str = "Password") -> str:
    if not value:
        raise ValueError(f"{label} is required")
    if len(value) < 6:
        raise ValueError(f"{label} must be at least 6 characters long")
    if len(value) > 128:
        raise ValueError(f"{label} must be at most 128 characters long")
    if not re.search(r"\d", value):
        raise ValueError(f"{label} must contain at least one number")
    if not re.search(r"[a-zA-Z]", value):
        raise ValueError(f"{label} must contain at least one letter")
    return value


class RegisterRequest(BaseModel):
    name: str = Field(default="", validate_default=True)
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", validate_default=True)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str = Field(default="", validate_default=True)
    password: str = Field(default="", max_length=256, validate_default=True)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        if not value:
            raise ValueError("Password cannot be empty")
        return value


class EmailRequest(BaseModel):
    """Body of resend-verification and forgot-password."""

    email: str = Field(default="", validate_default=True)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class GoogleAuthRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credential: Optional[str] = Field(default=None, max_length=8192)
    is_registration: bool = Field(default=False, alias="isRegistration")


class ResetPasswordRequest(BaseModel):
    token: str = Field(default="", max_length=256)
    password: str = Field(default="", validate_default=True)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(default="", alias="currentPassword", validate_default=True)
    new_password: str = Field(default="", alias="newPassword", validate_default=True)
    confirm_password: str = Field(default="", alias="confirmPassword", validate_default=True)

    @field_validator("current_password")
    @classmethod
    def _check_current(cls, value: str) -> str:
        if not value:
            raise ValueError("Current password is required")
        return value

    @field_validator("new_password")
    @classmethod
    def _check_new(cls, value: str, info: ValidationInfo) -> str:
        _validate_password_strength(value, "New password")
        if value == info.data.get("current_password"):
            raise ValueError("New password must be different from current password")
        return value

    @field_validator("confirm_password")
    @classmethod
    def _check_confirm(cls, value: str, info: ValidationInfo) -> str:
        if value != info.data.get("new_password"):
            raise ValueError("Password confirmation does not match new password")
        return value


class AdminUserUpdateRequest(BaseModel):
    """Multipart fields of the admin account edit; every field is optional."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = Field(default=None, alias="isActive")

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ROLES:
            raise ValueError("Invalid role specified")
        return value

    @field_validator("is_active", mode="before")
    @classmethod
    def _check_active(cls, value):
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ValueError("isActive must be a boolean value")


class RoleUpdateRequest(BaseModel):
    role: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: Optional[str]) -> str:
        if not value:
            raise ValueError("Role is required")
        if value not in ROLES:
            raise ValueError("Invalid role specified")
        return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_account(account: Account) -> dict:
    """Public view of an account; never includes secrets or token state."""
    return {
        "_id": account.id,
        "name": account.name,
        "email": account.email,
        "role": account.role,
        "firstName": account.first_name,
        "lastName": account.last_name,
        "image": {"url": account.image.url, "public_id": account.image.public_id},
        "hasImage": not account.image.is_default,
        "isActive": account.is_active,
        "isEmailVerified": account.is_email_verified,
        "provider": account.provider,
        "lastLogin": _iso(account.last_login),
        "createdAt": _iso(account.created_at),
        "updatedAt": _iso(account.updated_at),
    }
