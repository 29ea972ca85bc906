from __future__ import annotations

import secrets
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "admin"]
Provider = Literal["local", "google", "both"]
VerificationPurpose = Literal["email", "reset"]

ROLES = ("user", "admin")
PROVIDERS = ("local", "google", "both")

DEFAULT_IMAGE_ID = "default"
GOOGLE_IMAGE_ID = "google_profile"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token_version() -> str:
    return secrets.token_hex(8)


def normalize_email(value: str) -> str:
    """Canonical form used for storage and every lookup."""
    return unicodedata.normalize("NFKC", value.strip()).lower()


@dataclass
class ProfileImage:
    public_id: str = DEFAULT_IMAGE_ID
    url: str = ""

    @property
    def is_default(self) -> bool:
        return self.public_id == DEFAULT_IMAGE_ID


@dataclass
class Account:
    id: str
    email: str
    name: str
    role: str = "user"
    is_active: bool = True
    is_email_verified: bool = False
    provider: str = "local"
    federated_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image: ProfileImage = field(default_factory=ProfileImage)
    secret_hash: Optional[str] = None
    secret_changed_at: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    token_version: str = field(default_factory=new_token_version)
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_authenticatable(self) -> bool:
        return self.is_active and self.is_email_verified

    def without_secret(self) -> "Account":
        """Copy for the default retrieval path: the hash is never exposed."""
        return replace(self, secret_hash=None, image=replace(self.image))


class AccountCreate(BaseModel):
    """Every field a new account may be created with, validated up front."""

    model_config = ConfigDict(frozen=True)

    email: str = Field(..., max_length=254)
    name: str
    password: str = Field(..., min_length=1, max_length=256)
    role: Role = "user"
    provider: Provider = "local"
    federated_id: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    image_public_id: str = DEFAULT_IMAGE_ID
    image_url: Optional[str] = None
    is_email_verified: bool = False
    last_login: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = normalize_email(value)
        if "@" not in normalized:
            raise ValueError("Please provide a valid email")
        return normalized

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        trimmed = value.strip()
        if not 2 <= len(trimmed) <= 50:
            raise ValueError("Name must be between 2 and 50 characters")
        return trimmed
