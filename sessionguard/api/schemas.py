from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CamelModel(BaseModel):
    """Request bodies arrive in camelCase; snake_case is accepted as well."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldError(BaseModel):
    field: str
    message: str
    code: str


class Envelope(BaseModel):
    """Uniform response body for every endpoint, success or failure."""

    success: bool
    message: str
    data: Optional[Any] = None
    code: str
    timestamp: str = Field(default_factory=_utc_timestamp)
    errors: Optional[List[FieldError]] = None

    def to_content(self) -> dict:
        return self.model_dump(exclude={"errors"} if self.errors is None else None)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
MAX_EMAIL_LENGTH = 100


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError(f"Email cannot exceed {MAX_EMAIL_LENGTH} characters")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


_NAME_PATTERN = re.compile(r"^[a-zA-Z\s]+$")


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if len(value) < 2:
        raise ValueError("Name must be at least 2 characters")
    if len(value) > 50:
        raise ValueError("Name cannot exceed 50 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("Name can only contain letters and spaces")
    return value


_PASSWORD_CLASSES = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])")


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters")
    if not _PASSWORD_CLASSES.match(value):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, "
            "one number, and one special character"
        )
    return value


class RegisterRequest(CamelModel):
    name: str
    email: str
    password: str
    role: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _reject_privileged_role(self):
        # Privileged roles are granted out of band, never self-assigned
        if self.role not in (None, "user"):
            raise ValueError("role cannot be chosen at registration")
        self.role = None
        return self


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ProfileFields(CamelModel):
    avatar: Optional[str] = Field(default=None, max_length=2048)
    bio: Optional[str] = Field(default=None, max_length=500)
    phone: Optional[str] = Field(default=None, max_length=32)


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = None
    profile: Optional[ProfileFields] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AccountStatusRequest(CamelModel):
    is_active: bool
