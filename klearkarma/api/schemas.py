from __future__ import annotations

import re
import unicodedata
from datetime import date as date_type
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from klearkarma.storage.models import (
    Appointment,
    AppointmentStatus,
    Message,
    ModerationStatus,
    Product,
    Review,
    Role,
    Service,
    User,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters used for spoofing."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


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


_SPECIAL_CHARS = set("!@#$%^&*()_+-=[]{}|;':\",./<>?`~\\")


def _validate_password_strength(value: str) -> str:
    """At least 8 characters with upper, lower, digit and special character."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not any(c.isupper() for c in value):
        raise ValueError("password must contain an uppercase letter")
    if not any(c.islower() for c in value):
        raise ValueError("password must contain a lowercase letter")
    if not any(c.isdigit() for c in value):
        raise ValueError("password must contain a digit")
    if not any(c in _SPECIAL_CHARS for c in value):
        raise ValueError("password must contain a special character")
    return value


_KEY_SAFE = re.compile(r"^[A-Za-z0-9 _.&'-]{1,64}$")


def _validate_key_safe(value: Optional[str]) -> Optional[str]:
    """Category and modality names end up inside store keys."""
    if value is None:
        return None
    value = value.strip().lower()
    if not _KEY_SAFE.match(value):
        raise ValueError("may only contain letters, digits, spaces and _ . & ' -")
    return value


_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

# record ids are uuids; anything outside this set cannot be a store key
ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"
KEY_SAFE_PATTERN = _KEY_SAFE.pattern


def _reject_null(value: Any) -> Any:
    """Partial updates may omit a field but not clear one that the record requires."""
    if value is None:
        raise ValueError("must not be null")
    return value


# -- auth --


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: str = Field(..., min_length=1, max_length=120)
    role: Literal["user", "practitioner"] = "user"
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("full_name")
    @classmethod
    def _full_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("full_name must not be blank")
        return cleaned


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AuthResponse(BaseModel):
    user_id: str
    role: str
    verified: bool
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


# -- users --


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=32)
    bio: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("full_name", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        return _reject_null(value)


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: str
    permissions: List[str] = Field(default_factory=list)
    verified: bool
    active: bool
    phone: Optional[str] = None
    bio: Optional[str] = None
    created_at: datetime
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role.value,
            permissions=[p.value for p in user.permissions],
            verified=user.verified,
            active=user.active,
            phone=user.phone,
            bio=user.bio,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class UpdateUserRoleRequest(BaseModel):
    role: Role


class UserActiveRequest(BaseModel):
    active: bool


# -- services --


class ServiceCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: str = Field(default="", max_length=5000)
    category: str
    duration_minutes: int = Field(..., gt=0, le=24 * 60)
    price: float = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)

    @field_validator("category")
    @classmethod
    def _category(cls, value: str) -> str:
        return _validate_key_safe(value)


class ServiceUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=5000)
    category: Optional[str] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=24 * 60)
    price: Optional[float] = Field(default=None, ge=0)

    @field_validator("category")
    @classmethod
    def _category(cls, value: Optional[str]) -> Optional[str]:
        return _validate_key_safe(value)

    @field_validator(
        "name", "description", "category", "duration_minutes", "price", mode="before"
    )
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        return _reject_null(value)


# -- appointments --


class AppointmentCreateRequest(BaseModel):
    service_id: str = Field(..., pattern=ID_PATTERN)
    date: str
    time: str
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("date")
    @classmethod
    def _date(cls, value: str) -> str:
        try:
            return date_type.fromisoformat(value).isoformat()
        except ValueError as exc:
            raise ValueError("date must be YYYY-MM-DD") from exc

    @field_validator("time")
    @classmethod
    def _time(cls, value: str) -> str:
        if not _TIME_PATTERN.match(value):
            raise ValueError("time must be HH:MM")
        return value


class AppointmentStatusRequest(BaseModel):
    status: AppointmentStatus
    reason: Optional[str] = Field(default=None, max_length=500)


# -- reviews --


class ReviewCreateRequest(BaseModel):
    appointment_id: str = Field(..., pattern=ID_PATTERN)
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=200)
    comment: str = Field(..., min_length=1, max_length=5000)
    anonymous: bool = False


class ReviewUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: Optional[int] = Field(default=None, ge=1, le=5)
    title: Optional[str] = Field(default=None, max_length=200)
    comment: Optional[str] = Field(default=None, min_length=1, max_length=5000)

    @field_validator("rating", "comment", mode="before")
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        return _reject_null(value)


def review_view(review: Review, *, moderator: bool = False) -> dict:
    """Public review representation; anonymous reviews hide the customer.

    Moderation notes and the moderator id are only shown to moderators.
    """
    data = review.model_dump(mode="json")
    if review.anonymous:
        data["customer_id"] = None
        data["customer_name"] = None
    if not moderator:
        data.pop("moderation_notes", None)
        data.pop("moderated_by", None)
    return data


class ModerationRequest(BaseModel):
    status: ModerationStatus
    notes: Optional[str] = Field(default=None, max_length=2000)


# -- practitioners --


def practitioner_view(user: User) -> dict:
    """Directory entry. Email and phone stay private."""
    return {
        "id": user.id,
        "full_name": user.full_name,
        "bio": user.bio,
        "verified": user.verified,
        "created_at": user.created_at.isoformat(),
    }


# -- messages --


class MessageCreateRequest(BaseModel):
    recipient_id: str = Field(..., pattern=ID_PATTERN)
    content: str = Field(..., min_length=1, max_length=5000)
    appointment_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)


# -- products --


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    category: str
    modality: Optional[str] = None
    price: float = Field(..., ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    curator_practitioner_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)
    verified: bool = False
    in_stock: bool = True
    affiliate_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("category", "modality")
    @classmethod
    def _key_safe(cls, value: Optional[str]) -> Optional[str]:
        return _validate_key_safe(value)


class ProductUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)
    category: Optional[str] = None
    modality: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    verified: Optional[bool] = None
    in_stock: Optional[bool] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    affiliate_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("category", "modality")
    @classmethod
    def _key_safe(cls, value: Optional[str]) -> Optional[str]:
        return _validate_key_safe(value)

    @field_validator(
        "name", "description", "category", "price", "verified", "in_stock", "rating",
        mode="before",
    )
    @classmethod
    def _not_null(cls, value: Any) -> Any:
        return _reject_null(value)


def record_view(record: Service | Appointment | Message | Product | Review) -> dict:
    return record.model_dump(mode="json")
