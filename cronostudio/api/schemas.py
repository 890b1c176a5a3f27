from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cronostudio.storage.models import (
    Idea,
    IdeaStatus,
    Production,
    ProductionStatus,
    User,
)

MAX_EMAIL_LENGTH = 255
MAX_TAGS = 20
MAX_TAG_LENGTH = 50

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "invalid_token",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str = Field(..., description="Stable error code")
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


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _normalize_unicode(value: str) -> str:
    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH)
    return unicodedata.normalize("NFKC", cleaned)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """New passwords: 8-100 chars with at least one uppercase letter and one digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 100:
        raise ValueError("password must be at most 100 characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain a digit")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    if len(stripped) < 2:
        raise ValueError("name must be at least 2 characters")
    if len(stripped) > 100:
        raise ValueError("name must be at most 100 characters")
    return stripped


def _clean_tags(tags: List[str]) -> List[str]:
    return [tag.strip()[:MAX_TAG_LENGTH] for tag in tags if tag.strip()]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Read naive datetimes as UTC so stored dates compare consistently."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _drop_null_columns(values: dict[str, Any], required: tuple[str, ...]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None or k not in required}


# auth


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=6, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(BaseModel):
    """Body fallback for clients that cannot send the refresh cookie."""

    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @model_validator(mode="after")
    def _require_one_field(self):
        if self.name is None and self.email is None:
            raise ValueError("send at least one field to update")
        return self


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=100)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=512)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    email_verified: bool
    email_verified_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            email_verified=user.email_verified,
            email_verified_at=user.email_verified_at,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_expires_at: datetime


class MessageResponse(BaseModel):
    message: str


# productions


class ProductionCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    idea_id: Optional[str] = Field(default=None, max_length=64)
    priority: int = Field(default=0, ge=0, le=10)
    target_date: Optional[datetime] = None

    @field_validator("target_date")
    @classmethod
    def _target_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class ProductionUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[ProductionStatus] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10)
    target_date: Optional[datetime] = None

    @field_validator("target_date")
    @classmethod
    def _target_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @model_validator(mode="after")
    def _require_one_field(self):
        if not self.model_fields_set:
            raise ValueError("no fields to update")
        return self

    def changes(self) -> dict[str, Any]:
        values = _drop_null_columns(self.model_dump(exclude_unset=True), ("title", "status", "priority"))
        if "status" in values:
            values["status"] = ProductionStatus(values["status"]).value
        return values


class ProductionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    status: str
    idea_id: Optional[str] = None
    description: Optional[str] = None
    priority: int
    target_date: Optional[datetime] = None
    published_at: Optional[datetime] = None
    shorts_count: int
    shorts_published: int
    posts_count: int
    posts_published: int
    next_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_production(cls, production: Production) -> "ProductionResponse":
        following = ProductionStatus(production.status).next()
        resp = cls.model_validate(production)
        resp.next_status = following.value if following else None
        return resp


# calendar


class CalendarRange(BaseModel):
    """Inclusive calendar window. Date-only bounds mean midnight UTC."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _bound_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _ordered(self):
        if self.start > self.end:
            raise ValueError("'from' must not be after 'to'")
        return self


class CalendarItemResponse(BaseModel):
    id: str
    title: str
    type: str = "production"
    scheduled_at: datetime
    status: str
    route: str

    @classmethod
    def from_production(cls, production: Production) -> "CalendarItemResponse":
        return cls(
            id=production.id,
            title=production.title,
            scheduled_at=production.target_date,
            status=production.status,
            route=f"/productions/{production.id}",
        )


# ideas


class IdeaCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    priority: int = Field(default=0, ge=0, le=10)
    tags: List[str] = Field(default_factory=list, max_length=MAX_TAGS)

    @field_validator("tags")
    @classmethod
    def _clean_create_tags(cls, value: List[str]) -> List[str]:
        return _clean_tags(value)


class IdeaUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    status: Optional[IdeaStatus] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)

    @field_validator("tags")
    @classmethod
    def _clean_update_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _clean_tags(value) if value is not None else None

    @model_validator(mode="after")
    def _require_one_field(self):
        if not self.model_fields_set:
            raise ValueError("no fields to update")
        return self

    def changes(self) -> dict[str, Any]:
        values = _drop_null_columns(self.model_dump(exclude_unset=True), ("title", "status", "priority", "tags"))
        if "status" in values:
            values["status"] = IdeaStatus(values["status"]).value
        return values


class IdeaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    status: str
    description: Optional[str] = None
    priority: int
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_idea(cls, idea: Idea) -> "IdeaResponse":
        return cls.model_validate(idea)
