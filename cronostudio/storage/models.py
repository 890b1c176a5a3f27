from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    OWNER = "owner"
    COLLABORATOR = "collaborator"
    AUTOMATION = "automation"


class ProductionStatus(str, Enum):
    """Pipeline stages in the order a production moves through them."""

    IDEA = "idea"
    SCRIPTING = "scripting"
    RECORDING = "recording"
    EDITING = "editing"
    SHORTS = "shorts"
    PUBLISHING = "publishing"
    PUBLISHED = "published"

    @classmethod
    def pipeline(cls) -> List["ProductionStatus"]:
        return list(cls)

    def next(self) -> Optional["ProductionStatus"]:
        stages = self.pipeline()
        index = stages.index(self)
        return stages[index + 1] if index + 1 < len(stages) else None

    def previous(self) -> Optional["ProductionStatus"]:
        stages = self.pipeline()
        index = stages.index(self)
        return stages[index - 1] if index > 0 else None


class IdeaStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    IN_PRODUCTION = "in_production"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class OneTimeTokenKind(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


# Lifetimes for one-time tokens
ONE_TIME_TOKEN_TTL = {
    OneTimeTokenKind.PASSWORD_RESET: timedelta(hours=1),
    OneTimeTokenKind.EMAIL_VERIFICATION: timedelta(hours=24),
}


@dataclass
class User:
    id: str
    email: str
    name: str
    role: str = UserRole.OWNER.value
    email_verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, refresh_token_hash: str, ttl_seconds: int) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return self.revoked_at is None and self.expires_at > current


@dataclass
class OneTimeToken:
    id: str
    user_id: str
    kind: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(cls, user_id: str, kind: OneTimeTokenKind, token_hash: str) -> "OneTimeToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind.value,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + ONE_TIME_TOKEN_TTL[kind],
        )

    def is_consumable(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return self.used_at is None and self.expires_at > current


@dataclass
class Production:
    id: str
    user_id: str
    title: str
    status: str = ProductionStatus.IDEA.value
    idea_id: Optional[str] = None
    description: Optional[str] = None
    priority: int = 0
    target_date: Optional[datetime] = None
    published_at: Optional[datetime] = None
    shorts_count: int = 0
    shorts_published: int = 0
    posts_count: int = 0
    posts_published: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Idea:
    id: str
    user_id: str
    title: str
    status: str = IdeaStatus.DRAFT.value
    description: Optional[str] = None
    priority: int = 0
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
