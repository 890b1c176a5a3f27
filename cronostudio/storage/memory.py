from __future__ import annotations

import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from cronostudio.logging import get_logger
from cronostudio.storage.errors import ConstraintViolation
from cronostudio.storage.models import (
    Idea,
    OneTimeToken,
    OneTimeTokenKind,
    Production,
    ProductionStatus,
    Session,
    User,
    UserRole,
    utcnow,
)


def _copy_idea(idea: Idea) -> Idea:
    return replace(idea, tags=list(idea.tags))


class MemoryStore:
    """In-process store used for tests and local development.

    Every read and write goes through one re-entrant lock so conditional
    updates (session revoke, one-time token consumption) are atomic.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.password_hashes: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.one_time_tokens: Dict[str, OneTimeToken] = {}
        self.productions: Dict[str, Production] = {}
        self.ideas: Dict[str, Idea] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = UserRole.OWNER.value,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, name=name, role=role)
            self.users[user.id] = user
            self.password_hashes[user.id] = password_hash
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def email_exists(self, email: str) -> bool:
        return self.get_user_by_email(email) is not None

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None:
                normalized = email.strip().lower()
                clash = any(
                    u.email == normalized and u.id != user_id for u in self.users.values()
                )
                if clash:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email = normalized
            if name is not None:
                user.name = name
            user.updated_at = utcnow()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role).value
            user.updated_at = utcnow()
            return replace(user)

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.password_hashes.get(user_id)

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.password_hashes[user_id] = password_hash
            user.updated_at = utcnow()

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.email_verified_at is None:
                user.email_verified_at = utcnow()
            user.updated_at = utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.password_hashes.pop(user_id, None)
            for table in (self.sessions, self.one_time_tokens, self.productions, self.ideas):
                for key in [k for k, row in table.items() if row.user_id == user_id]:
                    table.pop(key, None)
            return True

    # sessions
    def create_session(
        self, user_id: str, refresh_token_hash: str, ttl_seconds: int
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": user_id})
            if any(
                s.refresh_token_hash == refresh_token_hash for s in self.sessions.values()
            ):
                raise ConstraintViolation("refresh token collision", {})
            sess = Session.new(user_id, refresh_token_hash, ttl_seconds)
            self.sessions[sess.id] = sess
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def _session_by_hash(self, token_hash: str) -> Optional[Session]:
        return next(
            (s for s in self.sessions.values() if s.refresh_token_hash == token_hash),
            None,
        )

    def find_valid_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = self._session_by_hash(token_hash)
            if sess and sess.is_active():
                return replace(sess)
            return None

    def consume_session(self, token_hash: str) -> Optional[Session]:
        """Revoke the live session holding ``token_hash`` and return it."""
        with self._data_lock:
            sess = self._session_by_hash(token_hash)
            if not sess or not sess.is_active():
                return None
            sess.revoked_at = utcnow()
            return replace(sess)

    def revoke_session_by_token_hash(self, token_hash: str) -> bool:
        with self._data_lock:
            sess = self._session_by_hash(token_hash)
            if not sess or sess.revoked_at is not None:
                return False
            sess.revoked_at = utcnow()
            return True

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked_at is not None:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked_at = now
                revoked += 1
            return revoked

    # one-time tokens
    def create_one_time_token(
        self, user_id: str, kind: OneTimeTokenKind, token_hash: str
    ) -> OneTimeToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": user_id})
            token = OneTimeToken.new(user_id, kind, token_hash)
            self.one_time_tokens[token.id] = token
            return replace(token)

    def consume_one_time_token(
        self, token_hash: str, kind: OneTimeTokenKind
    ) -> Optional[str]:
        """Mark a live token used and return its owner, or None if not consumable."""
        with self._data_lock:
            token = next(
                (
                    t
                    for t in self.one_time_tokens.values()
                    if t.token_hash == token_hash and t.kind == kind.value
                ),
                None,
            )
            if not token or not token.is_consumable():
                return None
            token.used_at = utcnow()
            return token.user_id

    # productions
    def create_production(
        self,
        user_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        idea_id: Optional[str] = None,
        priority: int = 0,
        target_date: Optional[datetime] = None,
    ) -> Production:
        with self._data_lock:
            production = Production(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                description=description,
                idea_id=idea_id,
                priority=priority,
                target_date=target_date,
            )
            self.productions[production.id] = production
            return replace(production)

    def get_production(self, production_id: str) -> Optional[Production]:
        with self._data_lock:
            production = self.productions.get(production_id)
            return replace(production) if production else None

    def list_productions(
        self, user_id: str, *, status: Optional[str] = None
    ) -> List[Production]:
        with self._data_lock:
            rows = [
                replace(p)
                for p in self.productions.values()
                if p.user_id == user_id and (status is None or p.status == status)
            ]
        return sorted(rows, key=lambda p: (-p.priority, p.created_at))

    def list_productions_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[Production]:
        """Productions whose target date falls within ``[start, end]``, earliest first."""
        with self._data_lock:
            rows = [
                replace(p)
                for p in self.productions.values()
                if p.user_id == user_id
                and p.target_date is not None
                and start <= p.target_date <= end
            ]
        return sorted(rows, key=lambda p: p.target_date)

    def update_production(
        self, production_id: str, user_id: str, **fields: Any
    ) -> Optional[Production]:
        with self._data_lock:
            production = self.productions.get(production_id)
            if not production or production.user_id != user_id:
                return None
            for name, value in fields.items():
                setattr(production, name, value)
            if (
                fields.get("status") == ProductionStatus.PUBLISHED.value
                and production.published_at is None
            ):
                production.published_at = utcnow()
            production.updated_at = utcnow()
            return replace(production)

    def delete_production(self, production_id: str, user_id: str) -> bool:
        with self._data_lock:
            production = self.productions.get(production_id)
            if not production or production.user_id != user_id:
                return False
            self.productions.pop(production_id, None)
            return True

    def pipeline_stats(self, user_id: str) -> Dict[str, int]:
        with self._data_lock:
            counts = Counter(
                p.status for p in self.productions.values() if p.user_id == user_id
            )
        return {stage.value: counts.get(stage.value, 0) for stage in ProductionStatus}

    # ideas
    def create_idea(
        self,
        user_id: str,
        title: str,
        *,
        description: Optional[str] = None,
        priority: int = 0,
        tags: Optional[List[str]] = None,
    ) -> Idea:
        with self._data_lock:
            idea = Idea(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                description=description,
                priority=priority,
                tags=list(tags or []),
            )
            self.ideas[idea.id] = idea
            return _copy_idea(idea)

    def get_idea(self, idea_id: str) -> Optional[Idea]:
        with self._data_lock:
            idea = self.ideas.get(idea_id)
            return _copy_idea(idea) if idea else None

    def list_ideas(self, user_id: str, *, status: Optional[str] = None) -> List[Idea]:
        with self._data_lock:
            rows = [
                _copy_idea(i)
                for i in self.ideas.values()
                if i.user_id == user_id and (status is None or i.status == status)
            ]
        return sorted(rows, key=lambda i: (-i.priority, i.created_at))

    def update_idea(self, idea_id: str, user_id: str, **fields: Any) -> Optional[Idea]:
        with self._data_lock:
            idea = self.ideas.get(idea_id)
            if not idea or idea.user_id != user_id:
                return None
            for name, value in fields.items():
                setattr(idea, name, list(value or []) if name == "tags" else value)
            idea.updated_at = utcnow()
            return _copy_idea(idea)

    def delete_idea(self, idea_id: str, user_id: str) -> bool:
        with self._data_lock:
            idea = self.ideas.get(idea_id)
            if not idea or idea.user_id != user_id:
                return False
            self.ideas.pop(idea_id, None)
            return True
