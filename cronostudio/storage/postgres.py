from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'owner'
            CHECK (role IN ('owner', 'collaborator', 'automation')),
        email_verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_sessions_user_idx ON auth_sessions (user_id)",
    """
    CREATE TABLE IF NOT EXISTS one_time_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ideas (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        priority INTEGER NOT NULL DEFAULT 0,
        tags TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS productions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_users(id) ON DELETE CASCADE,
        idea_id UUID REFERENCES ideas(id) ON DELETE SET NULL,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'idea',
        priority INTEGER NOT NULL DEFAULT 0,
        target_date TIMESTAMPTZ,
        published_at TIMESTAMPTZ,
        shorts_count INTEGER NOT NULL DEFAULT 0,
        shorts_published INTEGER NOT NULL DEFAULT 0,
        posts_count INTEGER NOT NULL DEFAULT 0,
        posts_published INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS productions_user_status_idx ON productions (user_id, status)",
)

_PRODUCTION_COLUMNS = {"title", "description", "status", "priority", "target_date"}
_IDEA_COLUMNS = {"title", "description", "status", "priority", "tags"}


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        role=row.get("role", UserRole.OWNER.value),
        email_verified_at=row.get("email_verified_at"),
        created_at=row.get("created_at", utcnow()),
        updated_at=row.get("updated_at", utcnow()),
    )


def _session_from_row(row: dict) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
    )


def _production_from_row(row: dict) -> Production:
    return Production(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        idea_id=str(row["idea_id"]) if row.get("idea_id") else None,
        title=row["title"],
        description=row.get("description"),
        status=row.get("status", ProductionStatus.IDEA.value),
        priority=row.get("priority", 0),
        target_date=row.get("target_date"),
        published_at=row.get("published_at"),
        shorts_count=row.get("shorts_count", 0),
        shorts_published=row.get("shorts_published", 0),
        posts_count=row.get("posts_count", 0),
        posts_published=row.get("posts_published", 0),
        created_at=row.get("created_at", utcnow()),
        updated_at=row.get("updated_at", utcnow()),
    )


def _idea_from_row(row: dict) -> Idea:
    return Idea(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        title=row["title"],
        description=row.get("description"),
        status=row.get("status", "draft"),
        priority=row.get("priority", 0),
        tags=list(row.get("tags") or []),
        created_at=row.get("created_at", utcnow()),
        updated_at=row.get("updated_at", utcnow()),
    )


class PostgresStore:
    """Postgres-backed store for users, sessions, one-time tokens and pipeline rows."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the tables this service needs if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=5)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = UserRole.OWNER.value,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_users (id, email, password_hash, name, role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email.strip().lower(), password_hash, name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_users WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_users WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM app_users WHERE email = %s",
                (email.strip().lower(),),
            ).fetchone()
        return row is not None

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_users
                    SET name = COALESCE(%s, name),
                        email = COALESCE(%s, email),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, email.strip().lower() if email else None, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_users WHERE id = %s", (user_id,)
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_users
                SET email_verified_at = COALESCE(email_verified_at, now()),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return _user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(
        self, user_id: str, refresh_token_hash: str, ttl_seconds: int
    ) -> Session:
        sess = Session.new(user_id, refresh_token_hash, ttl_seconds)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_sessions (id, user_id, refresh_token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token_hash,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_valid_session_by_token_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_sessions
                WHERE refresh_token_hash = %s
                  AND revoked_at IS NULL
                  AND expires_at > now()
                """,
                (token_hash,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def consume_session(self, token_hash: str) -> Optional[Session]:
        """Revoke the live session holding ``token_hash`` and return it."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_sessions
                SET revoked_at = now()
                WHERE refresh_token_hash = %s
                  AND revoked_at IS NULL
                  AND expires_at > now()
                RETURNING *
                """,
                (token_hash,),
            ).fetchone()
        return _session_from_row(row) if row else None

    def revoke_session_by_token_hash(self, token_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_sessions SET revoked_at = now()
                WHERE refresh_token_hash = %s AND revoked_at IS NULL
                """,
                (token_hash,),
            )
            return result.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    """
                    UPDATE auth_sessions SET revoked_at = now()
                    WHERE user_id = %s AND revoked_at IS NULL AND id <> %s
                    """,
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    """
                    UPDATE auth_sessions SET revoked_at = now()
                    WHERE user_id = %s AND revoked_at IS NULL
                    """,
                    (user_id,),
                )
            return result.rowcount

    # one-time tokens
    def create_one_time_token(
        self, user_id: str, kind: OneTimeTokenKind, token_hash: str
    ) -> OneTimeToken:
        token = OneTimeToken.new(user_id, kind, token_hash)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_tokens (id, user_id, kind, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        user_id,
                        token.kind,
                        token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": user_id})
        return token

    def consume_one_time_token(
        self, token_hash: str, kind: OneTimeTokenKind
    ) -> Optional[str]:
        """Mark a live token used and return its owner, or None if not consumable."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_tokens
                SET used_at = now()
                WHERE token_hash = %s
                  AND kind = %s
                  AND used_at IS NULL
                  AND expires_at > now()
                RETURNING user_id
                """,
                (token_hash, kind.value),
            ).fetchone()
        return str(row["user_id"]) if row else None

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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO productions (id, user_id, idea_id, title, description, priority, target_date)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    idea_id,
                    title,
                    description,
                    priority,
                    target_date,
                ),
            ).fetchone()
        return _production_from_row(row)

    def get_production(self, production_id: str) -> Optional[Production]:
        try:
            uuid.UUID(production_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM productions WHERE id = %s", (production_id,)
            ).fetchone()
        return _production_from_row(row) if row else None

    def list_productions(
        self, user_id: str, *, status: Optional[str] = None
    ) -> List[Production]:
        sql = "SELECT * FROM productions WHERE user_id = %s"
        params: List[Any] = [user_id]
        if status:
            sql += " AND status = %s"
            params.append(status)
        sql += " ORDER BY priority DESC, created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_production_from_row(row) for row in rows]

    def list_productions_in_range(
        self, user_id: str, start: datetime, end: datetime
    ) -> List[Production]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM productions
                WHERE user_id = %s
                  AND target_date IS NOT NULL
                  AND target_date >= %s
                  AND target_date <= %s
                ORDER BY target_date ASC
                """,
                (user_id, start, end),
            ).fetchall()
        return [_production_from_row(row) for row in rows]

    def update_production(
        self, production_id: str, user_id: str, **fields: Any
    ) -> Optional[Production]:
        updates = {k: v for k, v in fields.items() if k in _PRODUCTION_COLUMNS}
        assignments = [f"{column} = %s" for column in updates]
        params: List[Any] = list(updates.values())
        if updates.get("status") == ProductionStatus.PUBLISHED.value:
            assignments.append("published_at = COALESCE(published_at, now())")
        assignments.append("updated_at = now()")
        params.extend([production_id, user_id])
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE productions SET {', '.join(assignments)} "
                "WHERE id = %s AND user_id = %s RETURNING *",
                params,
            ).fetchone()
        return _production_from_row(row) if row else None

    def delete_production(self, production_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM productions WHERE id = %s AND user_id = %s",
                (production_id, user_id),
            )
            return result.rowcount > 0

    def pipeline_stats(self, user_id: str) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM productions WHERE user_id = %s GROUP BY status",
                (user_id,),
            ).fetchall()
        counts = {row["status"]: int(row["total"]) for row in rows}
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
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO ideas (id, user_id, title, description, priority, tags)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), user_id, title, description, priority, list(tags or [])),
            ).fetchone()
        return _idea_from_row(row)

    def get_idea(self, idea_id: str) -> Optional[Idea]:
        try:
            uuid.UUID(idea_id)
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ideas WHERE id = %s", (idea_id,)).fetchone()
        return _idea_from_row(row) if row else None

    def list_ideas(self, user_id: str, *, status: Optional[str] = None) -> List[Idea]:
        sql = "SELECT * FROM ideas WHERE user_id = %s"
        params: List[Any] = [user_id]
        if status:
            sql += " AND status = %s"
            params.append(status)
        sql += " ORDER BY priority DESC, created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_idea_from_row(row) for row in rows]

    def update_idea(self, idea_id: str, user_id: str, **fields: Any) -> Optional[Idea]:
        updates = {k: v for k, v in fields.items() if k in _IDEA_COLUMNS}
        assignments = [f"{column} = %s" for column in updates] + ["updated_at = now()"]
        params: List[Any] = list(updates.values()) + [idea_id, user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE ideas SET {', '.join(assignments)} "
                "WHERE id = %s AND user_id = %s RETURNING *",
                params,
            ).fetchone()
        return _idea_from_row(row) if row else None

    def delete_idea(self, idea_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM ideas WHERE id = %s AND user_id = %s", (idea_id, user_id)
            )
            return result.rowcount > 0
