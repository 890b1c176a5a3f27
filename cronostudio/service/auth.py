from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from cronostudio.config import Settings
from cronostudio.logging import get_logger
from cronostudio.service.email import EmailService
from cronostudio.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidSessionError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from cronostudio.service.tokens import TokenService
from cronostudio.storage.errors import ConstraintViolation
from cronostudio.storage.models import OneTimeTokenKind, Session, User, UserRole

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If an account exists for that email, a reset link is on its way."


class AuthStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, name: str, *, role: str = ...
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(
        self, user_id: str, refresh_token_hash: str, ttl_seconds: int
    ) -> Session: ...

    def find_valid_session_by_token_hash(self, token_hash: str) -> Optional[Session]: ...

    def consume_session(self, token_hash: str) -> Optional[Session]: ...

    def revoke_session_by_token_hash(self, token_hash: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def create_one_time_token(self, user_id: str, kind: OneTimeTokenKind, token_hash: str): ...

    def consume_one_time_token(
        self, token_hash: str, kind: OneTimeTokenKind
    ) -> Optional[str]: ...


@dataclass
class AuthContext:
    """Identity attached to a request once its access token verifies."""

    user_id: str
    email: str
    role: str


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: User
    session: Session


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


class AuthService:
    """Credentials, refresh-token sessions and one-time tokens.

    Refresh tokens and one-time tokens are opaque random strings. Only their
    keyed hash is stored, so a leaked table cannot be replayed.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.settings = settings
        self.email = email or EmailService()
        self.logger = logger
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        # Verified against for unknown emails so both failure paths cost the same.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user_id: str, password: str) -> bool:
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unverifiable", user_id=user_id)
            return False

    def _burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    # sessions
    def _start_session(self, user: User) -> LoginResult:
        refresh_token = self.tokens.generate_opaque_token()
        session = self.store.create_session(
            user.id,
            self.tokens.hash_opaque_token(refresh_token),
            self.settings.refresh_token_ttl_seconds,
        )
        access_token = self.tokens.issue_access_token(
            self.tokens.build_claims(user_id=user.id, email=user.email, role=user.role)
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            session=session,
        )

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: str = UserRole.OWNER.value,
    ) -> LoginResult:
        if self.store.email_exists(email):
            raise ConflictError("Email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(email, self.hash_password(password), name, role=role)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        await self.request_email_verification(user)
        return self._start_session(user)

    async def login(self, email: str, password: str) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_verification(password)
            self.logger.info("login_failed", email_hash=_email_hash(email), reason="unknown_email")
            raise InvalidCredentialsError("Invalid email or password")
        if not self.verify_password(user.id, password):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise InvalidCredentialsError("Invalid email or password")
        result = self._start_session(user)
        self.logger.info("login_succeeded", user_id=user.id, session_id=result.session.id)
        return result

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Revoke the session behind ``refresh_token``; unknown tokens are a no-op."""
        if not refresh_token:
            return
        revoked = self.store.revoke_session_by_token_hash(
            self.tokens.hash_opaque_token(refresh_token)
        )
        self.logger.info("logout", revoked=revoked)

    async def refresh(self, refresh_token: Optional[str]) -> LoginResult:
        """Rotate a live refresh token into a new session and access token."""
        if not refresh_token:
            raise InvalidSessionError("Refresh token required")
        session = self.store.consume_session(self.tokens.hash_opaque_token(refresh_token))
        if not session:
            self.logger.warning("refresh_rejected", reason="no_active_session")
            raise InvalidSessionError("Session expired or revoked")
        user = self.store.get_user(session.user_id)
        if not user:
            self.logger.warning("refresh_rejected", reason="user_missing", user_id=session.user_id)
            raise InvalidSessionError("Session expired or revoked")
        result = self._start_session(user)
        self.logger.info(
            "session_rotated",
            user_id=user.id,
            old_session_id=session.id,
            session_id=result.session.id,
        )
        return result

    def resolve_service_user(self) -> Optional[User]:
        """Account that automation callers act as, by configured id or else email."""
        if self.settings.service_user_id:
            user = self.store.get_user(self.settings.service_user_id)
        elif self.settings.service_user_email:
            user = self.store.get_user_by_email(self.settings.service_user_email)
        else:
            return None
        if user is None:
            self.logger.error("service_user_not_found")
        return user

    # profile
    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def update_profile(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> User:
        try:
            user = self.store.update_user(user_id, name=name, email=email)
        except ConstraintViolation as exc:
            raise ConflictError("Email already registered", detail=exc.detail)
        if not user:
            raise NotFoundError("User not found")
        return user

    def delete_account(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise NotFoundError("User not found")
        self.logger.info("account_deleted", user_id=user_id)

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_refresh_token: Optional[str] = None,
    ) -> int:
        """Swap the password and revoke every other session; returns the revoked count."""
        if not self.verify_password(user_id, current_password):
            raise ValidationError("Current password is incorrect")
        self.store.update_password(user_id, self.hash_password(new_password))
        keep_session_id = None
        if keep_refresh_token:
            current = self.store.find_valid_session_by_token_hash(
                self.tokens.hash_opaque_token(keep_refresh_token)
            )
            if current and current.user_id == user_id:
                keep_session_id = current.id
        revoked = self.store.revoke_user_sessions(user_id, except_session_id=keep_session_id)
        self.logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    # one-time tokens
    def _issue_one_time_token(self, user: User, kind: OneTimeTokenKind) -> str:
        raw = self.tokens.generate_opaque_token()
        self.store.create_one_time_token(user.id, kind, self.tokens.hash_opaque_token(raw))
        return raw

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue and mail a reset token.

        Returns the raw token, or None when no account matches. Callers must
        answer with ``GENERIC_RESET_MESSAGE`` either way.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_requested", email_hash=_email_hash(email), found=False)
            return None
        token = self._issue_one_time_token(user, OneTimeTokenKind.PASSWORD_RESET)
        await asyncio.to_thread(self.email.send_password_reset, user.email, token)
        self.logger.info("password_reset_requested", user_id=user.id, found=True)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        user_id = self.store.consume_one_time_token(
            self.tokens.hash_opaque_token(token), OneTimeTokenKind.PASSWORD_RESET
        )
        if not user_id:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidTokenError("Invalid or expired token")
        self.store.update_password(user_id, self.hash_password(new_password))
        revoked = self.store.revoke_user_sessions(user_id)
        self.logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)

    async def request_email_verification(self, user: User) -> Optional[str]:
        """Mail a fresh verification link; None if the address is already verified."""
        if user.email_verified:
            return None
        token = self._issue_one_time_token(user, OneTimeTokenKind.EMAIL_VERIFICATION)
        await asyncio.to_thread(self.email.send_email_verification, user.email, token)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def complete_email_verification(self, token: str) -> User:
        user_id = self.store.consume_one_time_token(
            self.tokens.hash_opaque_token(token), OneTimeTokenKind.EMAIL_VERIFICATION
        )
        if not user_id:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidTokenError("Invalid or expired token")
        user = self.store.mark_email_verified(user_id)
        if not user:
            raise InvalidTokenError("Invalid or expired token")
        self.logger.info("email_verified", user_id=user_id)
        return user
