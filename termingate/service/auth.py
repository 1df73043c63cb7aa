from __future__ import annotations

import asyncio
import math
import secrets
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from termingate.config import Settings
from termingate.logging import audit_event, get_logger
from termingate.service.brute_force import BruteForceGuard
from termingate.service.errors import AuthenticationError, ConflictError, LockedOutError, ValidationError
from termingate.service.security_monitor import LOGIN_FAILED, SecurityMonitor
from termingate.service.sessions import SessionManager
from termingate.storage.errors import ConstraintViolation
from termingate.storage.models import ROLE_USER, Principal, Session, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(
        self, username: str, *, role: str = ROLE_USER, is_active: bool = True, meta: Optional[dict] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def touch_last_login(self, user_id: str, when) -> None: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class AuthService:
    """Credential checks, login and logout on top of the session manager."""

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        guard: BruteForceGuard,
        settings: Settings,
        *,
        monitor: Optional[SecurityMonitor] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.guard = guard
        self.settings = settings
        self.monitor = monitor
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def login(
        self,
        username: str,
        password: str,
        session: Session,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, Session]:
        """Verify credentials and bind a principal to a regenerated session.

        The caller has already passed the CSRF gate. Raises ``LockedOutError``
        while the (IP, username) key is locked and ``AuthenticationError`` on
        any credential failure; the new session is stored before returning.
        """
        key = self.guard.attempt_key(client_ip, username)
        remaining = await self.guard.lockout_remaining(key)
        if remaining is not None:
            seconds = max(1, math.ceil(remaining.total_seconds()))
            audit_event(
                "ACCOUNT_LOCKOUT",
                level="warning",
                ip=client_ip,
                username=username,
                attempts=await self.guard.attempts(key),
                lockout_seconds_remaining=seconds,
            )
            raise LockedOutError(
                f"account temporarily locked, try again in {math.ceil(seconds / 60)} minutes",
                retry_after_seconds=seconds,
            )

        user = await asyncio.to_thread(self.store.get_user_by_username, username)
        if user is None:
            await self._fail(key, username, client_ip, user_agent, reason="unknown_user")
            # Blur the timing difference to a real password check
            delay_ms = self.settings.login_failure_delay_ms
            await asyncio.sleep((delay_ms + secrets.randbelow(delay_ms + 1)) / 1000)
            raise AuthenticationError(INVALID_CREDENTIALS)

        valid = await asyncio.to_thread(self.verify_password, user.id, password)
        if not valid or not user.is_active:
            await self._fail(
                key,
                username,
                client_ip,
                user_agent,
                reason="bad_password" if not valid else "inactive",
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        await self.guard.record_success(key)
        now = utcnow()
        principal = Principal(
            user_id=user.id,
            username=user.username,
            role=user.role,
            login_time=now,
            login_ip=client_ip,
            user_agent=user_agent,
        )
        fresh = await self.sessions.regenerate(session, principal)
        await asyncio.to_thread(self.store.touch_last_login, user.id, now)
        audit_event(
            "LOGIN_SUCCESS",
            ip=client_ip,
            username=user.username,
            user_id=user.id,
            role=user.role,
        )
        return user, fresh

    async def _fail(
        self,
        key: str,
        username: str,
        client_ip: Optional[str],
        user_agent: Optional[str],
        *,
        reason: str,
    ) -> None:
        record = await self.guard.record_failure(key)
        audit_event(
            "LOGIN_FAILURE",
            level="warning",
            ip=client_ip,
            username=username,
            reason=reason,
            attempts=record.count,
        )
        if self.monitor:
            self.monitor.track(
                LOGIN_FAILED,
                client_ip,
                user_agent=user_agent,
                url="/login",
                method="POST",
                details={"username": username},
            )

    async def logout(self, session: Optional[Session], *, client_ip: Optional[str] = None) -> None:
        principal = session.principal if session else None
        await self.sessions.destroy(session, reason="logout")
        audit_event(
            "LOGOUT",
            ip=client_ip,
            user_id=principal.user_id if principal else None,
        )

    async def create_user(
        self, username: str, password: str, *, role: str = ROLE_USER
    ) -> User:
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        try:
            user = await asyncio.to_thread(self.store.create_user, username, role=role)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "username" and "exists" in exc.message:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            raise ValidationError(exc.message, detail=exc.detail) from exc
        await asyncio.to_thread(self.save_password, user.id, password)
        audit_event("USER_CREATED", user_id=user.id, username=user.username, role=role)
        return user

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
