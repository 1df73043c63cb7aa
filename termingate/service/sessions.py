from __future__ import annotations

import asyncio
import hashlib
import hmac
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from termingate.config import Settings
from termingate.logging import audit_event, get_logger
from termingate.service.errors import SessionStoreError
from termingate.storage.errors import StoreUnavailable
from termingate.storage.models import Principal, Session, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def save_session(self, session: Session) -> None: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, expires_at: datetime) -> bool: ...

    def set_csrf_token_if_absent(self, session_id: str, token: str) -> Optional[str]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


class SessionManager:
    """Cookie-referenced, durably stored browser sessions.

    The cookie carries ``<session id>.<hmac>``; everything else lives in the
    store. Store calls run in a worker thread so one request waiting on the
    store does not hold up the event loop. Any store failure surfaces as
    ``SessionStoreError`` and is never mistaken for a missing session.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._secret = settings.session_secret.encode()

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes)

    # cookie signing
    def sign(self, session_id: str) -> str:
        digest = hmac.new(self._secret, session_id.encode(), hashlib.sha256).hexdigest()
        return f"{session_id}.{digest}"

    def unsign(self, cookie_value: Optional[str]) -> Optional[str]:
        if not cookie_value or "." not in cookie_value:
            return None
        session_id, _, signature = cookie_value.rpartition(".")
        expected = hmac.new(self._secret, session_id.encode(), hashlib.sha256).hexdigest()
        if not session_id or not hmac.compare_digest(expected, signature):
            return None
        return session_id

    async def _call(self, func, *args: Any):
        try:
            return await asyncio.to_thread(func, *args)
        except StoreUnavailable as exc:
            logger.error("session_store_unavailable", error=str(exc))
            raise SessionStoreError("session store unavailable") from exc

    # lifecycle
    def new_session(self) -> Session:
        """An unsaved session; it reaches the store on the first ``save``."""
        return Session.new(self.settings.session_ttl_minutes)

    async def load(self, cookie_value: Optional[str]) -> Optional[Session]:
        session_id = self.unsign(cookie_value)
        if not session_id:
            if cookie_value:
                logger.debug("session_cookie_signature_invalid")
            return None
        session = await self._call(self.store.get_session, session_id)
        if session is None:
            return None
        if session.is_expired():
            await self._call(self.store.delete_session, session.id)
            logger.info("session_expired_removed", session_id=session.id)
            return None
        return session

    async def load_or_new(self, cookie_value: Optional[str]) -> Session:
        return await self.load(cookie_value) or self.new_session()

    async def save(self, session: Session) -> Session:
        await self._call(self.store.save_session, session)
        return session

    async def touch(self, session: Session) -> bool:
        """Roll the idle expiry forward.

        Only the expiry of the stored record moves; a record deleted after
        this request loaded it is not recreated and False is returned.
        Unsaved sessions are left alone.
        """
        if session.is_new:
            return True
        expires_at = utcnow() + self.ttl
        if not await self._call(self.store.touch_session, session.id, expires_at):
            logger.info("session_vanished_before_touch", session_id=session.id)
            return False
        session.expires_at = expires_at
        return True

    async def store_csrf_token(self, session: Session, token: str) -> Optional[str]:
        """Persist ``token`` unless the stored session already has one.

        Returns the token the store now holds, which is the earlier one when
        another request issued it first, or None when the session is gone.
        """
        if session.is_new:
            session.csrf_token = token
            await self.save(session)
            return token
        stored = await self._call(self.store.set_csrf_token_if_absent, session.id, token)
        session.csrf_token = stored
        return stored

    async def regenerate(self, session: Session, principal: Principal) -> Session:
        """Swap the session id and bind ``principal``.

        The old record is removed and the new one persisted before returning,
        so a caller that sees the new session can rely on it being stored.
        """
        fresh = self.new_session()
        fresh.principal = principal
        fresh.meta = dict(session.meta) if session.meta else None
        if not session.is_new:
            await self._call(self.store.delete_session, session.id)
        await self.save(fresh)
        logger.info(
            "session_regenerated",
            old_session_id=None if session.is_new else session.id,
            session_id=fresh.id,
            user_id=principal.user_id,
        )
        return fresh

    async def destroy(self, session: Optional[Session], *, reason: str = "logout") -> bool:
        if session is None or session.is_new:
            return False
        removed = await self._call(self.store.delete_session, session.id)
        session.principal = None
        session.csrf_token = None
        audit_event(
            "SESSION_DESTROYED",
            session_id=session.id,
            reason=reason,
        )
        return bool(removed)

    async def sweep_expired(self) -> int:
        removed = await self._call(self.store.delete_expired_sessions, utcnow())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed
