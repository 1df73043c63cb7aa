from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from termingate.logging import audit_event, get_logger
from termingate.storage.models import AttemptRecord, utcnow
from termingate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AttemptStore(Protocol):
    async def get(self, key: str) -> Optional[AttemptRecord]: ...

    async def put(self, key: str, record: AttemptRecord) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def sweep(self, cutoff: datetime) -> int: ...


class InMemoryAttemptStore:
    """Process-local counters; correct for a single instance only."""

    def __init__(self) -> None:
        self._records: Dict[str, AttemptRecord] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> Optional[AttemptRecord]:
        with self._lock:
            return self._records.get(key)

    async def put(self, key: str, record: AttemptRecord) -> None:
        with self._lock:
            self._records[key] = record

    async def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    async def sweep(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [k for k, rec in self._records.items() if rec.last_attempt < cutoff]
            for key in stale:
                del self._records[key]
            return len(stale)

    def __len__(self) -> int:
        return len(self._records)


class RedisAttemptStore:
    """Counters shared across instances; the key TTL replaces the sweep."""

    def __init__(self, cache: RedisCache, idle_window: timedelta) -> None:
        self.cache = cache
        self.idle_window = idle_window

    async def get(self, key: str) -> Optional[AttemptRecord]:
        return await self.cache.get_login_attempt(key)

    async def put(self, key: str, record: AttemptRecord) -> None:
        await self.cache.set_login_attempt(
            key, record, int(self.idle_window.total_seconds())
        )

    async def delete(self, key: str) -> None:
        await self.cache.delete_login_attempt(key)

    async def sweep(self, cutoff: datetime) -> int:
        return 0


class BruteForceGuard:
    """Failed-login counter with escalating lockout per (client IP, username).

    After ``max_attempts`` failures the key is locked for
    ``min(count * step, cap)`` measured from the last failure. Counters idle
    for longer than ``idle_window`` are dropped by :meth:`sweep` whether or not
    a lockout is still running.
    """

    def __init__(
        self,
        store: Optional[AttemptStore] = None,
        *,
        max_attempts: int = 5,
        lockout_step: timedelta = timedelta(minutes=2),
        lockout_cap: timedelta = timedelta(minutes=30),
        idle_window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AttemptStore = store or InMemoryAttemptStore()
        self.max_attempts = max_attempts
        self.lockout_step = lockout_step
        self.lockout_cap = lockout_cap
        self.idle_window = idle_window
        self._clock = clock

    @staticmethod
    def attempt_key(client_ip: Optional[str], username: str) -> str:
        return f"{client_ip or 'unknown'}_{username}"

    def lockout_duration(self, count: int) -> timedelta:
        if count < self.max_attempts:
            return timedelta(0)
        return min(self.lockout_step * count, self.lockout_cap)

    async def record_failure(self, key: str) -> AttemptRecord:
        now = self._clock()
        record = await self.store.get(key)
        if record is None:
            record = AttemptRecord(count=1, first_attempt=now, last_attempt=now)
        else:
            record = AttemptRecord(
                count=record.count + 1,
                first_attempt=record.first_attempt,
                last_attempt=now,
            )
        await self.store.put(key, record)
        if record.count >= self.max_attempts:
            audit_event(
                "ACCOUNT_LOCKED",
                level="warning",
                key=key,
                attempts=record.count,
                lockout_seconds=int(self.lockout_duration(record.count).total_seconds()),
            )
        return record

    async def lockout_remaining(self, key: str) -> Optional[timedelta]:
        """Time left on the lockout for ``key``, or None when not locked."""
        record = await self.store.get(key)
        if record is None:
            return None
        duration = self.lockout_duration(record.count)
        if not duration:
            return None
        elapsed = self._clock() - record.last_attempt
        if elapsed < duration:
            return duration - elapsed
        return None

    async def is_locked(self, key: str) -> bool:
        return await self.lockout_remaining(key) is not None

    async def record_success(self, key: str) -> None:
        record = await self.store.get(key)
        await self.store.delete(key)
        if record is not None:
            audit_event("LOGIN_ATTEMPTS_RESET", key=key, previous_attempts=record.count)

    async def attempts(self, key: str) -> int:
        record = await self.store.get(key)
        return record.count if record else 0

    async def sweep(self) -> int:
        removed = await self.store.sweep(self._clock() - self.idle_window)
        if removed:
            logger.info("login_attempts_swept", count=removed)
        return removed
