from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from termingate.config import get_settings, reset_settings_cache
from termingate.logging import get_logger
from termingate.service.appointments import AppointmentService
from termingate.service.auth import AuthService
from termingate.service.auth_gate import AuthenticationGate
from termingate.service.brute_force import BruteForceGuard, InMemoryAttemptStore, RedisAttemptStore
from termingate.service.csrf import CsrfGate, TokenStore
from termingate.service.email import EmailService
from termingate.service.routing import RouteClassifier
from termingate.service.security_monitor import SecurityMonitor
from termingate.service.sessions import SessionManager
from termingate.storage.memory import MemoryStore
from termingate.storage.postgres import PostgresStore
from termingate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for shared login-attempt counters and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; login-attempt counters and "
                    "rate limits are process-local only."
                ),
                mode=fallback_mode,
            )

        s = self.settings
        self.sessions = SessionManager(self.store, s)
        self.classifier = RouteClassifier()
        self.auth_gate = AuthenticationGate(
            self.sessions,
            max_age=timedelta(minutes=s.principal_max_age_minutes),
            check_ip=s.check_ip_consistency,
            check_user_agent=s.check_user_agent_consistency,
        )
        self.tokens = TokenStore(self.sessions)
        self.csrf_gate = CsrfGate()

        idle_window = timedelta(minutes=s.attempt_idle_minutes)
        attempt_store = (
            RedisAttemptStore(self.cache, idle_window) if self.cache else InMemoryAttemptStore()
        )
        self.guard = BruteForceGuard(
            attempt_store,
            max_attempts=s.max_login_attempts,
            lockout_step=timedelta(minutes=s.lockout_step_minutes),
            lockout_cap=timedelta(minutes=s.lockout_max_minutes),
            idle_window=idle_window,
        )

        self.email = EmailService(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
        )
        self.monitor = SecurityMonitor(
            window=timedelta(minutes=s.security_event_window_minutes),
            alerts_enabled=s.enable_security_alerts,
            security_email=s.security_email,
            webhook_url=s.security_webhook_url,
            email=self.email,
        )
        self.auth = AuthService(
            self.store, self.sessions, self.guard, s, monitor=self.monitor
        )
        self.appointments = AppointmentService()

        # key -> (tokens, last refill, window seconds)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            ip_consistency=s.check_ip_consistency,
            rate_limit_enabled=s.rate_limit_enabled,
        )

    async def run_maintenance(self) -> Dict[str, int]:
        """One pass of the periodic sweeps."""
        return {
            "login_attempts": await self.guard.sweep(),
            "sessions": await self.sessions.sweep_expired(),
            "security_events": self.monitor.cleanup(),
            "rate_limit_buckets": await self.prune_local_rate_limits(),
        }

    async def prune_local_rate_limits(self, now: Optional[datetime] = None) -> int:
        """Drop in-process buckets idle for a full window; they have refilled.

        A dropped key starts again from a full bucket, so the limit is unchanged.
        """
        now = now or datetime.now(timezone.utc)
        async with self._local_rate_limit_lock:
            stale = [
                key
                for key, (_, last_ts, window_seconds) in self._local_rate_limits.items()
                if (now - last_ts).total_seconds() >= window_seconds
            ]
            for key in stale:
                del self._local_rate_limits[key]
        return len(stale)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and hasattr(runtime.store, "close"):
            runtime.store.close()
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket limit in Redis, or in process memory without Redis.

    With ``return_remaining`` the result is ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts, _ = runtime._local_rate_limits.get(
            key, (float(limit), now, window_seconds)
        )
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
        reset_seconds = (
            max(1, int((cost - tokens) / refill_rate) + 1) if not allowed else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
