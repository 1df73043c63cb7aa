"""Tests for the failed-login counter and escalating lockout."""

from datetime import timedelta

import pytest

from termingate.service.brute_force import (
    BruteForceGuard,
    InMemoryAttemptStore,
    RedisAttemptStore,
)
from termingate.storage.redis_cache import SyncRedisCache

KEY = "10.0.0.1_anna"


class FakeAttemptCache:
    """Records what the Redis-backed store asks of the cache."""

    def __init__(self):
        self.records = {}
        self.ttls = {}

    async def get_login_attempt(self, key):
        return self.records.get(key)

    async def set_login_attempt(self, key, record, ttl_seconds):
        self.records[key] = record
        self.ttls[key] = ttl_seconds

    async def delete_login_attempt(self, key):
        self.records.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def guard(clock):
    return BruteForceGuard(InMemoryAttemptStore(), clock=clock)


async def _fail(guard, times, key=KEY):
    record = None
    for _ in range(times):
        record = await guard.record_failure(key)
    return record


class TestLockoutDuration:
    @pytest.mark.parametrize(
        "count,minutes",
        [(0, 0), (4, 0), (5, 10), (6, 12), (10, 20), (15, 30), (16, 30), (100, 30)],
    )
    def test_escalation_and_cap(self, count, minutes):
        guard = BruteForceGuard()
        assert guard.lockout_duration(count) == timedelta(minutes=minutes)

    def test_attempt_key(self):
        assert BruteForceGuard.attempt_key("10.0.0.1", "anna") == "10.0.0.1_anna"
        assert BruteForceGuard.attempt_key(None, "anna") == "unknown_anna"


class TestBruteForceGuard:
    async def test_below_threshold_is_not_locked(self, guard):
        await _fail(guard, 4)
        assert not await guard.is_locked(KEY)
        assert await guard.attempts(KEY) == 4

    async def test_fifth_failure_locks_for_ten_minutes(self, guard, clock):
        record = await _fail(guard, 5)
        assert record.count == 5

        assert await guard.lockout_remaining(KEY) == timedelta(minutes=10)
        clock.advance(minutes=9, seconds=59)
        assert await guard.is_locked(KEY)
        clock.advance(seconds=1)
        assert not await guard.is_locked(KEY)

    async def test_lockout_measured_from_last_failure(self, guard, clock):
        await _fail(guard, 5)
        clock.advance(minutes=5)
        await guard.record_failure(KEY)

        assert await guard.lockout_remaining(KEY) == timedelta(minutes=12)

    async def test_first_attempt_is_kept(self, guard, clock):
        first = await guard.record_failure(KEY)
        clock.advance(minutes=1)
        second = await guard.record_failure(KEY)
        assert second.first_attempt == first.first_attempt
        assert second.last_attempt == clock.now

    async def test_success_resets_counter(self, guard):
        await _fail(guard, 3)
        await guard.record_success(KEY)
        assert await guard.attempts(KEY) == 0

    async def test_keys_are_independent(self, guard):
        await _fail(guard, 5)
        assert await guard.is_locked(KEY)
        assert not await guard.is_locked("10.0.0.2_anna")
        assert not await guard.is_locked("10.0.0.1_bert")

    async def test_reset_emits_audit(self, guard, monkeypatch):
        events = []
        monkeypatch.setattr(
            "termingate.service.brute_force.audit_event",
            lambda event_type, **fields: events.append((event_type, fields)),
        )
        await _fail(guard, 3)
        await guard.record_success(KEY)
        await guard.record_success(KEY)

        assert events == [("LOGIN_ATTEMPTS_RESET", {"key": KEY, "previous_attempts": 3})]

    async def test_lock_emits_audit(self, guard, monkeypatch):
        events = []
        monkeypatch.setattr(
            "termingate.service.brute_force.audit_event",
            lambda event_type, **fields: events.append((event_type, fields)),
        )
        await _fail(guard, 5)
        assert [e for e, _ in events] == ["ACCOUNT_LOCKED"]
        assert events[0][1]["lockout_seconds"] == 600


class TestSweep:
    async def test_sweep_drops_idle_counters(self, guard, clock):
        await _fail(guard, 2)
        await _fail(guard, 1, key="10.0.0.2_bert")
        clock.advance(minutes=10)
        await guard.record_failure("10.0.0.2_bert")
        clock.advance(minutes=6)

        removed = await guard.sweep()

        assert removed == 1
        assert await guard.attempts(KEY) == 0
        assert await guard.attempts("10.0.0.2_bert") == 2

    async def test_sweep_can_end_a_long_lockout_early(self, guard, clock):
        # 15 failures lock for 30 minutes, but the counter is idle after 15
        await _fail(guard, 15)
        assert await guard.lockout_remaining(KEY) == timedelta(minutes=30)

        clock.advance(minutes=16)
        assert await guard.is_locked(KEY)
        await guard.sweep()

        assert not await guard.is_locked(KEY)
        assert await guard.attempts(KEY) == 0


class TestRedisAttemptStore:
    async def test_records_use_idle_window_as_ttl(self, clock):
        cache = FakeAttemptCache()
        guard = BruteForceGuard(
            RedisAttemptStore(cache, timedelta(minutes=15)), clock=clock
        )

        await _fail(guard, 5)

        assert cache.ttls[KEY] == 900
        assert await guard.is_locked(KEY)
        assert await guard.sweep() == 0

    async def test_success_deletes_key(self, clock):
        cache = FakeAttemptCache()
        guard = BruteForceGuard(
            RedisAttemptStore(cache, timedelta(minutes=15)), clock=clock
        )
        await _fail(guard, 2)
        await guard.record_success(KEY)
        assert KEY not in cache.records

    async def test_sync_cache_hashes_keys(self, clock):
        class FakeRedis:
            def __init__(self):
                self.values = {}

            def get(self, key):
                return self.values.get(key, (None, None))[0]

            def set(self, key, value, ex=None):
                self.values[key] = (value, ex)

            def delete(self, key):
                self.values.pop(key, None)

        cache = SyncRedisCache.__new__(SyncRedisCache)
        cache.client = FakeRedis()
        guard = BruteForceGuard(
            RedisAttemptStore(cache, timedelta(minutes=15)), clock=clock
        )

        await _fail(guard, 5)

        [(stored_key, (payload, ttl))] = cache.client.values.items()
        assert stored_key.startswith("auth:attempts:")
        assert "anna" not in stored_key
        assert ttl == 900
        assert '"count": 5' in payload
        assert await guard.lockout_remaining(KEY) == timedelta(minutes=10)
