"""Tests for the per-bucket request rate limits."""

from datetime import datetime, timedelta, timezone

import pytest

from termingate.app import _rate_limit_bucket
from termingate.service.runtime import check_rate_limit, reset_runtime_for_tests


@pytest.fixture
def limited_runtime(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "2")
    monkeypatch.setenv("ANFRAGE_FORM_RATE_LIMIT", "1")
    return reset_runtime_for_tests()


class TestCheckRateLimit:
    async def test_bucket_drains_then_denies(self, runtime):
        results = [await check_rate_limit(runtime, "k", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_remaining_and_reset(self, runtime):
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await check_rate_limit(runtime, "k", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert 1 <= reset <= 31

    async def test_keys_are_separate(self, runtime):
        assert await check_rate_limit(runtime, "a", 1, 60)
        assert await check_rate_limit(runtime, "b", 1, 60)
        assert not await check_rate_limit(runtime, "a", 1, 60)

    async def test_non_positive_limit_disables(self, runtime):
        for _ in range(5):
            assert await check_rate_limit(runtime, "k", 0, 60)


class TestLocalBucketPruning:
    async def test_idle_buckets_are_pruned(self, runtime):
        await check_rate_limit(runtime, "idle", 2, 60)
        await check_rate_limit(runtime, "busy", 2, 600)
        later = datetime.now(timezone.utc) + timedelta(seconds=61)

        assert await runtime.prune_local_rate_limits(later) == 1

        assert set(runtime._local_rate_limits) == {"busy"}

    async def test_pruned_key_starts_full(self, runtime):
        for _ in range(2):
            await check_rate_limit(runtime, "k", 2, 60)
        assert not await check_rate_limit(runtime, "k", 2, 60)

        later = datetime.now(timezone.utc) + timedelta(seconds=60)
        assert await runtime.prune_local_rate_limits(later) == 1

        assert await check_rate_limit(runtime, "k", 2, 60)

    async def test_recent_buckets_survive_maintenance(self, runtime):
        await check_rate_limit(runtime, "k", 2, 60)

        removed = await runtime.run_maintenance()

        assert removed["rate_limit_buckets"] == 0
        assert "k" in runtime._local_rate_limits

    async def test_many_distinct_keys_do_not_accumulate(self, runtime):
        for n in range(50):
            await check_rate_limit(runtime, f"anfrage:10.0.0.1:agent-{n}", 5, 60)
        later = datetime.now(timezone.utc) + timedelta(minutes=2)

        assert await runtime.prune_local_rate_limits(later) == 50
        assert not runtime._local_rate_limits


class TestBuckets:
    @pytest.mark.parametrize(
        "method,path,bucket",
        [
            ("POST", "/login", "login"),
            ("GET", "/login", "public"),
            ("POST", "/anfrage", "anfrage"),
            ("GET", "/outlook/freie-slots", "anfrage"),
            ("GET", "/admin", "admin"),
            ("PUT", "/anfrage/3", "admin"),
            ("POST", "/outlook/events", "admin"),
            ("GET", "/outlook/available-slots", "public"),
            ("GET", "/csrf-token", "public"),
        ],
    )
    def test_bucket_dispatch(self, runtime, method, path, bucket):
        assert _rate_limit_bucket(runtime, method, path)[0] == bucket


class TestRateLimitedRequests:
    def test_login_bucket(self, limited_runtime, client):
        for _ in range(2):
            resp = client.post("/login", json={}, headers={"Accept": "application/json"})
            assert resp.status_code == 403

        resp = client.post("/login", json={}, headers={"Accept": "application/json"})

        assert resp.status_code == 429
        body = resp.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["retryAfter"] > 0
        assert resp.headers["Retry-After"] == str(body["retryAfter"])

    def test_limit_is_tracked_by_monitor(self, limited_runtime, client):
        for _ in range(3):
            client.post("/anfrage", json={"kontakt": {"name": "A"}})
        events = limited_runtime.monitor.dashboard()["eventsByType"]
        assert events["RATE_LIMIT_EXCEEDED"] == 2

    def test_other_buckets_unaffected(self, limited_runtime, client):
        for _ in range(3):
            client.post("/login", json={})
        assert client.get("/csrf-token").status_code == 200
