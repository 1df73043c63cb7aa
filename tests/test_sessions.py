"""Tests for the session manager and the file-backed store behind it."""

import asyncio
from datetime import timedelta

import pytest

from termingate.config import Settings
from termingate.service.errors import SessionStoreError
from termingate.service.sessions import SessionManager
from termingate.storage.errors import StoreUnavailable
from termingate.storage.memory import MemoryStore
from termingate.storage.models import Principal, Session, utcnow

SECRET = "x" * 48


class BrokenStore:
    def _fail(self, *args, **kwargs):
        raise StoreUnavailable("connection refused")

    save_session = get_session = delete_session = delete_expired_sessions = _fail
    touch_session = set_csrf_token_if_absent = _fail


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def manager(store):
    return SessionManager(store, Settings(session_secret=SECRET, session_ttl_minutes=30))


def _principal():
    return Principal(user_id="u-1", username="chef", role="admin", login_time=utcnow())


class TestCookieSigning:
    def test_sign_round_trip(self, manager):
        assert manager.unsign(manager.sign("abc123")) == "abc123"

    @pytest.mark.parametrize("value", [None, "", "abc123", "abc123.deadbeef", ".sig"])
    def test_bad_cookies_are_rejected(self, manager, value):
        assert manager.unsign(value) is None

    def test_other_secret_is_rejected(self, manager, store):
        other = SessionManager(store, Settings(session_secret="y" * 48))
        assert manager.unsign(other.sign("abc123")) is None


class TestSessionLifecycle:
    async def test_new_session_is_not_stored(self, manager, store):
        session = manager.new_session()
        assert session.is_new
        assert store.get_session(session.id) is None
        assert len(session.id) == 64

    async def test_save_then_load(self, manager):
        session = manager.new_session()
        session.csrf_token = "t" * 64
        await manager.save(session)

        loaded = await manager.load(manager.sign(session.id))

        assert not session.is_new
        assert loaded.id == session.id
        assert loaded.csrf_token == "t" * 64
        assert not loaded.is_new

    async def test_unknown_cookie_gives_fresh_session(self, manager):
        session = await manager.load_or_new(manager.sign("missing"))
        assert session.is_new
        assert session.id != "missing"

    async def test_expired_session_is_deleted_on_load(self, manager, store):
        session = manager.new_session()
        session.expires_at = utcnow() - timedelta(seconds=1)
        await manager.save(session)

        assert await manager.load(manager.sign(session.id)) is None
        assert store.get_session(session.id) is None

    async def test_touch_rolls_expiry(self, manager, store):
        session = manager.new_session()
        session.expires_at = utcnow() + timedelta(minutes=1)
        await manager.save(session)

        await manager.touch(session)

        stored = store.get_session(session.id)
        assert stored.expires_at > utcnow() + timedelta(minutes=29)

    async def test_touch_skips_unsaved(self, manager, store):
        session = manager.new_session()
        assert await manager.touch(session) is True
        assert store.get_session(session.id) is None

    async def test_store_csrf_token_saves_new_session(self, manager, store):
        session = manager.new_session()

        assert await manager.store_csrf_token(session, "a" * 64) == "a" * 64

        assert not session.is_new
        assert store.get_session(session.id).csrf_token == "a" * 64

    async def test_regenerate_swaps_id(self, manager, store):
        session = manager.new_session()
        session.csrf_token = "t" * 64
        await manager.save(session)

        fresh = await manager.regenerate(session, _principal())

        assert fresh.id != session.id
        assert store.get_session(session.id) is None
        stored = store.get_session(fresh.id)
        assert stored.principal.username == "chef"
        assert stored.csrf_token is None

    async def test_regenerate_from_unsaved_session(self, manager, store):
        fresh = await manager.regenerate(manager.new_session(), _principal())
        assert store.get_session(fresh.id) is not None

    async def test_destroy(self, manager, store):
        session = manager.new_session()
        session.principal = _principal()
        await manager.save(session)

        assert await manager.destroy(session) is True
        assert store.get_session(session.id) is None
        assert session.principal is None

    async def test_destroy_unsaved_or_missing(self, manager):
        assert await manager.destroy(None) is False
        assert await manager.destroy(manager.new_session()) is False

    async def test_sweep_expired(self, manager, store):
        live = manager.new_session()
        stale = manager.new_session()
        stale.expires_at = utcnow() - timedelta(minutes=1)
        await manager.save(live)
        await manager.save(stale)

        assert await manager.sweep_expired() == 1
        assert store.get_session(live.id) is not None


class TestConcurrentRequests:
    """Two requests holding copies of the same stored session."""

    async def _two_copies(self, manager, principal=None):
        session = manager.new_session()
        session.principal = principal
        await manager.save(session)
        cookie = manager.sign(session.id)
        return cookie, await manager.load(cookie), await manager.load(cookie)

    async def test_touch_after_destroy_does_not_revive(self, manager, store):
        cookie, first, second = await self._two_copies(manager, _principal())

        await manager.destroy(first)

        assert await manager.touch(second) is False
        assert store.get_session(second.id) is None
        assert await manager.load(cookie) is None

    async def test_touch_after_regenerate_does_not_revive(self, manager, store):
        cookie, first, second = await self._two_copies(manager)

        fresh = await manager.regenerate(first, _principal())

        assert await manager.touch(second) is False
        assert await manager.load(cookie) is None
        assert store.get_session(fresh.id) is not None

    async def test_touch_keeps_token_issued_by_other_copy(self, manager, store):
        cookie, first, second = await self._two_copies(manager)

        assert await manager.store_csrf_token(first, "a" * 64) == "a" * 64
        assert await manager.touch(second) is True

        assert (await manager.load(cookie)).csrf_token == "a" * 64

    async def test_first_issued_token_wins(self, manager):
        cookie, first, second = await self._two_copies(manager)

        assert await manager.store_csrf_token(first, "a" * 64) == "a" * 64
        assert await manager.store_csrf_token(second, "b" * 64) == "a" * 64
        assert second.csrf_token == "a" * 64

    async def test_token_for_destroyed_session(self, manager, store):
        _, first, second = await self._two_copies(manager)

        await manager.destroy(first)

        assert await manager.store_csrf_token(second, "a" * 64) is None
        assert store.get_session(second.id) is None

    def test_logout_then_parallel_request(self, runtime, client, make_user, login):
        make_user("anna")
        login(client, "anna")
        cookie = client.cookies.get("sid")
        first = asyncio.run(runtime.sessions.load(cookie))
        second = asyncio.run(runtime.sessions.load(cookie))

        asyncio.run(runtime.auth.logout(first))

        assert asyncio.run(runtime.sessions.touch(second)) is False
        assert asyncio.run(runtime.sessions.load(cookie)) is None
        resp = client.get("/admin", headers={"Accept": "application/json"})
        assert resp.json()["code"] == "NO_SESSION"

    def test_session_deleted_mid_request_is_anonymous(
        self, runtime, client, make_user, login, monkeypatch
    ):
        make_user("anna")
        login(client, "anna")
        store = runtime.sessions.store
        original_touch = store.touch_session

        def logout_lands_first(session_id, expires_at):
            store.delete_session(session_id)
            return original_touch(session_id, expires_at)

        monkeypatch.setattr(store, "touch_session", logout_lands_first)

        resp = client.get("/admin", headers={"Accept": "application/json"})

        assert resp.status_code == 401
        assert resp.json()["code"] == "NO_SESSION"
        assert "max-age=0" in resp.headers["set-cookie"].lower()


class TestStoreFailures:
    async def test_load_failure_is_not_a_missing_session(self):
        manager = SessionManager(BrokenStore(), Settings(session_secret=SECRET))
        with pytest.raises(SessionStoreError) as exc_info:
            await manager.load(manager.sign("abc"))
        assert exc_info.value.status_code == 500
        assert exc_info.value.error_code == "SESSION_STORE_ERROR"

    async def test_save_failure(self):
        manager = SessionManager(BrokenStore(), Settings(session_secret=SECRET))
        with pytest.raises(SessionStoreError):
            await manager.save(manager.new_session())

    def test_store_failure_over_http(self, client, runtime, monkeypatch, fetch_csrf):
        fetch_csrf(client)
        monkeypatch.setattr(runtime.sessions, "store", BrokenStore())

        resp = client.get("/health", headers={"Accept": "application/json"})

        assert resp.status_code == 500
        assert resp.json()["code"] == "SESSION_STORE_ERROR"


class TestMemoryStorePersistence:
    async def test_sessions_survive_restart(self, tmp_path):
        settings = Settings(session_secret=SECRET)
        first = SessionManager(MemoryStore(fs_root=str(tmp_path)), settings)
        session = first.new_session()
        session.principal = _principal()
        await first.save(session)

        second = SessionManager(MemoryStore(fs_root=str(tmp_path)), settings)
        loaded = await second.load(second.sign(session.id))

        assert loaded is not None
        assert loaded.principal.username == "chef"

    def test_users_survive_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("anna")
        store.save_password(user.id, "hash", "argon2id")

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user_by_username("anna").id == user.id
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")

    def test_store_returns_copies(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        session = Session.new()
        store.save_session(session)
        loaded = store.get_session(session.id)
        loaded.csrf_token = "changed"
        assert store.get_session(session.id).csrf_token is None
