import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="termingate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOGIN_FAILURE_DELAY_MS", "5")
# Process-local counters keep the tests independent of a running Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from termingate.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

JSON_HEADERS = {"Accept": "application/json"}


def _wipe_store_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _wipe_store_state()
    reset_runtime_for_tests()
    yield
    _wipe_store_state()
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeClock:
    """Manually advanced UTC clock for gates, guards and monitors."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def client():
    from termingate.app import app

    return TestClient(app)


@pytest.fixture
def make_user(runtime):
    """Create a user with a password directly in the store."""

    def _make(username: str, password: str = "CorrectHorse9!", role: str = "user"):
        user = runtime.store.create_user(username, role=role)
        runtime.auth.save_password(user.id, password)
        return user

    return _make


def _fetch_csrf(client) -> str:
    resp = client.get("/csrf-token", headers=JSON_HEADERS)
    assert resp.status_code == 200
    return resp.json()["csrfToken"]


def _login(client, username: str, password: str = "CorrectHorse9!") -> str:
    """Log in through the HTTP flow and return a CSRF token for the new session."""
    token = _fetch_csrf(client)
    resp = client.post(
        "/login",
        json={"username": username, "password": password, "_csrf": token},
        headers=JSON_HEADERS,
    )
    assert resp.status_code == 200, resp.text
    return _fetch_csrf(client)


@pytest.fixture
def admin_client(client, make_user):
    make_user("chef", role="admin")
    token = _login(client, "chef")
    client.headers.update({"X-CSRF-Token": token, **JSON_HEADERS})
    return client


@pytest.fixture
def fetch_csrf():
    return _fetch_csrf


@pytest.fixture
def login():
    return _login
