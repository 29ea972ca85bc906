import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be settled before anything builds Settings or the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gadgetgalaxy_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-9876543210")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("AUTH_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("API_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("RESEND_VERIFICATION_LIMIT_PER_HOUR", "1000")
os.environ.setdefault("PROFILE_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("CHECK_RATE_LIMIT_PER_WINDOW", "1000")
os.environ.setdefault("ADMIN_RATE_LIMIT_PER_HOUR", "1000")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gadgetgalaxy.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from gadgetgalaxy.storage.models import AccountCreate  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def outbox(monkeypatch):
    """Capture verification and reset tokens instead of sending mail."""
    sent = {"email": [], "reset": [], "changed": []}
    email = get_runtime().email

    def capture_verification(to_email, name, token):
        sent["email"].append((to_email, token))
        return True

    def capture_reset(to_email, name, token):
        sent["reset"].append((to_email, token))
        return True

    def capture_changed(to_email, name):
        sent["changed"].append(to_email)
        return True

    monkeypatch.setattr(email, "send_email_verification", capture_verification)
    monkeypatch.setattr(email, "send_password_reset", capture_reset)
    monkeypatch.setattr(email, "send_password_changed", capture_changed)
    return sent


@pytest.fixture
def client():
    from gadgetgalaxy import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def make_account():
    """Create an account straight in the store (verified unless told otherwise)."""

    def _make(email="shopper@example.com", password="Secret123", name="Test Shopper", **fields):
        fields.setdefault("is_email_verified", True)
        return get_runtime().store.create_account(
            AccountCreate(email=email, name=name, password=password, **fields)
        )

    return _make


@pytest.fixture
def login(client):
    """Log in over HTTP and return the bearer header for the session."""

    def _login(email="shopper@example.com", password="Secret123"):
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _login


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
