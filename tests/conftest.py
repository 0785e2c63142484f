import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Environment must be in place before anything imports settings or the app
_test_tmp_dir = tempfile.mkdtemp(prefix="quoteauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# In-process rate limit buckets so each test starts with a full bucket
os.environ["REDIS_URL"] = ""
# Cheap argon2 parameters; production defaults take ~100ms per hash
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quoteauth.config import Settings  # noqa: E402
from quoteauth.service.account_status import AccountStatusMachine  # noqa: E402
from quoteauth.service.admin import AdminOverrideService, AuthContext  # noqa: E402
from quoteauth.service.audit import SessionAuditLog  # noqa: E402
from quoteauth.service.auth import AuthService  # noqa: E402
from quoteauth.service.credentials import CredentialStore  # noqa: E402
from quoteauth.service.devices import DeviceBindingManager  # noqa: E402
from quoteauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from quoteauth.service.tokens import TokenIssuer  # noqa: E402
from quoteauth.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "TestPassword123"


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so persisted memory-store state never leaks
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), persist=False)


@pytest.fixture
def services(store, settings):
    """Components wired the same way the runtime wires them."""
    statuses = AccountStatusMachine(store)
    credentials = CredentialStore.from_settings(store, settings)
    devices = DeviceBindingManager(store)
    tokens = TokenIssuer(store, settings, devices, statuses)
    devices.bind_revoker(tokens)
    audit = SessionAuditLog(store)
    admin = AdminOverrideService(store, statuses, devices, tokens, audit)
    auth = AuthService(store, settings, credentials, devices, statuses, tokens, audit)
    return SimpleNamespace(
        store=store,
        settings=settings,
        statuses=statuses,
        credentials=credentials,
        devices=devices,
        tokens=tokens,
        audit=audit,
        admin=admin,
        auth=auth,
    )


@pytest.fixture
def admin_actor(services):
    account = services.auth.provision_staff("admin@example.com", TEST_PASSWORD)
    return AuthContext(account_id=account.id, role=account.role, portal="admin")


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
