import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set env before anything reads Settings.from_env()
_test_tmp_dir = tempfile.mkdtemp(prefix="sessiongate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessiongate.config import Settings, reset_settings_cache  # noqa: E402
from sessiongate.service.passwords import hash_password  # noqa: E402
from sessiongate.service.runtime import Runtime  # noqa: E402
from sessiongate.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "TestPassword123!"

# Hashing is slow; reuse one digest for every fixture principal
_TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)

PC_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/124.0 Safari/537.36"
MOBILE_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "Mobile/15E148"
)
WECHAT_AGENT = (
    "Mozilla/5.0 (Linux; Android 13; Pixel 7) AppleWebKit/537.36 Mobile Safari/537.36 "
    "MicroMessenger/8.0.47"
)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        root_tenant_id="root",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def runtime(settings, memory_store):
    return Runtime(settings, store=memory_store)


@pytest.fixture
def tenant(memory_store):
    return memory_store.create_tenant("acme-app", "Acme", tenant_id="acme")


@pytest.fixture
def other_tenant(memory_store):
    return memory_store.create_tenant("globex-app", "Globex", tenant_id="globex")


@pytest.fixture
def test_user(memory_store, tenant):
    """Active principal in ``tenant`` with TEST_PASSWORD."""
    return memory_store.create_user(
        tenant.id,
        "alice@example.com",
        email="alice@example.com",
        name="Alice",
        password_hash=_TEST_PASSWORD_HASH,
        active=True,
    )


@pytest.fixture
def password_credential(test_user):
    return f"{test_user.identifier}:{test_user.name}:{TEST_PASSWORD}"


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
