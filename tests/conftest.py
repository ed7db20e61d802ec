import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tessera_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault(
    "TESSERA_MASTER_SECRET", "test-master-secret-for-automation-only-0123456789"
)
# Cheap hashing keeps the suite fast; policy behaviour is unaffected
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tessera.config import Settings  # noqa: E402
from tessera.service.audit import AuditSink  # noqa: E402
from tessera.service.credentials import CredentialStore  # noqa: E402
from tessera.service.guard import AuthorizationGuard  # noqa: E402
from tessera.service.keys import KeyManager  # noqa: E402
from tessera.service.lockout import LockoutPolicy  # noqa: E402
from tessera.service.runtime import reset_runtime_for_tests  # noqa: E402
from tessera.service.sessions import SessionEngine  # noqa: E402
from tessera.service.tokens import TokenService  # noqa: E402
from tessera.storage.memory import MemoryStore  # noqa: E402

TEST_MASTER_SECRET = "unit-test-master-secret-0123456789-abcdefghij"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
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


@pytest.fixture
def settings():
    """Settings with cheap hashing parameters."""
    return Settings(
        master_secret=TEST_MASTER_SECRET,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        bcrypt_rounds=4,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def credentials(settings):
    return CredentialStore.from_settings(settings)


@pytest.fixture
def keys(store, settings):
    return KeyManager.from_settings(store, settings)


@pytest.fixture
def tokens(keys, store, settings):
    return TokenService.from_settings(keys, store, settings)


@pytest.fixture
def lockout(store, settings):
    return LockoutPolicy.from_settings(store, settings)


@pytest.fixture
def audit(store):
    return AuditSink(store)


@pytest.fixture
def engine(store, settings, credentials, keys, lockout, tokens, audit):
    return SessionEngine.from_settings(
        store,
        settings,
        credentials=credentials,
        keys=keys,
        lockout=lockout,
        tokens=tokens,
        audit=audit,
    )


@pytest.fixture
def guard(tokens):
    return AuthorizationGuard(tokens)


ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Str0ng!Pass1"


@pytest.fixture
def alice(engine):
    """A registered user with the default role."""
    return asyncio.run(engine.register(ALICE_EMAIL, ALICE_PASSWORD, "Alice", "Liddell"))
