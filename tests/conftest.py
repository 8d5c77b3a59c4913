import os
import sys
import tempfile
from pathlib import Path

# Seed the environment before anything imports keyward.config
_test_tmp_dir = tempfile.mkdtemp(prefix="keyward_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "64")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from datetime import timedelta  # noqa: E402

from keyward.service.access_tokens import AccessTokenCodec  # noqa: E402
from keyward.service.audit import AuditEmitter  # noqa: E402
from keyward.service.hasher import CredentialHasher  # noqa: E402
from keyward.service.lockout import LockoutPolicy  # noqa: E402
from keyward.service.runtime import reset_runtime_for_tests  # noqa: E402
from keyward.service.sessions import SessionLifecycleManager  # noqa: E402
from keyward.service.tokens import SingleUseTokenIssuer  # noqa: E402
from keyward.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = os.environ["JWT_SECRET"]
SALT = bytes(range(32))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    """In-process store without a persistence root."""
    return MemoryStore()


@pytest.fixture
def hasher():
    h = CredentialHasher(time_cost=1, memory_cost=64, parallelism=1, timeout_seconds=30)
    yield h
    h.close()


@pytest.fixture
def codec():
    return AccessTokenCodec(
        TEST_JWT_SECRET,
        issuer="keyward",
        audience="keyward-clients",
        ttl=timedelta(minutes=60),
    )


@pytest.fixture
def manager_factory(memory_store, hasher, codec):
    """Build a manager over the shared memory store with overridable policy."""

    def _build(*, max_attempts=5, lock_minutes=15, rotate=False, session_ttl=None):
        return SessionLifecycleManager(
            memory_store,
            hasher,
            LockoutPolicy(max_attempts=max_attempts, lock_duration_minutes=lock_minutes),
            SingleUseTokenIssuer(memory_store),
            codec,
            AuditEmitter(memory_store),
            session_ttl=session_ttl or timedelta(days=7),
            rotate_refresh_tokens=rotate,
        )

    return _build


@pytest.fixture
def manager(manager_factory):
    return manager_factory()
