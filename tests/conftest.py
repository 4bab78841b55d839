import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="gatekeep_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("PERSIST_STORE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("APP_BASE_URL", "http://testserver")
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher as Argon2Hasher  # noqa: E402
from argon2 import Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatekeep.config import Settings  # noqa: E402
from gatekeep.service.auth import AuthService  # noqa: E402
from gatekeep.service.email import OutboundEmail  # noqa: E402
from gatekeep.service.passwords import PasswordHasher  # noqa: E402
from gatekeep.service.reset_tokens import ResetTokenService  # noqa: E402
from gatekeep.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402
from gatekeep.service.tokens import TokenService  # noqa: E402
from gatekeep.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class RecordingNotifier:
    """Notifier double that keeps every message instead of sending it."""

    def __init__(self, deliver: bool = True, raises: Exception | None = None) -> None:
        self.deliver = deliver
        self.raises = raises
        self.sent: list[OutboundEmail] = []

    def send(self, message: OutboundEmail) -> bool:
        if self.raises is not None:
            raise self.raises
        self.sent.append(message)
        return self.deliver


def fast_hasher(settings: Settings) -> PasswordHasher:
    """Argon2id with minimal cost parameters so the suite stays quick."""
    return PasswordHasher(
        min_length=settings.password_min_length,
        max_length=settings.password_max_length,
        hasher=Argon2Hasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID),
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        environment="test",
        jwt_secret=TEST_SECRET,
        shared_fs_root=str(tmp_path),
        persist_store=False,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def token_service(settings):
    return TokenService(settings)


@pytest.fixture
def auth_service(memory_store, settings, notifier, token_service):
    """Create auth service for testing."""
    return AuthService(
        memory_store,
        settings,
        hasher=fast_hasher(settings),
        tokens=token_service,
        reset_tokens=ResetTokenService(settings),
        notifier=notifier,
    )


@pytest.fixture
def outbox():
    """Swap the live runtime's notifier for a recorder and hand it back."""
    recorder = RecordingNotifier()
    runtime = get_runtime()
    runtime.email = recorder
    runtime.auth.notifier = recorder
    return recorder


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
