import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps the ledger in-process so runs are deterministic
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatgate.config import Settings  # noqa: E402
from chatgate.service.codec import TokenCodec  # noqa: E402
from chatgate.service.runtime import reset_runtime_for_tests  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"

DESKTOP_HEADERS = {
    "user-agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0",
    "accept-language": "en-US,en;q=0.9",
}
PHONE_HEADERS = {
    "user-agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148",
    "accept-language": "vi-VN,vi;q=0.9",
}


class FakeClock:
    """Settable clock for moving token time without sleeping."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(jwt_secret=TEST_SECRET, shared_fs_root=str(tmp_path))


@pytest.fixture
def codec(clock):
    return TokenCodec(TEST_SECRET, default_ttl_seconds=30 * 24 * 3600, clock=clock)


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
def desktop_headers():
    return dict(DESKTOP_HEADERS)


@pytest.fixture
def phone_headers():
    return dict(PHONE_HEADERS)
