"""Shared fixtures: a throwaway installation, a controllable clock and an open guard."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from envguard.config import initialize
from envguard.manager import EnvGuard

PASSWORD = "correct horse battery"
# keep PBKDF2 fast in tests
TEST_ITERATIONS = 1000


class FakeClock:
    """Callable clock whose "now" only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def home(tmp_path):
    return tmp_path / "envguard-home"


@pytest.fixture
def config(home):
    return initialize(
        PASSWORD, project_name="test-project", home=home, iterations=TEST_ITERATIONS,
    )


@pytest_asyncio.fixture
async def locked_guard(config, clock):
    """An open guard whose master key has not been established."""
    guard = await EnvGuard.open(config, clock=clock)
    yield guard
    await guard.close()


@pytest_asyncio.fixture
async def guard(locked_guard):
    await locked_guard.unlock(PASSWORD)
    return locked_guard


@pytest_asyncio.fixture
async def prod(guard):
    return await guard.environments.create("prod", "Production")
