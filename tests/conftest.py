"""Pytest configuration and fixtures."""

import pytest

from kv_gateway.backends.storage.memory import MemoryKVStorage
from kv_gateway.observability import clear_metric_callbacks, register_metric_callback

SECRET = "test-secret-key-for-testing-only"


class FakeClock:
    """Settable epoch clock in seconds."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Sleep stand-in that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sample_config_dict():
    """Sample configuration dictionary for testing."""
    return {
        "auth": {"secret_key": SECRET},
        "storage": {
            "backend": "relational",
            "database": {"backend": "sqlite", "path": ":memory:"},
        },
        "bulk": {"max_attempts": 3, "retry_delays_seconds": [1, 2, 4]},
        "server": {"port": 9000, "base_path": "/api/v1"},
        "logging": {"level": "DEBUG", "format": "text"},
    }


@pytest.fixture
def clock() -> FakeClock:
    """A controllable clock."""
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    """A sleep that returns immediately and remembers its delays."""
    return RecordingSleep()


@pytest.fixture
def memory_storage(clock: FakeClock) -> MemoryKVStorage:
    """In-memory storage on the fake clock."""
    return MemoryKVStorage(clock=clock)


@pytest.fixture
def metrics():
    """Collect emitted metrics as (name, value, labels) tuples."""
    events: list[tuple[str, float, dict]] = []
    register_metric_callback(lambda name, value, labels: events.append((name, value, labels)))
    yield events
    clear_metric_callbacks()
