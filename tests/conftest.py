"""Pytest fixtures for priority-outbox tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from priority_outbox.queue.manager import MessageQueue
from priority_outbox.queue.models import QueueConfig
from priority_outbox.queue.storage import InMemoryKeyValueStore


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Start every test session from a clean settings cache."""
    from priority_outbox.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


class FailingStore(InMemoryKeyValueStore):
    """In-memory store whose operations can be switched to fail."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        super().__init__(initial)
        self.fail_get = False
        self.fail_set = False
        self.fail_remove = False

    async def get(self, key: str) -> str | None:
        if self.fail_get:
            raise OSError("disk unavailable")
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_set:
            raise OSError("disk full")
        await super().set(key, value)

    async def remove(self, key: str) -> None:
        if self.fail_remove:
            raise OSError("disk unavailable")
        await super().remove(key)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def reporter() -> MagicMock:
    """Mock error reporter."""
    return MagicMock()


@pytest.fixture
def fast_config() -> QueueConfig:
    """Config with no waiting between ticks or after failures."""
    return QueueConfig(processing_interval_ms=0, retry_delay_ms=0)


@pytest_asyncio.fixture
async def idle_queue(store, reporter, clock):
    """A queue whose processing loop never runs, for admission/ordering tests."""
    handler = MagicMock()
    queue = MessageQueue(store=store, handler=handler, reporter=reporter, clock=clock)
    await queue.stop()
    yield queue
    queue.reset()
