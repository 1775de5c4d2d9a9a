"""Tests for create_message_queue and the package surface."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

import priority_outbox.queue as queue_pkg
from priority_outbox.config import Settings
from priority_outbox.queue import (
    QueueConfig,
    QueuedMessage,
    QueueSnapshot,
    SQLiteKeyValueStore,
    create_message_queue,
)


def _settings(tmp_path) -> Settings:
    return Settings(_env_file=None, outbox_db_path=str(tmp_path / "data" / "outbox.db"))


async def _drain(queue) -> None:
    async def _poll() -> None:
        while queue.is_processing:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), 2.0)


class TestCreateMessageQueue:
    """Tests for the SQLite-backed factory."""

    @pytest.mark.asyncio
    async def test_creates_working_queue(self, tmp_path) -> None:
        handler = AsyncMock(return_value=None)
        queue = await create_message_queue(
            handler,
            config=QueueConfig(processing_interval_ms=0, retry_delay_ms=0),
            settings=_settings(tmp_path),
        )
        try:
            await queue.enqueue(message_type="sync", payload={"op": "upsert"})
            await _drain(queue)
            handler.assert_awaited_once()
            assert (tmp_path / "data" / "outbox.db").exists()
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_resumes_snapshot_from_previous_run(self, tmp_path) -> None:
        settings = _settings(tmp_path)
        left_over = [QueuedMessage(type="sync", payload={"n": 1})]
        await QueueSnapshot(SQLiteKeyValueStore(settings.outbox_db_path)).save(left_over)

        handler = AsyncMock(return_value=None)
        queue = await create_message_queue(
            handler,
            config=QueueConfig(processing_interval_ms=0, retry_delay_ms=0),
            settings=settings,
        )
        try:
            await _drain(queue)
            delivered = handler.call_args.args[0]
            assert delivered.id == left_over[0].id
            assert await queue.get_queue() == []
        finally:
            await queue.stop()

    @pytest.mark.asyncio
    async def test_uses_cached_settings_by_default(self, tmp_path, monkeypatch) -> None:
        from priority_outbox.config import get_settings

        monkeypatch.setenv("OUTBOX_DB_PATH", str(tmp_path / "env.db"))
        get_settings.cache_clear()
        try:
            queue = await create_message_queue(AsyncMock(return_value=None))
            await queue.stop()
            assert (tmp_path / "env.db").exists()
        finally:
            get_settings.cache_clear()


class TestPackageExports:
    """Tests for the public names of priority_outbox.queue."""

    def test_all_names_resolve(self) -> None:
        for name in queue_pkg.__all__:
            assert getattr(queue_pkg, name) is not None

    def test_queue_key(self) -> None:
        assert queue_pkg.QUEUE_KEY == "@message_queue"
