"""Durable storage for the queue snapshot.

The queue is persisted as a single JSON document under a fixed key, overwritten
wholesale on every mutation. Any :class:`KeyValueStore` can back it; two are
provided:

* :class:`InMemoryKeyValueStore`: process-local, for tests and ephemeral use.
* :class:`SQLiteKeyValueStore`: a one-table SQLite file, survives restarts.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from priority_outbox.logging import get_logger
from priority_outbox.queue.errors import QueueError, QueueErrorCode
from priority_outbox.queue.models import QueuedMessage

log = get_logger("priority_outbox.queue.storage")

QUEUE_KEY = "@message_queue"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class KeyValueStore(Protocol):
    """Durable string key/value store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Dictionary-backed store. Contents are lost when the process exits."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteKeyValueStore:
    """SQLite-backed key/value store.

    Uses a connection per operation; blocking calls run in a worker thread
    so the event loop is never stalled on disk I/O.
    """

    def __init__(self, db_path: str | Path = "data/outbox.db"):
        """Initialize the store, creating the database file if needed.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()
        log.info("kv_store_initialized", path=str(self._db_path))

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self._db_path))
        try:
            yield conn
        finally:
            conn.close()

    def _get_sync(self, key: str) -> str | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _set_sync(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, value),
            )
            conn.commit()

    def _remove_sync(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._remove_sync, key)


class QueueSnapshot:
    """Reads and writes the whole queue as one record in a :class:`KeyValueStore`."""

    def __init__(self, store: KeyValueStore, key: str = QUEUE_KEY) -> None:
        self._store = store
        self._key = key

    @property
    def key(self) -> str:
        return self._key

    async def save(self, messages: list[QueuedMessage]) -> None:
        """Overwrite the persisted snapshot with ``messages``.

        Raises:
            QueueError: ``PERSIST_FAILED`` if serialisation or the store fails.
        """
        try:
            data = json.dumps([m.to_dict() for m in messages])
            await self._store.set(self._key, data)
        except Exception as e:
            raise QueueError("Failed to persist queue", QueueErrorCode.PERSIST_FAILED, e) from e
        log.debug("queue_snapshot_saved", key=self._key, count=len(messages))

    async def load(self) -> list[QueuedMessage]:
        """Return the persisted messages, or an empty list if none are stored.

        Raises:
            QueueError: ``LOAD_FAILED`` if the store fails or the record is corrupt.
        """
        try:
            raw = await self._store.get(self._key)
            if not raw:
                return []
            records = json.loads(raw)
            messages = [QueuedMessage.from_dict(r) for r in records]
        except Exception as e:
            raise QueueError("Failed to load queue", QueueErrorCode.LOAD_FAILED, e) from e
        log.debug("queue_snapshot_loaded", key=self._key, count=len(messages))
        return messages

    async def clear(self) -> None:
        """Remove the persisted snapshot.

        Raises:
            QueueError: ``CLEAR_FAILED`` if the store fails.
        """
        try:
            await self._store.remove(self._key)
        except Exception as e:
            raise QueueError("Failed to clear queue", QueueErrorCode.CLEAR_FAILED, e) from e
        log.debug("queue_snapshot_cleared", key=self._key)
