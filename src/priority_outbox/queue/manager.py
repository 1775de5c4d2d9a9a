"""Queue core: admission control, ordering, expiry, persistence and delivery.

:class:`MessageQueue` owns an in-memory list of :class:`QueuedMessage` kept in
priority order, mirrors it to a :class:`KeyValueStore` after every mutation,
and drains it through a caller-supplied handler on a single ``asyncio.Task``.

Every mutation builds the new list, persists it, and only then swaps it in, so
a failed write never leaves memory ahead of the store. Delivery attempts are
also counted in memory per message id, so an unreachable store cannot reset a
message's retry budget; a message that exhausts it is dead-lettered and
dropped from memory even if that removal cannot be persisted.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from priority_outbox.logging import get_logger
from priority_outbox.queue.errors import QueueError, QueueErrorCode
from priority_outbox.queue.models import MessagePriority, QueueConfig, QueuedMessage
from priority_outbox.queue.processors import MessageHandler, run_handler
from priority_outbox.queue.reporting import ErrorReporter, LoggingErrorReporter
from priority_outbox.queue.storage import QUEUE_KEY, KeyValueStore, QueueSnapshot

log = get_logger("priority_outbox.queue.manager")

# Graceful shutdown: max seconds to wait for an in-flight message before cancelling.
_DRAIN_TIMEOUT_SECONDS = 30


class _TickOutcome(Enum):
    DRAINED = "drained"
    PROCESSED = "processed"
    RETRY = "retry"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _copy_message(message: QueuedMessage, **changes: Any) -> QueuedMessage:
    """Detached copy; the payload is deep-copied so callers cannot alter queue state."""
    return replace(message, payload=copy.deepcopy(message.payload), **changes)


class MessageQueue:
    """Priority-ordered, persistent message queue with a retrying consumer.

    One instance should be created by the application's composition root and
    shared with whatever needs to enqueue. All state lives on the instance.

    Delivery is strictly one message at a time. A failed message is moved to
    the physical tail of the queue without re-sorting (unless
    ``resort_on_retry`` is set), and the loop pauses ``retry_delay_ms`` before
    its next tick, which stalls every other pending message for that long.
    """

    def __init__(
        self,
        *,
        store: KeyValueStore,
        handler: MessageHandler,
        reporter: ErrorReporter | None = None,
        config: QueueConfig | None = None,
        key: str = QUEUE_KEY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialise the queue. Nothing is read from the store until first use.

        Args:
            store: Durable key/value store holding the snapshot.
            handler: Async callable that delivers one message.
            reporter: Sink for typed errors (defaults to structured logging).
            config: Initial configuration (defaults to :class:`QueueConfig`).
            key: Store key for the snapshot.
            clock: Returns the current UTC time; injectable for tests.
        """
        self._snapshot = QueueSnapshot(store, key)
        self._handler = handler
        self._reporter = reporter or LoggingErrorReporter()
        self._config = config or QueueConfig()
        self._clock = clock

        self._queue: list[QueuedMessage] = []
        self._loaded = False
        # Delivery attempts per message id, counted even when the store is down.
        self._attempts: dict[str, int] = {}
        self._lock = asyncio.Lock()

        self._is_processing = False
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> QueueConfig:
        return self._config

    def configure(self, overrides: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        """Merge partial configuration into the current config.

        Example::

            queue.configure(max_size=50, priority_config={"low": {"max_age_ms": 60_000}})
        """
        merged = {**(overrides or {}), **kwargs}
        self._config = self._config.merged(merged)
        log.info("queue_configured", fields=sorted(merged))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        *,
        message_type: str,
        payload: Any = None,
        priority: MessagePriority | str = MessagePriority.MEDIUM,
        timestamp: datetime | None = None,
    ) -> QueuedMessage:
        """Admit a message, persist the queue, and make sure the loop is running.

        Args:
            message_type: Type tag used by handlers for dispatch.
            payload: Opaque JSON-serialisable body.
            priority: Priority tier (enum member or its string value).
            timestamp: Ordering timestamp; defaults to now.

        Returns:
            A copy of the queued message.

        Raises:
            QueueError: ``QUEUE_FULL`` when the queue is full and nothing can
                be evicted; ``ENQUEUE_FAILED`` for any other failure, including
                an unknown priority.
        """
        try:
            priority = MessagePriority(priority)
            message, evicted = await self._admit(message_type, payload, priority, timestamp)
        except Exception as e:
            if isinstance(e, QueueError) and e.code is QueueErrorCode.QUEUE_FULL:
                log.warning("queue_full", priority=priority.value, max_size=self._config.max_size)
                self._report(e)
                raise
            error = QueueError("Failed to enqueue message", QueueErrorCode.ENQUEUE_FAILED, e)
            self._report(error)
            raise error from e

        if evicted is not None:
            log.info(
                "queue_message_evicted",
                message_id=evicted.id,
                evicted_priority=evicted.priority.value,
                incoming_priority=message.priority.value,
            )
        log.debug(
            "queue_message_enqueued",
            message_id=message.id,
            message_type=message.type,
            priority=message.priority.value,
        )
        self._ensure_processing()
        return _copy_message(message)

    async def get_queue(self) -> list[QueuedMessage]:
        """Return a copy of the queue in dispatch order."""
        try:
            async with self._lock:
                await self._ensure_loaded()
                return [_copy_message(m) for m in self._queue]
        except QueueError as e:
            error = QueueError("Failed to get queue", QueueErrorCode.GET_QUEUE_FAILED, e)
            self._report(error)
            raise error from e

    async def get_queue_by_priority(self, priority: MessagePriority | str) -> list[QueuedMessage]:
        """Return a copy of the queued messages in one priority tier."""
        priority = MessagePriority(priority)
        try:
            async with self._lock:
                await self._ensure_loaded()
                return [_copy_message(m) for m in self._queue if m.priority is priority]
        except QueueError as e:
            error = QueueError(
                "Failed to get queue by priority", QueueErrorCode.GET_QUEUE_FAILED, e
            )
            self._report(error)
            raise error from e

    async def get_stats(self) -> dict[str, Any]:
        """Return live counts, hydrating from the store first if needed.

        Raises:
            QueueError: ``GET_QUEUE_FAILED`` if the snapshot could not be loaded.
        """
        try:
            async with self._lock:
                await self._ensure_loaded()
                by_priority = {p.value: 0 for p in MessagePriority}
                for message in self._queue:
                    by_priority[message.priority.value] += 1
                total = len(self._queue)
        except QueueError as e:
            error = QueueError("Failed to get queue stats", QueueErrorCode.GET_QUEUE_FAILED, e)
            self._report(error)
            raise error from e
        return {
            "total": total,
            "by_priority": by_priority,
            "processing": self._is_processing,
        }

    async def clear_queue(self) -> None:
        """Drop every message and remove the persisted snapshot.

        Raises:
            QueueError: ``CLEAR_FAILED`` if the store could not be cleared; the
                in-memory queue is left untouched in that case.
        """
        async with self._lock:
            try:
                await self._snapshot.clear()
            except QueueError as e:
                self._report(e)
                raise
            dropped = len(self._queue)
            self._queue = []
            self._attempts = {}
            self._loaded = True
        log.info("queue_cleared", dropped=dropped)

    async def remove_expired_messages(self) -> int:
        """Sweep every expired message. Returns the number removed."""
        async with self._lock:
            await self._ensure_loaded()
            return await self._remove_expired_locked()

    def reset(self) -> None:
        """Forget in-memory state and stop the loop without touching the store.

        Intended for tests; the next access re-hydrates from the snapshot.
        """
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._is_processing = False
        self._stopped = False
        self._queue = []
        self._attempts = {}
        self._loaded = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_processing(self) -> bool:
        """Whether the processing loop is active."""
        return self._is_processing

    async def start(self) -> None:
        """Hydrate from the store and resume processing if anything is pending."""
        self._stopped = False
        async with self._lock:
            await self._ensure_loaded()
            pending = len(self._queue)
        log.info("queue_started", pending=pending)
        if pending:
            self._ensure_processing()

    async def stop(self, drain_timeout: float = _DRAIN_TIMEOUT_SECONDS) -> None:
        """Stop the processing loop.

        Lets an in-flight delivery finish for up to ``drain_timeout`` seconds,
        then cancels the loop. Enqueues after ``stop()`` are still persisted
        but are not processed until :meth:`start` is called.
        """
        self._stopped = True
        self._is_processing = False
        task = self._task
        if task is None:
            return

        log.info("queue_stopping")
        _, pending = await asyncio.wait({task}, timeout=drain_timeout)
        for t in pending:
            t.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._task = None
        log.info("queue_stopped")

    # ------------------------------------------------------------------
    # Admission, ordering and expiry
    # ------------------------------------------------------------------

    async def _admit(
        self,
        message_type: str,
        payload: Any,
        priority: MessagePriority,
        timestamp: datetime | None,
    ) -> tuple[QueuedMessage, QueuedMessage | None]:
        config = self._config
        async with self._lock:
            await self._ensure_loaded()

            if len(self._queue) >= config.max_size:
                await self._remove_expired_locked()

            queue = list(self._queue)
            evicted = None
            if len(queue) >= config.max_size:
                index = self._find_eviction_candidate(queue, priority)
                if index is None:
                    raise QueueError("Queue is full", QueueErrorCode.QUEUE_FULL)
                evicted = queue.pop(index)

            now = self._clock()
            if timestamp is not None and timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=UTC)
            max_age_ms = config.tier(priority).max_age_ms
            message = QueuedMessage(
                type=message_type,
                payload=payload,
                timestamp=timestamp or now,
                priority=priority,
                retries=0,
                expires_at=now + timedelta(milliseconds=max_age_ms) if max_age_ms else None,
            )
            queue.append(message)
            self._sort(queue)
            await self._commit(queue)
        return message, evicted

    def _find_eviction_candidate(
        self, queue: list[QueuedMessage], priority: MessagePriority
    ) -> int | None:
        """Index of the first message with a strictly lower weight, if any."""
        incoming = self._config.weight(priority)
        for index, message in enumerate(queue):
            if self._config.weight(message.priority) < incoming:
                return index
        return None

    def _sort(self, queue: list[QueuedMessage]) -> None:
        """Stable sort: descending tier weight, then oldest first."""
        queue.sort(key=lambda m: (-self._config.weight(m.priority), m.timestamp))

    async def _remove_expired_locked(self) -> int:
        now = self._clock()
        kept = [m for m in self._queue if not m.is_expired(now)]
        removed = len(self._queue) - len(kept)
        if removed:
            await self._commit(kept)
            log.info("queue_expired_removed", count=removed)
        return removed

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._queue = await self._snapshot.load()
        self._loaded = True
        if self._queue:
            log.info("queue_hydrated", count=len(self._queue))

    async def _commit(self, queue: list[QueuedMessage]) -> None:
        """Persist ``queue`` and, once the write succeeds, make it current."""
        await self._snapshot.save(queue)
        self._queue = queue
        if self._attempts:
            live = {m.id for m in queue}
            self._attempts = {k: v for k, v in self._attempts.items() if k in live}

    def _without(self, message_id: str) -> list[QueuedMessage]:
        return [m for m in self._queue if m.id != message_id]

    def _contains(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self._queue)

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def _ensure_processing(self) -> None:
        if self._is_processing or self._stopped:
            return
        self._is_processing = True
        self._task = asyncio.create_task(self._processing_loop(), name="message-queue")
        log.debug("queue_processing_started")

    async def _processing_loop(self) -> None:
        """Process one head message per tick until the queue drains."""
        try:
            while self._is_processing:
                await asyncio.sleep(self._config.processing_interval_ms / 1000.0)
                if not self._is_processing:
                    break
                try:
                    outcome = await self._tick()
                except Exception:
                    log.exception("queue_tick_error")
                    await asyncio.sleep(self._config.retry_delay_ms / 1000.0)
                    continue

                if outcome is _TickOutcome.DRAINED:
                    break
                if outcome is _TickOutcome.RETRY:
                    await asyncio.sleep(self._config.retry_delay_ms / 1000.0)
        finally:
            if self._task is asyncio.current_task():
                self._is_processing = False
                self._task = None
            log.debug("queue_processing_stopped")

    async def _tick(self) -> _TickOutcome:
        async with self._lock:
            await self._ensure_loaded()
            if not self._queue:
                return _TickOutcome.DRAINED
            message = self._queue[0]

            if self._config.drop_expired_on_dequeue and message.is_expired(self._clock()):
                await self._commit(self._without(message.id))
                log.info(
                    "queue_message_expired_dropped",
                    message_id=message.id,
                    priority=message.priority.value,
                )
                return _TickOutcome.PROCESSED

            delivery = _copy_message(
                message, retries=self._attempts.get(message.id, message.retries)
            )

        log.debug(
            "queue_message_processing",
            message_id=delivery.id,
            message_type=delivery.type,
            attempt=delivery.retries + 1,
        )
        try:
            await run_handler(self._handler, delivery)
        except Exception as e:
            return await self._handle_failure(message, e)

        async with self._lock:
            if self._contains(message.id):
                await self._commit(self._without(message.id))
        self._attempts.pop(message.id, None)
        log.debug("queue_message_delivered", message_id=message.id)
        return _TickOutcome.PROCESSED

    async def _handle_failure(self, message: QueuedMessage, error: Exception) -> _TickOutcome:
        max_retries = self._config.max_retries

        async with self._lock:
            if not self._contains(message.id):
                # Cleared or evicted while the handler was running.
                self._attempts.pop(message.id, None)
                log.debug("queue_message_gone_after_failure", message_id=message.id)
                return _TickOutcome.PROCESSED

            retries = self._attempts.get(message.id, message.retries) + 1
            remaining = self._without(message.id)
            if retries >= max_retries:
                self._attempts.pop(message.id, None)
                try:
                    await self._commit(remaining)
                except QueueError:
                    # Dead-lettered messages leave memory even if the store is down;
                    # the next successful commit brings the snapshot in line.
                    log.exception("queue_dead_letter_persist_failed", message_id=message.id)
                    self._queue = remaining
            else:
                self._attempts[message.id] = retries
                requeued = remaining + [replace(message, retries=retries)]
                if self._config.resort_on_retry:
                    self._sort(requeued)
                try:
                    await self._commit(requeued)
                except QueueError:
                    # The attempt still counts; the message stays where it was.
                    log.exception(
                        "queue_retry_persist_failed", message_id=message.id, attempt=retries
                    )

        if retries >= max_retries:
            log.warning(
                "queue_message_dead",
                message_id=message.id,
                message_type=message.type,
                attempts=retries,
                error=str(error),
            )
            self._report(
                QueueError(
                    f"Message processing failed after {max_retries} retries",
                    QueueErrorCode.MAX_RETRIES_EXCEEDED,
                    error,
                )
            )
            return _TickOutcome.PROCESSED

        log.info(
            "queue_message_requeued",
            message_id=message.id,
            attempt=retries,
            retry_delay_ms=self._config.retry_delay_ms,
            error=str(error),
        )
        return _TickOutcome.RETRY

    # ------------------------------------------------------------------
    # Error reporting
    # ------------------------------------------------------------------

    def _report(self, error: QueueError) -> None:
        try:
            self._reporter.report(error)
        except Exception:
            log.exception("error_reporter_failed", code=error.code.value)
