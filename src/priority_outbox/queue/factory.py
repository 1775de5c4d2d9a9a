"""Factory for wiring a message queue to its durable store."""

from __future__ import annotations

from priority_outbox.config import Settings, get_settings
from priority_outbox.logging import get_logger
from priority_outbox.queue.manager import MessageQueue
from priority_outbox.queue.models import QueueConfig
from priority_outbox.queue.processors import MessageHandler
from priority_outbox.queue.reporting import ErrorReporter
from priority_outbox.queue.storage import SQLiteKeyValueStore

log = get_logger("priority_outbox.queue.factory")


async def create_message_queue(
    handler: MessageHandler,
    *,
    config: QueueConfig | None = None,
    reporter: ErrorReporter | None = None,
    settings: Settings | None = None,
) -> MessageQueue:
    """Create a SQLite-backed queue, hydrate it, and resume pending work.

    Args:
        handler: Delivers one message (a :class:`MessageDispatcher` works).
        config: Queue configuration; defaults apply when omitted.
        reporter: Error sink; structured logging when omitted.
        settings: Overrides the cached application settings.

    Returns:
        A started :class:`MessageQueue`.
    """
    settings = settings or get_settings()
    store = SQLiteKeyValueStore(settings.outbox_db_path)
    queue = MessageQueue(store=store, handler=handler, reporter=reporter, config=config)
    await queue.start()
    log.info("message_queue_created", db_path=settings.outbox_db_path)
    return queue
