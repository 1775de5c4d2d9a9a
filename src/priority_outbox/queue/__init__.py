"""Priority message queue for priority-outbox.

Provides a snapshot-persisted priority queue with admission control,
per-tier expiry, fixed-delay retries, and dead-letter reporting.
"""

from priority_outbox.queue.errors import QueueError, QueueErrorCode
from priority_outbox.queue.factory import create_message_queue
from priority_outbox.queue.manager import MessageQueue
from priority_outbox.queue.models import MessagePriority, PriorityTier, QueueConfig, QueuedMessage
from priority_outbox.queue.processors import MessageDispatcher, MessageHandler, ProcessorResult
from priority_outbox.queue.reporting import ErrorReporter, LoggingErrorReporter
from priority_outbox.queue.storage import (
    QUEUE_KEY,
    InMemoryKeyValueStore,
    KeyValueStore,
    QueueSnapshot,
    SQLiteKeyValueStore,
)

__all__ = [
    "QUEUE_KEY",
    "ErrorReporter",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "LoggingErrorReporter",
    "MessageDispatcher",
    "MessageHandler",
    "MessagePriority",
    "MessageQueue",
    "PriorityTier",
    "ProcessorResult",
    "QueueConfig",
    "QueueError",
    "QueueErrorCode",
    "QueueSnapshot",
    "QueuedMessage",
    "SQLiteKeyValueStore",
    "create_message_queue",
]
