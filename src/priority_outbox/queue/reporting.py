"""Error reporting sinks for queue failures."""

from __future__ import annotations

from typing import Protocol

from priority_outbox.logging import get_logger
from priority_outbox.queue.errors import QueueError

log = get_logger("priority_outbox.queue.reporting")


class ErrorReporter(Protocol):
    """Receives typed queue errors for observability."""

    def report(self, error: QueueError) -> None: ...


class LoggingErrorReporter:
    """Default reporter: writes each error as a structured log event."""

    def report(self, error: QueueError) -> None:
        log.error("queue_error_reported", **error.to_record())
