"""Message handlers and type-tag dispatch for the processing loop.

The queue delivers each message to a single :data:`MessageHandler`. A handler
reports failure by raising, by returning ``False``, or by returning a
:class:`ProcessorResult` with ``success=False``; any other return value counts
as success.

:class:`MessageDispatcher` is a handler that routes messages to per-type
handlers registered by the application.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from priority_outbox.logging import get_logger
from priority_outbox.queue.models import QueuedMessage

log = get_logger("priority_outbox.queue.processors")


class ProcessorResult:
    """Outcome of processing a single queued message."""

    __slots__ = ("success", "error", "data")

    def __init__(
        self,
        success: bool = True,
        error: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.success = success
        self.error = error
        self.data = data or {}


MessageHandler = Callable[[QueuedMessage], Awaitable[Any]]


class HandlerFailedError(Exception):
    """A handler signalled failure without raising."""


async def run_handler(handler: MessageHandler, message: QueuedMessage) -> None:
    """Invoke ``handler`` and raise if it signalled failure.

    Raises:
        HandlerFailedError: The handler returned ``False`` or an unsuccessful
            :class:`ProcessorResult`.
        Exception: Anything the handler itself raised.
    """
    result = await handler(message)
    if result is False:
        raise HandlerFailedError(f"Handler rejected message {message.id}")
    if isinstance(result, ProcessorResult) and not result.success:
        raise HandlerFailedError(result.error or "Unknown error")


class MessageDispatcher:
    """Route queued messages to handlers by their ``type`` tag.

    Unknown types are logged and treated as successful (no retry) so they do
    not cycle through the retry budget into the dead-letter path.
    """

    def __init__(self, handlers: dict[str, MessageHandler] | None = None) -> None:
        self._handlers: dict[str, MessageHandler] = dict(handlers or {})

    def register(self, message_type: str, handler: MessageHandler) -> None:
        """Register (or replace) the handler for ``message_type``."""
        self._handlers[message_type] = handler

    def unregister(self, message_type: str) -> None:
        self._handlers.pop(message_type, None)

    @property
    def message_types(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(self, message: QueuedMessage) -> ProcessorResult:
        handler = self._handlers.get(message.type)
        if handler is None:
            log.warning("unknown_message_type", message_type=message.type, message_id=message.id)
            return ProcessorResult(success=True, error=f"Unknown message type: {message.type}")

        result = await handler(message)
        if isinstance(result, ProcessorResult):
            return result
        if result is False:
            return ProcessorResult(success=False, error=f"Handler for {message.type} failed")
        return ProcessorResult(success=True)
