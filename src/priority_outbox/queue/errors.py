"""Typed errors raised and reported by the message queue."""

from __future__ import annotations

from enum import Enum
from typing import Any


class QueueErrorCode(str, Enum):
    """Machine-readable queue error codes."""

    QUEUE_FULL = "QUEUE_FULL"
    ENQUEUE_FAILED = "ENQUEUE_FAILED"
    GET_QUEUE_FAILED = "GET_QUEUE_FAILED"
    CLEAR_FAILED = "CLEAR_FAILED"
    PERSIST_FAILED = "PERSIST_FAILED"
    LOAD_FAILED = "LOAD_FAILED"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"


class QueueError(Exception):
    """Base exception for queue operations.

    Attributes:
        code: The :class:`QueueErrorCode` describing the failure.
        message: Human-readable description.
        cause: The wrapped exception, if any.
    """

    def __init__(
        self,
        message: str,
        code: QueueErrorCode,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause
        self.__cause__ = cause

    def to_record(self) -> dict[str, Any]:
        """Structured representation for error reporters."""
        return {
            "code": self.code.value,
            "message": self.message,
            "cause": repr(self.cause) if self.cause is not None else None,
        }

    def __repr__(self) -> str:
        return f"QueueError(code={self.code.value!r}, message={self.message!r})"
