"""Tests for error reporting and logging setup."""

from __future__ import annotations

import json
import logging
import logging.handlers
from unittest.mock import MagicMock

import pytest
import structlog
from structlog.testing import capture_logs

from priority_outbox.config import Settings
from priority_outbox.queue import (
    LoggingErrorReporter,
    MessageQueue,
    QueueConfig,
    QueueError,
    QueueErrorCode,
)


class TestLoggingErrorReporter:
    """Tests for the default structured-logging reporter."""

    def test_logs_error_record(self) -> None:
        cause = OSError("disk full")
        error = QueueError("Failed to persist queue", QueueErrorCode.PERSIST_FAILED, cause)

        with capture_logs() as logs:
            LoggingErrorReporter().report(error)

        assert len(logs) == 1
        entry = logs[0]
        assert entry["event"] == "queue_error_reported"
        assert entry["log_level"] == "error"
        assert entry["code"] == "PERSIST_FAILED"
        assert entry["message"] == "Failed to persist queue"
        assert "disk full" in entry["cause"]


class TestReporterIsolation:
    """A failing reporter never masks the original error."""

    @pytest.mark.asyncio
    async def test_reporter_failure_is_logged(self, store) -> None:
        reporter = MagicMock()
        reporter.report.side_effect = RuntimeError("telemetry down")
        queue = MessageQueue(
            store=store,
            handler=MagicMock(),
            reporter=reporter,
            config=QueueConfig(max_size=1),
        )
        await queue.stop()
        await queue.enqueue(message_type="first")

        with capture_logs() as logs, pytest.raises(QueueError) as exc_info:
            await queue.enqueue(message_type="second")

        assert exc_info.value.code is QueueErrorCode.QUEUE_FULL
        assert any(e["event"] == "error_reporter_failed" for e in logs)

    @pytest.mark.asyncio
    async def test_default_reporter_is_logging(self, store) -> None:
        queue = MessageQueue(store=store, handler=MagicMock(), config=QueueConfig(max_size=1))
        await queue.stop()
        await queue.enqueue(message_type="first")

        with capture_logs() as logs, pytest.raises(QueueError):
            await queue.enqueue(message_type="second")

        reported = [e for e in logs if e["event"] == "queue_error_reported"]
        assert reported[0]["code"] == "QUEUE_FULL"


class TestSetupLogging:
    """Tests for setup_logging and get_logger."""

    @pytest.fixture
    def package_logger(self):
        from priority_outbox.logging import LOGGER_NAMESPACE

        logger = logging.getLogger(LOGGER_NAMESPACE)
        yield logger
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
        structlog.reset_defaults()

    def test_console_only(self, package_logger) -> None:
        from priority_outbox.logging import setup_logging

        root_handlers = list(logging.root.handlers)
        configured = setup_logging(Settings(_env_file=None, log_level="WARNING"))

        assert configured is package_logger
        assert len(package_logger.handlers) == 1
        assert not isinstance(package_logger.handlers[0], logging.handlers.RotatingFileHandler)
        assert package_logger.level == logging.WARNING
        assert package_logger.propagate is False
        assert logging.root.handlers == root_handlers

    def test_repeated_setup_replaces_handlers(self, package_logger) -> None:
        from priority_outbox.logging import setup_logging

        settings = Settings(_env_file=None)
        setup_logging(settings)
        setup_logging(settings)

        assert len(package_logger.handlers) == 1

    def test_file_logging_writes_json(self, tmp_path, package_logger) -> None:
        from priority_outbox.logging import get_logger, setup_logging

        settings = Settings(
            _env_file=None,
            log_to_file=True,
            log_directory=str(tmp_path / "logs"),
            log_file_prefix="outbox",
        )
        setup_logging(settings)
        get_logger("worker").warning("file_check", answer=42)

        lines = (tmp_path / "logs" / "outbox.log").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["event"] == "file_check"
        assert entry["answer"] == 42
        assert entry["level"] == "warning"
        # Names outside the package namespace are prefixed into it
        assert entry["logger"] == "priority_outbox.worker"

    def test_unusable_log_directory_falls_back_to_console(self, tmp_path, package_logger) -> None:
        from priority_outbox.logging import setup_logging

        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        setup_logging(
            Settings(_env_file=None, log_to_file=True, log_directory=str(blocker / "logs"))
        )

        assert len(package_logger.handlers) == 1

