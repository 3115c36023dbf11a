"""Unit tests for submission_resilience.logging - structlog setup and operation context."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest
import structlog

from submission_resilience.logging import (
    _VALID_LEVELS,
    configure_logging,
    operation_logging_context,
)

if TYPE_CHECKING:
    from pathlib import Path


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_structlog() -> None:
    """Reset structlog state between tests."""
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


def _file_handlers() -> list[logging.Handler]:
    return [
        h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
    ]


def _flush() -> None:
    for h in logging.getLogger().handlers:
        h.flush()


# ---------------------------------------------------------------------------
# configure_logging - levels
# ---------------------------------------------------------------------------


class TestConfigureLoggingLevel:
    """configure_logging validates and applies the level."""

    @pytest.mark.parametrize("level", sorted(_VALID_LEVELS))
    def test_valid_levels_accepted(self, level: str) -> None:
        configure_logging(level=level)
        assert logging.getLogger().level == getattr(logging, level)

    def test_level_is_case_insensitive(self) -> None:
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_level_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging(level="VERBOSE")


# ---------------------------------------------------------------------------
# configure_logging - handlers
# ---------------------------------------------------------------------------


class TestConfigureLoggingFile:
    """configure_logging creates file handlers."""

    def test_file_handler_created(self, tmp_path: Path) -> None:
        configure_logging(log_file=str(tmp_path / "test.log"))
        assert len(_file_handlers()) == 1

    def test_no_file_handler_without_param(self) -> None:
        configure_logging()
        assert _file_handlers() == []

    def test_reconfigure_clears_handlers(self, tmp_path: Path) -> None:
        configure_logging(log_file=tmp_path / "first.log")
        configure_logging(log_file=tmp_path / "second.log")
        assert len(_file_handlers()) == 1

    def test_file_receives_output(self, tmp_path: Path) -> None:
        log_file = tmp_path / "test.log"
        configure_logging(level="INFO", fmt="json", log_file=log_file)

        structlog.get_logger("test_file").info("breaker_opened", operation="docgen")
        _flush()

        assert "breaker_opened" in log_file.read_text()

    def test_missing_parent_directory_created(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "nested" / "app.log"
        configure_logging(log_file=log_file)
        assert log_file.parent.is_dir()


class TestLibraryLoggers:
    """Third-party loggers are held at WARNING unless DEBUG is requested."""

    @pytest.mark.parametrize("name", ["httpx", "sqlalchemy.engine", "uvicorn.access"])
    def test_quiet_at_info(self, name: str) -> None:
        configure_logging(level="INFO")
        assert logging.getLogger(name).level == logging.WARNING

    def test_debug_passes_through(self) -> None:
        configure_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.DEBUG

    def test_error_level_not_lowered(self) -> None:
        configure_logging(level="ERROR")
        assert logging.getLogger("httpcore").level == logging.ERROR


class TestJsonOutput:
    """JSON format produces parseable log lines."""

    def test_json_parseable(self, tmp_path: Path) -> None:
        log_file = tmp_path / "json.log"
        configure_logging(level="INFO", fmt="json", log_file=log_file)

        structlog.get_logger("json_test").info("retry_exhausted", attempts=3)
        _flush()

        parsed = json.loads(log_file.read_text().strip())
        assert parsed["event"] == "retry_exhausted"
        assert parsed["attempts"] == 3
        assert "timestamp" in parsed
        assert parsed["level"] == "info"

    def test_service_name_bound(self, tmp_path: Path) -> None:
        log_file = tmp_path / "svc.log"
        configure_logging(
            fmt="json", log_file=log_file, service_name="submission-resilience"
        )

        structlog.get_logger("svc").warning("health_probe_failed")
        _flush()

        parsed = json.loads(log_file.read_text().strip())
        assert parsed["service"] == "submission-resilience"

    def test_below_level_filtered(self, tmp_path: Path) -> None:
        log_file = tmp_path / "filtered.log"
        configure_logging(level="WARNING", fmt="json", log_file=log_file)

        structlog.get_logger("quiet").info("not_written")
        _flush()

        assert log_file.read_text() == ""

    def test_exception_rendered_as_text(self, tmp_path: Path) -> None:
        log_file = tmp_path / "exc.log"
        configure_logging(level="INFO", fmt="json", log_file=log_file)

        try:
            raise ConnectionResetError("peer reset")
        except ConnectionResetError:
            structlog.get_logger("exc").exception("notification_failed")
        _flush()

        parsed = json.loads(log_file.read_text().strip())
        assert "ConnectionResetError: peer reset" in parsed["exception"]


# ---------------------------------------------------------------------------
# operation_logging_context
# ---------------------------------------------------------------------------


class TestOperationLoggingContext:
    """operation_logging_context binds and unbinds operation metadata."""

    def test_binds_operation_name(self) -> None:
        with operation_logging_context("docgen", policy="google_docs"):
            ctx = structlog.contextvars.get_contextvars()
            assert ctx["operation_name"] == "docgen"
            assert ctx["policy"] == "google_docs"

    def test_unbinds_on_exit(self) -> None:
        with operation_logging_context("docgen"):
            pass
        assert "operation_name" not in structlog.contextvars.get_contextvars()

    def test_unbinds_on_exception(self) -> None:
        with pytest.raises(RuntimeError), operation_logging_context("docgen"):
            raise RuntimeError("boom")
        assert "operation_name" not in structlog.contextvars.get_contextvars()

    def test_nested_restores_outer(self) -> None:
        with operation_logging_context("outer"):
            with operation_logging_context("inner"):
                ctx = structlog.contextvars.get_contextvars()
                assert ctx["operation_name"] == "inner"
            ctx = structlog.contextvars.get_contextvars()
            assert ctx["operation_name"] == "outer"

    def test_context_in_log_output(self, tmp_path: Path) -> None:
        log_file = tmp_path / "ctx.log"
        configure_logging(level="INFO", fmt="json", log_file=log_file)

        with operation_logging_context("email_send") as log:
            log.info("attempt_started", attempt=1)
        _flush()

        parsed = json.loads(log_file.read_text().strip())
        assert parsed["operation_name"] == "email_send"
        assert parsed["logger"] == "submission_resilience.operation"
