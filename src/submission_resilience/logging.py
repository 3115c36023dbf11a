"""structlog configuration and per-operation logging context.

Every component logs through structlog bound loggers. Records are routed
through the stdlib root logger so level filtering and the optional log
file behave the same for our events and for third-party libraries
(httpx, SQLAlchemy, uvicorn), whose chatter is held at WARNING unless
DEBUG is requested.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------


_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "uvicorn.access")


def _install_handlers(numeric_level: int, log_file: str | Path | None) -> list[logging.Handler]:
    """Replace the root handlers with stderr plus an optional log file."""
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for old in root_logger.handlers[:]:
        root_logger.removeHandler(old)
        old.close()

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(numeric_level)
        root_logger.addHandler(handler)
    return handlers


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structlog for the application.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: ``"console"`` for human-readable output or ``"json"`` for
            one JSON object per line.
        log_file: Optional file path for log output (in addition to stderr).
        service_name: Optional service name bound to all log entries.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        raise ValueError(msg)
    numeric_level = getattr(logging, level_upper)

    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
        exc_processors: list[structlog.types.Processor] = [
            structlog.processors.format_exc_info
        ]
    else:
        renderer = structlog.dev.ConsoleRenderer()
        exc_processors = []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            *exc_processors,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in _install_handlers(numeric_level, log_file):
        handler.setFormatter(formatter)

    library_level = (
        numeric_level
        if numeric_level == logging.DEBUG
        else max(numeric_level, logging.WARNING)
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)


# ---------------------------------------------------------------------------
# Operation logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def operation_logging_context(
    operation_name: str,
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind operation-level metadata to structlog for the enclosed block.

    Args:
        operation_name: Name of the operation being executed.
        **extra: Additional key-value pairs to bind (e.g. ``policy``).

    Yields:
        A bound structlog logger carrying the operation context.

    Example::

        with operation_logging_context("docgen", policy="google_docs") as log:
            log.info("attempt_started", attempt=1)
    """
    bound = structlog.contextvars.bind_contextvars(
        operation_name=operation_name,
        **extra,
    )

    log: structlog.stdlib.BoundLogger = structlog.get_logger(
        "submission_resilience.operation"
    )
    try:
        yield log
    finally:
        structlog.contextvars.reset_contextvars(**bound)
