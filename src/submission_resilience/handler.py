"""Error classifier and handler.

The single place where failures become ``StandardError`` records: they
are classified, persisted, logged and, when the code or kind demands
it, forwarded to the admin notifier in the background.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from submission_resilience.errors import (
    ErrorCode,
    ErrorKind,
    ErrorTraits,
    StandardError,
    classify,
)
from submission_resilience.exceptions import (
    ClassifiedError,
    ConfigurationError,
    OperationFailedError,
    RecoveryStoreError,
)

if TYPE_CHECKING:
    from submission_resilience.store import RecoveryStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, error: StandardError) -> None: ...


class Classification(NamedTuple):
    """``(kind, code)`` inferred for an exception, plus extra context."""

    kind: ErrorKind
    code: ErrorCode
    message: str
    context: dict[str, Any]


_STATUS_CODES: dict[int, tuple[ErrorKind, ErrorCode]] = {
    400: (ErrorKind.USER, ErrorCode.VALIDATION_FAILED),
    401: (ErrorKind.USER, ErrorCode.UNAUTHORIZED),
    403: (ErrorKind.USER, ErrorCode.FORBIDDEN),
    404: (ErrorKind.USER, ErrorCode.NOT_FOUND),
    409: (ErrorKind.USER, ErrorCode.CONFLICT),
    422: (ErrorKind.USER, ErrorCode.VALIDATION_FAILED),
    429: (ErrorKind.TEMPORARY, ErrorCode.RATE_LIMIT_EXCEEDED),
    503: (ErrorKind.TEMPORARY, ErrorCode.SERVICE_UNAVAILABLE),
}


def _cause_text(cause: BaseException | str | None) -> str | None:
    if cause is None:
        return None
    if isinstance(cause, BaseException):
        text = str(cause)
        return f"{type(cause).__name__}: {text}" if text else type(cause).__name__
    return cause


def _retry_after_seconds(response: httpx.Response) -> float | None:
    raw = response.headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


class ErrorHandler:
    """Classify, persist, log and alert on failures."""

    def __init__(
        self,
        store: RecoveryStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._alert_tasks: set[asyncio.Task[None]] = set()

    @staticmethod
    def classify(kind: ErrorKind, code: ErrorCode) -> ErrorTraits:
        return classify(kind, code)

    async def handle(
        self,
        kind: ErrorKind,
        code: ErrorCode,
        message: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | str | None = None,
    ) -> StandardError:
        """Record a failure and return its ``StandardError``.

        Never raises: a store failure is logged once and the record is
        still returned to the caller.
        """
        error = StandardError(
            kind=kind,
            code=code,
            message=message,
            context=dict(context or {}),
            cause=_cause_text(cause),
        )
        await self._persist(error)

        traits = error.traits
        if kind is ErrorKind.USER:
            log_method = logger.info
        elif kind is ErrorKind.SYSTEM:
            log_method = logger.error
        else:
            log_method = logger.warning
        log_method(
            "error_handled",
            error_id=error.id,
            kind=kind.value,
            code=code.value,
            message=message,
            recoverable=traits.is_recoverable,
            operation_name=error.context.get("operation_name"),
        )

        if traits.requires_alert:
            self._schedule_alert(error)
        return error

    async def handle_exception(
        self,
        exc: BaseException,
        context: dict[str, Any] | None = None,
        default_kind: ErrorKind = ErrorKind.SYSTEM,
        default_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
    ) -> StandardError:
        """Classify ``exc`` and hand it to :meth:`handle`."""
        classification = self.classify_exception(exc, default_kind, default_code)
        merged = {**classification.context, **(context or {})}
        return await self.handle(
            classification.kind,
            classification.code,
            classification.message,
            context=merged,
            cause=exc,
        )

    async def resolve(self, error_id: str) -> bool:
        """Mark an error resolved. A second call is a no-op returning ``False``."""
        if self._store is None:
            return False
        changed = await asyncio.to_thread(self._store.resolve_error, error_id)
        if changed:
            logger.info("error_resolved", error_id=error_id)
        return changed

    @staticmethod
    def classify_exception(
        exc: BaseException,
        default_kind: ErrorKind = ErrorKind.INTEGRATION,
        default_code: ErrorCode = ErrorCode.DEPENDENCY_ERROR,
    ) -> Classification:
        """Infer ``(kind, code)`` from a raw exception."""
        message = str(exc) or type(exc).__name__

        if isinstance(exc, ClassifiedError):
            return Classification(exc.kind, exc.code, exc.message, dict(exc.context))
        if isinstance(exc, OperationFailedError):
            inner = exc.error
            return Classification(
                inner.kind, inner.code, inner.message, {"attempts": exc.attempts}
            )
        # TimeoutError must be checked before OSError, it subclasses it.
        if isinstance(exc, TimeoutError | httpx.TimeoutException):
            return Classification(ErrorKind.TEMPORARY, ErrorCode.TIMEOUT, message, {})
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            context: dict[str, Any] = {"http_status": status}
            if status in _STATUS_CODES:
                kind, code = _STATUS_CODES[status]
            elif status >= 500:
                kind, code = ErrorKind.INTEGRATION, ErrorCode.DEPENDENCY_ERROR
            else:
                kind, code = default_kind, default_code
            if code is ErrorCode.RATE_LIMIT_EXCEEDED:
                retry_after = _retry_after_seconds(exc.response)
                if retry_after is not None:
                    context["retry_after"] = retry_after
            return Classification(kind, code, message, context)
        if isinstance(exc, httpx.TransportError | ConnectionError):
            return Classification(
                ErrorKind.INTEGRATION, ErrorCode.DEPENDENCY_ERROR, message, {}
            )
        if isinstance(exc, ValidationError):
            return Classification(
                ErrorKind.USER,
                ErrorCode.VALIDATION_FAILED,
                message,
                {"error_count": exc.error_count()},
            )
        if isinstance(exc, SQLAlchemyError | RecoveryStoreError):
            return Classification(
                ErrorKind.SYSTEM, ErrorCode.DATASTORE_ERROR, message, {}
            )
        if isinstance(exc, ConfigurationError):
            return Classification(
                ErrorKind.SYSTEM, ErrorCode.CONFIGURATION_ERROR, message, {}
            )
        if isinstance(exc, FileNotFoundError | PermissionError | IsADirectoryError):
            return Classification(
                ErrorKind.SYSTEM, ErrorCode.FILE_SYSTEM_ERROR, message, {}
            )
        return Classification(default_kind, default_code, message, {})

    @staticmethod
    def to_response(error: StandardError) -> dict[str, Any]:
        """User-facing payload. Never contains the underlying cause."""
        return {
            "error": {
                "code": error.code.value,
                "message": error.user_message,
                "correlation_id": error.id,
                "retryable": error.is_recoverable,
            }
        }

    async def drain(self) -> None:
        """Wait for in-flight alert deliveries."""
        if self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    # -- internals ----------------------------------------------------------

    async def _persist(self, error: StandardError) -> None:
        if self._store is None:
            return
        try:
            await asyncio.to_thread(self._store.save_error, error)
        except Exception as exc:
            logger.error(
                "error_persist_failed",
                error_id=error.id,
                code=error.code.value,
                reason=str(exc),
            )

    def _schedule_alert(self, error: StandardError) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._deliver_alert(self._notifier, error))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    async def _deliver_alert(self, notifier: Notifier, error: StandardError) -> None:
        try:
            await notifier.notify(error)
        except Exception as exc:
            logger.warning("admin_alert_failed", error_id=error.id, reason=str(exc))
