"""Error taxonomy, classification table and the StandardError record.

Every ``ErrorCode`` has exactly one entry in ``CODE_TRAITS``. Adding a
code without deciding its HTTP status, recoverability and alerting is
caught by the test suite, so classification sites never fall through to
an implicit default.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    """Who is responsible for a failure and how it is treated."""

    USER = "user"
    SYSTEM = "system"
    INTEGRATION = "integration"
    TEMPORARY = "temporary"


class ErrorCode(StrEnum):
    """Stable failure identifiers."""

    # User
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # System
    DATASTORE_ERROR = "DATASTORE_ERROR"
    FILE_SYSTEM_ERROR = "FILE_SYSTEM_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    # Integration
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    GOOGLE_API_ERROR = "GOOGLE_API_ERROR"
    OPENAI_API_ERROR = "OPENAI_API_ERROR"
    GEMINI_API_ERROR = "GEMINI_API_ERROR"
    ACTION_NETWORK_ERROR = "ACTION_NETWORK_ERROR"
    EMAIL_DELIVERY_ERROR = "EMAIL_DELIVERY_ERROR"

    # Temporary
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------


class CodeTraits(BaseModel):
    """Static properties of a single error code."""

    model_config = ConfigDict(frozen=True)

    home_kind: ErrorKind
    http_status: int
    is_recoverable: bool
    requires_alert: bool = False
    user_message: str | None = None


class ErrorTraits(BaseModel):
    """Result of classifying a ``(kind, code)`` pair."""

    model_config = ConfigDict(frozen=True)

    http_status: int
    is_recoverable: bool
    requires_alert: bool
    user_message: str


GENERIC_USER_MESSAGE = (
    "Something went wrong on our side. Please try again later and quote "
    "the reference below if the problem persists."
)

CODE_TRAITS: dict[ErrorCode, CodeTraits] = {
    ErrorCode.VALIDATION_FAILED: CodeTraits(
        home_kind=ErrorKind.USER,
        http_status=400,
        is_recoverable=False,
        user_message="Please check your input and try again.",
    ),
    ErrorCode.UNAUTHORIZED: CodeTraits(
        home_kind=ErrorKind.USER,
        http_status=401,
        is_recoverable=False,
        user_message="You need to be logged in to perform this action.",
    ),
    ErrorCode.FORBIDDEN: CodeTraits(
        home_kind=ErrorKind.USER,
        http_status=403,
        is_recoverable=False,
        user_message="You do not have permission to perform this action.",
    ),
    ErrorCode.NOT_FOUND: CodeTraits(
        home_kind=ErrorKind.USER,
        http_status=404,
        is_recoverable=False,
        user_message="The requested resource was not found.",
    ),
    ErrorCode.CONFLICT: CodeTraits(
        home_kind=ErrorKind.USER,
        http_status=409,
        is_recoverable=False,
        user_message="This change conflicts with the current state. Refresh and try again.",
    ),
    ErrorCode.DATASTORE_ERROR: CodeTraits(
        home_kind=ErrorKind.SYSTEM,
        http_status=500,
        is_recoverable=False,
        requires_alert=True,
    ),
    ErrorCode.FILE_SYSTEM_ERROR: CodeTraits(
        home_kind=ErrorKind.SYSTEM,
        http_status=500,
        is_recoverable=False,
        requires_alert=True,
    ),
    ErrorCode.CONFIGURATION_ERROR: CodeTraits(
        home_kind=ErrorKind.SYSTEM,
        http_status=500,
        is_recoverable=False,
        requires_alert=True,
    ),
    ErrorCode.INTERNAL_ERROR: CodeTraits(
        home_kind=ErrorKind.SYSTEM,
        http_status=500,
        is_recoverable=False,
        requires_alert=True,
    ),
    ErrorCode.DEPENDENCY_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.GOOGLE_API_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.OPENAI_API_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.GEMINI_API_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.ACTION_NETWORK_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.EMAIL_DELIVERY_ERROR: CodeTraits(
        home_kind=ErrorKind.INTEGRATION,
        http_status=502,
        is_recoverable=True,
    ),
    ErrorCode.RATE_LIMIT_EXCEEDED: CodeTraits(
        home_kind=ErrorKind.TEMPORARY,
        http_status=429,
        is_recoverable=True,
    ),
    ErrorCode.TIMEOUT: CodeTraits(
        home_kind=ErrorKind.TEMPORARY,
        http_status=503,
        is_recoverable=True,
    ),
    ErrorCode.SERVICE_UNAVAILABLE: CodeTraits(
        home_kind=ErrorKind.TEMPORARY,
        http_status=503,
        is_recoverable=True,
    ),
    ErrorCode.QUOTA_EXCEEDED: CodeTraits(
        home_kind=ErrorKind.TEMPORARY,
        http_status=429,
        is_recoverable=True,
    ),
    ErrorCode.CIRCUIT_OPEN: CodeTraits(
        home_kind=ErrorKind.TEMPORARY,
        http_status=503,
        is_recoverable=True,
    ),
}

# Kind-level overrides applied on top of the code table.
_KIND_RECOVERABLE: dict[ErrorKind, bool] = {
    ErrorKind.USER: False,
    ErrorKind.SYSTEM: False,
    ErrorKind.INTEGRATION: True,
    ErrorKind.TEMPORARY: True,
}
_KIND_ALERTS: dict[ErrorKind, bool] = {
    ErrorKind.USER: False,
    ErrorKind.SYSTEM: True,
    ErrorKind.INTEGRATION: False,
    ErrorKind.TEMPORARY: False,
}


def classify(kind: ErrorKind, code: ErrorCode) -> ErrorTraits:
    """Derive the handling traits for a ``(kind, code)`` pair.

    The result is a pure function of the two enums: a code is only
    recoverable when both the code and its kind allow retries, and an
    alert is raised when either the code or the kind demands one.
    """
    traits = CODE_TRAITS[code]
    if kind is ErrorKind.USER and traits.user_message:
        message = traits.user_message
    else:
        message = GENERIC_USER_MESSAGE
    return ErrorTraits(
        http_status=traits.http_status,
        is_recoverable=traits.is_recoverable and _KIND_RECOVERABLE[kind],
        requires_alert=traits.requires_alert or _KIND_ALERTS[kind],
        user_message=message,
    )


def home_kind(code: ErrorCode) -> ErrorKind:
    """Return the kind a code normally belongs to."""
    return CODE_TRAITS[code].home_kind


# ---------------------------------------------------------------------------
# StandardError
# ---------------------------------------------------------------------------


def generate_error_id() -> str:
    """Generate a correlation identifier for a StandardError."""
    return f"err_{uuid.uuid4().hex[:16]}"


class StandardError(BaseModel):
    """Canonical failure record.

    Immutable once written, except for ``resolved`` and ``resolved_at``
    which are changed by producing an updated copy.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_error_id)
    kind: ErrorKind
    code: ErrorCode
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
    cause: str | None = Field(
        default=None, description="Underlying exception text, diagnostics only."
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    resolved: bool = False
    resolved_at: datetime | None = None

    @property
    def traits(self) -> ErrorTraits:
        return classify(self.kind, self.code)

    @property
    def http_status(self) -> int:
        return self.traits.http_status

    @property
    def is_recoverable(self) -> bool:
        return self.traits.is_recoverable

    @property
    def user_message(self) -> str:
        return self.traits.user_message

    def with_context(self, **extra: Any) -> StandardError:
        """Return a copy with additional context keys."""
        return self.model_copy(update={"context": {**self.context, **extra}})

    def mark_resolved(self, at: datetime | None = None) -> StandardError:
        """Return a resolved copy; already-resolved records are returned as-is."""
        if self.resolved:
            return self
        return self.model_copy(
            update={"resolved": True, "resolved_at": at or datetime.now(tz=UTC)}
        )


class ErrorFilter(BaseModel):
    """Query filter for unresolved error listings."""

    kind: ErrorKind | None = None
    code: ErrorCode | None = None
    operation_name: str | None = None
    since: datetime | None = None
    limit: int = Field(default=100, ge=1, le=1000)


class ErrorStatistics(BaseModel):
    """Aggregated counts for one ``(kind, code)`` pair."""

    kind: ErrorKind
    code: ErrorCode
    count: int = Field(default=0, ge=0)
    resolved_count: int = Field(default=0, ge=0)
    unresolved_count: int = Field(default=0, ge=0)
