"""Centralized exception hierarchy for the submission-resilience package.

All package exceptions inherit from ``ResilienceError`` so callers can
catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from submission_resilience.errors import ErrorCode, ErrorKind, StandardError


class ResilienceError(Exception):
    """Base exception for all submission-resilience errors."""


# ---------------------------------------------------------------------------
# Raised by collaborator operations
# ---------------------------------------------------------------------------


class ClassifiedError(ResilienceError):
    """Raised by an operation that already knows its failure kind and code.

    The retry executor and the request boundary use the given kind and
    code verbatim instead of inferring them from the exception type.
    """

    def __init__(
        self,
        kind: ErrorKind,
        code: ErrorCode,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message
        self.context = dict(context or {})


# ---------------------------------------------------------------------------
# Executor outcomes
# ---------------------------------------------------------------------------


class OperationFailedError(ResilienceError):
    """Terminal failure of an operation run under the retry executor."""

    def __init__(self, error: StandardError, attempts: int) -> None:
        super().__init__(f"{error.code}: {error.message}")
        self.error = error
        self.attempts = attempts


class CircuitOpenError(OperationFailedError):
    """Raised when the circuit breaker rejected the call outright."""


# ---------------------------------------------------------------------------
# Persistence / administration errors
# ---------------------------------------------------------------------------


class RecoveryStoreError(ResilienceError):
    """Raised when the recovery store cannot read or write a record."""


class OperationNotFoundError(ResilienceError):
    """Raised for an unknown recovery operation id or operation name."""


class InvalidOperationStateError(ResilienceError):
    """Raised when an administrative action is not allowed in the current status."""


class ConfigurationError(ResilienceError):
    """Raised when runtime wiring is inconsistent with the loaded settings."""
