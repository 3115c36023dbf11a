"""Request-boundary decorator.

Entry points wrapped with :func:`error_boundary` never propagate
exceptions: failures are classified through the error handler and come
back as ``Outcome(error=...)``.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from typing import Any, Generic, ParamSpec, TypeVar

from pydantic import BaseModel

from submission_resilience.errors import ErrorCode, ErrorKind, StandardError
from submission_resilience.exceptions import OperationFailedError
from submission_resilience.handler import ErrorHandler

P = ParamSpec("P")
T = TypeVar("T")


class Outcome(BaseModel, Generic[T]):
    """Either a value or the ``StandardError`` that prevented it."""

    value: T | None = None
    error: StandardError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def response(self) -> dict[str, Any]:
        """Payload for the caller: the value, or the user-facing error."""
        if self.error is None:
            return {"data": self.value}
        return ErrorHandler.to_response(self.error)


def error_boundary(
    handler: ErrorHandler,
    *,
    operation: str | None = None,
    default_kind: ErrorKind = ErrorKind.SYSTEM,
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[Outcome[T]]]]:
    """Wrap an async entry point so it returns an :class:`Outcome`.

    Failures already recorded by the retry executor are passed through
    as-is; anything else is handled once with ``default_kind`` and
    ``default_code`` unless the exception maps to a more specific code.
    """

    def decorator(
        fn: Callable[P, Awaitable[T]],
    ) -> Callable[P, Awaitable[Outcome[T]]]:
        name = operation or fn.__name__

        @functools.wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Outcome[T]:
            try:
                value = await fn(*args, **kwargs)
            except OperationFailedError as exc:
                return Outcome(error=exc.error)
            except Exception as exc:
                error = await handler.handle_exception(
                    exc,
                    context={"operation_name": name},
                    default_kind=default_kind,
                    default_code=default_code,
                )
                return Outcome(error=error)
            return Outcome(value=value)

        return wrapper

    return decorator
