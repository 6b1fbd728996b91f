"""Explicit per-operation results for remote writes.

Remote calls that may fail return ``Ok(value)`` or ``Err(kind, message)``
instead of raising, so callers branch on the error taxonomy rather than on
exception classes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    """Error taxonomy for remote and data failures."""

    # HTTP 429 only; retried with backoff before it ever reaches a Result
    TRANSIENT = "TRANSIENT"
    # Other 4xx/5xx, malformed JSON, missing expected fields
    PERMANENT = "PERMANENT"
    # Missing staging data, unresolved dependency, ambiguous match
    DATA = "DATA"


@dataclass(frozen=True, slots=True)
class Ok[T]:
    """Successful outcome carrying a value."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err:
    """Failed outcome with a human-readable, already truncated message.

    ``detail`` holds the server-supplied error text alone, without the
    caller prefix, when the failure came from an HTTP response.
    """

    kind: ErrorKind
    message: str
    status_code: int | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return False


type Result[T] = Ok[T] | Err
