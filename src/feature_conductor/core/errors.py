"""Structured operation results and the error taxonomy."""

from dataclasses import dataclass
from typing import Any


class ErrorKind:
    INVALID_TRANSITION = "InvalidTransition"
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    CYCLIC_DEPENDENCY = "CyclicDependency"
    NO_HISTORY = "NoHistory"
    CONCURRENCY_CONFLICT = "ConcurrencyConflict"

    ALL = frozenset({
        INVALID_TRANSITION,
        NOT_FOUND,
        INVALID_STATE,
        CYCLIC_DEPENDENCY,
        NO_HISTORY,
        CONCURRENCY_CONFLICT,
    })


class StorageError(RuntimeError):
    """Raised when a task set cannot be persisted atomically."""


@dataclass(frozen=True)
class Result:
    """Outcome of a workflow, checkpoint or queue operation.

    Failures carry an ``error_kind`` from :class:`ErrorKind` and a human
    readable ``error``. A failed result may still carry a ``value`` (the
    planner returns its partial plan alongside a cycle failure).
    """

    success: bool
    value: Any = None
    error_kind: str | None = None
    error: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, value: Any = None, message: str | None = None) -> "Result":
        return cls(success=True, value=value, message=message)

    @classmethod
    def fail(cls, kind: str, error: str, value: Any = None) -> "Result":
        return cls(success=False, value=value, error_kind=kind, error=error)

    def to_dict(self, value: Any = None) -> dict:
        """Serialize for transports. ``value`` overrides the raw value."""
        out: dict = {"success": self.success}
        payload = value if value is not None else self.value
        if payload is not None:
            out["result"] = payload
        if self.message:
            out["message"] = self.message
        if not self.success:
            out["error_kind"] = self.error_kind
            out["error"] = self.error
        return out
