"""Error taxonomy shared by every component of the results engine.

Each error carries a ``context`` mapping with the identifiers and current
state a caller needs to decide its next action. None of them are retried by
the engine itself.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "ConflictError",
    "EngineError",
    "NotFoundError",
    "PermissionDeniedError",
    "StateError",
    "ValidationError",
]


class EngineError(Exception):
    """Base class for errors surfaced by the results engine."""

    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }

    def as_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "context": dict(self.context)}


class ValidationError(EngineError, ValueError):
    """Malformed submission or missing mandatory reason."""


class ConflictError(EngineError):
    """Concurrent or contradictory decision that needs a human to re-decide."""

    retryable = True


class NotFoundError(EngineError, LookupError):
    """Unknown result or duplicate group identifier."""

    def __init__(self, message: str, *, entity: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, entity=entity, **context)


class StateError(EngineError):
    """Transition attempted from a state that does not allow it."""


class PermissionDeniedError(EngineError):
    """Actor does not hold a role allowed to perform the operation."""
