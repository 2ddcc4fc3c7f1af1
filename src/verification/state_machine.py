"""Transition table for the result verification lifecycle."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Tuple

from results import ResultStatus, StateError, ValidationError

__all__ = ["Action", "TERMINAL_STATES", "TRANSITIONS", "next_status", "require_reason"]


class Action(str, Enum):
    VERIFY = "verify"
    FLAG = "flag"
    REJECT = "reject"


TRANSITIONS: Mapping[Tuple[ResultStatus, Action], ResultStatus] = {
    (ResultStatus.PENDING, Action.VERIFY): ResultStatus.VERIFIED,
    (ResultStatus.PENDING, Action.FLAG): ResultStatus.FLAGGED,
    (ResultStatus.PENDING, Action.REJECT): ResultStatus.REJECTED,
}

TERMINAL_STATES = frozenset({ResultStatus.VERIFIED, ResultStatus.FLAGGED, ResultStatus.REJECTED})

_REASON_REQUIRED = frozenset({Action.FLAG, Action.REJECT})


def require_reason(action: Action, reason: Optional[str]) -> Optional[str]:
    """Return the cleaned reason, raising when ``action`` needs one."""

    cleaned = (reason or "").strip() or None
    if action in _REASON_REQUIRED and cleaned is None:
        raise ValidationError(f"A reason is required to {action.value} a result.", action=action.value)
    return cleaned


def next_status(current: ResultStatus, action: Action, *, result_id: Optional[str] = None) -> ResultStatus:
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise StateError(
            f"Cannot {action.value} a result that is already {current.value}.",
            result_id=result_id,
            current_status=current.value,
            action=action.value,
        ) from None
