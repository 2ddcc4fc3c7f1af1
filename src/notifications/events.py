"""State-change events consumed by the notification dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from results import Result, ResultStatus, utcnow

__all__ = [
    "ComplaintStatusChanged",
    "Event",
    "GroupResolved",
    "PushType",
    "ResultCreated",
    "ResultStatusChanged",
    "SystemNotice",
    "UserRegistered",
    "build_message",
]


class PushType(str, Enum):
    """Message types delivered to live observers."""

    NEW_RESULT = "NEW_RESULT"
    RESULT_STATUS_CHANGED = "RESULT_STATUS_CHANGED"
    ANALYTICS_UPDATE = "ANALYTICS_UPDATE"
    NOTIFICATION = "notification"


def build_message(message_type: PushType | str, data: Any) -> Dict[str, Any]:
    """Return the ``{type, data, timestamp}`` envelope pushed to observers."""

    return {
        "type": PushType(message_type).value,
        "data": data,
        "timestamp": utcnow(),
    }


@dataclass(frozen=True, slots=True)
class ResultCreated:
    result: Result
    occurred_at: str = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ResultStatusChanged:
    result: Result
    previous_status: ResultStatus
    actor_id: str
    reason: Optional[str] = None
    group_id: Optional[str] = None
    occurred_at: str = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class GroupResolved:
    group_id: str
    approved_result_id: str
    member_ids: Tuple[str, ...]
    actor_id: str
    reason: str
    occurred_at: str = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class ComplaintStatusChanged:
    """Emitted by the complaints subsystem, which reuses the dispatcher."""

    complaint_id: str
    submitter_id: str
    title: str
    new_status: str
    occurred_at: str = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class UserRegistered:
    user_id: str
    display_name: str
    occurred_at: str = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class SystemNotice:
    user_ids: Tuple[str, ...]
    message: str
    occurred_at: str = field(default_factory=utcnow)


Event = Union[
    ResultCreated,
    ResultStatusChanged,
    GroupResolved,
    ComplaintStatusChanged,
    UserRegistered,
    SystemNotice,
]


def describe(event: Event) -> Mapping[str, Any]:
    """Small log-friendly summary of an event."""

    name = type(event).__name__
    if isinstance(event, (ResultCreated, ResultStatusChanged)):
        return {"event": name, "result_id": event.result.id}
    if isinstance(event, GroupResolved):
        return {"event": name, "group_id": event.group_id}
    if isinstance(event, ComplaintStatusChanged):
        return {"event": name, "complaint_id": event.complaint_id}
    if isinstance(event, UserRegistered):
        return {"event": name, "user_id": event.user_id}
    return {"event": name}
