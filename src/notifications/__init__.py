"""Notification persistence, live observers and the event dispatcher."""

from .dispatcher import NotificationDispatcher
from .events import (
    ComplaintStatusChanged,
    Event,
    GroupResolved,
    PushType,
    ResultCreated,
    ResultStatusChanged,
    SystemNotice,
    UserRegistered,
    build_message,
)
from .registry import Observer, ObserverRegistry
from .store import Notification, NotificationCategory, NotificationStore, Severity

__all__ = [
    "ComplaintStatusChanged",
    "Event",
    "GroupResolved",
    "Notification",
    "NotificationCategory",
    "NotificationDispatcher",
    "NotificationStore",
    "Observer",
    "ObserverRegistry",
    "PushType",
    "ResultCreated",
    "ResultStatusChanged",
    "Severity",
    "SystemNotice",
    "UserRegistered",
    "build_message",
]
