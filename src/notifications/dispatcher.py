"""Convert state-change events into persisted notifications and live pushes.

:class:`NotificationDispatcher` is the only writer of the notification
table. For every event it persists one notification per addressee and then
attempts a best-effort push to the addressee's live connections. Pushes are
fire-and-forget: a failing channel is logged and dropped, and the persisted
row remains available through :meth:`NotificationDispatcher.list_notifications`.

Batches handed over with :meth:`NotificationDispatcher.submit` run on a
single background worker, so callers never wait on delivery and batches are
handled in the order they were submitted. The analytics overview is pushed
once per batch.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Set

from results import ResultStatus

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
    describe,
)
from .registry import Observer, ObserverRegistry
from .store import Notification, NotificationCategory, NotificationStore, Severity

__all__ = ["NotificationDispatcher"]

LOGGER = logging.getLogger(__name__)

_COMPLAINT_STATUS_MESSAGES = {
    "under_review": "is now under review by our team",
    "resolved": "has been resolved",
    "dismissed": "has been dismissed",
    "escalated_to_mec": "has been escalated to the electoral commission for investigation",
}


class NotificationDispatcher:
    """Own the notification store and the observer registry."""

    def __init__(
        self,
        store: NotificationStore,
        registry: Optional[ObserverRegistry] = None,
        *,
        admin_ids: Callable[[], Iterable[str]] = tuple,
        analytics: Optional[Callable[[], Mapping[str, Any]]] = None,
        page_size: int = 50,
        executor: Optional[Executor] = None,
    ) -> None:
        self.store = store
        self.registry = registry or ObserverRegistry()
        self.admin_ids = admin_ids
        self.analytics = analytics
        self.page_size = page_size
        self._owns_executor = executor is None
        # One worker keeps batches in submission order.
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="notifications")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Background hand-off
    # ------------------------------------------------------------------
    def submit(self, events: Sequence[Event]) -> Optional[Future]:
        """Queue ``events`` for background delivery and return immediately."""

        batch = tuple(events)
        if not batch:
            return None
        try:
            future = self._executor.submit(self.handle, batch)
        except RuntimeError:
            LOGGER.error("Dispatcher is closed; dropping %d event(s)", len(batch))
            return None
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def handle(self, events: Sequence[Event]) -> List[Notification]:
        """Deliver a batch of events and push the analytics overview once."""

        created: List[Notification] = []
        for event in events:
            try:
                created.extend(self.on_state_change(event, push_analytics=False))
            except Exception:  # noqa: BLE001 - one bad event never blocks the rest of the batch
                LOGGER.exception("Notification dispatch failed for %s", type(event).__name__)
        try:
            self._push_analytics()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Analytics push failed")
        return created

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued batches; return ``False`` if ``timeout`` expired first."""

        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        else:
            self.flush()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------
    def on_state_change(self, event: Event, *, push_analytics: bool = True) -> List[Notification]:
        """Persist notifications for ``event`` and push them to live observers."""

        LOGGER.debug("Dispatching %s", describe(event))
        created: List[Notification] = []

        if isinstance(event, ResultCreated):
            result = event.result
            created.append(
                self._create(
                    title="Result Submitted Successfully",
                    message=(
                        f"Your result submission for polling center {result.polling_center_id} "
                        "has been received and is now pending verification."
                    ),
                    severity=Severity.SUCCESS,
                    category=NotificationCategory.RESULT_SUBMISSION,
                    target_user_id=result.submitted_by,
                    related_result_id=result.id,
                )
            )
            if result.is_duplicate:
                for admin_id in self._admins():
                    created.append(
                        self._create(
                            title="Possible Duplicate Submission",
                            message=(
                                f"Result {result.id} for polling center {result.polling_center_id} "
                                f"({result.category.value}) needs review: {result.duplicate_reason}."
                            ),
                            severity=Severity.WARNING,
                            category=NotificationCategory.VERIFICATION,
                            target_user_id=admin_id,
                            related_result_id=result.id,
                        )
                    )
            self.broadcast(PushType.NEW_RESULT, result.dict())

        elif isinstance(event, ResultStatusChanged):
            created.append(self._status_notification(event))
            self.broadcast(PushType.RESULT_STATUS_CHANGED, event.result.dict())

        elif isinstance(event, GroupResolved):
            for admin_id in self._admins():
                created.append(
                    self._create(
                        title="Duplicate Group Resolved",
                        message=(
                            f"Duplicate group {event.group_id} was resolved by {event.actor_id}; "
                            f"result {event.approved_result_id} was approved: {event.reason}"
                        ),
                        severity=Severity.INFO,
                        category=NotificationCategory.VERIFICATION,
                        target_user_id=admin_id,
                        related_result_id=event.approved_result_id,
                    )
                )

        elif isinstance(event, ComplaintStatusChanged):
            suffix = _COMPLAINT_STATUS_MESSAGES.get(event.new_status, "status has been updated")
            created.append(
                self._create(
                    title="Complaint Status Updated",
                    message=f'Your complaint "{event.title}" {suffix}.',
                    severity=Severity.SUCCESS if event.new_status == "resolved" else Severity.INFO,
                    category=NotificationCategory.COMPLAINT,
                    target_user_id=event.submitter_id,
                )
            )

        elif isinstance(event, UserRegistered):
            for admin_id in self._admins():
                created.append(
                    self._create(
                        title="New User Registration",
                        message=f"{event.display_name} has registered and is pending approval.",
                        severity=Severity.INFO,
                        category=NotificationCategory.USER_ACTION,
                        target_user_id=admin_id,
                    )
                )

        elif isinstance(event, SystemNotice):
            for user_id in event.user_ids:
                created.append(
                    self._create(
                        title="System Maintenance Notice",
                        message=event.message,
                        severity=Severity.WARNING,
                        category=NotificationCategory.SYSTEM,
                        target_user_id=user_id,
                    )
                )

        else:
            raise TypeError(f"Unsupported event {type(event).__name__}")

        if push_analytics:
            self._push_analytics()
        return created

    def notify(
        self,
        *,
        title: str,
        message: str,
        severity: Severity,
        category: NotificationCategory,
        target_user_id: str,
        related_result_id: Optional[str] = None,
    ) -> Notification:
        """Create a single notification outside of an event."""

        return self._create(
            title=title,
            message=message,
            severity=severity,
            category=category,
            target_user_id=target_user_id,
            related_result_id=related_result_id,
        )

    # ------------------------------------------------------------------
    # Live push
    # ------------------------------------------------------------------
    def broadcast(self, message_type: PushType, data: Any) -> int:
        """Push a message to every connected observer; return deliveries."""

        return self._deliver(self.registry.snapshot(), build_message(message_type, data))

    def push_to_user(self, user_id: str, message_type: PushType, data: Any) -> int:
        return self._deliver(self.registry.for_user(user_id), build_message(message_type, data))

    # ------------------------------------------------------------------
    # Client surface
    # ------------------------------------------------------------------
    def list_notifications(
        self,
        user_id: str,
        *,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> List[Notification]:
        """Newest first; ``unread_only`` lets a reconnecting client catch up."""

        return self.store.list_for_user(user_id, limit=limit or self.page_size, unread_only=unread_only)

    def unread_count(self, user_id: str) -> int:
        return self.store.unread_count(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        return self.store.mark_read(notification_id, user_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.store.mark_all_read(user_id)

    def delete(self, notification_id: str, user_id: str) -> bool:
        return self.store.delete(notification_id, user_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _status_notification(self, event: ResultStatusChanged) -> Notification:
        result = event.result
        center = result.polling_center_id
        if result.status is ResultStatus.VERIFIED:
            title = "Result Verified"
            message = f"Your result submission for {center} has been verified and approved."
            severity = Severity.SUCCESS
        elif result.status is ResultStatus.FLAGGED:
            title = "Result Flagged for Review"
            message = f"Your result submission for {center} has been flagged: {event.reason}"
            severity = Severity.WARNING
        else:
            title = "Result Rejected"
            message = f"Your result submission for {center} has been rejected: {event.reason}"
            severity = Severity.ERROR
        return self._create(
            title=title,
            message=message,
            severity=severity,
            category=NotificationCategory.VERIFICATION,
            target_user_id=result.submitted_by,
            related_result_id=result.id,
        )

    def _create(self, **fields: Any) -> Notification:
        notification = self.store.create(**fields)
        self.push_to_user(notification.target_user_id, PushType.NOTIFICATION, notification.dict())
        return notification

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _admins(self) -> List[str]:
        return sorted(set(self.admin_ids()))

    def _push_analytics(self) -> None:
        if self.analytics is None or not len(self.registry):
            return
        self.broadcast(PushType.ANALYTICS_UPDATE, dict(self.analytics()))

    def _deliver(self, observers: Iterable[Observer], message: Mapping[str, Any]) -> int:
        delivered = 0
        for observer in observers:
            try:
                observer.send(message)
            except Exception:  # noqa: BLE001 - any transport failure drops the observer
                LOGGER.warning(
                    "Dropping observer %s after failed %s push",
                    observer.connection_id,
                    message.get("type"),
                    exc_info=LOGGER.isEnabledFor(logging.DEBUG),
                )
                self.registry.unregister(observer.connection_id)
            else:
                delivered += 1
        LOGGER.debug("Pushed %s to %d observer(s)", message.get("type"), delivered)
        return delivered
