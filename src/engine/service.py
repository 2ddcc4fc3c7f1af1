"""Facade exposing the result verification and reconciliation engine.

:class:`ResultsEngine` wires the result store, duplicate detector,
verification service, reconciliation comparator and notification dispatcher
together and exposes the operations the surrounding system calls. It plays
the role of the processing orchestrator: every public method maps to one
externally visible operation. Notifications for an operation are queued on
the dispatcher's background worker and never delay the caller.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import pydantic

from duplicates import DuplicateDetector
from exporter import CsvExporter, ExportResult
from matching import ComparisonRow, ReconciliationComparator
from notifications import (
    Event,
    Notification,
    NotificationDispatcher,
    NotificationStore,
    ObserverRegistry,
    ResultCreated,
)
from results import (
    Actor,
    AuditEntry,
    Category,
    Result,
    ResultStatus,
    ResultStore,
    ResultSubmission,
    Source,
    ValidationError,
    new_identifier,
    tallies_for,
    utcnow,
)
from verification import Action, VerificationService

from .config import EnginePolicy

__all__ = ["ResultsEngine"]

LOGGER = logging.getLogger(__name__)


class ResultsEngine:
    """Entry point for submissions, reviewer decisions and reconciliation."""

    def __init__(
        self,
        db_path: Path | str = Path("data/results.db"),
        *,
        policy: Optional[EnginePolicy] = None,
        registry: Optional[ObserverRegistry] = None,
        admin_ids: Callable[[], Iterable[str]] = tuple,
        registered_centers: Optional[int] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.policy = policy or EnginePolicy()
        self.registered_centers = registered_centers
        self.store = ResultStore(db_path=self.db_path)
        self.detector = DuplicateDetector(self.store, self.policy)
        self.comparator = ReconciliationComparator(self.policy)
        self.dispatcher = NotificationDispatcher(
            NotificationStore(db_path=self.db_path),
            registry,
            admin_ids=admin_ids,
            analytics=self.analytics,
            page_size=self.policy.notification_page_size,
        )
        self.verification = VerificationService(self.store, self.policy, on_event=self.dispatcher.submit)

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------
    def submit_result(self, data: Mapping[str, Any] | ResultSubmission, actor: Actor) -> Result:
        """Store a new submission, run duplicate detection and notify observers.

        Raises
        ------
        ValidationError
            If the payload fails the schema check or its total does not equal
            ``invalid_votes`` plus the sum of the tallies. Nothing is stored.
        """

        submission = self._validate_submission(data)
        expected_total = submission.expected_total()
        total_votes = submission.total_votes if submission.total_votes is not None else expected_total
        if total_votes != expected_total:
            raise ValidationError(
                "Total votes must equal invalid votes plus the sum of candidate votes.",
                polling_center_id=submission.polling_center_id,
                total_votes=total_votes,
                expected_total=expected_total,
            )

        try:
            tallies = tallies_for(submission.category, submission.votes)
        except ValueError as exc:
            raise ValidationError(str(exc), polling_center_id=submission.polling_center_id) from exc

        timestamp = utcnow()
        result = Result(
            id=new_identifier(),
            polling_center_id=submission.polling_center_id,
            constituency=submission.constituency,
            category=submission.category,
            tallies=tallies,
            invalid_votes=submission.invalid_votes,
            total_votes=total_votes,
            source=submission.source,
            submission_channel=submission.submission_channel,
            submitted_by=actor.id,
            comments=submission.comments,
            created_at=timestamp,
            updated_at=timestamp,
        )

        with self.store.locks.hold(("siblings", *result.sibling_key)):
            with self.store.transaction() as conn:
                self.store.insert(conn, result)
                match = self.detector.detect(conn, result)
                self.store.append_audit(
                    conn,
                    result_id=result.id,
                    actor_id=actor.id,
                    action="submit",
                    new_status=ResultStatus.PENDING,
                    summary=match.reason,
                )

            stored = match.result
            LOGGER.info(
                "Result %s submitted by %s for %s/%s (%s)%s",
                stored.id,
                actor.id,
                stored.polling_center_id,
                stored.category.value,
                stored.source.value,
                f" in duplicate group {stored.duplicate_group_id}" if stored.is_duplicate else "",
            )
            # Queued under the sibling lock so it precedes any later transition.
            self.publish(ResultCreated(result=stored))
        return stored

    def get_result(self, result_id: str) -> Result:
        return self.store.require(result_id)

    def list_results(
        self,
        *,
        status: Optional[ResultStatus | str] = None,
        source: Optional[Source | str] = None,
        category: Optional[Category | str] = None,
    ) -> List[Result]:
        return self.store.list_results(
            status=ResultStatus(status) if status else None,
            source=Source(source) if source else None,
            category=Category(category) if category else None,
        )

    def audit_trail(self, result_id: str) -> List[AuditEntry]:
        self.store.require(result_id)
        return self.store.fetch_audit_trail(result_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------
    def transition(
        self,
        result_id: str,
        actor: Actor,
        action: Action | str,
        reason: Optional[str] = None,
    ) -> Result:
        return self.verification.transition(result_id, actor, action, reason)

    def resolve_group(self, group_id: str, actor: Actor, approved_result_id: str, reason: str) -> List[Result]:
        return self.verification.resolve_group(group_id, actor, approved_result_id, reason)

    def list_duplicate_groups(self) -> Dict[str, List[Result]]:
        return self.store.list_duplicate_groups()

    def get_group(self, group_id: str) -> List[Result]:
        _, members = self.verification.load_group(group_id)
        return members

    def describe_group(self, group_id: str) -> Dict[str, object]:
        group, members = self.verification.load_group(group_id)
        return group.dict({member.id: member for member in members})

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def compare(
        self,
        category: Optional[Category | str] = None,
        constituency: Optional[str] = None,
    ) -> List[ComparisonRow]:
        """Recompute comparison rows from the current store contents."""

        category_filter = Category(category) if category else None
        excluded = (ResultStatus.REJECTED,)
        internal = self.store.list_results(
            source=Source.INTERNAL,
            category=category_filter,
            constituency=constituency,
            exclude_statuses=excluded,
        )
        official = self.store.list_results(
            source=Source.OFFICIAL,
            category=category_filter,
            constituency=constituency,
            exclude_statuses=excluded,
        )
        return self.comparator.compare(internal, official)

    def reconciliation_summary(
        self,
        category: Optional[Category | str] = None,
        constituency: Optional[str] = None,
    ) -> Dict[str, int]:
        return self.comparator.summarize(self.compare(category, constituency))

    def export_comparison(
        self,
        output_dir: Optional[Path | str] = None,
        *,
        category: Optional[Category | str] = None,
        constituency: Optional[str] = None,
    ) -> ExportResult:
        exporter = CsvExporter(output_dir=output_dir or self.db_path.parent / "exports")
        return exporter.export(self.compare(category, constituency))

    def analytics(self) -> Dict[str, object]:
        from dashboard.analytics import compute_overview

        return compute_overview(
            self.store,
            registered_centers=self.registered_centers,
            recent_limit=self.policy.recent_activity_limit,
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def publish(self, *events: Event) -> None:
        """Queue ``events`` for background delivery; failures are logged, never raised."""

        try:
            self.dispatcher.submit(events)
        except Exception:  # noqa: BLE001 - delivery never fails the triggering operation
            LOGGER.exception("Notification hand-off failed for %d event(s)", len(events))

    def flush_notifications(self, timeout: Optional[float] = None) -> bool:
        """Block until queued notifications are delivered."""

        return self.dispatcher.flush(timeout)

    def close(self) -> None:
        self.dispatcher.close()

    def list_notifications(
        self,
        user_id: str,
        *,
        limit: Optional[int] = None,
        unread_only: bool = False,
    ) -> List[Notification]:
        return self.dispatcher.list_notifications(user_id, limit=limit, unread_only=unread_only)

    def unread_count(self, user_id: str) -> int:
        return self.dispatcher.unread_count(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        return self.dispatcher.mark_read(notification_id, user_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.dispatcher.mark_all_read(user_id)

    def delete_notification(self, notification_id: str, user_id: str) -> bool:
        return self.dispatcher.delete(notification_id, user_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_submission(data: Mapping[str, Any] | ResultSubmission) -> ResultSubmission:
        if isinstance(data, ResultSubmission):
            return data
        try:
            return ResultSubmission.model_validate(dict(data))
        except pydantic.ValidationError as exc:
            problems = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
            ]
            raise ValidationError("Result submission failed schema validation.", errors=problems) from exc
