"""Verification workflow for result submissions.

:class:`VerificationService` moves individual results through the
``pending -> verified | flagged | rejected`` lifecycle and resolves duplicate
groups to a single canonical member. Every mutation runs inside one store
transaction, writes an ``audit_log`` entry per affected result, and hands
the resulting state-change events to the sink as one batch once the
transaction has committed. At most one result per polling center, category
and source is ever ``verified``.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from duplicates import DuplicateGroup
from engine.config import EnginePolicy
from notifications.events import Event, GroupResolved, ResultStatusChanged
from results import (
    Actor,
    ConflictError,
    GroupResolution,
    NotFoundError,
    PermissionDeniedError,
    Result,
    ResultStatus,
    ResultStore,
    ValidationError,
    utcnow,
)

from .state_machine import Action, next_status, require_reason

__all__ = ["VerificationService"]

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[Sequence[Event]], None]


class VerificationService:
    """Apply reviewer decisions to results and duplicate groups."""

    def __init__(
        self,
        store: ResultStore,
        policy: Optional[EnginePolicy] = None,
        *,
        on_event: Optional[EventSink] = None,
    ) -> None:
        self.store = store
        self.policy = policy or EnginePolicy()
        self.on_event = on_event

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def transition(
        self,
        result_id: str,
        actor: Actor,
        action: Action | str,
        reason: Optional[str] = None,
    ) -> Result:
        """Apply ``action`` to a pending result and return the updated record.

        Raises
        ------
        ValidationError
            If ``action`` is unknown or a mandatory reason is missing.
        PermissionDeniedError
            If the actor does not hold a reviewer role.
        NotFoundError
            If the result does not exist.
        StateError
            If the result is no longer pending.
        ConflictError
            If another result for the same polling center, category and
            source is already verified, whether or not it shares a duplicate
            group with this one.
        """

        action = self._coerce_action(action)
        cleaned_reason = require_reason(action, reason)
        self._authorise(actor, f"{action.value} results")

        current = self.store.require(result_id)
        with self.store.locks.hold(("siblings", *current.sibling_key)):
            with self.store.transaction() as conn:
                current = self.store.require(result_id, conn=conn)
                target = next_status(current.status, action, result_id=result_id)

                if target is ResultStatus.VERIFIED:
                    self._ensure_single_verified(conn, current)

                timestamp = utcnow()
                changes: Dict[str, object] = {"status": target, "updated_at": timestamp}
                if target is ResultStatus.VERIFIED:
                    changes.update(verified_by=actor.id, verified_at=timestamp)
                else:
                    changes["status_reason"] = cleaned_reason
                updated = current.evolve(**changes)

                self.store.update(conn, updated)
                self.store.append_audit(
                    conn,
                    result_id=result_id,
                    actor_id=actor.id,
                    action=action.value,
                    old_status=current.status,
                    new_status=target,
                    summary=cleaned_reason,
                )

            LOGGER.info(
                "Result %s moved %s -> %s by %s",
                result_id,
                current.status.value,
                target.value,
                actor.id,
            )
            # Queued while the sibling lock is held so events leave in commit order.
            self._emit(
                [
                    ResultStatusChanged(
                        result=updated,
                        previous_status=current.status,
                        actor_id=actor.id,
                        reason=cleaned_reason,
                    )
                ]
            )
        return updated

    def resolve_group(
        self,
        group_id: str,
        actor: Actor,
        approved_result_id: str,
        reason: str,
    ) -> List[Result]:
        """Resolve a duplicate group to ``approved_result_id``.

        The approved member becomes ``verified``; every other member that is
        not already rejected becomes ``rejected``. The whole group is updated
        in one transaction. If any other result for the same tally is already
        verified, inside the group or not, the call fails with
        :class:`ConflictError` and nothing changes.
        """

        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            raise ValidationError("A reason is required to resolve a duplicate group.", group_id=group_id)
        self._authorise(actor, "resolve duplicate groups")

        transitions: List[Tuple[Result, ResultStatus]] = []
        keys: List[Tuple[str, ...]] = [("group", group_id)]
        # Members share one sibling key; holding it orders events against transitions.
        keys.extend({("siblings", *member.sibling_key) for member in self.store.fetch_group(group_id)})
        with self.store.locks.hold(*keys):
            with self.store.transaction() as conn:
                members = self.store.fetch_group(group_id, conn=conn)
                if not members:
                    raise NotFoundError(
                        f"Duplicate group {group_id} not found.", entity="group", group_id=group_id
                    )

                existing = self.store.get_resolution(group_id, conn=conn)
                if existing is not None:
                    raise ConflictError(
                        f"Duplicate group {group_id} has already been resolved.",
                        group_id=group_id,
                        approved_result_id=existing.approved_result_id,
                        resolved_by=existing.resolved_by,
                    )

                by_id = {member.id: member for member in members}
                approved = by_id.get(approved_result_id)
                if approved is None:
                    if self.store.get(approved_result_id, conn=conn) is None:
                        raise NotFoundError(
                            f"Result {approved_result_id} not found.",
                            entity="result",
                            result_id=approved_result_id,
                        )
                    raise ValidationError(
                        f"Result {approved_result_id} is not a member of duplicate group {group_id}.",
                        group_id=group_id,
                        result_id=approved_result_id,
                        member_ids=sorted(by_id),
                    )

                # Covers members and results outside the group for the same tally.
                blocking = self._verified_rivals(conn, approved)
                if blocking:
                    raise ConflictError(
                        f"Another result for polling center {approved.polling_center_id} "
                        f"({approved.category.value}, {approved.source.value}) is already verified; "
                        f"duplicate group {group_id} can only be resolved to that result.",
                        group_id=group_id,
                        verified_result_ids=blocking,
                        approved_result_id=approved.id,
                    )

                timestamp = utcnow()
                superseded_reason = (
                    f"Superseded by result {approved.id} when duplicate group {group_id} "
                    f"was resolved: {cleaned_reason}"
                )
                resolved: List[Result] = []
                for member in members:
                    if member.id == approved.id and member.status is not ResultStatus.VERIFIED:
                        updated = member.evolve(
                            status=ResultStatus.VERIFIED,
                            status_reason=cleaned_reason,
                            verified_by=actor.id,
                            verified_at=timestamp,
                            updated_at=timestamp,
                        )
                    elif member.id != approved.id and member.status is not ResultStatus.REJECTED:
                        updated = member.evolve(
                            status=ResultStatus.REJECTED,
                            status_reason=superseded_reason,
                            updated_at=timestamp,
                        )
                    else:
                        resolved.append(member)
                        continue

                    self.store.update(conn, updated)
                    self.store.append_audit(
                        conn,
                        result_id=member.id,
                        actor_id=actor.id,
                        action="resolve_group",
                        old_status=member.status,
                        new_status=updated.status,
                        summary=cleaned_reason if member.id == approved.id else superseded_reason,
                    )
                    transitions.append((updated, member.status))
                    resolved.append(updated)

                self.store.record_resolution(
                    conn,
                    GroupResolution(
                        group_id=group_id,
                        approved_result_id=approved.id,
                        resolved_by=actor.id,
                        reason=cleaned_reason,
                        resolved_at=timestamp,
                    ),
                )

            LOGGER.info(
                "Duplicate group %s resolved to %s by %s (%d transition(s))",
                group_id,
                approved_result_id,
                actor.id,
                len(transitions),
            )
            events: List[Event] = [
                ResultStatusChanged(
                    result=updated,
                    previous_status=previous,
                    actor_id=actor.id,
                    reason=updated.status_reason,
                    group_id=group_id,
                )
                for updated, previous in transitions
            ]
            events.append(
                GroupResolved(
                    group_id=group_id,
                    approved_result_id=approved_result_id,
                    member_ids=tuple(member.id for member in resolved),
                    actor_id=actor.id,
                    reason=cleaned_reason,
                )
            )
            self._emit(events)
        return resolved

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def load_group(self, group_id: str) -> Tuple[DuplicateGroup, List[Result]]:
        members = self.store.fetch_group(group_id)
        if not members:
            raise NotFoundError(f"Duplicate group {group_id} not found.", entity="group", group_id=group_id)
        group = DuplicateGroup.from_members(group_id, members, self.store.get_resolution(group_id))
        return group, members

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _verified_rivals(self, conn: sqlite3.Connection, result: Result) -> List[str]:
        """Return ids of other verified results competing for the same tally."""

        siblings = self.store.find_siblings(
            conn,
            polling_center_id=result.polling_center_id,
            category=result.category,
            source=result.source,
            exclude_id=result.id,
        )
        return sorted(s.id for s in siblings if s.status is ResultStatus.VERIFIED)

    def _ensure_single_verified(self, conn: sqlite3.Connection, result: Result) -> None:
        verified = self._verified_rivals(conn, result)
        if not verified:
            return
        if result.duplicate_group_id and self.store.get_resolution(result.duplicate_group_id, conn=conn) is None:
            raise ConflictError(
                f"Duplicate group {result.duplicate_group_id} already has a verified member; "
                "resolve the group instead of verifying another member.",
                result_id=result.id,
                group_id=result.duplicate_group_id,
                verified_result_ids=verified,
            )
        raise ConflictError(
            f"Another result for polling center {result.polling_center_id} "
            f"({result.category.value}, {result.source.value}) is already verified.",
            result_id=result.id,
            verified_result_ids=verified,
        )

    def _authorise(self, actor: Actor, what: str) -> None:
        if not self.policy.can_review(actor.role):
            raise PermissionDeniedError(
                f"Actor {actor.id} with role {getattr(actor.role, 'value', actor.role)} may not {what}.",
                actor_id=actor.id,
            )

    @staticmethod
    def _coerce_action(action: Action | str) -> Action:
        try:
            return Action(action)
        except ValueError:
            raise ValidationError(
                f"Unsupported action {action!r}. Allowed values: {sorted(a.value for a in Action)}",
                action=str(action),
            ) from None

    def _emit(self, events: Sequence[Event]) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(events)
        except Exception:  # noqa: BLE001 - delivery never fails a committed transition
            LOGGER.exception("Notification hand-off failed for %d event(s)", len(events))
