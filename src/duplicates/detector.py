"""Duplicate detection for result submissions.

:class:`DuplicateDetector` inspects the results already stored for the same
polling center, category and source as a new submission. A pair of results is
treated as duplicates when either

* both report a nonzero total and the totals differ by at most the configured
  tolerance (2% by default), which usually means the same tally was reported
  twice, or
* the results come from different submitters within the conflicting-report
  window, regardless of their totals.

Matches are clustered into a :class:`~duplicates.group.DuplicateGroup`. The
detector runs inside the caller's write transaction, so the new result and
every linkage update commit together or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from engine.config import EnginePolicy
from results import Result, ResultStore, new_identifier

from .group import DuplicateGroup

__all__ = ["DuplicateDetector", "DuplicateMatch"]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    """Outcome of running detection for one result."""

    group_id: Optional[str]
    related_ids: Tuple[str, ...]
    reason: Optional[str]
    result: Result

    @property
    def is_duplicate(self) -> bool:
        return self.group_id is not None


class DuplicateDetector:
    """Find and link results describing the same real-world tally."""

    def __init__(self, store: ResultStore, policy: Optional[EnginePolicy] = None) -> None:
        self.store = store
        self.policy = policy or EnginePolicy()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def detect(self, conn: sqlite3.Connection, result: Result) -> DuplicateMatch:
        """Link ``result`` into a duplicate group if it matches a sibling.

        ``result`` must already be stored through ``conn``. All affected rows
        are written through the same connection; the caller owns the commit.
        """

        siblings = self.store.find_siblings(
            conn,
            polling_center_id=result.polling_center_id,
            category=result.category,
            source=result.source,
            exclude_id=result.id,
        )
        LOGGER.debug(
            "Scanning %d sibling(s) of result %s for center %s/%s",
            len(siblings),
            result.id,
            result.polling_center_id,
            result.category.value,
        )

        matches: List[Tuple[Result, str]] = []
        for sibling in siblings:
            reason = self.pair_reason(result, sibling)
            if reason is not None:
                matches.append((sibling, reason))

        if not matches:
            return DuplicateMatch(group_id=None, related_ids=(), reason=None, result=result)

        group, members = self._collect_group(conn, result, [sibling for sibling, _ in matches])
        new_reason = matches[0][1]
        reasons: Dict[str, str] = {result.id: new_reason}
        for sibling, _ in matches:
            reasons[sibling.id] = (
                f"matched later submission {result.id} from {result.submitted_by}"
            )

        linked = group.link(members, reasons)
        for record in linked:
            if record is not members[record.id]:
                self.store.update(conn, record)

        updated = next(record for record in linked if record.id == result.id)
        LOGGER.info(
            "Result %s linked into duplicate group %s (%d members): %s",
            result.id,
            group.id,
            len(group),
            new_reason,
        )
        return DuplicateMatch(
            group_id=group.id,
            related_ids=updated.related_result_ids,
            reason=updated.duplicate_reason,
            result=updated,
        )

    def pair_reason(self, candidate: Result, existing: Result) -> Optional[str]:
        """Return why two results are duplicates, or ``None`` when they are not."""

        if candidate.id == existing.id:
            return None

        if candidate.total_votes > 0 and existing.total_votes > 0:
            largest = max(candidate.total_votes, existing.total_votes)
            ratio = abs(candidate.total_votes - existing.total_votes) / largest
            if ratio <= self.policy.duplicate_total_tolerance:
                tolerance = self.policy.duplicate_total_tolerance * 100
                return (
                    f"vote totals within {tolerance:g}% of existing submission "
                    f"from {existing.submitted_by}"
                )

        if candidate.submitted_by != existing.submitted_by:
            gap = self._minutes_between(candidate.created_at, existing.created_at)
            window = self.policy.conflicting_report_window_minutes
            if gap is not None and gap <= window:
                return (
                    f"conflicting report from {existing.submitted_by} "
                    f"submitted within {window:g} minutes"
                )
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _collect_group(
        self,
        conn: sqlite3.Connection,
        result: Result,
        matched: List[Result],
    ) -> Tuple[DuplicateGroup, Dict[str, Result]]:
        members: Dict[str, Result] = {result.id: result}
        for sibling in matched:
            members[sibling.id] = sibling

        existing_ids = sorted({s.duplicate_group_id for s in matched if s.duplicate_group_id})
        if not existing_ids:
            group = DuplicateGroup.from_members(new_identifier(), members.values())
            return group, members

        group_id = existing_ids[0]
        for other_id in existing_ids:
            for member in self.store.fetch_group(other_id, conn=conn):
                members.setdefault(member.id, member)
            if self.store.clear_resolution(conn, other_id):
                LOGGER.warning(
                    "Duplicate group %s was resolved; reopening it for result %s",
                    other_id,
                    result.id,
                )
        if len(existing_ids) > 1:
            LOGGER.info("Merging duplicate groups %s into %s", existing_ids[1:], group_id)

        group = DuplicateGroup.from_members(group_id, members.values())
        return group, members

    @staticmethod
    def _minutes_between(first: str, second: str) -> Optional[float]:
        try:
            delta = datetime.fromisoformat(first) - datetime.fromisoformat(second)
        except (TypeError, ValueError):
            return None
        return abs(delta.total_seconds()) / 60.0
