"""Reconciliation between internally collected and officially published results.

The module provides :class:`ReconciliationComparator`, a read-only helper that
pairs internal and official result rows and classifies how far their totals
diverge. Rows are joined on a key composed of the constituency, election
category and polling center identity; no fuzzy location matching is done.
Classification is a pure function of the two totals, so comparing unchanged
inputs twice yields identical rows. Comparison rows are derived data and are
never persisted.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from engine.config import EnginePolicy

__all__ = ["Classification", "ComparisonRow", "ReconciliationComparator", "percentage_difference"]

ComparisonKey = Tuple[str, str, str]


class Classification(str, Enum):
    NO_DATA = "no_data"
    MISSING_INTERNAL = "missing_internal"
    MISSING_MEC = "missing_mec"
    MATCH = "match"
    MINOR_DISCREPANCY = "minor_discrepancy"
    MAJOR_DISCREPANCY = "major_discrepancy"


@dataclass(frozen=True, slots=True)
class ComparisonRow:
    """Comparison outcome for one (constituency, category, polling center) key."""

    constituency: str
    category: str
    polling_center_id: str
    internal_total: Optional[int]
    official_total: Optional[int]
    difference: Optional[int]
    percentage_diff: Optional[float]
    classification: Classification
    internal_result_id: Optional[str] = None
    official_result_id: Optional[str] = None

    @property
    def key(self) -> ComparisonKey:
        return (self.constituency, self.category, self.polling_center_id)

    def as_dict(self) -> Dict[str, object]:
        return {
            "key": "_".join(self.key),
            "constituency": self.constituency,
            "category": self.category,
            "polling_center_id": self.polling_center_id,
            "internal_total": self.internal_total,
            "official_total": self.official_total,
            "difference": self.difference,
            "percentage_diff": self.percentage_diff,
            "classification": self.classification.value,
            "internal_result_id": self.internal_result_id,
            "official_result_id": self.official_result_id,
        }


def percentage_difference(internal_total: int, official_total: int) -> float:
    """Return ``|internal - official| / max(internal, official)`` as a fraction.

    Two zero totals are considered identical.
    """

    largest = max(internal_total, official_total)
    if largest == 0:
        return 0.0
    return abs(internal_total - official_total) / largest


class ReconciliationComparator:
    """Compare internal results against official ones."""

    _STATUS_PRIORITY: Mapping[str, int] = {
        "verified": 0,
        "pending": 1,
        "flagged": 2,
    }

    def __init__(self, policy: Optional[EnginePolicy] = None) -> None:
        self.policy = policy or EnginePolicy()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def compare(
        self,
        internal_rows: Iterable[Mapping[str, object] | object],
        official_rows: Iterable[Mapping[str, object] | object],
    ) -> List[ComparisonRow]:
        """Pair internal and official rows and classify every key.

        Parameters
        ----------
        internal_rows, official_rows:
            :class:`results.Result` instances, dictionaries or any object
            exposing ``constituency``, ``category``, ``polling_center_id`` and
            ``total_votes``. Rejected rows are ignored. When several rows share
            a key the verified one wins, then the most recently updated.
        """

        index_internal = self._index_rows(internal_rows)
        index_official = self._index_rows(official_rows)

        rows: List[ComparisonRow] = []
        for key in sorted(set(index_internal) | set(index_official)):
            rows.append(self._build_row(key, index_internal.get(key), index_official.get(key)))
        return rows

    def classify(self, internal_total: Optional[int], official_total: Optional[int]) -> Classification:
        """Classify a pair of totals; ``None`` means the side has no record."""

        if internal_total is None and official_total is None:
            return Classification.NO_DATA
        if internal_total is None:
            return Classification.MISSING_INTERNAL
        if official_total is None:
            return Classification.MISSING_MEC

        ratio = percentage_difference(internal_total, official_total)
        if ratio <= self.policy.match_tolerance:
            return Classification.MATCH
        if ratio <= self.policy.minor_discrepancy_tolerance:
            return Classification.MINOR_DISCREPANCY
        return Classification.MAJOR_DISCREPANCY

    @staticmethod
    def summarize(rows: Sequence[ComparisonRow]) -> Dict[str, int]:
        """Return counts per classification plus the overall total."""

        counts = Counter(row.classification.value for row in rows)
        summary = {classification.value: counts.get(classification.value, 0) for classification in Classification}
        summary["total"] = len(rows)
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _index_rows(
        self, rows: Iterable[Mapping[str, object] | object]
    ) -> MutableMapping[ComparisonKey, Mapping[str, object]]:
        indexed: MutableMapping[ComparisonKey, Mapping[str, object]] = {}
        for raw in rows:
            normalized = self._normalise_row(raw)
            if normalized["status"] == "rejected":
                continue
            key = (
                normalized["constituency"] or "",
                normalized["category"] or "",
                normalized["polling_center_id"] or "",
            )
            current = indexed.get(key)
            if current is None or self._preferred(normalized, current):
                indexed[key] = normalized
        return indexed

    def _preferred(self, candidate: Mapping[str, object], current: Mapping[str, object]) -> bool:
        rank_candidate = self._STATUS_PRIORITY.get(str(candidate["status"]), 1)
        rank_current = self._STATUS_PRIORITY.get(str(current["status"]), 1)
        if rank_candidate != rank_current:
            return rank_candidate < rank_current
        return str(candidate["updated_at"] or "") > str(current["updated_at"] or "")

    def _normalise_row(self, row: Mapping[str, object] | object) -> Dict[str, object]:
        def pick(*names: str) -> object | None:
            if isinstance(row, Mapping):
                for name in names:
                    if name in row and row[name] is not None:
                        return row[name]
                return None
            for name in names:
                value = getattr(row, name, None)
                if value is not None:
                    return value
            return None

        def normalise_string(value: object) -> str | None:
            if value is None:
                return None
            value = getattr(value, "value", value)
            text = str(value).strip()
            return text if text else None

        def normalise_int(value: object) -> int | None:
            if value is None or value == "":
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                return None

        return {
            "id": normalise_string(pick("id")),
            "constituency": normalise_string(pick("constituency")),
            "category": normalise_string(pick("category")),
            "polling_center_id": normalise_string(pick("polling_center_id", "pollingCenterId", "polling_center")),
            "total_votes": normalise_int(pick("total_votes", "totalVotes")),
            "status": normalise_string(pick("status")),
            "updated_at": normalise_string(pick("updated_at", "updatedAt")),
        }

    def _build_row(
        self,
        key: ComparisonKey,
        internal: Mapping[str, object] | None,
        official: Mapping[str, object] | None,
    ) -> ComparisonRow:
        internal_total = internal.get("total_votes") if internal else None
        official_total = official.get("total_votes") if official else None
        if internal is not None and internal_total is None:
            internal_total = 0
        if official is not None and official_total is None:
            official_total = 0

        difference: Optional[int] = None
        percentage: Optional[float] = None
        if internal_total is not None and official_total is not None:
            difference = abs(int(internal_total) - int(official_total))
            percentage = round(percentage_difference(int(internal_total), int(official_total)) * 100, 4)

        constituency, category, polling_center_id = key
        return ComparisonRow(
            constituency=constituency,
            category=category,
            polling_center_id=polling_center_id,
            internal_total=internal_total,
            official_total=official_total,
            difference=difference,
            percentage_diff=percentage,
            classification=self.classify(internal_total, official_total),
            internal_result_id=(internal or {}).get("id"),
            official_result_id=(official or {}).get("id"),
        )
