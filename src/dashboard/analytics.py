"""Helpers to compute the real-time analytics overview for the dashboard."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional

import pandas as pd

from results import ResultStatus, ResultStore, Source

__all__ = ["compute_overview"]

_TOP_CENTERS = 5


def compute_overview(
    store: ResultStore,
    *,
    registered_centers: Optional[int] = None,
    recent_limit: int = 10,
) -> Dict[str, object]:
    """Return the ``ANALYTICS_UPDATE`` payload for internally collected results."""

    results = store.list_results(source=Source.INTERNAL)
    resolved = store.resolved_group_ids()
    frame = pd.DataFrame(
        [
            {
                "id": result.id,
                "polling_center_id": result.polling_center_id,
                "category": result.category.value,
                "status": result.status.value,
                "created_at": result.created_at,
                "duplicate_group_id": result.duplicate_group_id,
            }
            for result in results
        ],
        columns=["id", "polling_center_id", "category", "status", "created_at", "duplicate_group_id"],
    )

    status_counts = frame["status"].value_counts()
    received = int(len(frame))
    verified = int(status_counts.get(ResultStatus.VERIFIED.value, 0))
    reporting_centers = int(frame["polling_center_id"].nunique())
    total_centers = registered_centers if registered_centers is not None else reporting_centers

    open_groups = {
        group_id for group_id in frame["duplicate_group_id"].dropna().unique() if group_id not in resolved
    }

    overview = {
        "total_centers": int(total_centers),
        "reporting_centers": reporting_centers,
        "results_received": received,
        "verified": verified,
        "flagged": int(status_counts.get(ResultStatus.FLAGGED.value, 0)),
        "rejected": int(status_counts.get(ResultStatus.REJECTED.value, 0)),
        "pending": int(status_counts.get(ResultStatus.PENDING.value, 0)),
        "completion_rate": _rate(reporting_centers, total_centers),
        "verification_rate": _rate(verified, received),
    }

    return {
        "overview": overview,
        "pending_verifications": overview["pending"],
        "open_duplicate_groups": len(open_groups),
        "recent_activity": _recent_activity(frame, recent_limit),
        "top_centers": _top_centers(frame),
        "submission_trends": _submission_trends(frame),
        "last_updated": pd.Timestamp.now(tz="UTC").isoformat(),
    }


def _rate(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def _recent_activity(frame: pd.DataFrame, limit: int) -> List[Mapping[str, object]]:
    if frame.empty:
        return []
    recent = frame.sort_values("created_at", ascending=False).head(limit)
    return [
        {
            "id": row.id,
            "polling_center_id": row.polling_center_id,
            "category": row.category,
            "status": row.status,
            "created_at": row.created_at,
        }
        for row in recent.itertuples(index=False)
    ]


def _top_centers(frame: pd.DataFrame) -> List[Mapping[str, object]]:
    if frame.empty:
        return []
    counts = frame.groupby("polling_center_id").size().sort_values(ascending=False, kind="stable")
    return [
        {"polling_center_id": str(center), "submissions": int(total)}
        for center, total in counts.head(_TOP_CENTERS).items()
    ]


def _submission_trends(frame: pd.DataFrame) -> List[Mapping[str, object]]:
    if frame.empty:
        return []
    created = pd.to_datetime(frame["created_at"], utc=True, format="ISO8601")
    hourly = created.dt.floor("h").value_counts().sort_index()
    return [{"hour": hour.isoformat(), "submissions": int(count)} for hour, count in hourly.items()]
