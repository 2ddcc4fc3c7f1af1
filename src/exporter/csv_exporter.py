"""Export reconciliation rows to CSV alongside a QA summary."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Sequence

import pandas as pd

from matching import Classification, ComparisonRow, ReconciliationComparator

__all__ = ["CSV_COLUMNS", "CsvExporter", "ExportResult"]

LOGGER = logging.getLogger(__name__)

CSV_COLUMNS = [
    "constituency",
    "category",
    "polling_center_id",
    "internal_total",
    "official_total",
    "difference",
    "percentage_diff",
    "classification",
    "internal_result_id",
    "official_result_id",
]

_DISCREPANCIES = {
    Classification.MINOR_DISCREPANCY.value,
    Classification.MAJOR_DISCREPANCY.value,
}


@dataclass(frozen=True, slots=True)
class ExportResult:
    csv_path: Path
    qa_path: Path
    stats: Dict[str, object]


class CsvExporter:
    """Write comparison rows as a ``;`` separated CSV plus a QA JSON report."""

    def __init__(self, output_dir: Optional[Path | str] = None) -> None:
        self.output_dir = Path(output_dir) if output_dir else Path("data/exports")

    def export(self, rows: Sequence[ComparisonRow], *, stem: Optional[str] = None) -> ExportResult:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stem = stem or datetime.now(timezone.utc).strftime("reconciliation_%Y%m%dT%H%M%SZ")
        csv_path = self.output_dir / f"{stem}.csv"
        qa_path = self.output_dir / f"{stem}_qa.json"

        frame = pd.DataFrame([row.as_dict() for row in rows], columns=CSV_COLUMNS)
        for column in ("internal_total", "official_total", "difference"):
            frame[column] = frame[column].astype("Int64")
        frame = frame.sort_values(["constituency", "category", "polling_center_id"], kind="stable")
        frame.to_csv(csv_path, index=False, sep=";")

        stats = self._build_stats(rows)
        qa_path.write_text(json.dumps(stats, ensure_ascii=False, indent=2), encoding="utf-8")
        LOGGER.info("Exported %d comparison rows to %s", len(rows), csv_path)
        return ExportResult(csv_path=csv_path, qa_path=qa_path, stats=stats)

    def _build_stats(self, rows: Sequence[ComparisonRow]) -> Dict[str, object]:
        summary = ReconciliationComparator.summarize(rows)
        paired = sum(1 for row in rows if row.percentage_diff is not None)
        discrepancies = sum(1 for row in rows if row.classification.value in _DISCREPANCIES)
        return {
            "rows": len(rows),
            "classifications": {key: value for key, value in summary.items() if key != "total"},
            "paired_rows": paired,
            "discrepancy_percentage": round(discrepancies / paired * 100, 2) if paired else 0.0,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
