from pathlib import Path

import pytest

from engine.config import EnginePolicy
from engine.service import ResultsEngine
from matching import Classification, ReconciliationComparator, percentage_difference
from results import Actor, Role


def _row(center: str, total, *, status: str = "pending", updated_at: str = "2024-05-29T10:00:00+00:00", **extra):
    row = {
        "id": f"{center}-{status}-{total}",
        "constituency": "Lilongwe City",
        "category": "president",
        "polling_center_id": center,
        "total_votes": total,
        "status": status,
        "updated_at": updated_at,
    }
    row.update(extra)
    return row


def test_minor_discrepancy_uses_the_larger_total_as_denominator():
    comparator = ReconciliationComparator()

    rows = comparator.compare([_row("C1", 500)], [_row("C1", 520)])

    assert len(rows) == 1
    record = rows[0]
    assert record.difference == 20
    assert record.percentage_diff == pytest.approx(3.8462)
    assert record.classification is Classification.MINOR_DISCREPANCY
    assert record.key == ("Lilongwe City", "president", "C1")


def test_missing_sides_are_reported():
    comparator = ReconciliationComparator()

    rows = comparator.compare([_row("C1", 500)], [_row("C2", 800)])

    by_center = {row.polling_center_id: row for row in rows}
    assert by_center["C1"].classification is Classification.MISSING_MEC
    assert by_center["C1"].official_total is None
    assert by_center["C1"].percentage_diff is None
    assert by_center["C2"].classification is Classification.MISSING_INTERNAL
    assert comparator.classify(None, None) is Classification.NO_DATA


@pytest.mark.parametrize(
    ("internal", "official", "expected"),
    [
        (1000, 1000, Classification.MATCH),
        (1000, 1020, Classification.MATCH),
        (1000, 1100, Classification.MINOR_DISCREPANCY),
        (1000, 1200, Classification.MAJOR_DISCREPANCY),
        (0, 0, Classification.MATCH),
        (0, 10, Classification.MAJOR_DISCREPANCY),
    ],
)
def test_classification_thresholds(internal, official, expected):
    assert ReconciliationComparator().classify(internal, official) is expected


def test_thresholds_follow_policy():
    strict = ReconciliationComparator(EnginePolicy(match_tolerance=0.0, minor_discrepancy_tolerance=0.01))

    assert strict.classify(1000, 1005) is Classification.MINOR_DISCREPANCY
    assert strict.classify(1000, 1020) is Classification.MAJOR_DISCREPANCY
    assert percentage_difference(0, 0) == 0.0


def test_rejected_rows_are_ignored_and_verified_rows_win():
    comparator = ReconciliationComparator()
    internal = [
        _row("C1", 480, status="pending", updated_at="2024-05-29T12:00:00+00:00"),
        _row("C1", 500, status="verified", updated_at="2024-05-29T09:00:00+00:00"),
        _row("C1", 999, status="rejected", updated_at="2024-05-29T13:00:00+00:00"),
    ]
    official = [_row("C1", 500, status="rejected")]

    rows = comparator.compare(internal, official)

    assert len(rows) == 1
    assert rows[0].internal_total == 500
    assert rows[0].classification is Classification.MISSING_MEC


def test_compare_is_idempotent_and_summarised():
    comparator = ReconciliationComparator()
    internal = [_row("C1", 500), _row("C2", 1000), _row("C3", 70)]
    official = [_row("C1", 520), _row("C2", 1000), _row("C4", 10)]

    first = comparator.compare(internal, official)
    second = comparator.compare(internal, official)

    assert first == second
    summary = comparator.summarize(first)
    assert summary["total"] == 4
    assert summary["match"] == 1
    assert summary["minor_discrepancy"] == 1
    assert summary["missing_mec"] == 1
    assert summary["missing_internal"] == 1
    assert summary["major_discrepancy"] == 0


def test_engine_compares_stored_results_by_key(tmp_path: Path):
    engine = ResultsEngine(tmp_path / "results.db")
    agent = Actor(id="agent-1")
    feed = Actor(id="mec-feed")

    def submit(actor, center, votes, source, constituency="Zomba"):
        return engine.submit_result(
            {
                "polling_center_id": center,
                "constituency": constituency,
                "category": "president",
                "votes": {"cand-a": votes},
                "invalid_votes": 0,
                "source": source,
            },
            actor,
        )

    submit(agent, "C1", 500, "internal")
    submit(feed, "C1", 520, "official")
    rejected = submit(agent, "C2", 300, "internal")
    submit(feed, "C2", 300, "official")
    submit(agent, "C3", 100, "internal", constituency="Mangochi")
    engine.transition(rejected.id, Actor(id="sup-1", role=Role.SUPERVISOR), "reject", "illegible")

    rows = engine.compare()
    classes = {row.polling_center_id: row.classification for row in rows}
    assert classes == {
        "C1": Classification.MINOR_DISCREPANCY,
        "C2": Classification.MISSING_INTERNAL,
        "C3": Classification.MISSING_MEC,
    }

    zomba = engine.compare(constituency="Zomba")
    assert {row.polling_center_id for row in zomba} == {"C1", "C2"}
    assert engine.reconciliation_summary(category="mp")["total"] == 0
    assert engine.compare() == rows
