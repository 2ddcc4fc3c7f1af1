from pathlib import Path

import pytest

from engine.config import EnginePolicy
from engine.service import ResultsEngine
from results import Actor, Category, ResultStatus, ResultSubmission, Role, ValidationError


def test_submission_with_inconsistent_totals_never_reaches_the_store(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    payload = {
        "polling_center_id": "C1",
        "category": "president",
        "votes": {"cand-a": 600, "cand-b": 380},
        "invalid_votes": 20,
        "total_votes": 1001,
    }

    with pytest.raises(ValidationError) as excinfo:
        engine.submit_result(payload, Actor(id="agent-1"))

    assert excinfo.value.context == {"polling_center_id": "C1", "total_votes": 1001, "expected_total": 1000}
    assert engine.list_results() == []
    assert engine.list_notifications("agent-1") == []


@pytest.mark.parametrize(
    "payload",
    [
        {"category": "president", "votes": {"a": 1}, "invalid_votes": 0},
        {"polling_center_id": "C1", "category": "governor", "votes": {"a": 1}, "invalid_votes": 0},
        {"polling_center_id": "C1", "category": "mp", "votes": {"a": -1}, "invalid_votes": 0},
        {"polling_center_id": "C1", "category": "mp", "votes": {"a": 1}, "invalid_votes": -2},
        {"polling_center_id": "  ", "category": "mp", "votes": {"a": 1}, "invalid_votes": 0},
    ],
)
def test_schema_errors_surface_as_validation_errors(tmp_path: Path, payload: dict) -> None:
    engine = ResultsEngine(tmp_path / "results.db")

    with pytest.raises(ValidationError) as excinfo:
        engine.submit_result(payload, Actor(id="agent-1"))

    assert excinfo.value.context["errors"]
    assert engine.list_results() == []


def test_accepted_results_satisfy_totals_invariant(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    submission = ResultSubmission(
        polling_center_id=" C7 ",
        constituency="Mzuzu City",
        category=Category.COUNCILOR,
        votes={"ward-1": 120, "ward-2": 80},
        invalid_votes=4,
        submission_channel="whatsapp",
        comments="Sent from the tally centre",
    )

    result = engine.submit_result(submission, Actor(id="agent-1"))

    assert result.polling_center_id == "C7"
    assert result.total_votes == 204
    assert result.totals_consistent
    assert result.status is ResultStatus.PENDING
    assert result.submission_channel.value == "whatsapp"
    stored = engine.get_result(result.id)
    assert stored == result
    assert [entry.action for entry in engine.audit_trail(result.id)] == ["submit"]


def test_end_to_end_duplicate_review_and_reconciliation(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db", policy=EnginePolicy(), registered_centers=4)
    supervisor = Actor(id="sup-1", role=Role.SUPERVISOR)

    def payload(cand_a: int, source: str = "internal") -> dict:
        return {
            "polling_center_id": "C1",
            "constituency": "Zomba",
            "category": "president",
            "votes": {"cand-a": cand_a, "cand-b": 380},
            "invalid_votes": 20,
            "source": source,
        }

    first = engine.submit_result(payload(600), Actor(id="agent-1"))
    second = engine.submit_result(payload(605), Actor(id="agent-2"))
    engine.submit_result(payload(610, source="official"), Actor(id="mec-feed"))

    groups = engine.list_duplicate_groups()
    assert list(groups) == [second.duplicate_group_id]
    assert engine.analytics()["open_duplicate_groups"] == 1

    engine.resolve_group(second.duplicate_group_id, supervisor, first.id, "verified against photos")

    rows = engine.compare()
    assert len(rows) == 1
    assert rows[0].internal_result_id == first.id
    assert rows[0].internal_total == 1000
    assert rows[0].official_total == 1010
    assert rows[0].classification.value == "match"

    overview = engine.analytics()
    assert overview["open_duplicate_groups"] == 0
    assert overview["overview"]["verified"] == 1
    assert overview["overview"]["rejected"] == 1
    assert overview["overview"]["total_centers"] == 4
    assert overview["overview"]["completion_rate"] == 25.0
    assert overview["overview"]["verification_rate"] == 50.0
    assert overview["top_centers"] == [{"polling_center_id": "C1", "submissions": 2}]
    assert sum(bucket["submissions"] for bucket in overview["submission_trends"]) == 2

    assert engine.flush_notifications(timeout=5)
    titles = [n.title for n in engine.list_notifications("agent-2")]
    assert titles[0] == "Result Rejected"
    assert engine.list_results(status="verified")[0].id == first.id
