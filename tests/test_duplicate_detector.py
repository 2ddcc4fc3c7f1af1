from itertools import permutations
from pathlib import Path

import pytest

from duplicates import DuplicateDetector, DuplicateGroup, GroupState
from engine.config import EnginePolicy
from engine.service import ResultsEngine
from results import (
    Actor,
    Category,
    PresidentialTallies,
    Result,
    ResultStore,
    Role,
    Source,
    SubmissionChannel,
)

SUPERVISOR = Actor(id="sup-1", role=Role.SUPERVISOR)


def _payload(center: str, cand_a: int, cand_b: int, invalid: int = 20, **extra) -> dict:
    payload = {
        "polling_center_id": center,
        "category": "president",
        "votes": {"cand-a": cand_a, "cand-b": cand_b},
        "invalid_votes": invalid,
        "total_votes": cand_a + cand_b + invalid,
    }
    payload.update(extra)
    return payload


def _bare_result(result_id: str, total: int, submitted_by: str, created_at: str) -> Result:
    return Result(
        id=result_id,
        polling_center_id="C1",
        category=Category.PRESIDENT,
        tallies=PresidentialTallies(votes={"cand-a": total}),
        invalid_votes=0,
        total_votes=total,
        source=Source.INTERNAL,
        submission_channel=SubmissionChannel.WHATSAPP,
        submitted_by=submitted_by,
        created_at=created_at,
        updated_at=created_at,
    )


def test_close_totals_from_two_submitters_form_one_group(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")

    first = engine.submit_result(_payload("C1", 600, 380), Actor(id="agent-1"))
    second = engine.submit_result(_payload("C1", 603, 382), Actor(id="agent-2"))

    assert first.total_votes == 1000
    assert second.total_votes == 1005
    assert first.is_duplicate is False  # returned before the sibling arrived

    first = engine.get_result(first.id)
    assert first.is_duplicate and second.is_duplicate
    assert first.duplicate_group_id == second.duplicate_group_id is not None
    assert first.related_result_ids == (second.id,)
    assert second.related_result_ids == (first.id,)
    assert "within 2% of existing submission from agent-1" in second.duplicate_reason
    assert first.duplicate_reason == f"matched later submission {second.id} from agent-2"


def test_linkage_stays_symmetric_as_groups_grow(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    for index, agent in enumerate(["agent-1", "agent-2", "agent-3", "agent-4"]):
        engine.submit_result(_payload("C1", 600 + index, 380), Actor(id=agent))

    groups = engine.list_duplicate_groups()
    assert len(groups) == 1
    members = next(iter(groups.values()))
    assert len(members) == 4

    by_id = {member.id: member for member in members}
    for a, b in permutations(by_id, 2):
        assert (b in by_id[a].related_result_ids) == (a in by_id[b].related_result_ids)
        assert b in by_id[a].related_result_ids


def test_failed_linkage_rolls_back_submission_and_siblings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    engine.submit_result(_payload("C1", 600, 380), Actor(id="agent-1"))
    engine.submit_result(_payload("C1", 601, 380), Actor(id="agent-2"))
    before = {result.id: result for result in engine.list_results()}
    assert all(result.is_duplicate for result in before.values())

    original_update = engine.store.update
    calls = []

    def failing_update(conn, result):
        calls.append(result.id)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        original_update(conn, result)

    monkeypatch.setattr(engine.store, "update", failing_update)

    with pytest.raises(RuntimeError, match="disk full"):
        engine.submit_result(_payload("C1", 602, 380), Actor(id="agent-3"))

    assert len(calls) == 2
    after = {result.id: result for result in engine.list_results()}
    assert after == before
    for result_id in before:
        assert [entry.action for entry in engine.audit_trail(result_id)] == ["submit"]
    assert engine.flush_notifications(timeout=5)
    assert engine.list_notifications("agent-3") == []


def test_same_submitter_with_distant_totals_is_not_a_duplicate(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    agent = Actor(id="agent-1")

    engine.submit_result(_payload("C1", 600, 380), agent)
    corrected = engine.submit_result(_payload("C1", 400, 300), agent)

    assert corrected.is_duplicate is False
    assert engine.list_duplicate_groups() == {}


def test_different_center_category_or_source_never_match(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")

    engine.submit_result(_payload("C1", 600, 380), Actor(id="agent-1"))
    other_center = engine.submit_result(_payload("C2", 600, 380), Actor(id="agent-2"))
    official = engine.submit_result(_payload("C1", 600, 380, source="official"), Actor(id="mec-feed"))
    mp = engine.submit_result(
        {"polling_center_id": "C1", "category": "mp", "votes": {"mp-1": 980}, "invalid_votes": 20},
        Actor(id="agent-3"),
    )

    assert not other_center.is_duplicate
    assert not official.is_duplicate
    assert not mp.is_duplicate


def test_pair_reason_covers_tolerance_and_conflicting_window(tmp_path: Path) -> None:
    store = ResultStore(db_path=tmp_path / "results.db")
    detector = DuplicateDetector(store, EnginePolicy(conflicting_report_window_minutes=30))

    base = _bare_result("r1", 1000, "agent-1", "2024-05-29T10:00:00+00:00")
    close_same_agent = _bare_result("r2", 1019, "agent-1", "2024-05-29T12:00:00+00:00")
    far_same_agent = _bare_result("r3", 1500, "agent-1", "2024-05-29T10:05:00+00:00")
    far_other_agent_soon = _bare_result("r4", 1500, "agent-2", "2024-05-29T10:20:00+00:00")
    far_other_agent_late = _bare_result("r5", 1500, "agent-2", "2024-05-29T11:00:00+00:00")
    zero = _bare_result("r6", 0, "agent-1", "2024-05-29T10:01:00+00:00")

    assert detector.pair_reason(close_same_agent, base).startswith("vote totals within 2%")
    assert detector.pair_reason(far_same_agent, base) is None
    assert detector.pair_reason(far_other_agent_soon, base) == (
        "conflicting report from agent-1 submitted within 30 minutes"
    )
    assert detector.pair_reason(far_other_agent_late, base) is None
    assert detector.pair_reason(zero, _bare_result("r7", 0, "agent-1", zero.created_at)) is None
    assert detector.pair_reason(base, base) is None


def test_new_member_reopens_a_resolved_group(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first = engine.submit_result(_payload("C1", 600, 380), Actor(id="agent-1"))
    second = engine.submit_result(_payload("C1", 603, 382), Actor(id="agent-2"))
    group_id = second.duplicate_group_id

    engine.resolve_group(group_id, SUPERVISOR, first.id, "matches the photo")
    assert engine.verification.load_group(group_id)[0].state is GroupState.RESOLVED

    third = engine.submit_result(_payload("C1", 601, 381), Actor(id="agent-3"))

    group, members = engine.verification.load_group(group_id)
    assert third.duplicate_group_id == group_id
    assert group.state is GroupState.OPEN
    assert {member.id for member in members} == {first.id, second.id, third.id}


def test_group_link_returns_untouched_members_unchanged() -> None:
    a = _bare_result("a", 100, "agent-1", "2024-05-29T10:00:00+00:00")
    b = _bare_result("b", 101, "agent-2", "2024-05-29T10:01:00+00:00")
    group = DuplicateGroup.from_members("g1", [a, b])

    linked = {record.id: record for record in group.link({"a": a, "b": b}, {"a": "x", "b": "y"})}
    assert linked["a"].related_result_ids == ("b",)
    assert linked["b"].related_result_ids == ("a",)

    relinked = group.link(linked, {})
    assert all(record is linked[record.id] for record in relinked)
    assert "a" in group and len(group) == 2
