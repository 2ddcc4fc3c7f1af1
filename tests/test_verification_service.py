from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Tuple

import pytest

from engine.service import ResultsEngine
from notifications import GroupResolved, ResultStatusChanged
from results import (
    Actor,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    Result,
    ResultStatus,
    Role,
    StateError,
    ValidationError,
)
from verification import Action, VerificationService, next_status

SUPERVISOR = Actor(id="sup-1", role=Role.SUPERVISOR)
ADMIN = Actor(id="admin-1", role=Role.ADMIN)


def _payload(center: str, cand_a: int, cand_b: int = 380, invalid: int = 20) -> dict:
    return {
        "polling_center_id": center,
        "category": "president",
        "votes": {"cand-a": cand_a, "cand-b": cand_b},
        "invalid_votes": invalid,
    }


def _duplicate_pair(engine: ResultsEngine) -> Tuple[Result, Result]:
    first = engine.submit_result(_payload("C1", 600), Actor(id="agent-1"))
    second = engine.submit_result(_payload("C1", 605), Actor(id="agent-2"))
    return engine.get_result(first.id), second


def test_verify_flag_and_reject_from_pending(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    agent = Actor(id="agent-1")
    a = engine.submit_result(_payload("C1", 600), agent)
    b = engine.submit_result(_payload("C2", 600), agent)
    c = engine.submit_result(_payload("C3", 600), agent)

    verified = engine.transition(a.id, SUPERVISOR, "verify")
    flagged = engine.transition(b.id, SUPERVISOR, Action.FLAG, "numbers smudged")
    rejected = engine.transition(c.id, ADMIN, "reject", "wrong form")

    assert verified.status is ResultStatus.VERIFIED
    assert verified.verified_by == "sup-1" and verified.verified_at
    assert flagged.status is ResultStatus.FLAGGED and flagged.status_reason == "numbers smudged"
    assert rejected.status is ResultStatus.REJECTED and rejected.status_reason == "wrong form"

    trail = engine.audit_trail(b.id)
    assert [(entry.action, entry.old_status, entry.new_status) for entry in trail] == [
        ("submit", None, "pending"),
        ("flag", "pending", "flagged"),
    ]


def test_flag_without_reason_is_rejected_and_result_stays_pending(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    result = engine.submit_result(_payload("C1", 600), Actor(id="agent-1"))

    for reason in (None, "", "   "):
        with pytest.raises(ValidationError):
            engine.transition(result.id, SUPERVISOR, "flag", reason)
    with pytest.raises(ValidationError):
        engine.transition(result.id, SUPERVISOR, "reject")

    assert engine.get_result(result.id).status is ResultStatus.PENDING


@pytest.mark.parametrize("first_action", ["verify", "flag", "reject"])
def test_terminal_states_refuse_further_transitions(tmp_path: Path, first_action: str) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    result = engine.submit_result(_payload("C1", 600), Actor(id="agent-1"))
    engine.transition(result.id, SUPERVISOR, first_action, "reason")

    for action in ("verify", "flag", "reject"):
        with pytest.raises(StateError) as excinfo:
            engine.transition(result.id, SUPERVISOR, action, "again")
        assert excinfo.value.context["result_id"] == result.id


def test_unknown_ids_actions_and_roles(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    result = engine.submit_result(_payload("C1", 600), Actor(id="agent-1"))

    with pytest.raises(NotFoundError):
        engine.transition("missing", SUPERVISOR, "verify")
    with pytest.raises(ValidationError):
        engine.transition(result.id, SUPERVISOR, "approve")
    with pytest.raises(PermissionDeniedError):
        engine.transition(result.id, Actor(id="agent-1"), "verify")
    with pytest.raises(NotFoundError):
        engine.resolve_group("missing", SUPERVISOR, result.id, "reason")

    assert next_status(ResultStatus.PENDING, Action.VERIFY) is ResultStatus.VERIFIED


def test_second_verified_result_for_same_tally_conflicts(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    agent = Actor(id="agent-1")
    first = engine.submit_result(_payload("C1", 600), agent)
    correction = engine.submit_result(_payload("C1", 100), agent)
    assert not correction.is_duplicate

    engine.transition(first.id, SUPERVISOR, "verify")
    with pytest.raises(ConflictError):
        engine.transition(correction.id, SUPERVISOR, "verify")
    assert engine.get_result(correction.id).status is ResultStatus.PENDING


def test_resolve_group_verifies_one_and_rejects_the_rest(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    group_id = first.duplicate_group_id

    resolved = engine.resolve_group(group_id, SUPERVISOR, first.id, "verified against photos")

    statuses = {member.id: member.status for member in resolved}
    assert statuses == {first.id: ResultStatus.VERIFIED, second.id: ResultStatus.REJECTED}
    assert engine.get_result(first.id).status is ResultStatus.VERIFIED
    loser = engine.get_result(second.id)
    assert loser.status is ResultStatus.REJECTED
    assert first.id in loser.status_reason and "verified against photos" in loser.status_reason

    description = engine.describe_group(group_id)
    assert description["state"] == "resolved"
    assert description["resolution"]["approved_result_id"] == first.id
    assert [entry.action for entry in engine.audit_trail(second.id)] == ["submit", "resolve_group"]


def test_resolve_group_error_cases_leave_group_untouched(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    outsider = engine.submit_result(_payload("C9", 600), Actor(id="agent-9"))
    group_id = first.duplicate_group_id

    with pytest.raises(ValidationError):
        engine.resolve_group(group_id, SUPERVISOR, first.id, "  ")
    with pytest.raises(PermissionDeniedError):
        engine.resolve_group(group_id, Actor(id="agent-1"), first.id, "mine")
    with pytest.raises(ValidationError):
        engine.resolve_group(group_id, SUPERVISOR, outsider.id, "not a member")
    with pytest.raises(NotFoundError):
        engine.resolve_group(group_id, SUPERVISOR, "missing", "unknown")

    engine.transition(second.id, SUPERVISOR, "verify")
    with pytest.raises(ConflictError) as excinfo:
        engine.resolve_group(group_id, SUPERVISOR, first.id, "photos")
    assert excinfo.value.context["verified_result_ids"] == [second.id]
    assert engine.get_result(first.id).status is ResultStatus.PENDING
    assert engine.describe_group(group_id)["state"] == "open"


def test_resolving_twice_conflicts(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    group_id = first.duplicate_group_id

    engine.resolve_group(group_id, SUPERVISOR, first.id, "photos")
    with pytest.raises(ConflictError):
        engine.resolve_group(group_id, ADMIN, second.id, "second opinion")


def test_concurrent_resolutions_let_exactly_one_win(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    group_id = first.duplicate_group_id

    def attempt(approved_id: str):
        try:
            engine.resolve_group(group_id, SUPERVISOR, approved_id, f"approve {approved_id}")
        except ConflictError as exc:
            return exc
        return approved_id

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, [first.id, second.id]))

    winners = [outcome for outcome in outcomes if isinstance(outcome, str)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, ConflictError)]
    assert len(winners) == 1 and len(conflicts) == 1

    members = engine.get_group(group_id)
    verified = [member.id for member in members if member.status is ResultStatus.VERIFIED]
    rejected = [member.id for member in members if member.status is ResultStatus.REJECTED]
    assert verified == winners
    assert len(rejected) == 1
    assert engine.store.get_resolution(group_id).approved_result_id == winners[0]


def test_events_are_emitted_as_one_batch_after_commit_and_sink_errors_are_swallowed(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    batches: List[List[object]] = []

    def sink(batch) -> None:
        batches.append(list(batch))
        raise RuntimeError("push channel down")

    service = VerificationService(engine.store, engine.policy, on_event=sink)
    service.resolve_group(first.duplicate_group_id, SUPERVISOR, first.id, "photos")

    assert len(batches) == 1
    events = batches[0]
    assert [type(event) for event in events] == [ResultStatusChanged, ResultStatusChanged, GroupResolved]
    assert {event.result.id for event in events[:2]} == {first.id, second.id}
    assert all(event.group_id == first.duplicate_group_id for event in events[:2])
    assert engine.get_result(second.id).status is ResultStatus.REJECTED


def test_resolution_conflicts_with_verified_result_outside_the_group(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    agent = Actor(id="agent-1")
    outside = engine.submit_result(_payload("C1", 600), agent)
    engine.transition(outside.id, SUPERVISOR, "verify")
    first = engine.submit_result(_payload("C1", 4600), agent)
    second = engine.submit_result(_payload("C1", 4610), agent)
    group_id = second.duplicate_group_id
    assert group_id is not None
    assert {member.id for member in engine.get_group(group_id)} == {first.id, second.id}

    with pytest.raises(ConflictError) as excinfo:
        engine.resolve_group(group_id, SUPERVISOR, first.id, "photos")
    assert excinfo.value.context["verified_result_ids"] == [outside.id]

    with pytest.raises(ConflictError):
        engine.transition(first.id, SUPERVISOR, "verify")

    assert {member.status for member in engine.get_group(group_id)} == {ResultStatus.PENDING}
    assert engine.describe_group(group_id)["state"] == "open"
    assert [result.id for result in engine.list_results(status="verified")] == [outside.id]


def test_second_member_of_open_group_cannot_be_verified(tmp_path: Path) -> None:
    engine = ResultsEngine(tmp_path / "results.db")
    first, second = _duplicate_pair(engine)
    group_id = first.duplicate_group_id

    engine.transition(first.id, SUPERVISOR, "verify")
    with pytest.raises(ConflictError) as excinfo:
        engine.transition(second.id, ADMIN, "verify")
    assert excinfo.value.context["group_id"] == group_id
    assert excinfo.value.context["verified_result_ids"] == [first.id]
    assert engine.get_result(second.id).status is ResultStatus.PENDING

    resolved = engine.resolve_group(group_id, SUPERVISOR, first.id, "keep the verified copy")
    statuses = {member.id: member.status for member in resolved}
    assert statuses == {first.id: ResultStatus.VERIFIED, second.id: ResultStatus.REJECTED}
