from datetime import datetime, timedelta, timezone

from vote_gateway.eligibility import (
    ALLOWED,
    ALREADY_DECIDED,
    CLOSED,
    NOT_PERMITTED,
    NOT_YET_OPEN,
    check_eligibility,
)
from vote_gateway.models import (
    AnchorStatus,
    ConstituencyKind,
    Decision,
    DecisionPayload,
    Poll,
    VotingMode,
    VotingPermissions,
    VotingSequence,
)

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=8)

P = ConstituencyKind.PARTICIPANT
E = ConstituencyKind.EVALUATOR


def _poll(**kw):
    return Poll(poll_id="p1", start=START, end=END, **kw)


def _existing():
    return Decision(
        decision_id="d1",
        poll_id="p1",
        identity_key="k",
        constituency=P,
        voting_mode=VotingMode.SINGLE,
        payload=DecisionPayload(target_id="A"),
        commitment="c" * 64,
        anchor_ref=None,
        anchor_status=AnchorStatus.PENDING,
        created_at=START,
        updated_at=START,
    )


def test_before_start_is_not_yet_open():
    res = check_eligibility(_poll(), START - timedelta(seconds=1), P)
    assert res.outcome == NOT_YET_OPEN
    assert res.allowed is False
    assert res.reason == "not-yet-open"


def test_window_bounds_are_inclusive():
    assert check_eligibility(_poll(), START, P).outcome == ALLOWED
    assert check_eligibility(_poll(), END, P).outcome == ALLOWED


def test_one_second_after_end_closes_participants():
    res = check_eligibility(_poll(), END + timedelta(seconds=1), P)
    assert res.outcome == CLOSED


def test_evaluator_after_end_depends_on_sequence():
    late = END + timedelta(seconds=1)
    simultaneous = _poll(voting_sequence=VotingSequence.SIMULTANEOUS)
    sequenced = _poll(voting_sequence=VotingSequence.PARTICIPANTS_FIRST)

    assert check_eligibility(simultaneous, late, E).outcome == CLOSED
    assert check_eligibility(sequenced, late, E).outcome == ALLOWED
    # Participants are still closed under participants_first.
    assert check_eligibility(sequenced, late, P).outcome == CLOSED


def test_evaluator_before_start_is_not_yet_open_even_when_sequenced():
    sequenced = _poll(voting_sequence=VotingSequence.PARTICIPANTS_FIRST)
    assert check_eligibility(sequenced, START - timedelta(minutes=5), E).outcome == NOT_YET_OPEN


def test_permissions_exclude_constituencies():
    during = START + timedelta(hours=1)
    participants_only = _poll(voting_permissions=VotingPermissions.PARTICIPANTS_ONLY)
    evaluators_only = _poll(voting_permissions=VotingPermissions.EVALUATORS_ONLY)

    assert check_eligibility(participants_only, during, E).outcome == NOT_PERMITTED
    assert check_eligibility(participants_only, during, P).outcome == ALLOWED
    assert check_eligibility(evaluators_only, during, P).outcome == NOT_PERMITTED
    assert check_eligibility(evaluators_only, during, E).outcome == ALLOWED


def test_time_rule_wins_over_permission_rule():
    evaluators_only = _poll(voting_permissions=VotingPermissions.EVALUATORS_ONLY)
    res = check_eligibility(evaluators_only, END + timedelta(seconds=1), P)
    assert res.outcome == CLOSED


def test_existing_decision_without_edit_is_already_decided():
    existing = _existing()
    res = check_eligibility(_poll(), START + timedelta(hours=1), P, existing)
    assert res.outcome == ALREADY_DECIDED
    assert res.already_decided is True
    assert res.existing is existing


def test_existing_decision_with_edit_is_allowed():
    res = check_eligibility(_poll(allow_edit=True), START + timedelta(hours=1), P, _existing())
    assert res.allowed is True
    assert res.existing is not None
