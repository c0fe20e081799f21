from datetime import datetime, timedelta, timezone

import pytest

from vote_gateway.errors import (
    VoteError,
    VOTE_E_DUPLICATE_TARGET,
    VOTE_E_EMPTY_PAYLOAD,
    VOTE_E_INVALID_RANK,
    VOTE_E_MISSING_JUSTIFICATION,
    VOTE_E_RANK_COLLISION,
    VOTE_E_SELF_INTEREST,
    VOTE_E_TOO_MANY_RANKS,
    VOTE_E_UNKNOWN_TARGET,
)
from vote_gateway.models import (
    DecisionPayload,
    Evaluator,
    Participant,
    Poll,
    RankedEntry,
    Target,
    VotingMode,
)
from vote_gateway.validation import validate_payload

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=8)

TARGETS = [Target("A", "p1"), Target("B", "p1"), Target("C", "p1"), Target("X", "other")]
ALICE = Participant(credential_hash="h" * 64, own_target_id="A", secret="tok")
JUDGE = Evaluator(email="judge@example.org")


def _poll(mode, **kw):
    return Poll(poll_id="p1", start=START, end=END, voting_mode=mode, **kw)


def _reject(poll, constituency, payload):
    with pytest.raises(VoteError) as ei:
        validate_payload(poll, TARGETS, constituency, payload)
    assert ei.value.http_status == 400
    assert ei.value.retryable is False
    return ei.value


def test_single_requires_target():
    err = _reject(_poll(VotingMode.SINGLE), ALICE, DecisionPayload(target_ids=("B",)))
    assert err.code == VOTE_E_EMPTY_PAYLOAD
    assert err.details["reason"] == "empty-payload"


def test_single_unknown_target_and_target_of_other_poll():
    poll = _poll(VotingMode.SINGLE)
    assert _reject(poll, ALICE, DecisionPayload(target_id="Z")).code == VOTE_E_UNKNOWN_TARGET
    assert _reject(poll, ALICE, DecisionPayload(target_id="X")).code == VOTE_E_UNKNOWN_TARGET


def test_single_self_interest_rejected_for_participant_only():
    poll = _poll(VotingMode.SINGLE)
    err = _reject(poll, ALICE, DecisionPayload(target_id="A"))
    assert err.code == VOTE_E_SELF_INTEREST

    # Evaluators have no own target.
    out = validate_payload(poll, TARGETS, JUDGE, DecisionPayload(target_id="A"))
    assert out.target_id == "A"


def test_self_interest_allowed_by_poll_flag():
    poll = _poll(VotingMode.SINGLE, allow_self_interest=True)
    out = validate_payload(poll, TARGETS, ALICE, DecisionPayload(target_id="A"))
    assert out.target_id == "A"


def test_single_keeps_only_mode_field():
    out = validate_payload(
        _poll(VotingMode.SINGLE), TARGETS, ALICE,
        DecisionPayload(target_id="B", target_ids=("C",)),
    )
    assert out.target_id == "B"
    assert out.target_ids is None
    assert out.rankings is None


def test_multiple_rules():
    poll = _poll(VotingMode.MULTIPLE)
    assert _reject(poll, ALICE, DecisionPayload(target_ids=())).code == VOTE_E_EMPTY_PAYLOAD
    assert _reject(poll, ALICE, DecisionPayload(target_ids=("B", "B"))).code == VOTE_E_DUPLICATE_TARGET
    assert _reject(poll, ALICE, DecisionPayload(target_ids=("B", "A"))).code == VOTE_E_SELF_INTEREST
    assert _reject(poll, ALICE, DecisionPayload(target_ids=("B", "Q"))).code == VOTE_E_UNKNOWN_TARGET

    out = validate_payload(poll, TARGETS, ALICE, DecisionPayload(target_ids=("C", "B")))
    assert out.target_ids == ("C", "B")


def test_ranked_rules():
    poll = _poll(VotingMode.RANKED)

    def ranked(*pairs):
        return DecisionPayload(rankings=tuple(RankedEntry(t, r) for t, r in pairs))

    assert _reject(poll, ALICE, ranked()).code == VOTE_E_EMPTY_PAYLOAD
    assert _reject(poll, ALICE, ranked(("B", 1), ("C", 1))).code == VOTE_E_RANK_COLLISION
    assert _reject(poll, ALICE, ranked(("B", 1), ("B", 2))).code == VOTE_E_DUPLICATE_TARGET
    assert _reject(poll, ALICE, ranked(("B", 0))).code == VOTE_E_INVALID_RANK
    assert _reject(poll, ALICE, ranked(("A", 1))).code == VOTE_E_SELF_INTEREST

    out = validate_payload(poll, TARGETS, ALICE, ranked(("C", 2), ("B", 1)))
    assert [(r.target_id, r.rank, r.points) for r in out.rankings] == [("C", 2, 0), ("B", 1, 0)]


def test_ranked_max_positions():
    poll = _poll(VotingMode.RANKED, max_ranked_positions=1)
    payload = DecisionPayload(rankings=(RankedEntry("B", 1), RankedEntry("C", 2)))
    err = _reject(poll, ALICE, payload)
    assert err.code == VOTE_E_TOO_MANY_RANKS
    assert err.details["max_ranked_positions"] == 1


def test_evaluator_justification_required_when_configured():
    poll = _poll(VotingMode.SINGLE, require_evaluator_justification=True)
    err = _reject(poll, JUDGE, DecisionPayload(target_id="B", justification="   "))
    assert err.code == VOTE_E_MISSING_JUSTIFICATION

    out = validate_payload(poll, TARGETS, JUDGE, DecisionPayload(target_id="B", justification=" strong demo "))
    assert out.justification == "strong demo"

    # Participants are not asked to justify.
    out = validate_payload(poll, TARGETS, ALICE, DecisionPayload(target_id="B"))
    assert out.justification is None
