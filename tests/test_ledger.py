import threading
from datetime import datetime, timedelta, timezone

import pytest

from vote_gateway.errors import VoteError, VOTE_E_CREDENTIAL_RACE
from vote_gateway.ledger import INSERTED, REJECTED_ALREADY_DECIDED, REPLACED, DecisionLedger
from vote_gateway.models import (
    AnchorStatus,
    DecisionPayload,
    Evaluator,
    Participant,
    hash_credential,
)

DURING = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _participant(tokens, target="A"):
    token = tokens[target]
    return Participant(credential_hash=hash_credential(token), own_target_id=target, secret=token)


def test_insert_consumes_credential(seed_poll, directory, ledger):
    poll, tokens = seed_poll()
    alice = _participant(tokens)

    out = ledger.record(poll, alice, DecisionPayload(target_id="B"), "c" * 64, "0xref", DURING)
    assert out.kind == INSERTED
    assert out.is_update is False
    assert out.decision.anchor_status == AnchorStatus.ANCHORED
    assert out.decision.payload.target_id == "B"

    cred = directory.find_credential(alice.credential_hash)
    assert cred.used is True


def test_missing_anchor_ref_is_pending(seed_poll, ledger):
    poll, tokens = seed_poll()
    out = ledger.record(poll, _participant(tokens), DecisionPayload(target_id="B"), "c" * 64, None, DURING)
    assert out.decision.anchor_status == AnchorStatus.PENDING
    assert [d.decision_id for d in ledger.list_pending_anchors(poll.poll_id)] == [out.decision.decision_id]


def test_second_record_without_edit_keeps_first(seed_poll, ledger):
    poll, tokens = seed_poll()
    alice = _participant(tokens)
    first = ledger.record(poll, alice, DecisionPayload(target_id="B"), "1" * 64, None, DURING)
    second = ledger.record(poll, alice, DecisionPayload(target_id="C"), "2" * 64, None, DURING + timedelta(minutes=1))

    assert second.kind == REJECTED_ALREADY_DECIDED
    assert second.decision.decision_id == first.decision.decision_id
    assert second.decision.payload.target_id == "B"
    assert ledger.count(poll.poll_id) == 1


def test_edit_replaces_in_place(seed_poll, ledger):
    poll, tokens = seed_poll(allow_edit=True)
    alice = _participant(tokens)
    first = ledger.record(poll, alice, DecisionPayload(target_id="B"), "1" * 64, None, DURING)
    later = DURING + timedelta(minutes=5)
    second = ledger.record(poll, alice, DecisionPayload(target_id="C"), "2" * 64, "0xnew", later)

    assert second.kind == REPLACED
    assert second.is_update is True
    d = second.decision
    assert d.decision_id == first.decision.decision_id
    assert d.created_at == first.decision.created_at
    assert d.updated_at == later
    assert d.payload.target_id == "C"
    assert d.commitment == "2" * 64
    assert d.anchor_status == AnchorStatus.ANCHORED
    assert ledger.count(poll.poll_id) == 1


def test_evaluator_decision_does_not_touch_credentials(seed_poll, directory, ledger):
    poll, tokens = seed_poll()
    judge = Evaluator(email="Judge@Example.org ")
    out = ledger.record(poll, judge, DecisionPayload(target_id="A", justification="great"), "e" * 64, None, DURING)

    assert out.kind == INSERTED
    assert out.decision.identity_key == "judge@example.org"
    assert out.decision.payload.justification == "great"
    for token in tokens.values():
        assert directory.find_credential(hash_credential(token)).used is False


def test_consumed_credential_rolls_back_insert(seed_poll, db, ledger):
    poll, tokens = seed_poll()
    alice = _participant(tokens)
    with db.connect("consume") as conn:
        conn.execute("UPDATE credentials SET used = 1 WHERE credential_hash = ?", (alice.credential_hash,))

    with pytest.raises(VoteError) as ei:
        ledger.record(poll, alice, DecisionPayload(target_id="B"), "c" * 64, None, DURING)
    assert ei.value.code == VOTE_E_CREDENTIAL_RACE
    assert ei.value.http_status == 409
    assert ledger.get_current(poll.poll_id, alice.identity_key) is None


def test_ranked_payload_round_trips(seed_poll, ledger):
    from vote_gateway.models import RankedEntry, VotingMode

    poll, tokens = seed_poll(voting_mode=VotingMode.RANKED)
    rankings = (RankedEntry("B", 1, points=3), RankedEntry("C", 2, points=2, justification="close"))
    out = ledger.record(poll, _participant(tokens), DecisionPayload(rankings=rankings), "c" * 64, None, DURING)

    stored = ledger.get_current(poll.poll_id, out.decision.identity_key)
    assert stored.payload.rankings == rankings
    assert stored.payload.target_id is None


def test_concurrent_first_submissions_insert_exactly_once(seed_poll, db):
    poll, _ = seed_poll()
    judge = Evaluator(email="judge@example.org")
    outcomes = []
    errors = []
    barrier = threading.Barrier(8)

    def worker(i):
        ledger = DecisionLedger(db)
        barrier.wait()
        try:
            out = ledger.record(poll, judge, DecisionPayload(target_id="B"), f"{i:064d}", None, DURING)
            outcomes.append(out.kind)
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert outcomes.count(INSERTED) == 1
    assert outcomes.count(REJECTED_ALREADY_DECIDED) == 7
    assert DecisionLedger(db).count(poll.poll_id) == 1


def test_list_current_is_scoped_to_poll(seed_poll, ledger):
    p1, t1 = seed_poll("p1")
    p2, t2 = seed_poll("p2")
    ledger.record(p1, _participant(t1), DecisionPayload(target_id="B"), "1" * 64, None, DURING)
    ledger.record(p2, _participant(t2), DecisionPayload(target_id="C"), "2" * 64, None, DURING)

    assert [d.poll_id for d in ledger.list_current("p1")] == ["p1"]
    assert ledger.count() == 2
