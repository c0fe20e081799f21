from datetime import datetime, timedelta, timezone

import pytest

from vote_gateway.directory import SqlitePollDirectory
from vote_gateway.ledger import DecisionLedger
from vote_gateway.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from vote_gateway.models import Poll
from vote_gateway.storage import VoteDatabase

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
END = START + timedelta(hours=8)

JUDGE = "judge@example.org"


@pytest.fixture
def db(tmp_path):
    circuit = DbCircuitBreaker(CircuitBreakerConfig())
    return VoteDatabase(str(tmp_path / "vote.db"), circuit=circuit)


@pytest.fixture
def directory(db):
    return SqlitePollDirectory(db)


@pytest.fixture
def ledger(db):
    return DecisionLedger(db)


@pytest.fixture
def seed_poll(directory):
    """Seed a poll with one target per id, a credential bound to each target
    and one allow-listed evaluator. Returns (poll, {target_id: token})."""

    def _seed(poll_id="p1", targets=("A", "B", "C"), evaluators=(JUDGE,), **poll_kwargs):
        poll = Poll(poll_id=poll_id, start=START, end=END, **poll_kwargs)
        directory.save_poll(poll)
        for t in targets:
            directory.add_target(poll_id, t, f"Team {t}")
        for email in evaluators:
            directory.add_evaluator(poll_id, email)
        tokens = {t: directory.issue_credential(poll_id, t) for t in targets}
        return poll, tokens

    return _seed
