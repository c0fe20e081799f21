"""Eligibility gate: may this identity cast (or edit) a decision right now?

Pure function over externally supplied state. The current instant is always
passed in, never read from a clock here.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import ConstituencyKind, Decision, Poll, VotingSequence


ALLOWED = "allowed"
NOT_YET_OPEN = "not-yet-open"
CLOSED = "closed"
NOT_PERMITTED = "not-permitted"
ALREADY_DECIDED = "already-decided"


@dataclass(frozen=True)
class GateResult:
    outcome: str
    existing: Optional[Decision] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOWED

    @property
    def already_decided(self) -> bool:
        return self.outcome == ALREADY_DECIDED

    @property
    def reason(self) -> Optional[str]:
        return None if self.allowed else self.outcome


def check_eligibility(
    poll: Poll,
    now: datetime,
    kind: ConstituencyKind,
    existing: Optional[Decision] = None,
) -> GateResult:
    """Apply the gate rules in order; the first failing rule wins."""
    if now < poll.start:
        return GateResult(NOT_YET_OPEN)

    # Under participants_first the evaluator phase follows the participant
    # window, so evaluators are not closed by poll.end.
    evaluator_after_phase = (
        kind == ConstituencyKind.EVALUATOR
        and poll.voting_sequence == VotingSequence.PARTICIPANTS_FIRST
    )
    if not evaluator_after_phase and now > poll.end:
        return GateResult(CLOSED)

    if not poll.permits(kind):
        return GateResult(NOT_PERMITTED)

    if existing is not None and not poll.allow_edit:
        return GateResult(ALREADY_DECIDED, existing=existing)

    return GateResult(ALLOWED, existing=existing)
