"""Structural validation of a submitted decision against the poll's voting mode.

Returns a normalized `DecisionPayload` carrying only the field that matters
for the mode, or raises a client `VoteError` naming the violated rule.
"""

from __future__ import annotations

from typing import Iterable, Optional, Set

from .errors import rejection
from .models import Constituency, ConstituencyKind, DecisionPayload, Poll, RankedEntry, Target, VotingMode


def _check_target(
    target_id: str,
    known: Set[str],
    poll: Poll,
    constituency: Constituency,
) -> None:
    if target_id not in known:
        raise rejection("unknown-target", f"Unknown target: {target_id}", target_id=target_id)
    if (
        constituency.kind == ConstituencyKind.PARTICIPANT
        and not poll.allow_self_interest
        and constituency.own_target_id is not None
        and constituency.own_target_id == target_id
    ):
        raise rejection("self-interest", "Deciding about your own target is not allowed", target_id=target_id)


def _justification(poll: Poll, constituency: Constituency, text: Optional[str]) -> Optional[str]:
    reason = (text or "").strip() or None
    if (
        poll.require_evaluator_justification
        and constituency.kind == ConstituencyKind.EVALUATOR
        and reason is None
    ):
        raise rejection("missing-justification", "Evaluators must justify their decision")
    return reason


def validate_payload(
    poll: Poll,
    targets: Iterable[Target],
    constituency: Constituency,
    payload: DecisionPayload,
) -> DecisionPayload:
    known = {t.target_id for t in targets if t.poll_id == poll.poll_id}

    if poll.voting_mode == VotingMode.SINGLE:
        if not payload.target_id:
            raise rejection("empty-payload", "targetId is required for single mode")
        _check_target(payload.target_id, known, poll, constituency)
        return DecisionPayload(
            target_id=payload.target_id,
            justification=_justification(poll, constituency, payload.justification),
        )

    if poll.voting_mode == VotingMode.MULTIPLE:
        if not payload.target_ids:
            raise rejection("empty-payload", "targetIds is required for multiple mode")
        seen: Set[str] = set()
        for target_id in payload.target_ids:
            if target_id in seen:
                raise rejection("duplicate-target", f"Duplicate target: {target_id}", target_id=target_id)
            seen.add(target_id)
            _check_target(target_id, known, poll, constituency)
        return DecisionPayload(
            target_ids=tuple(payload.target_ids),
            justification=_justification(poll, constituency, payload.justification),
        )

    # ranked
    if not payload.rankings:
        raise rejection("empty-payload", "rankings is required for ranked mode")
    if poll.max_ranked_positions is not None and len(payload.rankings) > poll.max_ranked_positions:
        raise rejection(
            "too-many-ranks",
            f"At most {poll.max_ranked_positions} ranked positions are allowed",
            submitted=len(payload.rankings),
            max_ranked_positions=poll.max_ranked_positions,
        )
    seen_targets: Set[str] = set()
    seen_ranks: Set[int] = set()
    entries = []
    for entry in payload.rankings:
        if entry.rank < 1:
            raise rejection("invalid-rank", f"Rank must be >= 1, got {entry.rank}", rank=entry.rank)
        if entry.target_id in seen_targets:
            raise rejection("duplicate-target", f"Duplicate target in rankings: {entry.target_id}", target_id=entry.target_id)
        if entry.rank in seen_ranks:
            raise rejection("rank-collision", f"Rank {entry.rank} used more than once", rank=entry.rank)
        seen_targets.add(entry.target_id)
        seen_ranks.add(entry.rank)
        _check_target(entry.target_id, known, poll, constituency)
        entries.append(
            RankedEntry(
                target_id=entry.target_id,
                rank=entry.rank,
                justification=(entry.justification or "").strip() or None,
            )
        )
    return DecisionPayload(rankings=tuple(entries))
