"""Tally aggregation over the current decisions of a poll.

Each constituency contributes a weighted total per target:
  - single / multiple: the constituency weight once per vote for the target
  - ranked:            points * constituency weight for each placement

score = participant_points + evaluator_points, both already weighted.

Ranked points are recomputed from each decision's ranks with the poll's
current target count and override table. All sums go through math.fsum so
the result does not depend on the order decisions are folded in.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from .models import ConstituencyKind, Decision, Poll, Target, VotingMode
from .points import points_for_rank


@dataclass(frozen=True)
class TargetResult:
    target_id: str
    name: str = ""
    participant_count: int = 0
    evaluator_count: int = 0
    participant_points: float = 0.0
    evaluator_points: float = 0.0
    score: float = 0.0
    rank_histogram: Dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "targetId": self.target_id,
            "name": self.name,
            "participantCount": self.participant_count,
            "evaluatorCount": self.evaluator_count,
            "participantPoints": self.participant_points,
            "evaluatorPoints": self.evaluator_points,
            "score": self.score,
        }
        if self.rank_histogram:
            d["rankHistogram"] = {str(k): v for k, v in sorted(self.rank_histogram.items())}
        return d


@dataclass(frozen=True)
class TallyResult:
    poll_id: str
    voting_mode: VotingMode
    results: Tuple[TargetResult, ...]
    ties: Tuple[Tuple[str, ...], ...]
    total_decisions: int

    def by_target(self) -> Dict[str, TargetResult]:
        return {r.target_id: r for r in self.results}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pollId": self.poll_id,
            "votingMode": self.voting_mode.value,
            "totalDecisions": self.total_decisions,
            "results": [r.to_dict() for r in self.results],
            "ties": [list(group) for group in self.ties],
        }


class _Acc:
    __slots__ = ("participant_count", "evaluator_count", "participant_points", "evaluator_points", "histogram")

    def __init__(self) -> None:
        self.participant_count = 0
        self.evaluator_count = 0
        self.participant_points: List[float] = []
        self.evaluator_points: List[float] = []
        self.histogram: Dict[int, int] = {}


def _tie_groups(results: Iterable[TargetResult]) -> Tuple[Tuple[str, ...], ...]:
    by_score: Dict[float, List[str]] = {}
    for r in results:
        by_score.setdefault(r.score, []).append(r.target_id)
    groups = [tuple(sorted(ids)) for score, ids in sorted(by_score.items(), key=lambda kv: -kv[0]) if len(ids) > 1]
    return tuple(groups)


def tally(poll: Poll, targets: Iterable[Target], decisions: Iterable[Decision]) -> TallyResult:
    target_list = [t for t in targets if t.poll_id == poll.poll_id]
    names = {t.target_id: t.name for t in target_list}
    acc: Dict[str, _Acc] = {t.target_id: _Acc() for t in target_list}
    n_targets = len(target_list)
    ranked = poll.voting_mode == VotingMode.RANKED

    total = 0
    for decision in decisions:
        if decision.poll_id != poll.poll_id:
            continue
        total += 1
        participant = decision.constituency == ConstituencyKind.PARTICIPANT
        weight = poll.weight_for(decision.constituency)
        if ranked:
            for entry in decision.payload.rankings or ():
                a = acc.get(entry.target_id)
                # Targets removed after the decision was cast do not score.
                if a is None:
                    continue
                pts = float(points_for_rank(entry.rank, n_targets, poll.rank_points)) * weight
                a.histogram[entry.rank] = a.histogram.get(entry.rank, 0) + 1
                if participant:
                    a.participant_count += 1
                    a.participant_points.append(pts)
                else:
                    a.evaluator_count += 1
                    a.evaluator_points.append(pts)
        else:
            for target_id in decision.payload.targets():
                a = acc.get(target_id)
                if a is None:
                    continue
                if participant:
                    a.participant_count += 1
                    a.participant_points.append(weight)
                else:
                    a.evaluator_count += 1
                    a.evaluator_points.append(weight)

    results: List[TargetResult] = []
    for target_id, a in acc.items():
        p_pts = math.fsum(a.participant_points)
        e_pts = math.fsum(a.evaluator_points)
        score = math.fsum([p_pts, e_pts])
        results.append(
            TargetResult(
                target_id=target_id,
                name=names.get(target_id, ""),
                participant_count=a.participant_count,
                evaluator_count=a.evaluator_count,
                participant_points=p_pts,
                evaluator_points=e_pts,
                score=score,
                rank_histogram=dict(a.histogram) if ranked else {},
            )
        )

    # Target id only orders equal scores for stable output; it does not break ties.
    results.sort(key=lambda r: (-r.score, r.target_id))
    return TallyResult(
        poll_id=poll.poll_id,
        voting_mode=poll.voting_mode,
        results=tuple(results),
        ties=_tie_groups(results),
        total_decisions=total,
    )
