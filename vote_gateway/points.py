"""Ranked-mode point allocation.

Rank r (1 = best) in a poll with N targets earns ``max(0, N - r + 1)`` points,
unless the poll carries an explicit rank->points table, in which case the
table wins for the ranks it lists. Points are never negative.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .models import RankedEntry


def points_for_rank(rank: int, n_targets: int, overrides: Optional[Dict[int, float]] = None) -> float:
    if overrides and rank in overrides:
        return max(0, overrides[rank])
    return max(0, n_targets - rank + 1)


def allocate(
    rankings: Iterable[RankedEntry],
    n_targets: int,
    overrides: Optional[Dict[int, float]] = None,
) -> List[RankedEntry]:
    """Return the entries with their points filled in, in submission order."""
    return [
        RankedEntry(
            target_id=r.target_id,
            rank=r.rank,
            points=points_for_rank(r.rank, n_targets, overrides),
            justification=r.justification,
        )
        for r in rankings
    ]
