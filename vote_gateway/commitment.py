"""Commitment hashing for decisions.

digest = sha256("{salt}:{poll_id}:{canonical}:{unix_ts}")

The canonical form makes semantically identical decisions hash identically
whatever the submission order:
  - single:   the target id
  - multiple: target ids sorted lexicographically, joined by ","
  - ranked:   "target:rank" pairs sorted by rank ascending, joined by ","

The salt is the plain participant credential or the evaluator email. It goes
into the digest only; anchor metadata never carries it.
"""

from __future__ import annotations

from typing import Any, Dict

from .crypto import _sha256_hex
from .models import ConstituencyKind, DecisionPayload, VotingMode

COMMITMENT_PROTOCOL = "FAIR_VOTING"
COMMITMENT_VERSION = "1.0"


def canonical_payload(mode: VotingMode, payload: DecisionPayload) -> str:
    if mode == VotingMode.SINGLE:
        return payload.target_id or ""
    if mode == VotingMode.MULTIPLE:
        return ",".join(sorted(payload.target_ids or ()))
    ordered = sorted(payload.rankings or (), key=lambda r: r.rank)
    return ",".join(f"{r.target_id}:{r.rank}" for r in ordered)


def commitment_digest(salt: str, poll_id: str, canonical: str, unix_ts: int) -> str:
    return _sha256_hex(f"{salt}:{poll_id}:{canonical}:{int(unix_ts)}".encode("utf-8"))


def commit(salt: str, poll_id: str, mode: VotingMode, payload: DecisionPayload, unix_ts: int) -> str:
    return commitment_digest(salt, poll_id, canonical_payload(mode, payload), unix_ts)


def anchor_metadata(
    *,
    poll_id: str,
    mode: VotingMode,
    constituency: ConstituencyKind,
    unix_ts: int,
    digest: str,
) -> Dict[str, Any]:
    """Non-identifying metadata sent to the commitment anchor."""
    return {
        "poll_id": poll_id,
        "voting_mode": mode.value,
        "constituency": constituency.value,
        "timestamp": int(unix_ts),
        "digest": digest,
        "protocol": COMMITMENT_PROTOCOL,
        "version": COMMITMENT_VERSION,
    }
