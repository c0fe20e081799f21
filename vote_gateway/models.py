"""Domain types for polls, identities and decisions.

Identity is a tagged union: a decision is cast either by a `Participant`
(holding a single-use credential, bound to at most one target) or by an
`Evaluator` (identified by email and allow-listed per poll). Exactly one of the
two exists per submission, so "exactly one selector" is carried by the type
rather than by two optional fields.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class VotingMode(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    RANKED = "ranked"


class VotingPermissions(str, Enum):
    PARTICIPANTS_ONLY = "participants_only"
    EVALUATORS_ONLY = "evaluators_only"
    BOTH = "both"


class VotingSequence(str, Enum):
    SIMULTANEOUS = "simultaneous"
    PARTICIPANTS_FIRST = "participants_first"


class ConstituencyKind(str, Enum):
    PARTICIPANT = "participant"
    EVALUATOR = "evaluator"


class AnchorStatus(str, Enum):
    ANCHORED = "anchored"
    PENDING = "pending"


def hash_credential(token: str) -> str:
    """SHA-256 hex of a plain participant credential (the stored identity key)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class Poll:
    poll_id: str
    start: datetime
    end: datetime
    voting_mode: VotingMode = VotingMode.SINGLE
    voting_permissions: VotingPermissions = VotingPermissions.BOTH
    voting_sequence: VotingSequence = VotingSequence.SIMULTANEOUS
    participant_weight: float = 1.0
    evaluator_weight: float = 1.0
    allow_self_interest: bool = False
    allow_edit: bool = False
    max_ranked_positions: Optional[int] = None
    rank_points: Optional[Dict[int, float]] = None
    require_evaluator_justification: bool = False
    name: str = ""

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("poll end must be after start")
        if self.participant_weight < 0 or self.evaluator_weight < 0:
            raise ValueError("weights must be non-negative")

    def weight_for(self, kind: ConstituencyKind) -> float:
        if kind == ConstituencyKind.EVALUATOR:
            return float(self.evaluator_weight)
        return float(self.participant_weight)

    def permits(self, kind: ConstituencyKind) -> bool:
        if self.voting_permissions == VotingPermissions.BOTH:
            return True
        if kind == ConstituencyKind.PARTICIPANT:
            return self.voting_permissions == VotingPermissions.PARTICIPANTS_ONLY
        return self.voting_permissions == VotingPermissions.EVALUATORS_ONLY

    def summary(self) -> Dict[str, Any]:
        return {
            "pollId": self.poll_id,
            "name": self.name,
            "startTime": self.start.isoformat(),
            "endTime": self.end.isoformat(),
            "votingMode": self.voting_mode.value,
            "votingPermissions": self.voting_permissions.value,
            "votingSequence": self.voting_sequence.value,
            "allowSelfVote": self.allow_self_interest,
            "allowVoteEditing": self.allow_edit,
            "maxRankedPositions": self.max_ranked_positions,
            "rankPointsConfig": {str(k): v for k, v in (self.rank_points or {}).items()} or None,
        }


@dataclass(frozen=True)
class Target:
    target_id: str
    poll_id: str
    name: str = ""


@dataclass(frozen=True)
class CredentialRecord:
    credential_hash: str
    poll_id: str
    target_id: Optional[str] = None
    used: bool = False
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class Participant:
    credential_hash: str
    own_target_id: Optional[str] = None
    # Plain credential; only used as the commitment salt, never stored.
    secret: str = field(default="", repr=False, compare=False)

    @property
    def kind(self) -> ConstituencyKind:
        return ConstituencyKind.PARTICIPANT

    @property
    def identity_key(self) -> str:
        return self.credential_hash

    @property
    def commitment_salt(self) -> str:
        return self.secret


@dataclass(frozen=True)
class Evaluator:
    email: str

    @property
    def kind(self) -> ConstituencyKind:
        return ConstituencyKind.EVALUATOR

    @property
    def identity_key(self) -> str:
        return normalize_email(self.email)

    @property
    def commitment_salt(self) -> str:
        return self.email

    @property
    def own_target_id(self) -> Optional[str]:
        return None


Constituency = Union[Participant, Evaluator]


@dataclass(frozen=True)
class RankedEntry:
    target_id: str
    rank: int
    points: float = 0
    justification: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"targetId": self.target_id, "rank": self.rank, "points": self.points}
        if self.justification:
            d["justification"] = self.justification
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RankedEntry":
        return cls(
            target_id=str(d["targetId"]),
            rank=int(d["rank"]),
            points=d.get("points", 0),
            justification=d.get("justification"),
        )


@dataclass(frozen=True)
class DecisionPayload:
    """Mode-dependent content of a decision. Exactly one of the fields is set
    once validated."""

    target_id: Optional[str] = None
    target_ids: Optional[Tuple[str, ...]] = None
    rankings: Optional[Tuple[RankedEntry, ...]] = None
    justification: Optional[str] = None

    def targets(self) -> List[str]:
        if self.target_id is not None:
            return [self.target_id]
        if self.target_ids is not None:
            return list(self.target_ids)
        if self.rankings is not None:
            return [r.target_id for r in self.rankings]
        return []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "targetId": self.target_id,
            "targetIds": list(self.target_ids) if self.target_ids is not None else None,
            "rankings": [r.to_dict() for r in self.rankings] if self.rankings is not None else None,
            "justification": self.justification,
        }


@dataclass(frozen=True)
class Decision:
    decision_id: str
    poll_id: str
    identity_key: str
    constituency: ConstituencyKind
    voting_mode: VotingMode
    payload: DecisionPayload
    commitment: str
    anchor_ref: Optional[str]
    anchor_status: AnchorStatus
    created_at: datetime
    updated_at: datetime

    def to_dict(self, explorer_url: Optional[str] = None) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "decisionId": self.decision_id,
            "pollId": self.poll_id,
            "constituency": self.constituency.value,
            "votingMode": self.voting_mode.value,
            "commitment": self.commitment,
            "anchorRef": self.anchor_ref,
            "anchorStatus": self.anchor_status.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        d.update(self.payload.to_dict())
        if explorer_url is not None:
            d["explorerUrl"] = explorer_url
        return d
