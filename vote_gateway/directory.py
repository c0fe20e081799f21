"""Poll directory: the read-only eligibility data source the engine consults.

The engine never mutates poll configuration. `SqlitePollDirectory` also offers
a small seeding API (polls, targets, credentials, evaluator allow-list) for
deployments that keep this data alongside the ledger, and for tests.
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .crypto import _now_utc, _parse_iso_utc
from .models import (
    CredentialRecord,
    Poll,
    Target,
    VotingMode,
    VotingPermissions,
    VotingSequence,
    hash_credential,
    normalize_email,
)
from .storage import VoteDatabase


@runtime_checkable
class PollDirectory(Protocol):
    def get_poll(self, poll_id: str) -> Optional[Poll]: ...

    def list_targets(self, poll_id: str) -> List[Target]: ...

    def find_credential(self, credential_hash: str) -> Optional[CredentialRecord]: ...

    def is_evaluator(self, poll_id: str, email: str) -> bool: ...


def _poll_from_row(row: Any) -> Poll:
    rank_points = None
    if row["rank_points_json"]:
        rank_points = {int(k): v for k, v in json.loads(row["rank_points_json"]).items()}
    return Poll(
        poll_id=row["poll_id"],
        name=row["name"],
        start=_parse_iso_utc(row["start_utc"]),
        end=_parse_iso_utc(row["end_utc"]),
        voting_mode=VotingMode(row["voting_mode"]),
        voting_permissions=VotingPermissions(row["voting_permissions"]),
        voting_sequence=VotingSequence(row["voting_sequence"]),
        participant_weight=float(row["participant_weight"]),
        evaluator_weight=float(row["evaluator_weight"]),
        allow_self_interest=bool(row["allow_self_interest"]),
        allow_edit=bool(row["allow_edit"]),
        max_ranked_positions=row["max_ranked_positions"],
        rank_points=rank_points,
        require_evaluator_justification=bool(row["require_evaluator_justification"]),
    )


class SqlitePollDirectory:
    def __init__(self, db: VoteDatabase):
        self.db = db

    # ---------------------------
    # Reads (eligibility data source)
    # ---------------------------

    def get_poll(self, poll_id: str) -> Optional[Poll]:
        with self.db.connect("get_poll") as conn:
            row = conn.execute("SELECT * FROM polls WHERE poll_id = ?", (poll_id,)).fetchone()
        return _poll_from_row(row) if row else None

    def list_targets(self, poll_id: str) -> List[Target]:
        with self.db.connect("list_targets") as conn:
            rows = conn.execute(
                "SELECT poll_id, target_id, name FROM targets WHERE poll_id = ? ORDER BY target_id",
                (poll_id,),
            ).fetchall()
        return [Target(target_id=r["target_id"], poll_id=r["poll_id"], name=r["name"]) for r in rows]

    def find_credential(self, credential_hash: str) -> Optional[CredentialRecord]:
        with self.db.connect("find_credential") as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE credential_hash = ?",
                (credential_hash,),
            ).fetchone()
        if not row:
            return None
        return CredentialRecord(
            credential_hash=row["credential_hash"],
            poll_id=row["poll_id"],
            target_id=row["target_id"],
            used=bool(row["used"]),
            expires_at=_parse_iso_utc(row["expires_at_utc"]),
        )

    def is_evaluator(self, poll_id: str, email: str) -> bool:
        with self.db.connect("is_evaluator") as conn:
            row = conn.execute(
                "SELECT 1 FROM evaluators WHERE poll_id = ? AND email = ?",
                (poll_id, normalize_email(email)),
            ).fetchone()
        return row is not None

    # ---------------------------
    # Seeding
    # ---------------------------

    def save_poll(self, poll: Poll) -> None:
        rank_points_json = None
        if poll.rank_points:
            rank_points_json = json.dumps({str(k): v for k, v in poll.rank_points.items()}, sort_keys=True)
        with self.db.connect("save_poll") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO polls
                (poll_id, name, start_utc, end_utc, voting_mode, voting_permissions, voting_sequence,
                 participant_weight, evaluator_weight, allow_self_interest, allow_edit,
                 max_ranked_positions, rank_points_json, require_evaluator_justification)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    poll.poll_id, poll.name, poll.start.isoformat(), poll.end.isoformat(),
                    poll.voting_mode.value, poll.voting_permissions.value, poll.voting_sequence.value,
                    float(poll.participant_weight), float(poll.evaluator_weight),
                    int(poll.allow_self_interest), int(poll.allow_edit),
                    poll.max_ranked_positions, rank_points_json,
                    int(poll.require_evaluator_justification),
                ),
            )

    def add_target(self, poll_id: str, target_id: str, name: str = "") -> Target:
        with self.db.connect("add_target") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO targets (poll_id, target_id, name) VALUES (?, ?, ?)",
                (poll_id, target_id, name),
            )
        return Target(target_id=target_id, poll_id=poll_id, name=name)

    def issue_credential(
        self,
        poll_id: str,
        target_id: Optional[str] = None,
        *,
        token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Store a participant credential and return the plain token (shown once)."""
        plain = token or secrets.token_urlsafe(32)
        with self.db.connect("issue_credential") as conn:
            conn.execute(
                """
                INSERT INTO credentials (credential_hash, poll_id, target_id, used, issued_at_utc, expires_at_utc)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (
                    hash_credential(plain), poll_id, target_id, _now_utc().isoformat(),
                    expires_at.isoformat() if expires_at else None,
                ),
            )
        return plain

    def add_evaluator(self, poll_id: str, email: str) -> None:
        with self.db.connect("add_evaluator") as conn:
            conn.execute(
                "INSERT OR IGNORE INTO evaluators (poll_id, email) VALUES (?, ?)",
                (poll_id, normalize_email(email)),
            )

    def load_poll_document(self, doc: Dict[str, Any]) -> Tuple[Poll, Dict[str, str]]:
        """Seed a poll from a JSON-style document.

        Expected keys: pollId, startTime, endTime, votingMode, votingPermissions,
        votingSequence, participantWeight, evaluatorWeight, allowSelfVote,
        allowVoteEditing, maxRankedPositions, rankPointsConfig,
        requireEvaluatorJustification, targets [{targetId, name}],
        evaluators [email], credentials [{targetId, token?}].

        Returns the poll and a mapping of issued plain tokens to target ids.
        """
        start = _parse_iso_utc(doc.get("startTime"))
        end = _parse_iso_utc(doc.get("endTime"))
        if start is None or end is None:
            raise ValueError("startTime and endTime must be ISO timestamps")
        rank_points = doc.get("rankPointsConfig") or None
        poll = Poll(
            poll_id=str(doc["pollId"]),
            name=str(doc.get("name", "")),
            start=start,
            end=end,
            voting_mode=VotingMode(doc.get("votingMode", "single")),
            voting_permissions=VotingPermissions(doc.get("votingPermissions", "both")),
            voting_sequence=VotingSequence(doc.get("votingSequence", "simultaneous")),
            participant_weight=float(doc.get("participantWeight", 1.0)),
            evaluator_weight=float(doc.get("evaluatorWeight", 1.0)),
            allow_self_interest=bool(doc.get("allowSelfVote", False)),
            allow_edit=bool(doc.get("allowVoteEditing", False)),
            max_ranked_positions=doc.get("maxRankedPositions"),
            rank_points={int(k): v for k, v in rank_points.items()} if rank_points else None,
            require_evaluator_justification=bool(doc.get("requireEvaluatorJustification", False)),
        )
        self.save_poll(poll)
        for t in doc.get("targets", []):
            self.add_target(poll.poll_id, str(t["targetId"]), str(t.get("name", "")))
        for email in doc.get("evaluators", []):
            self.add_evaluator(poll.poll_id, str(email))
        issued: Dict[str, str] = {}
        for c in doc.get("credentials", []):
            target_id = c.get("targetId")
            plain = self.issue_credential(poll.poll_id, target_id, token=c.get("token"))
            issued[plain] = target_id
        return poll, issued
