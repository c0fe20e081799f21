"""Decision ledger: at most one current decision per (poll_id, identity_key).

`record` is a single state transition run inside one ``BEGIN IMMEDIATE``
transaction:

    absent            -> inserted (credential consumed in the same transaction)
    present, editable -> replaced (same decision_id and created_at)
    present, locked   -> rejected_already_decided (existing row returned)

Two concurrent submissions for the same identity race on the UNIQUE
constraint; exactly one of them inserts.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from .crypto import _parse_iso_utc
from .errors import VOTE_E_CREDENTIAL_RACE, vote_error
from .models import (
    AnchorStatus,
    Constituency,
    ConstituencyKind,
    Decision,
    DecisionPayload,
    Poll,
    RankedEntry,
    VotingMode,
)
from .storage import VoteDatabase


INSERTED = "inserted"
REPLACED = "replaced"
REJECTED_ALREADY_DECIDED = "rejected_already_decided"


@dataclass(frozen=True)
class RecordOutcome:
    kind: str
    decision: Decision

    @property
    def is_update(self) -> bool:
        return self.kind == REPLACED


def _decision_from_row(row: Any) -> Decision:
    target_ids = json.loads(row["target_ids_json"]) if row["target_ids_json"] else None
    rankings = None
    if row["rankings_json"]:
        rankings = tuple(RankedEntry.from_dict(d) for d in json.loads(row["rankings_json"]))
    return Decision(
        decision_id=row["decision_id"],
        poll_id=row["poll_id"],
        identity_key=row["identity_key"],
        constituency=ConstituencyKind(row["constituency"]),
        voting_mode=VotingMode(row["voting_mode"]),
        payload=DecisionPayload(
            target_id=row["target_id"],
            target_ids=tuple(target_ids) if target_ids is not None else None,
            rankings=rankings,
            justification=row["justification"],
        ),
        commitment=row["commitment"],
        anchor_ref=row["anchor_ref"],
        anchor_status=AnchorStatus(row["anchor_status"]),
        created_at=_parse_iso_utc(row["created_at_utc"]),
        updated_at=_parse_iso_utc(row["updated_at_utc"]),
    )


def _payload_columns(payload: DecisionPayload) -> tuple:
    return (
        payload.target_id,
        json.dumps(list(payload.target_ids)) if payload.target_ids is not None else None,
        json.dumps([r.to_dict() for r in payload.rankings]) if payload.rankings is not None else None,
        payload.justification,
    )


class DecisionLedger:
    def __init__(self, db: VoteDatabase):
        self.db = db

    def record(
        self,
        poll: Poll,
        constituency: Constituency,
        payload: DecisionPayload,
        commitment: str,
        anchor_ref: Optional[str],
        now: datetime,
    ) -> RecordOutcome:
        identity_key = constituency.identity_key
        anchor_status = AnchorStatus.ANCHORED if anchor_ref else AnchorStatus.PENDING
        now_iso = now.isoformat()
        target_id, target_ids_json, rankings_json, justification = _payload_columns(payload)

        # isolation_level=None: transactions are managed explicitly here.
        with self.db.connect("record_decision", isolation_level=None) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO decisions
                    (decision_id, poll_id, identity_key, constituency, voting_mode,
                     target_id, target_ids_json, rankings_json, justification,
                     commitment, anchor_ref, anchor_status, created_at_utc, updated_at_utc)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(poll_id, identity_key) DO NOTHING
                    """,
                    (
                        uuid.uuid4().hex, poll.poll_id, identity_key, constituency.kind.value,
                        poll.voting_mode.value, target_id, target_ids_json, rankings_json, justification,
                        commitment, anchor_ref, anchor_status.value, now_iso, now_iso,
                    ),
                )

                if cur.rowcount == 1:
                    kind = INSERTED
                    if constituency.kind == ConstituencyKind.PARTICIPANT:
                        consumed = conn.execute(
                            "UPDATE credentials SET used = 1, used_at_utc = ? WHERE credential_hash = ? AND used = 0",
                            (now_iso, identity_key),
                        )
                        if consumed.rowcount != 1:
                            raise vote_error(
                                VOTE_E_CREDENTIAL_RACE,
                                "Credential was consumed by a concurrent submission",
                                retryable=False,
                                http_status=409,
                            )
                elif poll.allow_edit:
                    kind = REPLACED
                    conn.execute(
                        """
                        UPDATE decisions
                        SET voting_mode = ?, target_id = ?, target_ids_json = ?, rankings_json = ?,
                            justification = ?, commitment = ?, anchor_ref = ?, anchor_status = ?,
                            updated_at_utc = ?
                        WHERE poll_id = ? AND identity_key = ?
                        """,
                        (
                            poll.voting_mode.value, target_id, target_ids_json, rankings_json, justification,
                            commitment, anchor_ref, anchor_status.value, now_iso,
                            poll.poll_id, identity_key,
                        ),
                    )
                else:
                    kind = REJECTED_ALREADY_DECIDED

                row = conn.execute(
                    "SELECT * FROM decisions WHERE poll_id = ? AND identity_key = ?",
                    (poll.poll_id, identity_key),
                ).fetchone()
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

        return RecordOutcome(kind=kind, decision=_decision_from_row(row))

    def get_current(self, poll_id: str, identity_key: str) -> Optional[Decision]:
        with self.db.connect("get_decision") as conn:
            row = conn.execute(
                "SELECT * FROM decisions WHERE poll_id = ? AND identity_key = ?",
                (poll_id, identity_key),
            ).fetchone()
        return _decision_from_row(row) if row else None

    def list_current(self, poll_id: str) -> List[Decision]:
        with self.db.connect("list_decisions") as conn:
            rows = conn.execute(
                "SELECT * FROM decisions WHERE poll_id = ? ORDER BY created_at_utc, decision_id",
                (poll_id,),
            ).fetchall()
        return [_decision_from_row(r) for r in rows]

    def list_pending_anchors(self, poll_id: str) -> List[Decision]:
        """Decisions whose commitment has not been anchored yet."""
        with self.db.connect("list_pending_anchors") as conn:
            rows = conn.execute(
                "SELECT * FROM decisions WHERE poll_id = ? AND anchor_status = ? ORDER BY updated_at_utc",
                (poll_id, AnchorStatus.PENDING.value),
            ).fetchall()
        return [_decision_from_row(r) for r in rows]

    def count(self, poll_id: Optional[str] = None) -> int:
        with self.db.connect("count_decisions") as conn:
            if poll_id is None:
                row = conn.execute("SELECT COUNT(*) FROM decisions").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM decisions WHERE poll_id = ?", (poll_id,)).fetchone()
        return int(row[0])


__all__ = [
    "DecisionLedger",
    "RecordOutcome",
    "INSERTED",
    "REPLACED",
    "REJECTED_ALREADY_DECIDED",
]
