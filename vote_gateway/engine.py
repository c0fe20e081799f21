"""
Vote engine: the submission pipeline and the tally read path.

Submission control flow:

    resolve identity -> look up poll / credential / allow-list
      -> eligibility gate (already decided: return the existing decision)
      -> validate payload -> allocate ranked points -> commitment digest
      -> anchor (best effort, bounded by a timeout)
      -> ledger (atomic insert / replace) -> audit entry -> stats

Only the ledger write is authoritative. Anchor and audit failures degrade to
a pending anchor status or a logged warning; they never fail a submission.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from .anchor import CommitmentAnchor, NullAnchor
from .audit_log import (
    DECISION_RECORDED,
    DECISION_REPLACED,
    AuditRecorder,
    NullAuditRecorder,
    TamperEvidentAuditLog,
)
from .commitment import anchor_metadata, commit
from .config import EngineConfig, build_anchor_from_config
from .crypto import _now_utc, _sha256_hex, load_audit_signing_key
from .directory import PollDirectory, SqlitePollDirectory
from .eligibility import check_eligibility
from .errors import (
    VoteError,
    VOTE_E_BAD_REQUEST,
    VOTE_E_CREDENTIAL_EXPIRED,
    VOTE_E_CREDENTIAL_USED,
    VOTE_E_INVALID_CREDENTIAL,
    VOTE_E_NOT_AUTHORIZED_EVALUATOR,
    VOTE_E_POLL_NOT_FOUND,
    VOTE_E_STORAGE_UNAVAILABLE,
    rejection,
    vote_error,
)
from .ledger import REJECTED_ALREADY_DECIDED, REPLACED, DecisionLedger
from .lockdown import StorageLockdownError
from .metrics import record_anchor_failure, record_rejection, record_submission, set_lockdown_active
from .models import (
    Constituency,
    ConstituencyKind,
    CredentialRecord,
    Decision,
    DecisionPayload,
    Evaluator,
    Participant,
    Poll,
    RankedEntry,
    VotingMode,
    hash_credential,
)
from .ops_stats import OPS_STATS
from .points import allocate
from .storage import VoteDatabase
from .tally import TallyResult, tally
from .validation import validate_payload

logger = logging.getLogger("vote_gateway")

OUTCOME_INSERTED = "inserted"
OUTCOME_REPLACED = "replaced"
OUTCOME_ALREADY_DECIDED = "already_decided"


@dataclass(frozen=True)
class SubmitRequest:
    """A decision as submitted. Exactly one of identity_token / evaluator_email
    must be set."""

    poll_id: Optional[str] = None
    identity_token: Optional[str] = None
    evaluator_email: Optional[str] = None
    target_id: Optional[str] = None
    target_ids: Optional[Sequence[str]] = None
    rankings: Optional[Sequence[RankedEntry]] = None
    justification: Optional[str] = None

    def payload(self) -> DecisionPayload:
        return DecisionPayload(
            target_id=self.target_id,
            target_ids=tuple(self.target_ids) if self.target_ids is not None else None,
            rankings=tuple(self.rankings) if self.rankings is not None else None,
            justification=self.justification,
        )


@dataclass(frozen=True)
class SubmitResult:
    decision: Decision
    outcome: str
    explorer_url: Optional[str] = None

    @property
    def is_update(self) -> bool:
        return self.outcome == OUTCOME_REPLACED

    @property
    def already_decided(self) -> bool:
        return self.outcome == OUTCOME_ALREADY_DECIDED

    def to_dict(self) -> Dict[str, Any]:
        d = self.decision
        if self.already_decided:
            return {
                "decisionId": d.decision_id,
                "anchorRef": d.anchor_ref,
                "recordedAt": d.updated_at.isoformat(),
                "alreadyDecided": True,
                "existingDecision": d.to_dict(explorer_url=self.explorer_url),
            }
        return {
            "decisionId": d.decision_id,
            "anchorRef": d.anchor_ref,
            "explorerUrl": self.explorer_url,
            "recordedAt": d.updated_at.isoformat(),
            "isUpdate": self.is_update,
        }


def _storage_unavailable(e: BaseException) -> VoteError:
    return vote_error(
        VOTE_E_STORAGE_UNAVAILABLE,
        "Decision store is temporarily unavailable",
        retryable=True,
        http_status=503,
        error=type(e).__name__,
    )


class VoteEngine:
    """Accepts decisions and tallies polls.

    The directory is read-only from the engine's point of view; the ledger is
    the only state the engine writes.
    """

    def __init__(
        self,
        directory: PollDirectory,
        ledger: DecisionLedger,
        anchor: Optional[CommitmentAnchor] = None,
        audit: Optional[AuditRecorder] = None,
        anchor_timeout_s: float = 5.0,
    ):
        self.directory = directory
        self.ledger = ledger
        self.anchor = anchor or NullAnchor()
        self.audit = audit or NullAuditRecorder()
        self.anchor_timeout_s = float(anchor_timeout_s)

    @property
    def circuit(self):
        return self.ledger.db.circuit

    # ---------------------------
    # Submission
    # ---------------------------

    async def submit(
        self,
        request: SubmitRequest,
        now: Optional[datetime] = None,
        origin: Optional[str] = None,
    ) -> SubmitResult:
        now = now or _now_utc()
        try:
            result = await self._submit(request, now, origin)
        except VoteError as e:
            OPS_STATS.record_rejection(e.code)
            record_rejection(e.code)
            raise
        except StorageLockdownError as e:
            OPS_STATS.record_storage_lockdown()
            set_lockdown_active(True)
            record_rejection(VOTE_E_STORAGE_UNAVAILABLE)
            raise _storage_unavailable(e) from e
        except sqlite3.Error as e:
            logger.warning("storage error while recording decision: %s", e)
            record_rejection(VOTE_E_STORAGE_UNAVAILABLE)
            raise _storage_unavailable(e) from e

        set_lockdown_active(False)
        kind = result.decision.constituency.value
        OPS_STATS.record_submission(kind, result.outcome)
        record_submission(kind, result.outcome)
        return result

    async def _submit(self, request: SubmitRequest, now: datetime, origin: Optional[str]) -> SubmitResult:
        poll, constituency, existing = self._resolve(request, now)

        gate = check_eligibility(poll, now, constituency.kind, existing)
        if gate.already_decided:
            return self._already_decided(gate.existing)
        if not gate.allowed:
            status = 403 if gate.reason == "not-permitted" else 400
            raise rejection(gate.reason, f"Decision not accepted: {gate.reason}", http_status=status, poll_id=poll.poll_id)

        targets = self.directory.list_targets(poll.poll_id)
        payload = self._validate(poll, targets, constituency, request.payload())

        unix_ts = int(now.timestamp())
        digest = commit(constituency.commitment_salt, poll.poll_id, poll.voting_mode, payload, unix_ts)
        metadata = anchor_metadata(
            poll_id=poll.poll_id,
            mode=poll.voting_mode,
            constituency=constituency.kind,
            unix_ts=unix_ts,
            digest=digest,
        )
        anchor_ref = await self._anchor(digest, metadata)

        outcome = self.ledger.record(poll, constituency, payload, digest, anchor_ref, now)
        if outcome.kind == REJECTED_ALREADY_DECIDED:
            # Lost a race against a concurrent first submission.
            return self._already_decided(outcome.decision)

        decision = outcome.decision
        self._audit(
            DECISION_REPLACED if outcome.kind == REPLACED else DECISION_RECORDED,
            decision,
            origin,
        )
        return SubmitResult(
            decision=decision,
            outcome=OUTCOME_REPLACED if outcome.kind == REPLACED else OUTCOME_INSERTED,
            explorer_url=self.anchor.explorer_url(decision.anchor_ref) if decision.anchor_ref else None,
        )

    def _resolve(self, request: SubmitRequest, now: datetime):
        """Resolve (poll, constituency, existing decision) for a request."""
        token = (request.identity_token or "").strip()
        email = (request.evaluator_email or "").strip()
        if bool(token) == bool(email):
            raise rejection(
                "missing-identity-selector",
                "Provide exactly one of identityToken or evaluatorEmail",
            )

        credential_used = False
        if token:
            record = self._credential(token, request.poll_id, now)
            constituency: Constituency = Participant(
                credential_hash=record.credential_hash,
                own_target_id=record.target_id,
                secret=token,
            )
            poll_id = record.poll_id
            credential_used = record.used
        else:
            if not request.poll_id:
                raise vote_error(VOTE_E_BAD_REQUEST, "pollId is required for evaluator decisions")
            poll_id = request.poll_id
            constituency = Evaluator(email=email)

        poll = self.directory.get_poll(poll_id)
        if poll is None:
            raise vote_error(VOTE_E_POLL_NOT_FOUND, "Poll not found", http_status=404, poll_id=poll_id)

        if constituency.kind == ConstituencyKind.EVALUATOR and not self.directory.is_evaluator(poll_id, email):
            raise vote_error(
                VOTE_E_NOT_AUTHORIZED_EVALUATOR,
                "Not authorized as an evaluator for this poll",
                http_status=403,
                poll_id=poll_id,
            )

        existing = self.ledger.get_current(poll_id, constituency.identity_key)
        if constituency.kind == ConstituencyKind.PARTICIPANT and credential_used and existing is None:
            raise vote_error(VOTE_E_CREDENTIAL_USED, "Credential has already been used", http_status=409)
        return poll, constituency, existing

    def _credential(self, token: str, poll_id: Optional[str], now: datetime) -> CredentialRecord:
        record = self.directory.find_credential(hash_credential(token))
        if record is None or (poll_id and record.poll_id != poll_id):
            raise vote_error(VOTE_E_INVALID_CREDENTIAL, "Invalid credential", http_status=401)
        if record.expires_at is not None and now > record.expires_at:
            raise vote_error(VOTE_E_CREDENTIAL_EXPIRED, "Credential has expired", http_status=401)
        return record

    def _validate(self, poll: Poll, targets, constituency: Constituency, payload: DecisionPayload) -> DecisionPayload:
        validated = validate_payload(poll, targets, constituency, payload)
        if poll.voting_mode == VotingMode.RANKED:
            validated = replace(
                validated,
                rankings=tuple(allocate(validated.rankings or (), len(targets), poll.rank_points)),
            )
        return validated

    async def _anchor(self, digest: str, metadata: Dict[str, Any]) -> Optional[str]:
        if isinstance(self.anchor, NullAnchor):
            return None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.anchor.submit, digest, metadata),
                timeout=self.anchor_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "commitment anchor timed out after %.1fs; decision for poll %s recorded as pending",
                self.anchor_timeout_s,
                metadata.get("poll_id"),
            )
        except Exception as e:
            logger.warning(
                "commitment anchor failed (%s); decision for poll %s recorded as pending",
                e,
                metadata.get("poll_id"),
            )
        OPS_STATS.record_anchor_failure()
        record_anchor_failure()
        return None

    def _audit(self, action_kind: str, decision: Decision, origin: Optional[str]) -> None:
        details = {
            "decision_id": decision.decision_id,
            "identity_digest": _sha256_hex(decision.identity_key.encode("utf-8")),
            "constituency": decision.constituency.value,
            "voting_mode": decision.voting_mode.value,
            "commitment": decision.commitment,
            "anchor_ref": decision.anchor_ref,
            "anchor_status": decision.anchor_status.value,
        }
        try:
            rec = self.audit.append(action_kind, decision.poll_id, details, origin)
        except Exception as e:
            logger.warning("audit recorder raised for decision %s: %s", decision.decision_id, e)
            rec = None
        if rec is None and not isinstance(self.audit, NullAuditRecorder):
            OPS_STATS.record_audit_failure()

    def _already_decided(self, existing: Decision) -> SubmitResult:
        return SubmitResult(
            decision=existing,
            outcome=OUTCOME_ALREADY_DECIDED,
            explorer_url=self.anchor.explorer_url(existing.anchor_ref) if existing.anchor_ref else None,
        )

    # ---------------------------
    # Read paths
    # ---------------------------

    def check_credential(self, token: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Preview what a participant credential may do right now."""
        now = now or _now_utc()
        try:
            request = SubmitRequest(identity_token=token)
            poll, constituency, existing = self._resolve(request, now)
            return self._preview(poll, constituency, existing, now)
        except (StorageLockdownError, sqlite3.Error) as e:
            raise _storage_unavailable(e) from e

    def check_evaluator(self, poll_id: str, email: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Preview what an allow-listed evaluator may do right now."""
        now = now or _now_utc()
        try:
            request = SubmitRequest(poll_id=poll_id, evaluator_email=email)
            poll, constituency, existing = self._resolve(request, now)
            return self._preview(poll, constituency, existing, now)
        except (StorageLockdownError, sqlite3.Error) as e:
            raise _storage_unavailable(e) from e

    def _preview(self, poll: Poll, constituency: Constituency, existing: Optional[Decision], now: datetime) -> Dict[str, Any]:
        gate = check_eligibility(poll, now, constituency.kind, existing)
        if not gate.allowed and not gate.already_decided:
            status = 403 if gate.reason == "not-permitted" else 400
            raise rejection(gate.reason, f"Decision not accepted: {gate.reason}", http_status=status, poll_id=poll.poll_id)

        targets = self.directory.list_targets(poll.poll_id)
        own = constituency.own_target_id
        available = [
            t for t in targets
            if poll.allow_self_interest or constituency.kind == ConstituencyKind.EVALUATOR or t.target_id != own
        ]
        summary = poll.summary()
        summary["votingSequence"] = poll.voting_sequence.value
        out: Dict[str, Any] = {
            "valid": True,
            "constituency": constituency.kind.value,
            "alreadyDecided": existing is not None,
            "canEdit": existing is not None and poll.allow_edit,
            "poll": summary,
            "ownTargetId": own,
            "availableTargets": [{"targetId": t.target_id, "name": t.name} for t in available],
        }
        if existing is not None:
            explorer = self.anchor.explorer_url(existing.anchor_ref) if existing.anchor_ref else None
            out["existingDecision"] = existing.to_dict(explorer_url=explorer)
        return out

    def results(self, poll_id: str) -> TallyResult:
        try:
            poll = self.directory.get_poll(poll_id)
            if poll is None:
                raise vote_error(VOTE_E_POLL_NOT_FOUND, "Poll not found", http_status=404, poll_id=poll_id)
            targets = self.directory.list_targets(poll_id)
            decisions = self.ledger.list_current(poll_id)
        except (StorageLockdownError, sqlite3.Error) as e:
            raise _storage_unavailable(e) from e
        return tally(poll, targets, decisions)

    def pending_anchors(self, poll_id: str):
        return self.ledger.list_pending_anchors(poll_id)


def build_engine_from_config(config: Optional[EngineConfig] = None) -> VoteEngine:
    """Assemble an engine over SQLite from environment configuration."""
    config = config or EngineConfig.from_env()
    db = VoteDatabase(config.db_path)

    audit: AuditRecorder
    if config.audit_log_path:
        key = load_audit_signing_key(allow_ephemeral=config.allow_ephemeral_signing_keys)
        if key is None:
            raise RuntimeError(
                "No audit signing key configured. Set VOTE_AUDIT_SIGNING_KEY or "
                "VOTE_AUDIT_SIGNING_KEY_FILE. For demos/tests only, set "
                "VOTE_ALLOW_EPHEMERAL_SIGNING_KEYS=1 to generate an ephemeral key."
            )
        audit = TamperEvidentAuditLog(config.audit_log_path, key)
    elif config.is_prod:
        raise RuntimeError("VOTE_AUDIT_LOG_PATH is required when VOTE_ENV=prod")
    else:
        audit = NullAuditRecorder()

    return VoteEngine(
        directory=SqlitePollDirectory(db),
        ledger=DecisionLedger(db),
        anchor=build_anchor_from_config(config),
        audit=audit,
        anchor_timeout_s=config.anchor_timeout_seconds,
    )
