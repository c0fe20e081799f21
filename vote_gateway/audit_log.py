"""Tamper-evident append-only audit log for recorded decisions.

Implements a JSONL log where each record includes:
- prev_hash: entry_hash of the previous record (hex)
- event_hash: SHA256 of the canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
- signature_b64: Ed25519 signature over the canonical payload

Events never carry the plain participant credential; the identity is the
credential hash (participants) or the normalized email (evaluators).

Note: This does not protect against an attacker who controls both the host
and the signing key. Ship logs to a remote append-only store for that.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .crypto import Ed25519KeyPair, _safe_hash_encode, _sha256_hex, canonical_json_dumps
from .errors import VoteError

logger = logging.getLogger("vote_gateway")

AUDIT_VERSION = "VOTE_AUDIT_V1"
GENESIS_HASH = "0" * 64

DECISION_RECORDED = "decision_recorded"
DECISION_REPLACED = "decision_replaced"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
        )


class AuditRecorder:
    """Sink for audit entries. `append` must not raise into the caller's
    decision path; implementations log their own failures."""

    def append(
        self,
        action_kind: str,
        poll_id: str,
        details: Mapping[str, Any],
        origin: Optional[str] = None,
    ) -> Optional[AuditLogRecord]:
        raise NotImplementedError


class NullAuditRecorder(AuditRecorder):
    def append(self, action_kind, poll_id, details, origin=None):
        return None


class TamperEvidentAuditLog(AuditRecorder):
    """Append-only tamper-evident audit log."""

    def __init__(self, path: str, signer: Ed25519KeyPair):
        if not signer.can_sign():
            raise ValueError(f"Audit signer {signer.key_id} has no private key")
        self.path = str(path)
        self.signer = signer
        self._last_hash = GENESIS_HASH
        self._lock = threading.Lock()

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                rec = json.loads(last_line)
                self._last_hash = str(rec.get("entry_hash", GENESIS_HASH))
            except json.JSONDecodeError:
                # Corrupt tail: keep genesis; verify_file reports the break.
                logger.warning("audit log %s has an unreadable last record", self.path)
                self._last_hash = GENESIS_HASH

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            pos = max(0, end - 4096)
            f.seek(pos)
            chunk = f.read(end - pos)
            lines = chunk.splitlines()
            if not lines:
                return ""
            return lines[-1].decode("utf-8", errors="replace")

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        """Append an event and return the created record."""
        ts = ts_utc or _now_iso()
        event_json = canonical_json_dumps(event)
        event_hash = _sha256_hex(event_json.encode("utf-8"))

        with self._lock:
            prev_hash = self._last_hash
            entry_hash = _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))
            payload = _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, entry_hash])
            sig_b64 = base64.b64encode(self.signer.sign(payload)).decode("ascii")

            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=prev_hash,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=sig_b64,
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec

    def append(
        self,
        action_kind: str,
        poll_id: str,
        details: Mapping[str, Any],
        origin: Optional[str] = None,
    ) -> Optional[AuditLogRecord]:
        event = {
            "action": action_kind,
            "poll_id": poll_id,
            "origin": origin,
            "details": dict(details),
        }
        try:
            return self.append_event(event)
        except (OSError, ValueError, VoteError) as e:
            logger.warning("audit append failed for %s on poll %s: %s", action_kind, poll_id, e)
            return None

    @staticmethod
    def verify_file(path: str, public_keys: Mapping[str, str]) -> Tuple[bool, str, int]:
        """Verify an audit log file against key_id -> public key hex.

        Returns (ok, reason, count).
        """
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        keys = {kid: Ed25519KeyPair.from_public_key(kid, pk) for kid, pk in public_keys.items()}
        prev = GENESIS_HASH
        count = 0

        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict):
                    return False, "PARSE_ERROR", count

                version = rec.get("version")
                if version != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{version}", count
                ts = str(rec.get("ts_utc"))
                prev_hash = str(rec.get("prev_hash"))
                if prev_hash != prev:
                    return False, "CHAIN_BROKEN", count

                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count

                event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count

                expected_entry_hash = _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))
                if expected_entry_hash != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count

                key = keys.get(str(rec.get("key_id")))
                if key is None:
                    return False, "UNKNOWN_KEY", count
                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except (binascii.Error, ValueError):
                    return False, "BAD_SIGNATURE_ENCODING", count

                payload = _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, expected_entry_hash])
                if not key.verify(payload, sig):
                    return False, "INVALID_SIGNATURE", count

                prev = expected_entry_hash

        return True, "OK", count
