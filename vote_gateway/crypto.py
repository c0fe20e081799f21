"""
Vote Gateway cryptography helpers.

- SHA-256 helpers and a length-prefixed encoding for multi-part hash inputs
- Canonical JSON (strict) for hashing anchor entries and audit events
- Ed25519 key pairs (via `cryptography`) for signing the audit log

Only public keys are needed to verify an audit log; the signing seed stays
with the gateway process (or is injected from the environment).
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import vote_error, VOTE_E_BAD_REQUEST


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    try:
        s = str(ts).strip()
        if not s:
            return None
        # Accept RFC 3339 'Z' suffix.
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """Length-prefixed encoding for hash inputs (no delimiter collisions)."""
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


_CANON_MAX_DEPTH = 64


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise vote_error(VOTE_E_BAD_REQUEST, "max nesting depth exceeded", path=_path)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise vote_error(VOTE_E_BAD_REQUEST, "non-finite float", path=_path)
        return obj
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise vote_error(VOTE_E_BAD_REQUEST, "dict key must be str", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize("NFC", k)
            if nk in out:
                raise vote_error(VOTE_E_BAD_REQUEST, "duplicate dict key after unicode normalization", path=_path)
            out[nk] = _canonicalize(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out
    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise vote_error(VOTE_E_BAD_REQUEST, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Strict canonical JSON: sorted keys, no whitespace, NFC strings, no NaN."""
    return json.dumps(
        _canonicalize(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def hash_canonical(obj: Any) -> str:
    return _sha256_hex(canonical_json_dumps(obj).encode("utf-8"))


@dataclass
class Ed25519KeyPair:
    """Ed25519 key pair used to sign audit log entries.

    A pair built from a public key alone can verify but not sign.
    """

    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        return cls._from_private(Ed25519PrivateKey.generate(), key_id)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        return cls(key_id=key_id, public_key_bytes=bytes.fromhex(public_key_hex))

    @classmethod
    def _from_private(cls, private_key: Ed25519PrivateKey, key_id: str) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


def load_audit_signing_key(
    *,
    allow_ephemeral: bool = False,
    key_env: str = "VOTE_AUDIT_SIGNING_KEY",
    file_env: str = "VOTE_AUDIT_SIGNING_KEY_FILE",
    key_id_env: str = "VOTE_AUDIT_KEY_ID",
) -> Optional[Ed25519KeyPair]:
    """Load the audit signing key from env (hex seed) or a file holding the hex seed.

    Returns None when nothing is configured and ephemeral keys are not allowed.
    """
    key_id = (os.getenv(key_id_env, "") or "vote_gateway").strip() or "vote_gateway"

    seed_hex = (os.getenv(key_env, "") or "").strip()
    key_file = (os.getenv(file_env, "") or "").strip()
    if not seed_hex and key_file:
        seed_hex = Path(key_file).read_text(encoding="utf-8").strip()

    if seed_hex:
        try:
            seed = bytes.fromhex(seed_hex)
        except ValueError as e:
            raise RuntimeError(f"{key_env} must be a hex-encoded 32-byte seed") from e
        return Ed25519KeyPair.from_seed(seed, key_id)

    if allow_ephemeral:
        return Ed25519KeyPair.generate(key_id)
    return None
