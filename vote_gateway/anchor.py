"""Commitment anchor backends.

An anchor accepts a decision digest plus non-identifying metadata and returns
an opaque anchor reference (e.g. a transaction id). The engine treats every
anchor as best effort: a failure here never blocks recording a decision.

Backends:
  - NullAnchor: no anchor configured; every submit fails as unavailable.
  - FileAnchor: appends JSONL entries locally; the reference is
    "0x" + sha256(canonical entry).
  - HttpAnchor: POSTs the entry to a remote append endpoint.

HTTP semantics:
  - Each POST carries Idempotency-Key = sha256(canonical entry).
  - HTTP 409 means already anchored and counts as success.
  - One attempt per call within the configured timeout. Retrying pending
    anchors belongs to an out-of-band reconciliation job.
"""

from __future__ import annotations

import abc
import json
import threading
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .crypto import canonical_json_dumps, hash_canonical
from .errors import (
    VoteError,
    VOTE_E_ANCHOR_HTTP,
    VOTE_E_ANCHOR_NETWORK,
    VOTE_E_ANCHOR_UNAVAILABLE,
)

DEFAULT_EXPLORER_URL = "https://testnet.snowtrace.io/tx"


class AnchorError(VoteError):
    """Raised when the commitment anchor cannot produce a reference."""


def _anchor_error(code: str, message: str, *, retryable: bool = True, http_status: int = 503, **details: Any) -> AnchorError:
    return AnchorError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def make_anchor_entry(digest: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {k: v for k, v in metadata.items() if v is not None}
    entry["digest"] = digest
    return entry


class CommitmentAnchor(abc.ABC):
    """Append-only commitment anchor interface."""

    def __init__(self, explorer_base_url: str = DEFAULT_EXPLORER_URL):
        self.explorer_base_url = explorer_base_url

    @abc.abstractmethod
    def submit(self, digest: str, metadata: Dict[str, Any]) -> str:
        raise NotImplementedError

    def explorer_url(self, anchor_ref: str) -> str:
        return f"{self.explorer_base_url.rstrip('/')}/{anchor_ref}"


class NullAnchor(CommitmentAnchor):
    def submit(self, digest: str, metadata: Dict[str, Any]) -> str:
        raise _anchor_error(VOTE_E_ANCHOR_UNAVAILABLE, "no commitment anchor configured")


class FileAnchor(CommitmentAnchor):
    """Append entries to a local JSONL file."""

    def __init__(self, path: str, explorer_base_url: str = DEFAULT_EXPLORER_URL):
        super().__init__(explorer_base_url)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def submit(self, digest: str, metadata: Dict[str, Any]) -> str:
        entry = make_anchor_entry(digest, metadata)
        entry["anchored_at_utc"] = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        ref = "0x" + hash_canonical(entry)
        entry["anchor_ref"] = ref
        line = json.dumps(entry, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        return ref


class HttpAnchor(CommitmentAnchor):
    """Remote anchor reached over HTTP POST.

    The endpoint answers 2xx with a JSON body holding ``anchor_ref`` (or
    ``tx_hash``). A 409 answer means the entry is already anchored; the
    reference is then taken from the body or derived from the idempotency key.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 5.0,
        explorer_base_url: str = DEFAULT_EXPLORER_URL,
        api_key: Optional[str] = None,
    ):
        super().__init__(explorer_base_url)
        self.url = url
        self.timeout_s = float(timeout_s)
        self.api_key = api_key

    @staticmethod
    def _ref_from_body(body: bytes) -> Optional[str]:
        if not body:
            return None
        try:
            obj = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        if not isinstance(obj, dict):
            return None
        ref = obj.get("anchor_ref") or obj.get("tx_hash")
        return str(ref) if ref else None

    def submit(self, digest: str, metadata: Dict[str, Any]) -> str:
        entry = make_anchor_entry(digest, metadata)
        payload = canonical_json_dumps(entry).encode("utf-8")
        idem_key = hash_canonical(entry)

        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idem_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(self.url, data=payload, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
                body = resp.read()
        except urllib.error.HTTPError as e:
            status = int(getattr(e, "code", 0) or 0)
            if status == 409:
                return self._ref_from_body(e.read()) or "0x" + idem_key
            raise _anchor_error(
                VOTE_E_ANCHOR_HTTP,
                "anchor HTTP push failed",
                retryable=status >= 500 or status in (408, 429),
                url=self.url,
                status=status,
                idempotency_key=idem_key,
            ) from e
        except (urllib.error.URLError, OSError) as e:
            raise _anchor_error(
                VOTE_E_ANCHOR_NETWORK,
                "anchor network error",
                url=self.url,
                idempotency_key=idem_key,
                error=str(e),
            ) from e

        ref = self._ref_from_body(body)
        if not (200 <= status <= 299) or not ref:
            raise _anchor_error(
                VOTE_E_ANCHOR_HTTP,
                "anchor returned no reference",
                url=self.url,
                status=status,
                idempotency_key=idem_key,
            )
        return ref


def build_anchor(
    mode: str,
    *,
    url: str = "",
    path: str = "",
    timeout_s: float = 5.0,
    explorer_base_url: str = DEFAULT_EXPLORER_URL,
    api_key: Optional[str] = None,
) -> CommitmentAnchor:
    mode = (mode or "none").strip().lower()
    if mode in ("none", "off", "disabled", ""):
        return NullAnchor(explorer_base_url)
    if mode == "file":
        if not path:
            raise ValueError("anchor mode 'file' requires a path")
        return FileAnchor(path, explorer_base_url)
    if mode == "http":
        if not url:
            raise ValueError("anchor mode 'http' requires a url")
        return HttpAnchor(url, timeout_s=timeout_s, explorer_base_url=explorer_base_url, api_key=api_key)
    raise ValueError(f"Unknown anchor mode: {mode!r} (expected none|file|http)")
