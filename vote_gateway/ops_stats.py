"""Operational statistics for the vote gateway.

Lightweight in-memory counters behind a snapshot endpoint (/v1/stats).

Notes
-----
- Counters reset on process restart.
- Do not treat these as audit evidence. The signed audit log is the record.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Submissions
    submissions_total: int = 0
    submissions_by_outcome: Dict[str, int] = field(default_factory=dict)  # inserted/replaced/already_decided
    submissions_by_constituency: Dict[str, int] = field(default_factory=dict)

    # Rejections
    rejections_total: int = 0
    rejections_by_code: Dict[str, int] = field(default_factory=dict)

    # Degraded paths
    anchor_failures_total: int = 0
    audit_failures_total: int = 0
    storage_lockdown_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_submission(self, constituency: str, outcome: str) -> None:
        with self._lock:
            self._c.submissions_total += 1
            self._inc_map(self._c.submissions_by_outcome, outcome or "unknown")
            self._inc_map(self._c.submissions_by_constituency, constituency or "unknown")

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._c.rejections_total += 1
            self._inc_map(self._c.rejections_by_code, code or "unknown")

    def record_anchor_failure(self) -> None:
        with self._lock:
            self._c.anchor_failures_total += 1

    def record_audit_failure(self) -> None:
        with self._lock:
            self._c.audit_failures_total += 1

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def reset(self) -> None:
        with self._lock:
            self._start_monotonic = time.monotonic()
            self._c = _Counters()

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "submissions_total": c.submissions_total,
                "submissions_by_outcome": dict(c.submissions_by_outcome),
                "submissions_by_constituency": dict(c.submissions_by_constituency),
                "rejections_total": c.rejections_total,
                "rejections_by_code": dict(c.rejections_by_code),
                "anchor_failures_total": c.anchor_failures_total,
                "audit_failures_total": c.audit_failures_total,
                "storage_lockdown_total": c.storage_lockdown_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
