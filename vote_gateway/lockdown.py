"""Storage circuit breaker.

The ledger is the only shared mutable resource. When SQLite becomes slow,
locked or unavailable, the gateway stops accepting writes for a lockdown
window instead of risking partial or inconsistent records. Callers see
`StorageLockdownError` and surface a retryable 503.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Optional


class StorageLockdownError(RuntimeError):
    """Raised while the store is locked down after repeated failures."""


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.getenv(name, "") or str(default)).strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float((os.getenv(name, "") or str(default)).strip())
    except ValueError:
        return default


@dataclass
class CircuitBreakerConfig:
    """Environment variables:

    - VOTE_DB_LATENCY_THRESHOLD_MS: an operation slower than this trips the breaker.
    - VOTE_DB_FAILURE_THRESHOLD: failures required to trip.
    - VOTE_DB_LOCKDOWN_SECONDS: length of the lockdown window.
    - VOTE_DB_CONNECT_TIMEOUT_SECONDS: sqlite busy timeout on connect.
    """

    latency_threshold_ms: int = 2000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _env_int("VOTE_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        failures = _env_int("VOTE_DB_FAILURE_THRESHOLD", cls.failure_threshold)
        lockdown = _env_int("VOTE_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)
        timeout = _env_float("VOTE_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)

        if latency <= 0:
            latency = cls.latency_threshold_ms
        return cls(
            latency_threshold_ms=latency,
            failure_threshold=max(1, failures),
            lockdown_seconds=max(1, lockdown),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until: float = 0.0

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            raise StorageLockdownError("LOCKDOWN_ACTIVE")

    def _trip(self) -> None:
        self._lockdown_until = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold

    def record_success(self) -> None:
        if self._failure_count > 0:
            self._failure_count -= 1

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms >= float(self.config.latency_threshold_ms):
            self._failure_count += 1
            self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._trip()
