"""Environment-driven engine configuration.

Environment variables:

- VOTE_DB_PATH: SQLite file holding polls, credentials and the ledger.
- VOTE_AUDIT_LOG_PATH: JSONL audit log (empty disables auditing).
- VOTE_ANCHOR_MODE: none | file | http.
- VOTE_ANCHOR_URL: remote anchor endpoint for mode http.
- VOTE_ANCHOR_API_KEY: bearer token for the remote anchor.
- VOTE_ANCHOR_FILE: JSONL path for mode file.
- VOTE_ANCHOR_TIMEOUT_SECONDS: upper bound on one anchor call.
- VOTE_EXPLORER_URL: base URL anchor references are appended to.
- VOTE_MAX_REQUEST_BYTES: request body limit for the HTTP server.
- VOTE_ENV: dev | prod. prod refuses to start without an audit signing key
  when auditing is enabled.
- VOTE_ALLOW_EPHEMERAL_SIGNING_KEYS: 1 to generate a throwaway audit key.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .anchor import DEFAULT_EXPLORER_URL, CommitmentAnchor, build_anchor


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_str(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_str(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    v = _env_str(name).lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    db_path: str = "vote_gateway.db"
    audit_log_path: str = ""
    anchor_mode: str = "none"
    anchor_url: str = ""
    anchor_api_key: str = ""
    anchor_file: str = ""
    anchor_timeout_seconds: float = 5.0
    explorer_url: str = DEFAULT_EXPLORER_URL
    max_request_bytes: int = 262144
    env: str = "dev"
    allow_ephemeral_signing_keys: bool = False

    @classmethod
    def from_env(cls) -> "EngineConfig":
        timeout = _env_float("VOTE_ANCHOR_TIMEOUT_SECONDS", cls.anchor_timeout_seconds)
        max_bytes = _env_int("VOTE_MAX_REQUEST_BYTES", cls.max_request_bytes)
        env = _env_str("VOTE_ENV", cls.env).lower()
        return cls(
            db_path=_env_str("VOTE_DB_PATH", cls.db_path),
            audit_log_path=_env_str("VOTE_AUDIT_LOG_PATH"),
            anchor_mode=_env_str("VOTE_ANCHOR_MODE", cls.anchor_mode).lower(),
            anchor_url=_env_str("VOTE_ANCHOR_URL"),
            anchor_api_key=_env_str("VOTE_ANCHOR_API_KEY"),
            anchor_file=_env_str("VOTE_ANCHOR_FILE"),
            anchor_timeout_seconds=timeout if timeout > 0 else cls.anchor_timeout_seconds,
            explorer_url=_env_str("VOTE_EXPLORER_URL", DEFAULT_EXPLORER_URL),
            max_request_bytes=max_bytes if max_bytes > 0 else cls.max_request_bytes,
            env=env if env in ("dev", "prod") else cls.env,
            allow_ephemeral_signing_keys=_env_bool("VOTE_ALLOW_EPHEMERAL_SIGNING_KEYS", False),
        )

    @property
    def is_prod(self) -> bool:
        return self.env == "prod"


def build_anchor_from_config(config: EngineConfig) -> CommitmentAnchor:
    return build_anchor(
        config.anchor_mode,
        url=config.anchor_url,
        path=config.anchor_file,
        timeout_s=config.anchor_timeout_seconds,
        explorer_base_url=config.explorer_url,
        api_key=config.anchor_api_key or None,
    )
