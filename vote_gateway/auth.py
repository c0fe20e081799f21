"""Caller authentication for the vote gateway HTTP surface.

A simple API-key gate in front of the submit/validate/results endpoints. It
authenticates the calling client application (e.g. the platform frontend),
not the voter; voter identity is the credential or evaluator email in the body.

Env vars:
  - VOTE_API_KEYS_JSON: JSON dict mapping api_key -> client_id
  - VOTE_API_KEYS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ENV_API_KEYS_JSON = "VOTE_API_KEYS_JSON"
ENV_API_KEYS_FILE = "VOTE_API_KEYS_FILE"


@dataclass(frozen=True)
class ApiKeyAuth:
    """API key authentication config."""

    api_key_to_client: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "ApiKeyAuth":
        """Load API key mapping from env/file.

        If configuration is present but malformed, config_error is set so
        callers fail closed.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_API_KEYS_JSON)
        file_path = os.getenv(ENV_API_KEYS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                data = {}
            if not isinstance(data, dict):
                raise ValueError("API key mapping must be a JSON object")
            mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "API_KEY_CONFIG_INVALID"
            mapping = {}

        return cls(api_key_to_client=mapping, configured=configured, config_error=config_error)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, str]) -> "ApiKeyAuth":
        return cls(api_key_to_client=dict(mapping), configured=True)

    def enabled(self) -> bool:
        return self.configured

    def resolve_client(self, api_key: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (client_id, error). If error is not None, reject the request."""
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return None, None
        if not api_key:
            return None, "API_KEY_REQUIRED"
        client_id = self.api_key_to_client.get(api_key)
        if not client_id:
            return None, "API_KEY_INVALID"
        return client_id, None
