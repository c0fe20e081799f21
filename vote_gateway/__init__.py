"""Vote Gateway package.

Accepts participant and evaluator decisions for a poll and tallies them:

- One current decision per identity, optionally editable
- Mode-aware validation (single / multiple / ranked) and ranked points
- Deterministic commitment digests, anchored best effort
- Atomic SQLite ledger and a signed, hash-chained audit log

Convenience imports
------------------
The package avoids heavy import-time side effects. For convenience, these are
available as top-level imports:

    from vote_gateway import VoteEngine, create_app, TallyResult

All of the above are loaded lazily.
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "1.0.0"

__all__ = [
    "__version__",
    "VoteEngine",
    "SubmitRequest",
    "SubmitResult",
    "build_engine_from_config",
    "create_app",
    "TallyResult",
    "Poll",
    "VoteError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "VoteEngine": ("vote_gateway.engine", "VoteEngine"),
    "SubmitRequest": ("vote_gateway.engine", "SubmitRequest"),
    "SubmitResult": ("vote_gateway.engine", "SubmitResult"),
    "build_engine_from_config": ("vote_gateway.engine", "build_engine_from_config"),
    "create_app": ("vote_gateway.server", "create_app"),
    "TallyResult": ("vote_gateway.tally", "TallyResult"),
    "Poll": ("vote_gateway.models", "Poll"),
    "VoteError": ("vote_gateway.errors", "VoteError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'vote_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
