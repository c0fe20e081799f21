"""Stable error taxonomy for the vote gateway.

Every rejection the engine produces carries a machine-readable `code`, an
`http_status` for the transport layer and a `retryable` flag. Eligibility and
validation failures are client errors and never retryable; storage failures
are retryable server errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Request shape / identity selection
VOTE_E_BAD_REQUEST = "VOTE_E_BAD_REQUEST"
VOTE_E_MISSING_IDENTITY_SELECTOR = "VOTE_E_MISSING_IDENTITY_SELECTOR"
VOTE_E_AUTH_REQUIRED = "VOTE_E_AUTH_REQUIRED"

# Lookups against the eligibility data source
VOTE_E_POLL_NOT_FOUND = "VOTE_E_POLL_NOT_FOUND"
VOTE_E_INVALID_CREDENTIAL = "VOTE_E_INVALID_CREDENTIAL"
VOTE_E_CREDENTIAL_USED = "VOTE_E_CREDENTIAL_USED"
VOTE_E_CREDENTIAL_EXPIRED = "VOTE_E_CREDENTIAL_EXPIRED"
VOTE_E_NOT_AUTHORIZED_EVALUATOR = "VOTE_E_NOT_AUTHORIZED_EVALUATOR"

# Eligibility gate
VOTE_E_NOT_YET_OPEN = "VOTE_E_NOT_YET_OPEN"
VOTE_E_CLOSED = "VOTE_E_CLOSED"
VOTE_E_NOT_PERMITTED = "VOTE_E_NOT_PERMITTED"

# Decision validator
VOTE_E_EMPTY_PAYLOAD = "VOTE_E_EMPTY_PAYLOAD"
VOTE_E_UNKNOWN_TARGET = "VOTE_E_UNKNOWN_TARGET"
VOTE_E_DUPLICATE_TARGET = "VOTE_E_DUPLICATE_TARGET"
VOTE_E_SELF_INTEREST = "VOTE_E_SELF_INTEREST"
VOTE_E_RANK_COLLISION = "VOTE_E_RANK_COLLISION"
VOTE_E_TOO_MANY_RANKS = "VOTE_E_TOO_MANY_RANKS"
VOTE_E_INVALID_RANK = "VOTE_E_INVALID_RANK"
VOTE_E_MISSING_JUSTIFICATION = "VOTE_E_MISSING_JUSTIFICATION"

# Infrastructure
VOTE_E_STORAGE_UNAVAILABLE = "VOTE_E_STORAGE_UNAVAILABLE"
VOTE_E_CREDENTIAL_RACE = "VOTE_E_CREDENTIAL_RACE"
VOTE_E_INTERNAL = "VOTE_E_INTERNAL"

# Commitment anchor
VOTE_E_ANCHOR_NETWORK = "VOTE_E_ANCHOR_NETWORK"
VOTE_E_ANCHOR_HTTP = "VOTE_E_ANCHOR_HTTP"
VOTE_E_ANCHOR_UNAVAILABLE = "VOTE_E_ANCHOR_UNAVAILABLE"


# Short reason names used by the eligibility gate and the validator. They are
# surfaced in error details so clients can branch on either form.
REASON_CODES: Dict[str, str] = {
    "missing-identity-selector": VOTE_E_MISSING_IDENTITY_SELECTOR,
    "not-yet-open": VOTE_E_NOT_YET_OPEN,
    "closed": VOTE_E_CLOSED,
    "not-permitted": VOTE_E_NOT_PERMITTED,
    "empty-payload": VOTE_E_EMPTY_PAYLOAD,
    "unknown-target": VOTE_E_UNKNOWN_TARGET,
    "duplicate-target": VOTE_E_DUPLICATE_TARGET,
    "self-interest": VOTE_E_SELF_INTEREST,
    "rank-collision": VOTE_E_RANK_COLLISION,
    "too-many-ranks": VOTE_E_TOO_MANY_RANKS,
    "invalid-rank": VOTE_E_INVALID_RANK,
    "missing-justification": VOTE_E_MISSING_JUSTIFICATION,
}


@dataclass
class VoteError(Exception):
    """Base gateway exception with a stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def vote_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> VoteError:
    return VoteError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def rejection(reason: str, message: str, *, http_status: int = 400, **details: Any) -> VoteError:
    """Build a client error from a short reason name (e.g. ``"self-interest"``)."""
    code = REASON_CODES.get(reason, VOTE_E_BAD_REQUEST)
    return vote_error(code, message, http_status=http_status, reason=reason, **details)
