from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DenyReason(str, Enum):
    """Machine-readable denial codes returned by the request gates."""

    NO_SESSION = "NO_SESSION"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    EXPIRED = "SESSION_EXPIRED"
    SECURITY_CONFLICT = "SECURITY_CONFLICT"
    CSRF_MISSING = "CSRF_MISSING"
    CSRF_SESSION_INVALID = "CSRF_SESSION_INVALID"
    CSRF_MISMATCH = "CSRF_MISMATCH"

    @property
    def status_code(self) -> int:
        if self in (DenyReason.INSUFFICIENT_ROLE,) or self.is_csrf:
            return 403
        return 401

    @property
    def is_csrf(self) -> bool:
        return self in (
            DenyReason.CSRF_MISSING,
            DenyReason.CSRF_SESSION_INVALID,
            DenyReason.CSRF_MISMATCH,
        )

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    DenyReason.NO_SESSION: "authentication required",
    DenyReason.INSUFFICIENT_ROLE: "insufficient permissions",
    DenyReason.EXPIRED: "session expired, please log in again",
    DenyReason.SECURITY_CONFLICT: "security conflict, please log in again",
    DenyReason.CSRF_MISSING: "CSRF token missing",
    DenyReason.CSRF_SESSION_INVALID: "session holds no CSRF token, reload the page",
    DenyReason.CSRF_MISMATCH: "CSRF token invalid",
}


@dataclass(frozen=True)
class GateDecision:
    """Outcome of one gate: allowed, or denied with a reason.

    ``session_destroyed`` is set when the gate removed the server-side
    session as part of the denial.
    """

    allowed: bool
    reason: Optional[DenyReason] = None
    session_destroyed: bool = False
    detail: Optional[dict] = None

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        reason: DenyReason,
        *,
        session_destroyed: bool = False,
        detail: Optional[dict] = None,
    ) -> "GateDecision":
        return cls(
            allowed=False,
            reason=reason,
            session_destroyed=session_destroyed,
            detail=detail,
        )


ALLOW = GateDecision.allow()
