"""Anti-forgery token lifecycle and the CSRF gate.

One token lives in each session's ``csrf_token`` field. Issuance is lazy and
idempotent: asking again returns the stored value, so several open tabs keep
working. Verification compares the client's candidate with the stored value
in constant time.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from termingate.logging import get_logger
from termingate.service.decisions import ALLOW, DenyReason, GateDecision
from termingate.service.sessions import SessionManager
from termingate.storage.models import Session

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
CSRF_BODY_FIELD = "_csrf"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
# Mutations that never need a token: logout only lowers privilege
CSRF_EXEMPT_ROUTES = frozenset({("POST", "/logout")})


def generate_token() -> str:
    """256 random bits, 64 hex characters."""
    return secrets.token_hex(32)


class TokenStore:
    """Issues and compares the per-session anti-forgery token."""

    def __init__(self, sessions: SessionManager) -> None:
        self.sessions = sessions

    async def issue(self, session: Session) -> Optional[str]:
        """Return the session's token, creating and persisting it when absent.

        Returns None when the stored session disappeared mid-request.
        """
        if session.csrf_token:
            return session.csrf_token
        return await self.sessions.store_csrf_token(session, generate_token())

    @staticmethod
    def matches(stored: Any, candidate: Any) -> bool:
        return hmac.compare_digest(str(stored).encode(), str(candidate).encode())


@dataclass(frozen=True)
class CsrfCandidate:
    token: Optional[str]
    source: Optional[str] = None


def extract_candidate(
    headers: Mapping[str, str], body: Optional[Mapping[str, Any]]
) -> CsrfCandidate:
    """Header first, then the ``_csrf`` body field."""
    header_value = headers.get(CSRF_HEADER) or headers.get(CSRF_HEADER.lower())
    if header_value:
        return CsrfCandidate(header_value, "header")
    if body:
        raw = body.get(CSRF_BODY_FIELD)
        if isinstance(raw, list):
            raw = raw[0] if raw else None
        if raw not in (None, ""):
            return CsrfCandidate(str(raw), "body")
    return CsrfCandidate(None)


class CsrfGate:
    @staticmethod
    def applies_to(method: str, path: str) -> bool:
        method = method.upper()
        if method in SAFE_METHODS:
            return False
        return (method, path) not in CSRF_EXEMPT_ROUTES

    def verify(
        self, session: Optional[Session], method: str, path: str, candidate: CsrfCandidate
    ) -> GateDecision:
        if not self.applies_to(method, path):
            return ALLOW
        if not candidate.token:
            return GateDecision.deny(DenyReason.CSRF_MISSING)
        stored = session.csrf_token if session else None
        if not stored:
            return GateDecision.deny(DenyReason.CSRF_SESSION_INVALID)
        if not TokenStore.matches(stored, candidate.token):
            logger.debug("csrf_token_mismatch", source=candidate.source, path=path)
            return GateDecision.deny(DenyReason.CSRF_MISMATCH)
        return ALLOW
