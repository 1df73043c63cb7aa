"""HTTP-side helpers for the request-security middleware.

The gates decide; these helpers read the request facts the gates need and
shape their decisions into responses.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, quote

from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from termingate.api.error_handling import error_response
from termingate.config import Settings
from termingate.service.auth_gate import RequestFacts
from termingate.service.decisions import DenyReason, GateDecision
from termingate.service.sessions import SessionManager
from termingate.storage.models import Session

API_PREFIXES = ("/anfrage", "/outlook", "/api")
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
MIN_USER_AGENT_LENGTH = 10


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def request_facts(request: Request) -> RequestFacts:
    return RequestFacts(
        method=request.method.upper(),
        path=request.url.path,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def wants_json(request: Request) -> bool:
    if request.headers.get("x-requested-with", "").lower() == "xmlhttprequest":
        return True
    if "json" in request.headers.get("accept", "").lower():
        return True
    return request.url.path.startswith("/api")


def _has_body(request: Request) -> bool:
    length = request.headers.get("content-length")
    if length is not None:
        return length.strip() not in ("", "0")
    return "transfer-encoding" in request.headers


def requires_json_body(request: Request) -> bool:
    """Mutations with a body on the API prefixes must be sent as JSON."""
    if request.method.upper() not in BODY_METHODS:
        return False
    if not request.url.path.startswith(API_PREFIXES):
        return False
    if not _has_body(request):
        return False
    content_type = request.headers.get("content-type", "").lower()
    return "application/json" not in content_type


def suspicious_user_agent(request: Request) -> bool:
    """API requests with a missing or implausibly short User-Agent."""
    if not request.url.path.startswith(API_PREFIXES):
        return False
    return len(request.headers.get("user-agent", "")) < MIN_USER_AGENT_LENGTH


async def parse_body(request: Request) -> Optional[Dict[str, Any]]:
    """Decode a JSON or url-encoded body into a dict; anything else is None.

    Starlette caches the body, so the route handler can still read it.
    """
    if request.method.upper() not in BODY_METHODS and request.method.upper() != "DELETE":
        return None
    content_type = request.headers.get("content-type", "").lower()
    raw = await request.body()
    if not raw:
        return None
    if "application/json" in content_type:
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
    if "application/x-www-form-urlencoded" in content_type:
        parsed = parse_qs(raw.decode("utf-8", errors="replace"), keep_blank_values=True)
        return {key: values[-1] if len(values) == 1 else values for key, values in parsed.items()}
    return None


def _original_url(request: Request) -> str:
    url = request.url.path
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def denial_response(request: Request, decision: GateDecision) -> Response:
    """Turn a gate denial into JSON for API clients or a redirect for browsers."""
    reason = decision.reason
    assert reason is not None
    if reason.is_csrf or wants_json(request):
        extra: Dict[str, Any] = {}
        if reason.status_code == 401:
            extra["requiresLogin"] = True
        if reason in (DenyReason.EXPIRED, DenyReason.SECURITY_CONFLICT):
            extra["reason"] = reason.value.lower()
        return error_response(
            reason.status_code, reason.message, decision.detail, code=reason.value, **extra
        )

    if reason is DenyReason.INSUFFICIENT_ROLE:
        return PlainTextResponse("Access denied: insufficient permissions", status_code=403)
    target = quote(_original_url(request), safe="")
    if reason is DenyReason.EXPIRED:
        location = f"/login?message=session_expired&redirect={target}"
    elif reason is DenyReason.SECURITY_CONFLICT:
        location = "/login?message=security_conflict"
    else:
        location = f"/login?redirect={target}"
    return RedirectResponse(location, status_code=302)


def write_session_cookie(
    response: Response,
    request: Request,
    session: Optional[Session],
    sessions: SessionManager,
    settings: Settings,
    *,
    cleared: bool = False,
) -> None:
    """Set the signed cookie for a stored session or clear a dropped one."""
    secure = settings.session_cookie_secure or request.url.scheme == "https"
    name = settings.session_cookie_name
    if session is not None and not session.is_new and not cleared:
        response.set_cookie(
            name,
            sessions.sign(session.id),
            max_age=settings.session_ttl_minutes * 60,
            httponly=True,
            samesite="lax",
            secure=secure,
            path="/",
        )
    elif request.cookies.get(name):
        # The cookie names a session that was dropped or no longer exists
        response.delete_cookie(name, path="/", httponly=True, samesite="lax", secure=secure)
