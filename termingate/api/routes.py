from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from termingate.api.schemas import (
    AdminLandingResponse,
    CsrfTokenResponse,
    HealthResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PrincipalResponse,
    UserCreateRequest,
    UserListResponse,
    UserResponse,
)
from termingate.api.security import client_ip
from termingate.logging import get_logger
from termingate.service.errors import ServerError, ValidationError
from termingate.service.runtime import get_runtime
from termingate.storage.models import Principal, Session

logger = get_logger(__name__)

router = APIRouter()

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def get_request_session(request: Request) -> Session:
    """The session the security middleware attached to this request."""
    session = getattr(request.state, "session", None)
    if session is None:
        # Only reachable when the middleware is not installed
        raise ServerError("request session not initialised")
    return session


def get_principal(session: Session = Depends(get_request_session)) -> Principal:
    if session.principal is None:
        raise ServerError("protected route reached without a principal")
    return session.principal


@router.get("/csrf-token", response_model=CsrfTokenResponse)
async def issue_csrf_token(
    request: Request, session: Session = Depends(get_request_session)
):
    runtime = get_runtime()
    token = await runtime.tokens.issue(session)
    if token is None:
        # Logged out or destroyed by a concurrent request
        session = runtime.sessions.new_session()
        request.state.session = session
        token = await runtime.tokens.issue(session)
    return CsrfTokenResponse(csrfToken=token)


@router.get("/login")
async def login_page(
    request: Request, session: Session = Depends(get_request_session)
):
    principal = session.principal
    if principal is not None and principal.is_admin:
        return RedirectResponse("/admin", status_code=302)
    return {
        "success": True,
        "authenticated": principal is not None,
        "redirect": request.query_params.get("redirect"),
        "message": request.query_params.get("message"),
    }


@router.post("/login", response_model=LoginResponse)
async def login(request: Request, session: Session = Depends(get_request_session)):
    body = getattr(request.state, "parsed_body", None) or {}
    try:
        payload = LoginRequest.model_validate(body)
    except PydanticValidationError as exc:
        raise ValidationError(
            "username and password are required",
            detail={"fields": sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})},
        ) from exc

    runtime = get_runtime()
    _, fresh = await runtime.auth.login(
        payload.username,
        payload.password,
        session,
        client_ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    request.state.session = fresh
    return LoginResponse()


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, session: Session = Depends(get_request_session)):
    runtime = get_runtime()
    await runtime.auth.logout(session, client_ip=client_ip(request))
    request.state.session_cleared = True
    return MessageResponse(message="logged out")


@router.get("/health", response_model=HealthResponse)
async def health():
    from termingate.app import __version__

    runtime = get_runtime()
    checks: Dict[str, str] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _run_bounded("session_store", runtime.store.verify_connection)
    checks["session_store"] = "healthy" if store_ok else "unhealthy"
    healthy = store_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = "healthy" if redis_ok else "unhealthy"
        healthy = healthy and redis_ok
    else:
        checks["redis"] = "not_configured"

    return HealthResponse(
        status="OK" if healthy else "DEGRADED",
        timestamp=datetime.now(timezone.utc),
        environment=runtime.settings.app_env,
        version=__version__,
        checks=checks,
    )


@router.get("/admin", response_model=AdminLandingResponse)
async def admin_landing(principal: Principal = Depends(get_principal)):
    return AdminLandingResponse(user=PrincipalResponse.from_principal(principal))


@router.get("/admin/security")
async def security_dashboard():
    runtime = get_runtime()
    return {"success": True, "data": runtime.monitor.dashboard()}


@router.get("/users", response_model=UserListResponse)
async def list_users(limit: Optional[int] = 100):
    runtime = get_runtime()
    limit = max(1, min(limit or 100, 500))
    users = await asyncio.to_thread(runtime.auth.list_users, limit)
    return UserListResponse(users=[UserResponse.from_user(u) for u in users])


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(body: UserCreateRequest):
    runtime = get_runtime()
    user = await runtime.auth.create_user(body.username, body.password, role=body.role)
    return UserResponse.from_user(user)
