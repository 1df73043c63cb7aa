from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI, Request

from termingate.api.appointments import router as appointments_router
from termingate.api.error_handling import error_response, register_exception_handlers
from termingate.api.routes import router
from termingate.api.security import (
    client_ip,
    denial_response,
    parse_body,
    request_facts,
    requires_json_body,
    suspicious_user_agent,
    write_session_cookie,
)
from termingate.logging import audit_event, get_logger, set_correlation_id
from termingate.service.csrf import extract_candidate
from termingate.service.decisions import DenyReason
from termingate.service.errors import ServiceError
from termingate.service.routing import RouteClass
from termingate.service.runtime import Runtime, check_rate_limit, get_runtime
from termingate.service.security_monitor import (
    RATE_LIMIT_EXCEEDED,
    SUSPICIOUS_ACTIVITY,
    UNAUTHORIZED_ACCESS_ATTEMPT,
)

logger = get_logger(__name__)

__version__ = "0.1.0"


_maintenance_task: asyncio.Task | None = None


async def _run_maintenance(interval_seconds: int) -> None:
    """Background loop sweeping login counters, sessions and security events."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                removed = await get_runtime().run_maintenance()
                logger.debug("maintenance_pass_complete", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("maintenance_pass_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _maintenance_task
    runtime = get_runtime()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(runtime.settings.maintenance_interval_seconds)
    )
    yield
    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
        _maintenance_task = None
    await runtime.monitor.aclose()
    if runtime.cache is not None:
        await runtime.cache.close()
    if hasattr(runtime.store, "close"):
        runtime.store.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Termingate", version=__version__, lifespan=lifespan)


def _rate_limit_bucket(runtime: Runtime, method: str, path: str) -> Tuple[str, int, int]:
    s = runtime.settings
    if path == "/login" and method == "POST":
        return "login", s.login_rate_limit, s.login_rate_limit_window_seconds
    if (path == "/anfrage" and method == "POST") or path.startswith("/outlook/freie-slots"):
        return "anfrage", s.anfrage_form_rate_limit, s.anfrage_form_rate_limit_window_seconds
    if (
        path.startswith("/admin")
        or (path.startswith("/outlook") and method != "GET")
        or (path.startswith("/anfrage") and method != "POST")
    ):
        return "admin", s.admin_rate_limit, s.admin_rate_limit_window_seconds
    return "public", s.public_rate_limit, s.public_rate_limit_window_seconds


# Registration order is innermost first: the last middleware added runs first.


@app.middleware("http")
async def request_security(request: Request, call_next):
    """Session load, route classification, authentication and CSRF gates."""
    runtime = get_runtime()
    settings = runtime.settings
    facts = request_facts(request)

    try:
        session = await runtime.sessions.load_or_new(
            request.cookies.get(settings.session_cookie_name)
        )
        if not await runtime.sessions.touch(session):
            # Deleted by a concurrent logout or login since it was loaded
            session = runtime.sessions.new_session()
    except ServiceError as exc:
        return error_response(exc.status_code, exc.message, code=exc.error_code)
    request.state.session = session
    request.state.session_cleared = False
    request.state.parsed_body = None

    classification = runtime.classifier.classify(facts.method, facts.path)
    try:
        decision = await runtime.auth_gate.authenticate(session, classification, facts)
    except ServiceError as exc:
        return error_response(exc.status_code, exc.message, code=exc.error_code)
    if not decision.allowed:
        if decision.reason in (DenyReason.NO_SESSION, DenyReason.INSUFFICIENT_ROLE):
            runtime.monitor.track(
                UNAUTHORIZED_ACCESS_ATTEMPT,
                facts.client_ip,
                user_agent=facts.user_agent,
                url=facts.path,
                method=facts.method,
                details={"reason": decision.reason.value},
            )
        response = denial_response(request, decision)
        write_session_cookie(
            response,
            request,
            session,
            runtime.sessions,
            settings,
            cleared=decision.session_destroyed,
        )
        return response

    if runtime.csrf_gate.applies_to(facts.method, facts.path):
        body = await parse_body(request)
        request.state.parsed_body = body
        candidate = extract_candidate(request.headers, body)
        decision = runtime.csrf_gate.verify(session, facts.method, facts.path, candidate)
        if not decision.allowed:
            audit_event(
                "CSRF_DENIED",
                level="warning",
                reason=decision.reason.value,
                ip=facts.client_ip,
                method=facts.method,
                path=facts.path,
            )
            return denial_response(request, decision)

    response = await call_next(request)
    write_session_cookie(
        response,
        request,
        request.state.session,
        runtime.sessions,
        settings,
        cleared=request.state.session_cleared,
    )
    return response


@app.middleware("http")
async def request_guard(request: Request, call_next):
    """Anomaly tracking, per-bucket rate limits and the JSON body requirement."""
    runtime = get_runtime()
    method = request.method.upper()
    path = request.url.path
    ip = client_ip(request)
    user_agent = request.headers.get("user-agent", "")

    anomalies = runtime.monitor.detect_anomalies(user_agent, str(request.url.path), request.headers)
    if anomalies:
        runtime.monitor.track(
            SUSPICIOUS_ACTIVITY,
            ip,
            user_agent=user_agent,
            url=path,
            method=method,
            details={"anomalies": anomalies},
        )

    if runtime.settings.rate_limit_enabled:
        bucket, limit, window = _rate_limit_bucket(runtime, method, path)
        key = f"{bucket}:{ip or 'unknown'}:{user_agent[:50] or 'unknown'}"
        allowed, _, reset_seconds = await check_rate_limit(
            runtime, key, limit, window, return_remaining=True
        )
        if not allowed:
            retry_after = reset_seconds or window
            runtime.monitor.track(
                RATE_LIMIT_EXCEEDED,
                ip,
                user_agent=user_agent,
                url=path,
                method=method,
                details={"bucket": bucket, "limit": limit, "window_seconds": window},
            )
            return error_response(
                429,
                "too many requests, please wait",
                code="RATE_LIMITED",
                headers={"Retry-After": str(retry_after)},
                retryAfter=retry_after,
            )

    if requires_json_body(request):
        return error_response(
            400, "content type must be application/json", code="INVALID_CONTENT_TYPE"
        )

    if suspicious_user_agent(request):
        public = runtime.classifier.classify(method, path) is RouteClass.PUBLIC
        audit_event(
            "SUSPICIOUS_USER_AGENT",
            level="warning",
            ip=ip,
            user_agent=user_agent,
            method=method,
            path=path,
            blocked=not public,
        )
        # Public routes only warn
        if not public:
            return error_response(400, "invalid user agent", code="INVALID_USER_AGENT")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    production = get_runtime().settings.is_production
    if production or request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
    csp = (
        "default-src 'self'; script-src 'self'; style-src 'self'; img-src 'self' data:; "
        "connect-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'"
    )
    if production:
        csp += "; upgrade-insecure-requests"
    response.headers.setdefault("Content-Security-Policy", csp)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for logging and echo it as ``X-Request-ID``."""
    client_request_id: Optional[str] = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(appointments_router)


def create_app() -> FastAPI:
    return app
