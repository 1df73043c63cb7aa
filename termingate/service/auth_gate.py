"""Principal checks for routes that are not public.

The gate returns a ``GateDecision``; turning a denial into JSON or a login
redirect is left to the HTTP layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from termingate.logging import audit_event, get_logger
from termingate.service.decisions import ALLOW, DenyReason, GateDecision
from termingate.service.routing import RouteClass
from termingate.service.sessions import SessionManager
from termingate.storage.models import ROLE_ADMIN, Session, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestFacts:
    method: str
    path: str
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


class AuthenticationGate:
    def __init__(
        self,
        sessions: SessionManager,
        *,
        max_age: timedelta = timedelta(hours=2),
        check_ip: bool = False,
        check_user_agent: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.max_age = max_age
        self.check_ip = check_ip
        self.check_user_agent = check_user_agent
        self._clock = clock

    async def authenticate(
        self,
        session: Optional[Session],
        classification: RouteClass,
        request: RequestFacts,
    ) -> GateDecision:
        if classification is RouteClass.PUBLIC:
            return ALLOW

        principal = session.principal if session else None
        if principal is None:
            return self._deny(DenyReason.NO_SESSION, request)

        if classification is RouteClass.REQUIRES_ADMIN_ROLE and principal.role != ROLE_ADMIN:
            return self._deny(
                DenyReason.INSUFFICIENT_ROLE,
                request,
                user_id=principal.user_id,
                role=principal.role,
            )

        age = self._clock() - principal.login_time
        if age > self.max_age:
            await self.sessions.destroy(session, reason="expired")
            return self._deny(
                DenyReason.EXPIRED,
                request,
                destroyed=True,
                user_id=principal.user_id,
                age_seconds=int(age.total_seconds()),
            )

        if self.check_ip and principal.login_ip != request.client_ip:
            await self.sessions.destroy(session, reason="ip_change")
            return self._deny(
                DenyReason.SECURITY_CONFLICT,
                request,
                destroyed=True,
                user_id=principal.user_id,
                conflict="ip",
                login_ip=principal.login_ip,
            )

        if self.check_user_agent and principal.user_agent != request.user_agent:
            await self.sessions.destroy(session, reason="user_agent_change")
            return self._deny(
                DenyReason.SECURITY_CONFLICT,
                request,
                destroyed=True,
                user_id=principal.user_id,
                conflict="user_agent",
            )

        audit_event(
            "ADMIN_ACCESS" if classification is RouteClass.REQUIRES_ADMIN_ROLE else "USER_ACCESS",
            user_id=principal.user_id,
            username=principal.username,
            ip=request.client_ip,
            method=request.method,
            path=request.path,
            timestamp=self._clock().isoformat(),
        )
        return ALLOW

    def _deny(
        self,
        reason: DenyReason,
        request: RequestFacts,
        *,
        destroyed: bool = False,
        **fields,
    ) -> GateDecision:
        audit_event(
            "AUTH_DENIED",
            level="warning",
            reason=reason.value,
            ip=request.client_ip,
            method=request.method,
            path=request.path,
            session_destroyed=destroyed,
            **fields,
        )
        return GateDecision.deny(reason, session_destroyed=destroyed)
