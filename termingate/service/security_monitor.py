from __future__ import annotations

import asyncio
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

import httpx

from termingate.logging import audit_event, get_logger
from termingate.service.email import EmailService
from termingate.storage.models import utcnow

logger = get_logger(__name__)

LOGIN_FAILED = "LOGIN_FAILED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"

ALERT_THRESHOLDS: Dict[str, int] = {
    LOGIN_FAILED: 5,
    RATE_LIMIT_EXCEEDED: 10,
    SUSPICIOUS_ACTIVITY: 3,
    UNAUTHORIZED_ACCESS_ATTEMPT: 3,
}

_ALERT_MESSAGES = {
    LOGIN_FAILED: "{count} failed login attempts from IP {ip} within {minutes} minutes",
    RATE_LIMIT_EXCEEDED: "{count} rate limit violations from IP {ip} within {minutes} minutes",
    SUSPICIOUS_ACTIVITY: "{count} suspicious requests detected from IP {ip}",
    UNAUTHORIZED_ACCESS_ATTEMPT: "repeated unauthorized access attempts from IP {ip}",
}

SUSPICIOUS_USER_AGENTS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"sqlmap", r"nmap", r"nikto", r"curl", r"wget", r"python-requests", r"bot.*scan")
]
# /admin is a legitimate path here and is left out
SUSPICIOUS_URLS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\.(php|asp|jsp)$",
        r"/wp-admin",
        r"/phpmyadmin",
        r"/config",
        r"/\.env",
        r"/\.git",
    )
]
PROXY_HEADERS = ("x-forwarded-for", "x-real-ip", "x-originating-ip")

MAX_RECENT_ALERTS = 50


@dataclass
class SecurityEvent:
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


class SecurityMonitor:
    """Sliding-window counters per (event type, IP) with threshold alerts."""

    def __init__(
        self,
        *,
        window: timedelta = timedelta(minutes=10),
        alerts_enabled: bool = False,
        security_email: Optional[str] = None,
        webhook_url: Optional[str] = None,
        email: Optional[EmailService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.window = window
        self.alerts_enabled = alerts_enabled
        self.security_email = security_email
        self.webhook_url = webhook_url
        self.email = email
        self._transport = transport
        self._clock = clock
        self._events: Dict[Tuple[str, str], List[SecurityEvent]] = {}
        self._alerts: List[Dict[str, Any]] = []
        self._lock = threading.Lock()
        self._deliveries: Set[asyncio.Task] = set()

    def track(
        self,
        event_type: str,
        ip: Optional[str],
        *,
        user_agent: Optional[str] = None,
        url: Optional[str] = None,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Record one event; returns the alert payload when a threshold is hit."""
        now = self._clock()
        ip = ip or "unknown"
        cutoff = now - self.window
        with self._lock:
            bucket = self._events.setdefault((event_type, ip), [])
            bucket.append(SecurityEvent(now, dict(details or {})))
            recent = [ev for ev in bucket if ev.timestamp > cutoff]
            self._events[(event_type, ip)] = recent

        audit_event(
            event_type,
            level="warning",
            ip=ip,
            user_agent=user_agent,
            url=url,
            method=method,
            details=details or {},
        )

        threshold = ALERT_THRESHOLDS.get(event_type)
        if threshold is None or len(recent) < threshold:
            return None
        return self._raise_alert(event_type, ip, recent, user_agent=user_agent, url=url)

    def _raise_alert(
        self,
        event_type: str,
        ip: str,
        events: List[SecurityEvent],
        *,
        user_agent: Optional[str],
        url: Optional[str],
    ) -> Dict[str, Any]:
        message = _ALERT_MESSAGES[event_type].format(
            count=len(events), ip=ip, minutes=int(self.window.total_seconds() // 60)
        )
        alert = {
            "timestamp": self._clock().isoformat(),
            "eventType": event_type,
            "ip": ip,
            "message": message,
            "eventsCount": len(events),
            "userAgent": user_agent,
            "url": url,
            "recentEvents": [
                {"timestamp": ev.timestamp.isoformat(), "details": ev.details}
                for ev in events[-5:]
            ],
        }
        logger.error("security_alert", **alert)
        with self._lock:
            self._alerts.append(alert)
            del self._alerts[:-MAX_RECENT_ALERTS]
        if self.alerts_enabled:
            self._schedule_delivery(alert)
        return alert

    def _schedule_delivery(self, alert: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("security_alert_delivery_skipped", reason="no_event_loop")
            return
        task = loop.create_task(self.deliver(alert))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "security_alert_delivery_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def aclose(self, timeout: float = 5.0) -> None:
        """Wait briefly for in-flight alert deliveries, then cancel the rest."""
        pending = list(self._deliveries)
        if not pending:
            return
        _, unfinished = await asyncio.wait(pending, timeout=timeout)
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
            logger.warning("security_alert_delivery_cancelled", count=len(unfinished))

    async def deliver(self, alert: Dict[str, Any]) -> None:
        """Send the alert by mail and webhook; failures are logged only."""
        if self.email and self.security_email:
            sent = await asyncio.to_thread(
                self.email.send_security_alert, self.security_email, alert
            )
            if sent:
                logger.info("security_alert_email_sent", event_type=alert["eventType"])
        if self.webhook_url:
            await self._post_webhook(alert)

    async def _post_webhook(self, alert: Dict[str, Any]) -> None:
        payload = {
            "text": f"Security Alert: {alert['eventType']}",
            "attachments": [
                {
                    "color": "danger",
                    "fields": [
                        {"title": "IP address", "value": alert["ip"], "short": True},
                        {"title": "Events", "value": str(alert["eventsCount"]), "short": True},
                        {"title": "Details", "value": alert["message"], "short": False},
                    ],
                }
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
            logger.info("security_alert_webhook_sent", event_type=alert["eventType"])
        except httpx.HTTPError as exc:
            logger.error("security_alert_webhook_failed", error=str(exc))

    @staticmethod
    def detect_anomalies(
        user_agent: Optional[str], url: str, headers: Mapping[str, str]
    ) -> List[str]:
        anomalies: List[str] = []
        ua = user_agent or ""
        if any(p.search(ua) for p in SUSPICIOUS_USER_AGENTS):
            anomalies.append("Suspicious User-Agent")
        if any(p.search(url) for p in SUSPICIOUS_URLS):
            anomalies.append("Suspicious URL pattern")
        lowered = {k.lower() for k in headers.keys()}
        if sum(1 for h in PROXY_HEADERS if h in lowered) > 1:
            anomalies.append("Multiple proxy headers")
        return anomalies

    def cleanup(self) -> int:
        cutoff = self._clock() - self.window * 2
        removed = 0
        with self._lock:
            for key in list(self._events):
                kept = [ev for ev in self._events[key] if ev.timestamp > cutoff]
                removed += len(self._events[key]) - len(kept)
                if kept:
                    self._events[key] = kept
                else:
                    del self._events[key]
        return removed

    def dashboard(self) -> Dict[str, Any]:
        since = self._clock() - timedelta(hours=24)
        by_type: Counter = Counter()
        by_ip: Counter = Counter()
        with self._lock:
            for (event_type, ip), events in self._events.items():
                count = sum(1 for ev in events if ev.timestamp > since)
                by_type[event_type] += count
                by_ip[ip] += count
            alerts = list(self._alerts[-10:])
        return {
            "totalEvents": sum(by_type.values()),
            "eventsByType": dict(by_type),
            "topIPs": dict(by_ip.most_common(10)),
            "recentAlerts": alerts,
        }
