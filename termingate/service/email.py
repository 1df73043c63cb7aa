from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Optional

from termingate.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """SMTP delivery for security alert mails.

    Without an SMTP host the message is logged instead of sent, which keeps
    development and test runs quiet.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Termingate Security",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send one message; returns False on any SMTP failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_security_alert(self, to_email: str, alert: dict[str, Any]) -> bool:
        event_type = alert.get("eventType", "UNKNOWN")
        subject = f"Security Alert: {event_type}"
        rows = [
            ("Time", alert.get("timestamp")),
            ("Event type", event_type),
            ("IP address", alert.get("ip")),
            ("Message", alert.get("message")),
            ("Event count", alert.get("eventsCount")),
            ("User agent", alert.get("userAgent")),
            ("URL", alert.get("url")),
        ]
        recent = alert.get("recentEvents") or []

        html_rows = "".join(
            f"<p><strong>{label}:</strong> {html.escape(str(value))}</p>" for label, value in rows
        )
        html_events = "".join(
            f"<li>{html.escape(str(ev.get('timestamp')))}: {html.escape(str(ev.get('details')))}</li>"
            for ev in recent
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <h2>Security Alert</h2>
    {html_rows}
    <h3>Recent events</h3>
    <ul>{html_events}</ul>
    <p><em>Generated automatically by the security monitor.</em></p>
</body>
</html>
"""
        text_body = "\n".join(f"{label}: {value}" for label, value in rows)
        if recent:
            text_body += "\n\nRecent events:\n" + "\n".join(
                f"- {ev.get('timestamp')}: {ev.get('details')}" for ev in recent
            )
        return self._send_email(to_email, subject, html_body, text_body)
