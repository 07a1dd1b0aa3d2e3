"""
core/notifier.py -- Outbound email for OTP password-reset codes.

EmailNotifier is the delivery collaborator of the OTP challenge manager. It
sends a multipart (plain + HTML) message over SMTP with STARTTLS or implicit
TLS. When SMTP_HOST is not configured it logs a redacted dev-mode line instead
of sending, so local development works without a mail server.

send_otp_email() raises on transport failure (smtplib.SMTPException or
OSError). It does not swallow errors: the caller decides whether a failure is
surfaced (DeliveryFailure) and how long to wait for it.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

logger = logging.getLogger("sessiongate.notifier")

_SUBJECT = "Your password reset code"


class OtpNotifier(Protocol):
    def send_otp_email(self, to_email: str, code: str, expires_at: datetime) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP sender for OTP codes. Falls back to logging when unconfigured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "SessionGate",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "EmailNotifier":
        return cls(
            smtp_host=settings.smtp_host or None,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user or None,
            smtp_password=settings.smtp_password or None,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from or None,
            from_name=settings.mail_from_name,
            timeout=settings.otp_delivery_timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_otp_email(self, to_email: str, code: str, expires_at: datetime) -> None:
        expires_text = expires_at.strftime("%Y-%m-%d %H:%M UTC")
        text_body = (
            f"Use the following code to reset your password: {code}\n\n"
            f"The code expires at {expires_text}.\n"
            "If you did not request a password reset, ignore this message."
        )
        html_body = (
            "<p>Use the following code to reset your password:</p>"
            f'<p style="font-size:24px;font-weight:bold;letter-spacing:4px">{html.escape(code)}</p>'
            f"<p>The code expires at {html.escape(expires_text)}.</p>"
            "<p>If you did not request a password reset, ignore this message.</p>"
        )
        self._send(to_email, _SUBJECT, html_body, text_body)

    def _send(self, to_email: str, subject: str, html_body: str, text_body: str) -> None:
        if not self.is_configured:
            # Dev mode: never log the body, it contains the code.
            logger.info("SMTP not configured; OTP email to %s not sent (dev mode)", redact_email(to_email))
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=self.timeout) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        logger.info("OTP email sent to %s", redact_email(to_email))
