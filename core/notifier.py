# core/notifier.py
from __future__ import annotations

import asyncio
import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from settings import Settings
from telemetry.logger import get_logger

logger = get_logger(__name__)


class OtpNotifier(Protocol):
    async def send_otp(
        self, *, email: str, employee_name: str, otp_code: str, expires_at: datetime
    ) -> None: ...


def _redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _render_otp(employee_name: str, otp_code: str, expires_at: datetime) -> tuple[str, str, str]:
    subject = "Your login code"
    expiry = expires_at.strftime("%H:%M UTC")
    text = (
        f"Hello {employee_name},\n\n"
        f"Your one-time login code is {otp_code}.\n"
        f"It expires at {expiry} and can only be used once.\n\n"
        "If you did not request this code, you can ignore this email."
    )
    html = (
        f"<p>Hello {employee_name},</p>"
        f"<p>Your one-time login code is <strong style=\"font-size:20px\">{otp_code}</strong>.</p>"
        f"<p>It expires at {expiry} and can only be used once.</p>"
        "<p>If you did not request this code, you can ignore this email.</p>"
    )
    return subject, text, html


class LogOnlyNotifier:
    """Used when no SMTP host is configured. Never logs the code itself."""

    async def send_otp(
        self, *, email: str, employee_name: str, otp_code: str, expires_at: datetime
    ) -> None:
        logger.info("otp_email_dev_mode", to=_redact_email(email), expires_at=expires_at.isoformat())


class SmtpNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        from_email: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email or user
        self.timeout = timeout

    def _send(self, to_email: str, subject: str, text: str, html: str) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email or ""
        msg["To"] = to_email
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(msg["From"], [to_email], msg.as_string())

    async def send_otp(
        self, *, email: str, employee_name: str, otp_code: str, expires_at: datetime
    ) -> None:
        subject, text, html = _render_otp(employee_name, otp_code, expires_at)
        # smtplib blocks; keep it off the event loop
        await asyncio.to_thread(self._send, email, subject, text, html)
        logger.info("otp_email_sent", to=_redact_email(email))


def build_notifier(settings: Settings) -> OtpNotifier:
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
        )
    return LogOnlyNotifier()
