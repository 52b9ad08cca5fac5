"""Transactional mail: verification and password-reset links over SMTP."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from urllib.parse import urlencode

from authcore.config import Settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Sends mail via SMTP; when SMTP_HOST is empty, logs instead of sending (dev)."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def is_configured(self) -> bool:
        return bool(self._settings.smtp_host)

    def _link(self, path: str, token: str) -> str:
        base = self._settings.public_base_url.rstrip("/")
        return f"{base}/api/v1/auth/{path}?{urlencode({'token': token})}"

    def _send_sync(self, to_email: str, subject: str, body: str) -> None:
        s = self._settings
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = s.email_from
        msg["To"] = to_email
        msg.set_content(body)
        context = ssl.create_default_context()
        if s.smtp_use_tls:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        else:
            with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=30) as server:
                if s.smtp_user and s.smtp_password:
                    server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)

    async def send(self, to_email: str, subject: str, body: str) -> None:
        """Raises EmailDeliveryError if the SMTP exchange fails."""
        if not self.is_configured:
            logger.info("Email not configured; skipping '%s' to %s", subject, redact_email(to_email))
            return
        try:
            await asyncio.to_thread(self._send_sync, to_email, subject, body)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error("Email '%s' to %s failed: %s: %s", subject, redact_email(to_email), type(e).__name__, e)
            raise EmailDeliveryError(str(e)) from e
        logger.info("Email '%s' sent to %s", subject, redact_email(to_email))

    async def send_verification_email(self, to_email: str, token: str) -> None:
        link = self._link("verify-email", token)
        await self.send(
            to_email,
            "Email Verification - PulseBoard",
            f"Welcome to PulseBoard.\n\nConfirm your email address by opening this link:\n{link}\n",
        )

    async def send_password_reset_email(self, to_email: str, token: str) -> None:
        link = self._link("reset-password", token)
        await self.send(
            to_email,
            "Password Reset Request - PulseBoard",
            "Someone asked to reset the password for this account.\n\n"
            f"If it was you, open this link to choose a new password:\n{link}\n\n"
            "If not, you can ignore this email.\n",
        )
