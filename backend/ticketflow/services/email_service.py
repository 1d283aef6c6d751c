"""
Outbound email.

Senders never raise: a failed delivery is logged, counted and reported as
False so the operation that triggered it (registration, lockout, reset)
carries on.
"""

from __future__ import annotations

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

from ticketflow.core.config import Settings, get_settings
from ticketflow.core.logging import get_logger
from ticketflow.core.metrics import record_email_send

logger = get_logger(__name__)


class EmailSender(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        """Deliver one message. Returns False instead of raising on failure."""


class ConsoleEmailSender(EmailSender):
    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        logger.info("email_console", to=to, subject=subject, body=text_body)
        return True


class InMemoryEmailSender(EmailSender):
    def __init__(self, outbox: Optional[list[dict]] = None) -> None:
        self.outbox = outbox if outbox is not None else []

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        self.outbox.append(
            {
                "to": to,
                "subject": subject,
                "html": html_body,
                "text": text_body,
            }
        )
        return True


class SmtpEmailSender(EmailSender):
    def __init__(self, host: str, port: int, username: str, password: str, from_addr: str) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from = from_addr

    def _send_sync(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = to
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")

        with smtplib.SMTP(self._host, self._port, timeout=10) as server:
            server.starttls()
            if self._username:
                server.login(self._username, self._password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        try:
            await asyncio.to_thread(self._send_sync, to, subject, html_body, text_body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", to=to, subject=subject, error=str(e))
            return False
        return True


def build_email_sender(settings: Settings) -> EmailSender:
    backend = settings.EMAIL_BACKEND
    if backend == "memory":
        return InMemoryEmailSender()
    if backend == "smtp":
        if not settings.SMTP_HOST:
            raise RuntimeError("SMTP configuration missing. Set SMTP_HOST/SMTP_USERNAME/SMTP_PASSWORD.")
        return SmtpEmailSender(
            settings.SMTP_HOST,
            settings.SMTP_PORT,
            settings.SMTP_USERNAME,
            settings.SMTP_PASSWORD,
            settings.SMTP_FROM,
        )
    return ConsoleEmailSender()


class AuthMailer:
    """Account emails: verification, reset, password-changed and lockout notices."""

    def __init__(self, sender: EmailSender, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self._sender = sender
        self._frontend_url = settings.FRONTEND_URL.rstrip("/")
        self._verification_hours = settings.EMAIL_VERIFICATION_EXPIRE_HOURS
        self._reset_minutes = settings.PASSWORD_RESET_EXPIRE_MINUTES
        self._lock_minutes = settings.ACCOUNT_LOCK_MINUTES

    async def _deliver(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        try:
            sent = await self._sender.send(to, subject, html_body, text_body)
        except Exception as e:
            # Delivery failures never propagate to the caller
            logger.error("email_send_error", to=to, subject=subject, error=str(e))
            sent = False
        record_email_send(sent)
        if not sent:
            logger.warning("email_not_delivered", to=to, subject=subject)
        return sent

    async def send_email_verification(self, email: str, first_name: str, token: str) -> bool:
        link = f"{self._frontend_url}/verify-email?token={token}"
        text = (
            f"Hi {first_name},\n\n"
            f"Please confirm your email address by opening this link:\n{link}\n\n"
            f"The link expires in {self._verification_hours} hours."
        )
        html = (
            f"<p>Hi {first_name},</p>"
            f"<p>Please confirm your email address: <a href=\"{link}\">verify email</a></p>"
            f"<p>The link expires in {self._verification_hours} hours.</p>"
        )
        return await self._deliver(email, "Verify your email address", html, text)

    async def send_password_reset(self, email: str, first_name: str, token: str) -> bool:
        link = f"{self._frontend_url}/reset-password?token={token}"
        text = (
            f"Hi {first_name},\n\n"
            f"A password reset was requested for your account:\n{link}\n\n"
            f"The link expires in {self._reset_minutes} minutes. Ignore this email if you did not ask for it."
        )
        html = (
            f"<p>Hi {first_name},</p>"
            f"<p>A password reset was requested: <a href=\"{link}\">reset password</a></p>"
            f"<p>The link expires in {self._reset_minutes} minutes. Ignore this email if you did not ask for it.</p>"
        )
        return await self._deliver(email, "Reset your password", html, text)

    async def send_password_changed(self, email: str, first_name: str) -> bool:
        text = (
            f"Hi {first_name},\n\n"
            "Your password was changed and all your sessions were signed out."
        )
        html = (
            f"<p>Hi {first_name},</p>"
            "<p>Your password was changed and all your sessions were signed out.</p>"
        )
        return await self._deliver(email, "Your password was changed", html, text)

    async def send_account_locked(self, email: str, first_name: str) -> bool:
        text = (
            f"Hi {first_name},\n\n"
            "Your account was temporarily locked after several failed sign-in attempts. "
            f"Try again in {self._lock_minutes} minutes or reset your password."
        )
        html = (
            f"<p>Hi {first_name},</p>"
            "<p>Your account was temporarily locked after several failed sign-in attempts. "
            f"Try again in {self._lock_minutes} minutes or reset your password.</p>"
        )
        return await self._deliver(email, "Your account was locked", html, text)
