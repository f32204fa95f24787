"""
auth/mailer.py -- Outbound transactional email.

The service depends on the EmailSender protocol, not on SMTP. One sender is
built at process start (see api/main.py lifespan) and injected into
AuthService, so tests substitute a fake without patching globals.

SmtpEmailSender falls back to logging the message when SMTP_HOST is not set
(dev mode). Every delivery failure surfaces as EmailDeliveryError; the
service decides whether that is fatal.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("sessionkeeper.mailer")


class EmailDeliveryError(Exception):
    """The message could not be handed to the mail server."""


class EmailSender(Protocol):
    def send_verification_email(self, email: str, token: str) -> None: ...

    def send_password_reset_email(self, email: str, token: str) -> None: ...

    def send_password_changed_notice(self, email: str) -> None: ...


def redact_email(email: str) -> str:
    """Shorten an address for log lines: "alice@example.com" -> "al***@example.com"."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpEmailSender:
    """EmailSender backed by smtplib (STARTTLS or implicit TLS)."""

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "SessionKeeper",
        frontend_url: str = "http://localhost:3000",
        verification_ttl_minutes: int = 10,
        reset_ttl_minutes: int = 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self.verification_ttl_minutes = verification_ttl_minutes
        self.reset_ttl_minutes = reset_ttl_minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "SmtpEmailSender":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from,
            from_name=settings.mail_from_name,
            frontend_url=settings.frontend_url,
            verification_ttl_minutes=settings.verification_token_ttl_minutes,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def send_verification_email(self, email: str, token: str) -> None:
        url = f"{self.frontend_url}/verify-email?token={token}"
        self._send(
            email,
            "Verify Your Email",
            "Thanks for signing up. Confirm your email address by opening the link below:\n\n"
            f"{url}\n\n"
            f"This link expires in {self.verification_ttl_minutes} minutes. "
            "If you did not create an account, ignore this email.",
        )

    def send_password_reset_email(self, email: str, token: str) -> None:
        url = f"{self.frontend_url}/reset-password?token={token}"
        self._send(
            email,
            "Password Reset Request",
            "We received a request to reset your password. Choose a new one here:\n\n"
            f"{url}\n\n"
            f"This link expires in {self.reset_ttl_minutes} minutes. "
            "If you did not ask for a reset, ignore this email or contact support.",
        )

    def send_password_changed_notice(self, email: str) -> None:
        self._send(
            email,
            "Password Changed Successfully",
            "Your password has been changed.\n\n"
            f"Log in: {self.frontend_url}/login\n\n"
            "If you did not make this change, contact support immediately.",
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(self, to_email: str, subject: str, body: str) -> None:
        if not self.is_configured:
            logger.info("email (dev mode, not sent) to=%s subject=%r\n%s", redact_email(to_email), subject, body)
            return

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("email send failed to=%s subject=%r: %s", redact_email(to_email), subject, exc)
            raise EmailDeliveryError(str(exc)) from exc
        logger.info("email sent to=%s subject=%r", redact_email(to_email), subject)
