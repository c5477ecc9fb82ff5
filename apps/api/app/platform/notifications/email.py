from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from threading import Lock
from typing import Protocol

from app.core.config import Settings, get_settings


logger = logging.getLogger("app.notifications.email")


class EmailDispatcher(Protocol):
    """Outbound email. Implementations report failure by returning False, never by raising."""

    def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        ...


@dataclass(slots=True)
class SentEmail:
    to: list[str]
    subject: str
    html: str
    text: str | None


class SmtpEmailDispatcher:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        if not to:
            return False

        message = EmailMessage()
        message["From"] = self._settings.email_from
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        message.set_content(text or "This message requires an HTML capable email client.")
        message.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(
                self._settings.smtp_host,
                self._settings.smtp_port,
                timeout=self._settings.smtp_timeout_seconds,
            ) as client:
                if self._settings.smtp_use_tls:
                    client.starttls()
                if self._settings.smtp_username:
                    client.login(self._settings.smtp_username, self._settings.smtp_password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email.send_failed",
                extra={"recipients": to, "subject": subject, "error": str(exc)[:500]},
            )
            return False

        logger.info("email.sent", extra={"recipients": to, "subject": subject})
        return True


class NullEmailDispatcher:
    """Used when no SMTP host is configured."""

    def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        logger.warning("email.not_configured", extra={"recipients": to, "subject": subject})
        return False


class InMemoryEmailDispatcher:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[SentEmail] = []

    def send(self, to: list[str], subject: str, html: str, text: str | None = None) -> bool:
        if self.fail:
            return False
        self.sent.append(SentEmail(to=list(to), subject=subject, html=html, text=text))
        return True

    def clear(self) -> None:
        self.sent.clear()


def build_email_dispatcher(settings: Settings | None = None) -> EmailDispatcher:
    resolved = settings or get_settings()
    if resolved.smtp_host:
        return SmtpEmailDispatcher(resolved)
    return NullEmailDispatcher()


_EMAIL_DISPATCHER: EmailDispatcher | None = None
_EMAIL_LOCK = Lock()


def get_email_dispatcher() -> EmailDispatcher:
    """Get the active dispatcher, building one from settings on first use."""

    global _EMAIL_DISPATCHER
    with _EMAIL_LOCK:
        if _EMAIL_DISPATCHER is None:
            _EMAIL_DISPATCHER = build_email_dispatcher()
        return _EMAIL_DISPATCHER


def set_email_dispatcher(dispatcher: EmailDispatcher | None) -> None:
    """Set the active dispatcher. ``None`` falls back to settings on next use."""

    global _EMAIL_DISPATCHER
    with _EMAIL_LOCK:
        _EMAIL_DISPATCHER = dispatcher
