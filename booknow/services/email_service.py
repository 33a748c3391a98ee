"""
Email delivery.

Plain-text transactional mail over SMTP. Without SMTP_HOST the logging
sender is used, which is what development and tests run with.
"""

import logging
import smtplib
from email.message import EmailMessage
from functools import lru_cache
from typing import List, Optional, Protocol, Tuple

from ..config import settings

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str) -> None:
        ...


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str = "",
        timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)
        logger.info(f"Email '{subject}' sent to {to}")


class LoggingEmailSender:
    """Records messages instead of sending them."""

    def __init__(self):
        self.outbox: List[Tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> None:
        self.outbox.append((to, subject, body))
        logger.info(f"[email disabled] '{subject}' -> {to}")


@lru_cache()
def get_email_sender() -> EmailSender:
    if settings.email_enabled:
        return SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            sender=settings.email_from,
            timeout=settings.smtp_timeout_seconds,
        )
    return LoggingEmailSender()


def send_email_safely(sender: EmailSender, to: Optional[str], subject: str, body: str) -> bool:
    """Send one email; failures are logged and reported as False."""
    if not to:
        logger.warning(f"Skipping email '{subject}': no recipient address")
        return False
    try:
        sender.send(to, subject, body)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email '{subject}' to {to} failed: {e}")
        return False
