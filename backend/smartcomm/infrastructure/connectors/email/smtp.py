"""
SMTP Email Provider
Delivery for rules whose channel is email.

Environment Variables:
    SMTP_HOST: SMTP server hostname (e.g., smtp.gmail.com)
    SMTP_PORT: SMTP port (default: 587 for TLS)
    SMTP_USER: SMTP username/email
    SMTP_PASSWORD: SMTP password or app password
    SMTP_FROM_EMAIL: Sender email address
    SMTP_USE_TLS: Use TLS (default: true)
"""
import asyncio
import logging
import os
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional

logger = logging.getLogger(__name__)


class SMTPConfigError(Exception):
    """Raised when SMTP is not properly configured."""
    pass


@dataclass
class EmailResult:
    """Result of an email send operation."""
    success: bool
    message_id: Optional[str] = None
    to_email: str = ""
    error: Optional[str] = None
    sent_at: Optional[datetime] = None


class SMTPEmailProvider:
    """Sends plain-text customer messages over SMTP."""

    def __init__(self):
        self.host = os.getenv("SMTP_HOST")
        self.port = int(os.getenv("SMTP_PORT", "587"))
        self.user = os.getenv("SMTP_USER")
        self.password = os.getenv("SMTP_PASSWORD")
        self.from_email = os.getenv("SMTP_FROM_EMAIL")
        self.use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    @property
    def provider_name(self) -> str:
        return "smtp"

    def is_configured(self) -> bool:
        return all([self.host, self.user, self.password, self.from_email])

    def _validate_config(self) -> None:
        if not self.is_configured():
            raise SMTPConfigError(
                "SMTP not configured. Required environment variables: "
                "SMTP_HOST, SMTP_USER, SMTP_PASSWORD, SMTP_FROM_EMAIL"
            )

    def _deliver(self, to_email: str, subject: str, body: str, from_name: str) -> str:
        message = MIMEText(body, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = formataddr((from_name, self.from_email))
        message["To"] = to_email
        message_id = make_msgid()
        message["Message-ID"] = message_id

        with smtplib.SMTP(self.host, self.port) as server:
            if self.use_tls:
                server.ehlo()
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            server.login(self.user, self.password)
            server.sendmail(self.from_email, [to_email], message.as_string())

        return message_id

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        from_name: str = "Handymate",
    ) -> EmailResult:
        """
        Send a plain-text email.

        Errors are returned in the result, not raised.
        """
        try:
            self._validate_config()
            message_id = await asyncio.to_thread(self._deliver, to_email, subject, body, from_name)
        except SMTPConfigError as e:
            return EmailResult(success=False, to_email=to_email, error=str(e))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send to {to_email} failed: {e}")
            return EmailResult(success=False, to_email=to_email, error=str(e))

        logger.info(f"Email sent via SMTP: {message_id}")
        return EmailResult(
            success=True,
            message_id=message_id,
            to_email=to_email,
            sent_at=datetime.now(timezone.utc),
        )
