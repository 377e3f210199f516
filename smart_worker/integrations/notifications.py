"""Notification manager for repair pipeline outcomes.

Routes success and failure reports to a transport. The default
transport is HTML email over SMTP.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Protocol

from smart_worker.config import SMTPConfig

logger = logging.getLogger(__name__)

SUCCESS_SUBJECT = (
    "[ SUCCESS @ SmartWorker ] - Failed job ran successfully with these changes!"
)
FAILURE_SUBJECT = (
    "[ FAILURE @ SmartWorker ] - Failed job could not run successfully with these changes!"
)


class NotificationTransport(Protocol):
    """Anything that can deliver an HTML message."""

    def send(self, subject: str, html: str) -> None: ...


class EmailTransport:
    """Send HTML email through SMTP (SSL on port 465, STARTTLS otherwise)."""

    def __init__(self, config: SMTPConfig, timeout: int = 10):
        """Initialize the transport.

        Args:
            config: SMTP settings.
            timeout: Socket timeout in seconds.
        """
        self.config = config
        self.timeout = timeout

    def send(self, subject: str, html: str) -> None:
        """Send one HTML email to the configured recipient.

        Raises:
            smtplib.SMTPException: On SMTP protocol errors.
            OSError: On connection errors.
        """
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.config.user
        msg["To"] = self.config.to_user
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")

        context = ssl.create_default_context()
        if self.config.port == 465:
            with smtplib.SMTP_SSL(
                self.config.host, self.config.port, context=context, timeout=self.timeout
            ) as server:
                server.login(self.config.user, self.config.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(
                self.config.host, self.config.port, timeout=self.timeout
            ) as server:
                server.starttls(context=context)
                server.login(self.config.user, self.config.password)
                server.send_message(msg)


class NotificationManager:
    """Routes pipeline outcome notifications to a transport."""

    def __init__(self, transport: Optional[NotificationTransport] = None):
        """Initialize the notification manager.

        Args:
            transport: Delivery transport. None disables sending.
        """
        self.transport = transport

    @classmethod
    def from_config(cls, config: SMTPConfig) -> "NotificationManager":
        """Build a manager with email delivery when SMTP is fully configured."""
        if not config.is_configured:
            logger.warning("SMTP not fully configured - email notifications disabled")
            return cls(transport=None)
        logger.info("Email notifications enabled via %s", config.host)
        return cls(transport=EmailTransport(config))

    @property
    def enabled(self) -> bool:
        return self.transport is not None

    async def send_success(self, html: str) -> bool:
        """Report a verified fix.

        Args:
            html: Rendered per-file diff report.

        Returns:
            True if the message was delivered.
        """
        return await self._send(SUCCESS_SUBJECT, html, "success")

    async def send_failure(self, html: str) -> bool:
        """Report a repair run that produced no verified fix.

        Args:
            html: Rendered failure report.

        Returns:
            True if the message was delivered.
        """
        return await self._send(FAILURE_SUBJECT, html, "failure")

    async def _send(self, subject: str, html: str, kind: str) -> bool:
        if not self.transport:
            logger.warning("No notification transport - skipping %s email", kind)
            return False
        try:
            await asyncio.to_thread(self.transport.send, subject, html)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending %s email: %s", kind, e)
            return False
        except Exception:
            logger.exception("Unexpected error sending %s email", kind)
            return False
        logger.info("%s email sent", kind.capitalize())
        return True
