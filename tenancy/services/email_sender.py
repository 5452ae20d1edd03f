"""
Email sender abstraction for tenant notifications.

Providers:
- SendGrid (production, via the v3 mail/send HTTP API)
- Mock (tests and local development)

Selected by NOTIFICATION_EMAIL_PROVIDER.
"""

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List

import httpx

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass
class EmailMessage:
    """Email message data."""
    to_email: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    to_name: Optional[str] = None
    tags: Optional[List[str]] = None


class EmailSender(ABC):
    """Delivers one EmailMessage."""

    @abstractmethod
    async def send(self, message: EmailMessage) -> bool:
        """Return True when the provider accepted the message."""


class SendGridEmailSender(EmailSender):
    """Sends through the SendGrid v3 HTTP API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
    ):
        self.api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.from_email = from_email or os.getenv("NOTIFICATION_FROM_EMAIL", "no-reply@example.com")
        self.from_name = from_name or os.getenv("NOTIFICATION_FROM_NAME", "Workforce Platform")

        if not self.api_key:
            logger.warning("SendGrid API key not configured")

    def _build_payload(self, message: EmailMessage) -> dict:
        content = [{"type": "text/html", "value": message.html_body}]
        if message.text_body:
            content.insert(0, {"type": "text/plain", "value": message.text_body})

        payload = {
            "personalizations": [
                {"to": [{"email": message.to_email, "name": message.to_name or ""}]}
            ],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": message.subject,
            "content": content,
        }
        if message.tags:
            payload["categories"] = message.tags
        return payload

    async def send(self, message: EmailMessage) -> bool:
        if not self.api_key:
            logger.error("Cannot send email: SendGrid API key not configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0)) as client:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=self._build_payload(message),
                )
        except httpx.HTTPError as e:
            logger.error(
                "SendGrid request failed",
                extra={"subject": message.subject, "error": str(e)},
            )
            return False

        if response.status_code in (200, 202):
            logger.info("Email sent", extra={"subject": message.subject})
            return True

        logger.error(
            "SendGrid API error",
            extra={"status_code": response.status_code, "subject": message.subject},
        )
        return False


class MockEmailSender(EmailSender):
    """Keeps messages in memory."""

    def __init__(self):
        self.sent_messages: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> bool:
        self.sent_messages.append(message)
        logger.info("Mock email sent", extra={"subject": message.subject})
        return True

    def clear(self) -> None:
        self.sent_messages.clear()


def get_email_sender() -> EmailSender:
    """Get configured email sender based on environment."""
    provider = os.getenv("NOTIFICATION_EMAIL_PROVIDER", "sendgrid").lower()
    if provider == "mock":
        return MockEmailSender()
    return SendGridEmailSender()
