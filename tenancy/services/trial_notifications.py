"""
Trial notifications emitted by the trial expiration monitor.

The monitor only builds TrialNotification events; delivery belongs to a
TrialNotifier. EmailTrialNotifier renders them as emails.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tenancy.services.email_sender import EmailMessage, EmailSender, get_email_sender

logger = logging.getLogger(__name__)


class TrialNotificationKind(str, Enum):
    TRIAL_ENDING_SOON = "trial_ending_soon"
    TRIAL_EXPIRED = "trial_expired"


@dataclass(frozen=True)
class TrialNotification:
    kind: TrialNotificationKind
    tenant_id: str
    tenant_name: str
    recipient_email: str
    days_remaining: int = 0


class TrialNotifier(ABC):
    """Receives trial notifications from the monitor."""

    @abstractmethod
    async def notify(self, notification: TrialNotification) -> bool:
        """Deliver a notification. Returns True if it was handed off."""


class EmailTrialNotifier(TrialNotifier):
    """Delivers trial notifications by email."""

    def __init__(self, sender: Optional[EmailSender] = None, app_url: str = ""):
        self.sender = sender or get_email_sender()
        self.app_url = app_url.rstrip("/")

    def render(self, notification: TrialNotification) -> EmailMessage:
        upgrade_url = f"{self.app_url}/pricing"
        if notification.kind == TrialNotificationKind.TRIAL_ENDING_SOON:
            days = notification.days_remaining
            unit = "day" if days == 1 else "days"
            subject = f"Your trial ends in {days} {unit}"
            text = (
                f"Hello {notification.tenant_name},\n\n"
                f"Your free trial ends in {days} {unit}. "
                f"Choose a plan to keep access to your modules: {upgrade_url}\n"
            )
        else:
            subject = "Your trial has ended"
            text = (
                f"Hello {notification.tenant_name},\n\n"
                f"Your free trial has ended and access has been paused. "
                f"Subscribe to continue where you left off: {upgrade_url}\n"
            )

        html = "".join(f"<p>{line}</p>" for line in text.strip().split("\n\n"))
        return EmailMessage(
            to_email=notification.recipient_email,
            to_name=notification.tenant_name,
            subject=subject,
            html_body=html,
            text_body=text,
            tags=[notification.kind.value],
        )

    async def notify(self, notification: TrialNotification) -> bool:
        if not notification.recipient_email:
            logger.warning(
                "Trial notification skipped: tenant has no email",
                extra={"tenant_id": notification.tenant_id, "kind": notification.kind.value}
            )
            return False
        return await self.sender.send(self.render(notification))
