from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

DeliveryStatus = Literal["delivered", "failed"]

logger = logging.getLogger("app.automation.notifications")


class NotificationSender(Protocol):
    def send_templated_email(self, recipient: str, subject: str, body: str) -> DeliveryStatus: ...


@dataclass
class OutboxNotificationSender:
    """Collects rendered emails in memory for the transactional email service to drain."""

    sent: list[dict[str, str]] = field(default_factory=list)

    def send_templated_email(self, recipient: str, subject: str, body: str) -> DeliveryStatus:
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})
        logger.info("automation.email.queued", extra={"status": "delivered"})
        return "delivered"
