"""
Notification Gateway

Interface to the email/SMS transport. The lifecycle engine only ever talks to a
NotificationGateway; the transport behind it is external.

A gateway may return an unsuccessful DeliveryResult or raise. Callers treat both
as a failed delivery.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Result of one delivery attempt."""
    success: bool
    channel: str = "email"
    message_id: Optional[str] = None
    provider: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "channel": self.channel,
            "message_id": self.message_id,
            "provider": self.provider,
            "error_message": self.error_message,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationGateway(ABC):
    """Abstract email/SMS transport."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name for logging."""

    @abstractmethod
    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        """Send one email."""

    @abstractmethod
    def send_sms(self, to: str, body: str) -> DeliveryResult:
        """Send one SMS."""


class LoggingNotificationGateway(NotificationGateway):
    """
    Development gateway.

    Logs messages but doesn't send them.
    """

    @property
    def provider_name(self) -> str:
        return "logging"

    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> DeliveryResult:
        if not to:
            return DeliveryResult(
                success=False, channel="email", provider=self.provider_name,
                error_message="Recipient email is required",
            )
        logger.info(f"[LOGGING GATEWAY] Would send email to {to}: {subject}")
        return DeliveryResult(
            success=True,
            channel="email",
            message_id=f"log-{uuid4()}",
            provider=self.provider_name,
        )

    def send_sms(self, to: str, body: str) -> DeliveryResult:
        if not to:
            return DeliveryResult(
                success=False, channel="sms", provider=self.provider_name,
                error_message="Recipient phone number is required",
            )
        logger.info(f"[LOGGING GATEWAY] Would send SMS to {to}: {body[:60]}")
        return DeliveryResult(
            success=True,
            channel="sms",
            message_id=f"log-{uuid4()}",
            provider=self.provider_name,
        )


# Global gateway instance
_gateway: Optional[NotificationGateway] = None


def get_notification_gateway() -> NotificationGateway:
    """Get the configured gateway, defaulting to the logging gateway."""
    global _gateway

    if _gateway is None:
        logger.warning("No notification transport configured. Messages will be logged but not sent.")
        _gateway = LoggingNotificationGateway()
    return _gateway


def set_notification_gateway(gateway: Optional[NotificationGateway]):
    """Set a custom gateway (transport integration or tests). None restores the default."""
    global _gateway
    _gateway = gateway
    if gateway is not None:
        logger.info(f"Notification gateway set to: {gateway.provider_name}")
