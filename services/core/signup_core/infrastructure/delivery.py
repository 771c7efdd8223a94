"""Notification delivery backend.

The core does not implement SMS/email/push transport. Every channel goes
through one ``NotificationDelivery`` interface; production uses a gateway
service reached over HTTP.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from signup_core.observability.logging import get_logger

logger = get_logger(__name__)


class DeliveryError(Exception):
    """Raised when a channel could not accept a notification."""

    def __init__(self, message: str, method: str, status_code: int = 0):
        super().__init__(message)
        self.method = method
        self.status_code = status_code


@dataclass
class OutboundNotification:
    """What a channel needs to reach the parent."""

    notification_id: int
    user_id: str
    method: str
    title: str
    message: str
    priority: str
    action_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryReceipt:
    method: str
    external_id: Optional[str] = None


class NotificationDelivery(ABC):
    """One call per channel delivery attempt."""

    @abstractmethod
    async def deliver(self, notification: OutboundNotification) -> DeliveryReceipt:
        """Hand the notification to its channel.

        Raises:
            DeliveryError: If the channel rejected or could not be reached.
        """
        ...


class HttpDeliveryGateway(NotificationDelivery):
    """Posts notifications to the delivery gateway's ``/deliveries`` endpoint."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def deliver(self, notification: OutboundNotification) -> DeliveryReceipt:
        body = {
            "notification_id": notification.notification_id,
            "user_id": notification.user_id,
            "channel": notification.method,
            "title": notification.title,
            "message": notification.message,
            "priority": notification.priority,
            "action_url": notification.action_url,
            "metadata": notification.metadata,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/deliveries",
                    json=body,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise DeliveryError(
                f"Delivery gateway unreachable: {e}", method=notification.method
            ) from e

        if response.status_code >= 300:
            raise DeliveryError(
                f"Delivery gateway rejected {notification.method} with HTTP {response.status_code}",
                method=notification.method,
                status_code=response.status_code,
            )

        data = response.json() if response.content else {}
        return DeliveryReceipt(method=notification.method, external_id=data.get("id"))


class LoggingDelivery(NotificationDelivery):
    """Delivery used when no gateway is configured: records and logs only."""

    def __init__(self):
        self.sent: list[OutboundNotification] = []

    async def deliver(self, notification: OutboundNotification) -> DeliveryReceipt:
        logger.info(
            "Notification delivery (no gateway configured)",
            notification_id=notification.notification_id,
            method=notification.method,
            user_id=notification.user_id,
        )
        self.sent.append(notification)
        return DeliveryReceipt(method=notification.method)
