"""Infrastructure components for the camp signup core.

- Fernet encryption for the secret vault
- Redis-backed per-hostname throttle and retry backoff
- Notification delivery gateway client
"""

from signup_core.infrastructure.crypto import (
    CryptoService,
    DecryptionError,
    InvalidKeyError,
)
from signup_core.infrastructure.delivery import (
    DeliveryError,
    DeliveryReceipt,
    HttpDeliveryGateway,
    NotificationDelivery,
    OutboundNotification,
)
from signup_core.infrastructure.host_throttle import (
    BackoffStrategy,
    HostThrottle,
    HostThrottleExceeded,
)

__all__ = [
    "BackoffStrategy",
    "CryptoService",
    "DecryptionError",
    "DeliveryError",
    "DeliveryReceipt",
    "HostThrottle",
    "HostThrottleExceeded",
    "HttpDeliveryGateway",
    "InvalidKeyError",
    "NotificationDelivery",
    "OutboundNotification",
]
