"""Notification transport layer."""

from .transport import (
    NotificationTransport,
    NotificationDeliveryError,
    LoggingTransport,
    WebhookTransport,
)
from .transport_factory import get_transport, reset_transport

__all__ = [
    "NotificationTransport",
    "NotificationDeliveryError",
    "LoggingTransport",
    "WebhookTransport",
    "get_transport",
    "reset_transport",
]
