"""
Notification transport factory with singleton pattern.

WHAT: Factory to get the configured notification transport
WHY: Centralize transport selection and avoid multiple HTTP clients
HOW: Read NOTIFICATION_TRANSPORT from config, cache singleton, log selection
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .transport import NotificationTransport

# Singleton instance
_transport_instance: "NotificationTransport | None" = None


def get_transport() -> "NotificationTransport":
    """
    Get the configured notification transport singleton.

    Raises:
        ValueError: If the transport name is unknown
    """
    global _transport_instance

    if _transport_instance is None:
        # Import here to avoid circular dependencies
        from ..core.config import settings
        from ..utils.logger import get_logger

        logger = get_logger(__name__)
        transport_name = settings.NOTIFICATION_TRANSPORT

        if transport_name == "log":
            from .transport import LoggingTransport
            _transport_instance = LoggingTransport()
        elif transport_name == "webhook":
            from .transport import WebhookTransport
            _transport_instance = WebhookTransport()
        else:
            raise ValueError(f"Unknown notification transport: {transport_name}")

        logger.info(f"Notification transport initialized: {transport_name}")

    return _transport_instance


def reset_transport() -> None:
    """Reset the transport singleton (useful for testing)."""
    global _transport_instance
    if _transport_instance is not None and hasattr(_transport_instance, "close"):
        _transport_instance.close()
    _transport_instance = None
