"""
Notification transport protocol and implementations.

WHAT: Out-of-band delivery of (recipient_id, template_kind, payload)
WHY: Decouple the dispatcher from how notices actually reach people
HOW: Protocol with a log-only transport and an httpx webhook transport
"""

from typing import Any, Protocol

import httpx

from ..core.config import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationDeliveryError(Exception):
    """Transport could not hand the notice over."""
    pass


class NotificationTransport(Protocol):
    """Protocol every notification transport implements."""

    def send(self, recipient_id: str, template_kind: str, payload: dict[str, Any]) -> None:
        """Deliver one notice; raise NotificationDeliveryError on failure."""
        ...


class LoggingTransport:
    """Writes notices to the application log (default for development)."""

    def send(self, recipient_id: str, template_kind: str, payload: dict[str, Any]) -> None:
        logger.info(
            f"[NOTIFY] {template_kind} -> {recipient_id} "
            f"(conversation {payload.get('conversation_id')})"
        )


class WebhookTransport:
    """
    POSTs notices as JSON to an external mailer/webhook.

    WHAT: One HTTP request per notice
    WHY: Email delivery lives outside this service
    HOW: httpx.Client with a short timeout; HTTP/transport errors become NotificationDeliveryError
    """

    def __init__(self, url: str | None = None, timeout: float | None = None, client: httpx.Client | None = None):
        self.url = url if url is not None else settings.NOTIFY_WEBHOOK_URL
        if not self.url:
            raise ValueError("NOTIFY_WEBHOOK_URL must be set for the webhook transport")
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(timeout if timeout is not None else settings.NOTIFY_TIMEOUT),
            headers={"User-Agent": f"{settings.APP_NAME}/{settings.APP_VERSION}"},
        )
        logger.info(f"Webhook notification transport initialized ({self.url})")

    def send(self, recipient_id: str, template_kind: str, payload: dict[str, Any]) -> None:
        body = {
            "recipient_id": recipient_id,
            "template": template_kind,
            "payload": payload,
        }
        try:
            response = self.client.post(self.url, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise NotificationDeliveryError(f"Webhook timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise NotificationDeliveryError(
                f"Webhook returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Webhook request failed: {e}") from e

    def close(self) -> None:
        self.client.close()
