"""
Notification dispatcher.

WHAT: Best-effort notice to the non-acting participant after a committed transition
WHY: Delivery problems must never block or undo negotiation state
HOW: Recipient opt-outs are checked first; plain-message notices then pass a stored-watermark
     debounce (conditional UPDATE on last_notified_at). All failures are logged.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..core.database import get_db
from ..models.negotiation import DEBOUNCED_KINDS, EventKind, NegotiationEvent
from ..notifications.transport import NotificationTransport
from ..stores.conversation_store import ConversationStore
from ..stores.preference_store import PreferenceStore
from ..utils.logger import get_logger

logger = get_logger(__name__)


def truncate_preview(text: str, limit: int) -> str:
    """Cut a message body down to a preview."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class NotificationDispatcher:
    """Turns state-machine events into transport calls."""

    def __init__(
        self,
        session_factory: sessionmaker,
        conversations: ConversationStore,
        transport: NotificationTransport,
        debounce_seconds: Optional[int] = None,
        frontend_url: Optional[str] = None,
        preview_chars: Optional[int] = None,
        preferences: Optional[PreferenceStore] = None,
        clock=datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._conversations = conversations
        self._transport = transport
        self._preferences = preferences
        self.debounce = timedelta(seconds=(
            settings.MESSAGE_NOTIFY_DEBOUNCE_SECONDS if debounce_seconds is None else debounce_seconds
        ))
        self.frontend_url = (frontend_url if frontend_url is not None else settings.FRONTEND_URL).rstrip("/")
        self.preview_chars = preview_chars if preview_chars is not None else settings.MESSAGE_PREVIEW_CHARS
        self._clock = clock

    def publish(self, events: Iterable[NegotiationEvent]) -> int:
        """
        Deliver events; returns how many notices went out.

        Never raises.
        """
        sent = 0
        for event in events:
            try:
                if self._deliver(event):
                    sent += 1
            except Exception as e:
                logger.error(
                    f"Failed to notify {event.recipient_id} of {event.kind} "
                    f"(conversation {event.conversation_id}): {e}",
                    exc_info=True,
                )
        return sent

    def _deliver(self, event: NegotiationEvent) -> bool:
        kind = EventKind(event.kind)
        if self._preferences is not None and not self._preferences.is_enabled(event.recipient_id, kind):
            logger.debug(f"{event.recipient_id} opted out of {kind.value}")
            return False

        now = self._clock()
        if kind in DEBOUNCED_KINDS:
            if not self._claim_watermark(event.conversation_id, now, debounced=True):
                logger.debug(
                    f"Debounced {kind.value} for conversation {event.conversation_id}"
                )
                return False
        elif kind == EventKind.NEW_INTEREST:
            # Start the debounce window so the follow-up chatter is throttled
            self._claim_watermark(event.conversation_id, now, debounced=False)

        self._transport.send(event.recipient_id, kind.value, self.build_payload(event))
        logger.info(f"Notified {event.recipient_id} of {kind.value} (conversation {event.conversation_id})")
        return True

    def _claim_watermark(self, conversation_id: str, now: datetime, debounced: bool) -> bool:
        not_after = now - self.debounce if debounced else None
        with get_db(self._session_factory, write=True) as db:
            return self._conversations.advance_notified_watermark(conversation_id, now, not_after, db)

    def build_payload(self, event: NegotiationEvent) -> dict:
        """Template payload for a notice."""
        payload = {
            "conversation_id": event.conversation_id,
            "listing_id": event.listing_id,
            "book_title": event.book_title,
            "actor_id": event.actor_id,
            "thread_url": f"{self.frontend_url}/messages/{event.conversation_id}",
        }
        if event.body:
            payload["message_preview"] = truncate_preview(event.body, self.preview_chars)
        payload.update(event.extra)
        return payload
