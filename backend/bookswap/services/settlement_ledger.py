"""
Settlement ledger.

WHAT: Irreversible commit of a completed negotiation
WHY: A listing must never be archived without its counters moving, and vice versa
HOW: One unit of work: archive reserved listings with disposition, bump counters,
     append a system message, mark the conversation settled. Idempotent per conversation.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.database import session_scope
from ..core.models import (
    Conversation, ListingKind, ListingLifecycle, MessageKind,
    NegotiationState, SystemMessageKind, UserStats,
)
from ..stores.conversation_store import ConversationStore
from ..stores.listing_store import ListingStore
from ..utils.exceptions import InvalidStateError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SettlementLedger:
    """Applies the permanent side effects of an accepted negotiation."""

    def __init__(
        self,
        session_factory: sessionmaker,
        listings: ListingStore,
        conversations: ConversationStore,
    ):
        self._session_factory = session_factory
        self._listings = listings
        self._conversations = conversations

    def settle(
        self,
        conversation_id: str,
        actor_id: Optional[str] = None,
        db: Optional[DBSession] = None,
    ) -> Conversation:
        """
        Settle an accepted conversation.

        Calling it again on a settled conversation is a no-op.

        Raises:
            NotFoundError: Conversation absent
            InvalidStateError: Conversation is not accepted (or its reservation is gone)
        """
        with session_scope(self._session_factory, db, write=True) as session:
            conversation = self._conversations.get_for_update(conversation_id, session)

            if conversation.state == NegotiationState.SETTLED:
                logger.info(f"Conversation {conversation_id} already settled, nothing to do")
                return conversation
            if conversation.state != NegotiationState.ACCEPTED:
                raise InvalidStateError(
                    "Only an accepted negotiation can be completed",
                    current_state=conversation.state.value,
                )

            reserved = self._listings.list_reserved_by(conversation.id, session)
            primary = next((l for l in reserved if l.id == conversation.listing_id), None)
            if primary is None:
                raise InvalidStateError(
                    f"Listing {conversation.listing_id} is not reserved by this conversation",
                    current_state=conversation.state.value,
                )
            counter = next((l for l in reserved if l.id != conversation.listing_id), None)

            now = datetime.utcnow()
            for listing in reserved:
                if listing.id == primary.id:
                    recipient_id = conversation.counterpart_id
                    received_id = counter.id if counter else None
                else:
                    recipient_id = conversation.owner_id
                    received_id = primary.id
                self._listings.transition(
                    listing.id,
                    ListingLifecycle.RESERVED,
                    ListingLifecycle.ARCHIVED,
                    payload={
                        "reserved_conversation_id": None,
                        "reserved_counter_listing_id": None,
                        "reserved_at": None,
                        "recipient_id": recipient_id,
                        "received_listing_id": received_id,
                        "archived_at": now,
                    },
                    reserved_by=conversation.id,
                    db=session,
                )

            if counter is not None:
                self._increment(session, conversation.owner_id, "books_traded")
                self._increment(session, conversation.counterpart_id, "books_traded")
                system_kind = SystemMessageKind.EXCHANGE_COMPLETED
                body = "Trade completed!"
            elif primary.kind == ListingKind.GIFT:
                self._increment(session, conversation.owner_id, "books_given")
                self._increment(session, conversation.counterpart_id, "books_received")
                system_kind = SystemMessageKind.GIFT_COMPLETED
                body = "Gift completed!"
            else:
                # Exchange listing handed over as a gift
                self._increment(session, conversation.owner_id, "books_given")
                system_kind = SystemMessageKind.GIFT_COMPLETED
                body = "Gift completed! (exchange listing given as a gift)"

            self._conversations.append_message(
                session, conversation,
                sender_id=actor_id or conversation.owner_id,
                body=body,
                kind=MessageKind.SYSTEM,
                system_kind=system_kind,
            )
            conversation.state = NegotiationState.SETTLED
            conversation.settled_at = now
            session.flush()

            logger.info(
                f"Settled conversation {conversation.id}: {system_kind.value} "
                f"({', '.join(l.id for l in reserved)})"
            )
            return conversation

    def _increment(self, db: DBSession, user_id: str, column: str) -> None:
        """Atomically add one to a user's counter, creating the row on first use."""
        if db.get(UserStats, user_id) is None:
            try:
                with db.begin_nested():
                    db.add(UserStats(user_id=user_id, books_given=0, books_received=0, books_traded=0))
                    db.flush()
            except IntegrityError:
                logger.debug(f"UserStats row for {user_id} created concurrently")

        db.execute(
            update(UserStats)
            .where(UserStats.user_id == user_id)
            .values(**{column: getattr(UserStats, column) + 1, "updated_at": datetime.utcnow()})
            .execution_options(synchronize_session=False)
        )

    def get_stats(self, user_id: str, db: Optional[DBSession] = None) -> UserStats:
        """A user's counters; zeroes (unsaved) when nothing was ever settled."""
        with session_scope(self._session_factory, db) as session:
            stats = session.get(UserStats, user_id)
            if stats is None:
                return UserStats(user_id=user_id, books_given=0, books_received=0, books_traded=0)
            return stats
