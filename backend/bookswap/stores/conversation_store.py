"""
Conversation store.

WHAT: Persistence for negotiation threads and their append-only message log
WHY: One record per (listing, owner, counterpart); proposals live inside the log
HOW: SQLAlchemy queries; writers lock the conversation row before mutating it
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.database import session_scope
from ..core.models import (
    Conversation, Listing, Message, MessageKind, NegotiationState,
    ProposalOutcome, SystemMessageKind,
)
from ..utils.exceptions import NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ConversationStore:
    """Conversation and message persistence."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def open_or_get(self, listing: Listing, counterpart_id: str, db: DBSession) -> tuple[Conversation, bool]:
        """
        Reuse the conversation for (listing, owner, counterpart) or create it.

        Returns:
            (conversation, created)
        """
        existing = self.find(db, listing.id, listing.owner_id, counterpart_id)
        if existing is not None:
            return existing, False

        conversation = Conversation(
            listing_id=listing.id,
            owner_id=listing.owner_id,
            counterpart_id=counterpart_id,
            state=NegotiationState.IDLE,
            unread_counts={},
            message_count=0,
            last_message_at=datetime.utcnow(),
        )
        try:
            with db.begin_nested():
                db.add(conversation)
                db.flush()
        except IntegrityError:
            # Another request created it between our read and insert
            logger.info(f"Conversation for listing {listing.id}/{counterpart_id} created concurrently, reusing")
            existing = self.find(db, listing.id, listing.owner_id, counterpart_id)
            if existing is None:
                raise
            return existing, False

        logger.info(f"Opened conversation {conversation.id} on listing {listing.id} for {counterpart_id}")
        return conversation, True

    def find(self, db: DBSession, listing_id: str, owner_id: str, counterpart_id: str) -> Optional[Conversation]:
        """The conversation for (listing, owner, counterpart), if it exists."""
        return db.scalars(
            select(Conversation).where(
                Conversation.listing_id == listing_id,
                Conversation.owner_id == owner_id,
                Conversation.counterpart_id == counterpart_id,
            )
        ).first()

    def get(self, conversation_id: str, db: Optional[DBSession] = None) -> Conversation:
        """Fetch a conversation or raise NotFoundError."""
        with session_scope(self._session_factory, db) as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFoundError("conversation", conversation_id)
            return conversation

    def get_for_update(self, conversation_id: str, db: DBSession) -> Conversation:
        """Fetch and row-lock a conversation for the rest of the unit of work."""
        conversation = db.scalars(
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        return conversation

    def list_for_user(self, user_id: str, db: Optional[DBSession] = None) -> list[Conversation]:
        """Conversations the user participates in, most recent activity first."""
        with session_scope(self._session_factory, db) as session:
            return list(session.scalars(
                select(Conversation)
                .where(or_(Conversation.owner_id == user_id, Conversation.counterpart_id == user_id))
                .order_by(Conversation.last_message_at.desc(), Conversation.id)
            ).all())

    def list_for_listing(self, listing_id: str, db: DBSession, for_update: bool = False) -> list[Conversation]:
        """All conversations on a listing."""
        query = select(Conversation).where(Conversation.listing_id == listing_id).order_by(Conversation.created_at)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        return list(db.scalars(query).all())

    def list_for_listings(self, listing_ids: list[str], db: Optional[DBSession] = None) -> list[Conversation]:
        """Conversations on any of the given listings, most recent activity first."""
        if not listing_ids:
            return []
        with session_scope(self._session_factory, db) as session:
            return list(session.scalars(
                select(Conversation)
                .where(Conversation.listing_id.in_(listing_ids))
                .order_by(Conversation.last_message_at.desc(), Conversation.id)
            ).all())

    def get_messages(self, conversation_id: str, db: Optional[DBSession] = None) -> list[Message]:
        """Message log in order."""
        with session_scope(self._session_factory, db) as session:
            if session.get(Conversation, conversation_id) is None:
                raise NotFoundError("conversation", conversation_id)
            return list(session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.sequence)
            ).all())

    def append_message(
        self,
        db: DBSession,
        conversation: Conversation,
        sender_id: str,
        body: str,
        kind: MessageKind = MessageKind.TEXT,
        system_kind: Optional[SystemMessageKind] = None,
        offered_listing_id: Optional[str] = None,
        requested_listing_id: Optional[str] = None,
    ) -> Message:
        """
        Append to the log and bump the unread counter of the other participant.

        The caller must hold the conversation row lock.
        """
        now = datetime.utcnow()
        conversation.message_count = (conversation.message_count or 0) + 1
        message = Message(
            conversation_id=conversation.id,
            sequence=conversation.message_count,
            sender_id=sender_id,
            body=body,
            kind=kind,
            system_kind=system_kind,
            offered_listing_id=offered_listing_id,
            requested_listing_id=requested_listing_id,
            proposal_outcome=ProposalOutcome.PENDING if kind == MessageKind.PROPOSAL else None,
            accepted_as_gift=False,
            created_at=now,
        )
        db.add(message)

        counts = dict(conversation.unread_counts or {})
        for participant in conversation.participants:
            if participant != sender_id:
                counts[participant] = counts.get(participant, 0) + 1
        conversation.unread_counts = counts
        conversation.last_message_at = now
        db.flush()
        return message

    def find_pending_proposal(self, conversation_id: str, db: DBSession) -> Optional[Message]:
        """The single pending proposal of a conversation, if any."""
        return db.scalars(
            select(Message).where(
                Message.conversation_id == conversation_id,
                Message.kind == MessageKind.PROPOSAL,
                Message.proposal_outcome == ProposalOutcome.PENDING,
            )
        ).first()

    def find_accepted_proposal(self, conversation_id: str, db: DBSession) -> Optional[Message]:
        """The most recent accepted proposal of a conversation."""
        return db.scalars(
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.kind == MessageKind.PROPOSAL,
                Message.proposal_outcome == ProposalOutcome.ACCEPTED,
            )
            .order_by(Message.sequence.desc())
        ).first()

    def conversations_with_pending_proposal(self, conversation_ids: list[str], db: DBSession) -> set[str]:
        """Subset of the given conversations that have a pending proposal."""
        if not conversation_ids:
            return set()
        rows = db.scalars(
            select(Message.conversation_id).where(
                Message.conversation_id.in_(conversation_ids),
                Message.kind == MessageKind.PROPOSAL,
                Message.proposal_outcome == ProposalOutcome.PENDING,
            )
        ).all()
        return set(rows)

    def mark_read(self, db: DBSession, conversation: Conversation, user_id: str) -> Conversation:
        """Reset a participant's unread counter."""
        counts = dict(conversation.unread_counts or {})
        counts[user_id] = 0
        conversation.unread_counts = counts
        db.flush()
        return conversation

    def count_text_messages(self, conversation_id: str, db: DBSession) -> int:
        return db.scalar(
            select(func.count(Message.id)).where(
                Message.conversation_id == conversation_id,
                Message.kind == MessageKind.TEXT,
            )
        ) or 0

    def advance_notified_watermark(self, conversation_id: str, now: datetime, not_after: Optional[datetime], db: DBSession) -> bool:
        """
        Move last_notified_at to now.

        With not_after set, only move it when the current watermark is missing
        or older than not_after. Returns whether the watermark moved.
        """
        stmt = (
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_notified_at=now)
            .execution_options(synchronize_session=False)
        )
        if not_after is not None:
            stmt = stmt.where(or_(
                Conversation.last_notified_at.is_(None),
                Conversation.last_notified_at <= not_after,
            ))
        return db.execute(stmt).rowcount == 1
