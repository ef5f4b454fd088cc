"""
ORM models for the negotiation engine.

WHAT: SQLAlchemy models for listings, conversations, messages and user counters
WHY: Lifecycle/reservation fields must be strictly consistent across concurrent requests
HOW: Declarative models with constraints and indexes; the listing row carries
     lifecycle + reservation + disposition as one record
"""

from datetime import datetime
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from .database import Base


def _uuid() -> str:
    return str(uuid4())


class ListingKind(str, enum.Enum):
    """What the owner is offering."""
    GIFT = "gift"
    EXCHANGE = "exchange"


class ListingLifecycle(str, enum.Enum):
    """Listing lifecycle values."""
    AVAILABLE = "available"
    RESERVED = "reserved"
    ARCHIVED = "archived"


class NegotiationState(str, enum.Enum):
    """
    Conversation negotiation states.

    DECLINED and CANCELLED are never stored: the conversation goes back to IDLE
    and the outcome is kept in last_resolution.
    """
    IDLE = "idle"
    PROPOSAL_PENDING = "proposal_pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    SETTLED = "settled"
    VOIDED = "voided"


class ProposalResolution(str, enum.Enum):
    """How the most recent proposal in a conversation ended without a deal."""
    DECLINED = "declined"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"


class MessageKind(str, enum.Enum):
    """Message kinds in a conversation log."""
    TEXT = "text"
    SYSTEM = "system"
    PROPOSAL = "proposal"


class ProposalOutcome(str, enum.Enum):
    """Proposal outcome values."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class SystemMessageKind(str, enum.Enum):
    """Tags for system notes appended by the engine."""
    GIFT_COMPLETED = "gift_completed"
    EXCHANGE_COMPLETED = "exchange_completed"
    PROPOSAL_DECLINED = "proposal_declined"
    PROPOSAL_CANCELLED = "proposal_cancelled"
    LISTING_UNAVAILABLE = "listing_unavailable"
    LISTING_REMOVED = "listing_removed"
    RESERVATION_RELEASED = "reservation_released"


class Listing(Base):
    """
    Listing table - a single book offered by one user.

    WHAT: Book reference, kind, lifecycle plus reservation/disposition fields
    WHY: The lifecycle column is the compare-and-swap target of the claim arbiter
    HOW: Reservation columns are set only while reserved, disposition columns only once archived
    """
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(100), nullable=False)
    book = Column(JSON, nullable=False)  # opaque catalog value object
    kind = Column(SQLEnum(ListingKind), nullable=False)
    lifecycle = Column(SQLEnum(ListingLifecycle), nullable=False, default=ListingLifecycle.AVAILABLE)

    # Reservation (lifecycle == reserved)
    reserved_conversation_id = Column(String(36), nullable=True)
    reserved_counter_listing_id = Column(String(36), nullable=True)
    reserved_at = Column(DateTime, nullable=True)

    # Disposition (lifecycle == archived)
    recipient_id = Column(String(100), nullable=True)
    received_listing_id = Column(String(36), nullable=True)
    archived_at = Column(DateTime, nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    conversations = relationship("Conversation", back_populates="listing")

    __table_args__ = (
        Index("idx_listing_lifecycle", "lifecycle"),
        Index("idx_listing_owner", "owner_id"),
        Index("idx_listing_reserved_conversation", "reserved_conversation_id"),
    )

    @property
    def title(self) -> str:
        return (self.book or {}).get("title", "")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self):
        return f"<Listing(id={self.id}, owner={self.owner_id}, kind={self.kind}, lifecycle={self.lifecycle})>"


class Conversation(Base):
    """
    Conversation table - negotiation thread between a listing owner and one counterpart.

    WHAT: Participants, negotiation state, unread counters and debounce watermark
    WHY: Reopening a conversation must reuse the same record
    HOW: UNIQUE(listing_id, owner_id, counterpart_id); messages cascade from here
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False)
    owner_id = Column(String(100), nullable=False)
    counterpart_id = Column(String(100), nullable=False)
    state = Column(SQLEnum(NegotiationState), nullable=False, default=NegotiationState.IDLE)
    last_resolution = Column(SQLEnum(ProposalResolution), nullable=True)
    dismissed = Column(Boolean, nullable=False, default=False)
    unread_counts = Column(JSON, nullable=False, default=dict)
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime, nullable=True)
    last_notified_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    listing = relationship("Listing", back_populates="conversations")
    messages = relationship(
        "Message", back_populates="conversation",
        cascade="all, delete-orphan", order_by="Message.sequence"
    )

    __table_args__ = (
        UniqueConstraint("listing_id", "owner_id", "counterpart_id", name="unique_listing_participants"),
        Index("idx_conversation_owner", "owner_id"),
        Index("idx_conversation_counterpart", "counterpart_id"),
    )

    @property
    def participants(self) -> tuple:
        return (self.owner_id, self.counterpart_id)

    def other_participant(self, user_id: str) -> str:
        return self.counterpart_id if user_id == self.owner_id else self.owner_id

    def __repr__(self):
        return f"<Conversation(id={self.id}, listing={self.listing_id}, state={self.state})>"


class Message(Base):
    """
    Message table - append-only conversation log.

    WHAT: Text, system and proposal messages
    WHY: Proposal history is retained unmodified across re-proposals
    HOW: Per-conversation sequence number; proposal columns are null for other kinds
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(36), unique=True, nullable=False, default=_uuid)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    sender_id = Column(String(100), nullable=False)
    body = Column(Text, nullable=False)
    kind = Column(SQLEnum(MessageKind), nullable=False, default=MessageKind.TEXT)
    system_kind = Column(SQLEnum(SystemMessageKind), nullable=True)

    # Proposal fields (kind == proposal)
    offered_listing_id = Column(String(36), nullable=True)
    requested_listing_id = Column(String(36), nullable=True)
    proposal_outcome = Column(SQLEnum(ProposalOutcome), nullable=True)
    accepted_as_gift = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    conversation = relationship("Conversation", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="unique_conversation_sequence"),
        Index("idx_message_proposal", "conversation_id", "proposal_outcome"),
    )

    def __repr__(self):
        return f"<Message(id={self.message_id}, kind={self.kind}, seq={self.sequence})>"


class UserStats(Base):
    """
    UserStats table - denormalized per-user settlement counters.

    WHAT: Given/received/traded counts
    WHY: Profile counters without scanning archived listings
    HOW: Row created lazily on first settlement; incremented with UPDATE col = col + 1
    """
    __tablename__ = "user_stats"

    user_id = Column(String(100), primary_key=True)
    books_given = Column(Integer, nullable=False, default=0)
    books_received = Column(Integer, nullable=False, default=0)
    books_traded = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<UserStats(user={self.user_id}, given={self.books_given}, traded={self.books_traded})>"


class NotificationPreference(Base):
    """
    NotificationPreference table - per-user opt-outs by notice kind.

    WHAT: One row per (user, kind) the user has explicitly toggled
    WHY: People can silence chatter (e.g. new messages) but keep deal notices
    HOW: Missing row means enabled; the dispatcher checks before sending
    """
    __tablename__ = "notification_preferences"

    user_id = Column(String(100), primary_key=True)
    kind = Column(String(50), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<NotificationPreference(user={self.user_id}, kind={self.kind}, enabled={self.enabled})>"
