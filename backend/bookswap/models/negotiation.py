"""
Negotiation domain value objects.

WHAT: Book reference, listing filter, state-machine events and operation results
WHY: Consistent typing between stores, services and the HTTP layer
HOW: Pydantic v2 models for validated inputs, dataclasses for internal results
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..core.models import Conversation, Listing, ListingKind, Message


class BookRef(BaseModel):
    """Catalog metadata attached to a listing at creation time."""

    title: str = Field(..., min_length=1, max_length=300)
    author: str = Field(default="", max_length=200)
    cover_url: Optional[str] = Field(default=None, max_length=1000)
    genre: Optional[str] = Field(default=None, max_length=100)
    catalog_id: Optional[str] = Field(default=None, max_length=100)


class ListingFilter(BaseModel):
    """Filter for available listings."""

    kind: Optional[ListingKind] = None
    genre: Optional[str] = None
    owner_id: Optional[str] = None
    exclude_owner_id: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class EventKind(str, enum.Enum):
    """Notification event kinds emitted by the state machine."""
    NEW_INTEREST = "new_interest"
    NEW_MESSAGE = "new_message"
    PROPOSAL_RECEIVED = "proposal_received"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_DECLINED = "proposal_declined"
    PROPOSAL_CANCELLED = "proposal_cancelled"
    LISTING_UNAVAILABLE = "listing_unavailable"
    COMPLETED = "completed"
    CONVERSATION_VOIDED = "conversation_voided"


# Kinds throttled by the per-conversation notification watermark
DEBOUNCED_KINDS = frozenset({EventKind.NEW_MESSAGE})


@dataclass
class NegotiationEvent:
    """Something the non-acting participant should hear about."""
    kind: EventKind
    recipient_id: str
    actor_id: str
    conversation_id: str
    listing_id: str
    book_title: str = ""
    body: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class NegotiationResult:
    """
    Outcome of a negotiation operation.

    error_code is set when the operation committed a recovery transition
    instead of the requested one (e.g. ALREADY_CLAIMED on accept).
    """
    conversation: Optional[Conversation] = None
    listing: Optional[Listing] = None
    message: Optional[Message] = None
    created: bool = False
    error_code: Optional[str] = None
    notice: Optional[str] = None
    events: list[NegotiationEvent] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error_code is None


@dataclass
class InterestEntry:
    """One interested party on an owner's listing."""
    conversation: Conversation
    has_pending_proposal: bool


@dataclass
class InterestSummary:
    """Interest across an owner's available listings."""
    total_count: int
    unique_people: int
    unique_listings: int
