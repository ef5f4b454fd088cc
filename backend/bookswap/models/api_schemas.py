"""
Pydantic API schemas.

WHAT: Request and response models for the FastAPI surface
WHY: Type-safe validation and serialization of listings, conversations and outcomes
HOW: Pydantic v2 models; responses read straight off ORM rows via from_attributes
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime

from ..core.config import settings
from ..core.models import (
    ListingKind, ListingLifecycle, MessageKind, NegotiationState,
    ProposalOutcome, ProposalResolution, SystemMessageKind,
)
from .negotiation import BookRef, EventKind


# ========== Request Schemas ==========

class CreateListingRequest(BaseModel):
    """Request to publish a listing."""
    book: BookRef
    kind: ListingKind = Field(..., description="gift or exchange")


class OpenConversationRequest(BaseModel):
    """Request to express interest in a listing."""
    listing_id: str = Field(..., min_length=1, max_length=36)
    message: Optional[str] = Field(default=None, description="Optional first message")


class SendMessageRequest(BaseModel):
    """Request to send a plain message."""
    body: str = Field(..., min_length=1, description="Message content")

    @field_validator("body")
    @classmethod
    def validate_length(cls, v):
        """Reject bodies longer than MAX_MESSAGE_LENGTH."""
        if len(v.strip()) > settings.MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message exceeds {settings.MAX_MESSAGE_LENGTH} characters")
        return v


class ProposeRequest(BaseModel):
    """Owner's proposal; empty requested_listing_id means gift."""
    requested_listing_id: Optional[str] = Field(default=None, max_length=36)


class AcceptRequest(BaseModel):
    """Counterpart's acceptance."""
    as_gift: bool = Field(default=False, description="Take the listing without handing over the requested book")


class ReasonRequest(BaseModel):
    """Decline or cancel with an optional reason."""
    reason: Optional[str] = Field(default=None, max_length=500)


# ========== Response Schemas ==========

class ListingResponse(BaseModel):
    """Listing as returned to clients."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    book: Dict[str, Any]
    kind: ListingKind
    lifecycle: ListingLifecycle
    reserved_conversation_id: Optional[str] = None
    recipient_id: Optional[str] = None
    received_listing_id: Optional[str] = None
    archived_at: Optional[datetime] = None
    created_at: datetime


class ConversationResponse(BaseModel):
    """Conversation header (no messages)."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    owner_id: str
    counterpart_id: str
    state: NegotiationState
    last_resolution: Optional[ProposalResolution] = None
    dismissed: bool
    unread_counts: Dict[str, int]
    message_count: int
    last_message_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: datetime


class MessageResponse(BaseModel):
    """One entry of the conversation log."""
    model_config = ConfigDict(from_attributes=True)

    message_id: str
    conversation_id: str
    sequence: int
    sender_id: str
    body: str
    kind: MessageKind
    system_kind: Optional[SystemMessageKind] = None
    offered_listing_id: Optional[str] = None
    requested_listing_id: Optional[str] = None
    proposal_outcome: Optional[ProposalOutcome] = None
    accepted_as_gift: bool
    created_at: datetime


class NegotiationResponse(BaseModel):
    """Result of a negotiation operation."""
    conversation: Optional[ConversationResponse] = None
    listing: Optional[ListingResponse] = None
    message: Optional[MessageResponse] = None
    error_code: Optional[str] = None
    notice: Optional[str] = None

    @classmethod
    def from_result(cls, result) -> "NegotiationResponse":
        """Build from a NegotiationResult."""
        return cls(
            conversation=ConversationResponse.model_validate(result.conversation) if result.conversation else None,
            listing=ListingResponse.model_validate(result.listing) if result.listing else None,
            message=MessageResponse.model_validate(result.message) if result.message else None,
            error_code=result.error_code,
            notice=result.notice,
        )


class ConversationDetailResponse(BaseModel):
    """Conversation header plus its log."""
    conversation: ConversationResponse
    messages: List[MessageResponse]


class InterestResponse(BaseModel):
    """One interested party on a listing."""
    conversation: ConversationResponse
    has_pending_proposal: bool


class InterestSummaryResponse(BaseModel):
    """Interest totals over the caller's available listings."""
    model_config = ConfigDict(from_attributes=True)

    total_count: int
    unique_people: int
    unique_listings: int


class UserStatsResponse(BaseModel):
    """Settlement counters for a user."""
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    books_given: int
    books_received: int
    books_traded: int


# ==================== Notification preferences ====================

class NotificationPreferencesRequest(BaseModel):
    """Kinds to switch on or off; kinds not listed keep their setting."""
    preferences: Dict[EventKind, bool] = Field(..., min_length=1)


class NotificationPreferencesResponse(BaseModel):
    """Effective setting of every notice kind for a user."""
    user_id: str
    preferences: Dict[EventKind, bool]
