"""
Listing endpoints.

WHAT: Publish, browse and delete listings; interest views for owners
WHY: Listings are what conversations negotiate over
HOW: FastAPI router delegating to NegotiationService
"""

from typing import List, Optional

from fastapi import APIRouter, Query, status

from ....core.config import settings
from ....core.models import ListingKind
from ....models.api_schemas import (
    CreateListingRequest,
    ConversationResponse,
    ListingResponse,
    NegotiationResponse,
    InterestResponse,
    InterestSummaryResponse,
)
from ....models.negotiation import ListingFilter
from ....services.negotiation import NegotiationService
from ....utils.logger import get_logger
from ..deps import CurrentUser, Identity, Service

logger = get_logger(__name__)

router = APIRouter()


@router.post("/listings", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
def create_listing(
    request: CreateListingRequest,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """Publish a new available listing."""
    listing = service.create_listing(user.user_id, request.book, request.kind)
    return ListingResponse.model_validate(listing)


@router.get("/listings", response_model=List[ListingResponse])
def list_listings(
    kind: Optional[ListingKind] = None,
    genre: Optional[str] = None,
    owner_id: Optional[str] = None,
    exclude_owner_id: Optional[str] = None,
    limit: int = Query(default=settings.LISTING_PAGE_LIMIT, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: NegotiationService = Service,
):
    """
    Browse available listings.

    owner_id narrows to one person's shelf (used to pick a book to request in an exchange).
    """
    listings = service.list_available(ListingFilter(
        kind=kind,
        genre=genre,
        owner_id=owner_id,
        exclude_owner_id=exclude_owner_id,
        limit=limit,
        offset=offset,
    ))
    return [ListingResponse.model_validate(l) for l in listings]


@router.get("/listings/{listing_id}", response_model=ListingResponse)
def get_listing(listing_id: str, service: NegotiationService = Service):
    return ListingResponse.model_validate(service.get_listing(listing_id))


@router.delete("/listings/{listing_id}", response_model=NegotiationResponse)
def delete_listing(
    listing_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """
    Delete a listing (owner or admin).

    Open conversations on it are voided and any reservation it took part in is released.
    """
    result = service.delete_listing(user.user_id, listing_id, role=user.role)
    return NegotiationResponse.from_result(result)


@router.get("/listings/{listing_id}/interests", response_model=List[InterestResponse])
def list_interests(
    listing_id: str,
    user: Identity = CurrentUser,
    service: NegotiationService = Service,
):
    """Interested parties on one of the caller's listings."""
    return [
        InterestResponse(
            conversation=ConversationResponse.model_validate(entry.conversation),
            has_pending_proposal=entry.has_pending_proposal,
        )
        for entry in service.list_interests(user.user_id, listing_id)
    ]


@router.get("/interests/summary", response_model=InterestSummaryResponse)
def interest_summary(user: Identity = CurrentUser, service: NegotiationService = Service):
    return InterestSummaryResponse.model_validate(service.interest_summary(user.user_id))
