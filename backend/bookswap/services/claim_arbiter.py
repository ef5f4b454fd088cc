"""
Claim arbiter.

WHAT: Atomically reserve a listing (and its exchange counterpart) for one conversation
WHY: Many conversations can accept against the same listing; exactly one may win
HOW: Listing store compare-and-swap inside a SAVEPOINT, listings taken in ascending id order
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session as DBSession

from ..core.models import Listing, ListingLifecycle
from ..stores.listing_store import ListingStore
from ..utils.exceptions import AlreadyClaimedError, ConflictError, NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ClaimArbiter:
    """Serializes competing attempts to move a listing out of available."""

    def __init__(self, listings: ListingStore):
        self._listings = listings

    def reserve(
        self,
        db: DBSession,
        listing_id: str,
        winning_conversation_id: str,
        counter_listing_id: Optional[str] = None,
    ) -> list[Listing]:
        """
        Reserve listing_id (and counter_listing_id) for a conversation.

        Both reservations commit together or not at all. Runs inside the
        caller's unit of work so the caller can record a recovery transition
        when the claim is lost.

        Returns:
            Reserved listings, ascending id

        Raises:
            AlreadyClaimedError: A listing is reserved, archived or gone
        """
        now = datetime.utcnow()
        plan = {
            listing_id: counter_listing_id,
        }
        if counter_listing_id:
            plan[counter_listing_id] = listing_id

        reserved = []
        try:
            with db.begin_nested():
                for target_id in sorted(plan):
                    reserved.append(self._listings.transition(
                        target_id,
                        ListingLifecycle.AVAILABLE,
                        ListingLifecycle.RESERVED,
                        payload={
                            "reserved_conversation_id": winning_conversation_id,
                            "reserved_counter_listing_id": plan[target_id],
                            "reserved_at": now,
                        },
                        db=db,
                    ))
        except (ConflictError, NotFoundError) as e:
            # SAVEPOINT rolled back; drop the in-memory reserved state
            for listing in reserved:
                db.expire(listing)
            # Deleted listings count as claimed
            lost_id = e.listing_id if isinstance(e, ConflictError) else e.details["id"]
            logger.info(
                f"Claim lost by conversation {winning_conversation_id} on listing {lost_id}"
            )
            raise AlreadyClaimedError(lost_id) from e

        logger.info(
            f"Conversation {winning_conversation_id} reserved "
            f"{', '.join(listing.id for listing in reserved)}"
        )
        return reserved

    def release(self, db: DBSession, conversation_id: str) -> list[Listing]:
        """Return every listing reserved by a conversation to available."""
        released = []
        for listing in self._listings.list_reserved_by(conversation_id, db):
            released.append(self._listings.transition(
                listing.id,
                ListingLifecycle.RESERVED,
                ListingLifecycle.AVAILABLE,
                payload={
                    "reserved_conversation_id": None,
                    "reserved_counter_listing_id": None,
                    "reserved_at": None,
                },
                reserved_by=conversation_id,
                db=db,
            ))
        if released:
            logger.info(
                f"Released reservation of conversation {conversation_id} on "
                f"{', '.join(listing.id for listing in released)}"
            )
        return released
