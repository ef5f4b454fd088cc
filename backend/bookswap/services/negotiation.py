"""
Negotiation state machine.

WHAT: Conversation lifecycle from first interest to settlement
WHY: Every transition must be validated against the actor, the conversation state
     and the listing lifecycle, and committed atomically with its side effects
HOW: One write unit of work per operation (conversation row locked first);
     events collected during the unit are published only after commit
"""

from typing import Callable, Optional

from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.config import settings
from ..core.database import SessionLocal, get_db
from ..core.models import (
    Conversation, Listing, ListingKind, ListingLifecycle, MessageKind,
    NegotiationState, ProposalOutcome, ProposalResolution, SystemMessageKind, UserStats,
)
from ..models.negotiation import (
    BookRef, EventKind, InterestEntry, InterestSummary, ListingFilter,
    NegotiationEvent, NegotiationResult,
)
from ..notifications.transport import NotificationTransport
from ..stores.conversation_store import ConversationStore
from ..stores.listing_store import ListingStore
from ..stores.preference_store import PreferenceStore
from ..utils.exceptions import (
    AlreadyClaimedError, ConflictError, ForbiddenError, InvalidStateError, ValidationError,
)
from ..utils.logger import get_logger
from .claim_arbiter import ClaimArbiter
from .notification_dispatcher import NotificationDispatcher
from .settlement_ledger import SettlementLedger

logger = get_logger(__name__)

ADMIN_ROLE = "admin"

# Shown to the acceptor when the owner's listing was claimed first
GIVEN_AWAY_NOTICE = "This book was given to someone else."
# Shown when the counterpart's offered listing is gone
COUNTER_UNAVAILABLE_NOTICE = (
    "The book requested in exchange is no longer available. "
    "Propose an alternative or accept as a gift."
)


class NegotiationService:
    """
    Entry point for every listing and conversation operation.

    Collaborators are injected; use build_negotiation_service() for the default graph.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        listings: ListingStore,
        conversations: ConversationStore,
        arbiter: ClaimArbiter,
        ledger: SettlementLedger,
        dispatcher: NotificationDispatcher,
        preferences: Optional[PreferenceStore] = None,
    ):
        self._session_factory = session_factory
        self.listings = listings
        self.conversations = conversations
        self.arbiter = arbiter
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.preferences = preferences or PreferenceStore(session_factory)

    @property
    def engine(self):
        """Engine behind the session factory."""
        return self._session_factory.kw.get("bind")

    # ==================== Unit of work ====================

    def _write(self, operation: Callable[..., NegotiationResult], *args, **kwargs) -> NegotiationResult:
        """Run operation in one write unit, then publish its events."""
        with get_db(self._session_factory, write=True) as db:
            result = operation(db, *args, **kwargs)
        if result.events:
            self.dispatcher.publish(result.events)
        return result

    @staticmethod
    def _event(
        kind: EventKind,
        conversation: Conversation,
        actor_id: str,
        listing: Optional[Listing],
        body: Optional[str] = None,
        **extra,
    ) -> list[NegotiationEvent]:
        """One event per participant other than the actor."""
        return [
            NegotiationEvent(
                kind=kind,
                recipient_id=recipient,
                actor_id=actor_id,
                conversation_id=conversation.id,
                listing_id=conversation.listing_id,
                book_title=listing.title if listing is not None else "",
                body=body,
                extra=extra,
            )
            for recipient in conversation.participants
            if recipient != actor_id
        ]

    @staticmethod
    def _require_participant(conversation: Conversation, actor_id: str) -> None:
        if actor_id not in conversation.participants:
            logger.warning(f"{actor_id} is not a participant of conversation {conversation.id}")
            raise ForbiddenError("Not a participant of this conversation")

    @staticmethod
    def _require_state(conversation: Conversation, *allowed: NegotiationState) -> None:
        if conversation.state not in allowed:
            raise InvalidStateError(
                f"Operation not allowed while conversation is {conversation.state.value}",
                current_state=conversation.state.value,
            )

    # ==================== Listings ====================

    def create_listing(self, actor_id: str, book: BookRef, kind: ListingKind) -> Listing:
        """Publish a new available listing."""
        return self.listings.create(actor_id, book, kind)

    def get_listing(self, listing_id: str) -> Listing:
        return self.listings.get(listing_id)

    def list_available(self, filter: Optional[ListingFilter] = None) -> list[Listing]:
        return self.listings.list_available(filter)

    def delete_listing(self, actor_id: str, listing_id: str, role: Optional[str] = None) -> NegotiationResult:
        """
        Soft-delete a listing and clean up every negotiation that depended on it.

        Raises:
            NotFoundError: Listing absent or already deleted
            ForbiddenError: Actor is neither the owner nor an admin
            InvalidStateError: Listing already archived
        """
        return self._write(self._delete_listing, actor_id, listing_id, role)

    def _delete_listing(self, db: DBSession, actor_id: str, listing_id: str, role: Optional[str]) -> NegotiationResult:
        listing = self.listings.get(listing_id, db)
        if listing.owner_id != actor_id and role != ADMIN_ROLE:
            logger.warning(f"{actor_id} tried to delete listing {listing_id} owned by {listing.owner_id}")
            raise ForbiddenError("Only the owner can delete this listing")

        # Same lock order as accept: conversations first, then the listing row.
        # The lifecycle is re-read under the lock so a reservation committed
        # meanwhile is released below.
        conversations = self.conversations.list_for_listing(listing.id, db, for_update=True)
        listing = self.listings.get(listing_id, db, for_update=True)
        if listing.lifecycle == ListingLifecycle.ARCHIVED:
            raise InvalidStateError(
                "A completed listing cannot be deleted",
                current_state=listing.lifecycle.value,
            )

        events = []
        holder_id = listing.reserved_conversation_id
        if listing.lifecycle == ListingLifecycle.RESERVED and holder_id:
            holder = self.conversations.get_for_update(holder_id, db)
            self.arbiter.release(db, holder.id)
            if holder.listing_id != listing.id:
                # Listing was the counter side of an exchange on another listing
                events.extend(self._reopen_after_release(db, holder, actor_id))

        for conversation in conversations:
            if conversation.state in (NegotiationState.SETTLED, NegotiationState.VOIDED):
                continue
            pending = self.conversations.find_pending_proposal(conversation.id, db)
            if pending is not None:
                pending.proposal_outcome = ProposalOutcome.DECLINED
            accepted = self.conversations.find_accepted_proposal(conversation.id, db)
            if accepted is not None:
                accepted.proposal_outcome = ProposalOutcome.CANCELLED
            self.conversations.append_message(
                db, conversation,
                sender_id=actor_id,
                body="This listing was removed by its owner.",
                kind=MessageKind.SYSTEM,
                system_kind=SystemMessageKind.LISTING_REMOVED,
            )
            conversation.state = NegotiationState.VOIDED
            events.extend(self._event(EventKind.CONVERSATION_VOIDED, conversation, actor_id, listing))
            logger.info(f"Voided conversation {conversation.id} (listing {listing.id} deleted)")

        self.listings.mark_deleted(listing.id, db)
        db.flush()
        return NegotiationResult(listing=listing, events=events)

    def _reopen_after_release(self, db: DBSession, holder: Conversation, actor_id: str) -> list[NegotiationEvent]:
        accepted = self.conversations.find_accepted_proposal(holder.id, db)
        if accepted is not None:
            accepted.proposal_outcome = ProposalOutcome.CANCELLED
        self.conversations.append_message(
            db, holder,
            sender_id=actor_id,
            body="The book offered in exchange was removed. The reservation was released.",
            kind=MessageKind.SYSTEM,
            system_kind=SystemMessageKind.RESERVATION_RELEASED,
        )
        holder.state = NegotiationState.IDLE
        holder.last_resolution = ProposalResolution.UNAVAILABLE
        logger.info(f"Conversation {holder.id} returned to idle after its counter listing was deleted")
        primary = self.listings.get(holder.listing_id, db, include_deleted=True)
        return self._event(EventKind.LISTING_UNAVAILABLE, holder, actor_id, primary)

    # ==================== Conversations ====================

    def open_conversation(self, actor_id: str, listing_id: str, message: Optional[str] = None) -> NegotiationResult:
        """
        Open (or reuse) the conversation between actor and a listing's owner.

        An optional first message is appended in the same unit.

        Raises:
            ValidationError: Owner opening on their own listing, or bad message
            AlreadyClaimedError: New conversation on a listing that is no longer available
        """
        if message is not None:
            message = self._clean_body(message)
        return self._write(self._open_conversation, actor_id, listing_id, message)

    def _open_conversation(self, db: DBSession, actor_id: str, listing_id: str, message: Optional[str]) -> NegotiationResult:
        listing = self.listings.get(listing_id, db)
        if listing.owner_id == actor_id:
            raise ValidationError("You cannot open a conversation on your own listing", field="listing_id")

        conversation = self.conversations.find(db, listing.id, listing.owner_id, actor_id)
        created = False
        if conversation is None:
            if listing.lifecycle != ListingLifecycle.AVAILABLE:
                raise AlreadyClaimedError(listing.id)
            conversation, created = self.conversations.open_or_get(listing, actor_id, db)

        result = NegotiationResult(conversation=conversation, listing=listing, created=created)
        if message is not None:
            conversation = self.conversations.get_for_update(conversation.id, db)
            self._append_text(db, conversation, listing, actor_id, message, result)
        return result

    def send_message(self, actor_id: str, conversation_id: str, body: str) -> NegotiationResult:
        """
        Append a plain message.

        Never creates a proposal and never clears the dismissed marker.
        """
        body = self._clean_body(body)
        return self._write(self._send_message, actor_id, conversation_id, body)

    def _send_message(self, db: DBSession, actor_id: str, conversation_id: str, body: str) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        if conversation.state == NegotiationState.VOIDED:
            raise InvalidStateError(
                "This conversation was closed because the listing was removed",
                current_state=conversation.state.value,
            )
        listing = self.listings.get(conversation.listing_id, db, include_deleted=True)
        result = NegotiationResult(conversation=conversation, listing=listing)
        self._append_text(db, conversation, listing, actor_id, body, result)
        return result

    def _append_text(
        self,
        db: DBSession,
        conversation: Conversation,
        listing: Listing,
        actor_id: str,
        body: str,
        result: NegotiationResult,
    ) -> None:
        first = self.conversations.count_text_messages(conversation.id, db) == 0
        result.message = self.conversations.append_message(db, conversation, sender_id=actor_id, body=body)
        kind = EventKind.NEW_INTEREST if first else EventKind.NEW_MESSAGE
        result.events.extend(self._event(kind, conversation, actor_id, listing, body=body))

    @staticmethod
    def _clean_body(body: str) -> str:
        body = (body or "").strip()
        if not body:
            raise ValidationError("Message cannot be empty", field="body")
        if len(body) > settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message exceeds {settings.MAX_MESSAGE_LENGTH} characters", field="body"
            )
        return body

    # ==================== Proposals ====================

    def propose(self, actor_id: str, conversation_id: str, requested_listing_id: Optional[str] = None) -> NegotiationResult:
        """
        Owner proposes to hand the listing over, optionally for one of the counterpart's books.

        Raises:
            ForbiddenError: Actor is not the listing owner
            InvalidStateError: Conversation is not idle
            AlreadyClaimedError: A listing involved is no longer available
            ValidationError: Malformed proposal for the listing kind
        """
        return self._write(self._propose, actor_id, conversation_id, requested_listing_id or None)

    def _propose(self, db: DBSession, actor_id: str, conversation_id: str, requested_listing_id: Optional[str]) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        if actor_id != conversation.owner_id:
            raise ForbiddenError("Only the listing owner can make a proposal")
        self._require_state(conversation, NegotiationState.IDLE)

        listing = self.listings.get(conversation.listing_id, db)
        if listing.lifecycle != ListingLifecycle.AVAILABLE:
            raise AlreadyClaimedError(listing.id)

        requested = None
        if requested_listing_id is not None:
            if listing.kind == ListingKind.GIFT:
                raise ValidationError(
                    "A gift listing cannot request a book in exchange",
                    field="requested_listing_id",
                )
            requested = self.listings.get(requested_listing_id, db)
            if requested.owner_id != conversation.counterpart_id:
                raise ValidationError(
                    "The requested book must belong to the other participant",
                    field="requested_listing_id",
                )
            if requested.lifecycle != ListingLifecycle.AVAILABLE:
                raise AlreadyClaimedError(requested.id)

        if requested is not None:
            body = f"Proposed exchange: {listing.title} for {requested.title}"
        else:
            body = f"Offered {listing.title} as a gift"

        proposal = self.conversations.append_message(
            db, conversation,
            sender_id=actor_id,
            body=body,
            kind=MessageKind.PROPOSAL,
            offered_listing_id=listing.id,
            requested_listing_id=requested.id if requested else None,
        )
        conversation.state = NegotiationState.PROPOSAL_PENDING
        conversation.last_resolution = None
        db.flush()

        logger.info(f"Conversation {conversation.id}: proposal {proposal.message_id} pending ({body})")
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            message=proposal,
            events=self._event(
                EventKind.PROPOSAL_RECEIVED, conversation, actor_id, listing,
                body=body, requested_listing_id=proposal.requested_listing_id,
            ),
        )

    def accept(self, actor_id: str, conversation_id: str, as_gift: bool = False) -> NegotiationResult:
        """
        Counterpart accepts the pending proposal.

        When the claim is lost the proposal is closed as declined and the
        conversation goes back to idle; that recovery is committed and the
        result carries error_code ALREADY_CLAIMED instead of raising.
        """
        return self._write(self._accept, actor_id, conversation_id, as_gift)

    def _accept(self, db: DBSession, actor_id: str, conversation_id: str, as_gift: bool) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        if actor_id != conversation.counterpart_id:
            raise ForbiddenError("Only the other participant can accept a proposal")
        self._require_state(conversation, NegotiationState.PROPOSAL_PENDING)

        proposal = self._pending_proposal(db, conversation)
        counter_id = None if as_gift else proposal.requested_listing_id

        try:
            reserved = self.arbiter.reserve(db, conversation.listing_id, conversation.id, counter_id)
        except (AlreadyClaimedError, ConflictError) as e:
            return self._recover_lost_claim(db, conversation, proposal, actor_id, e.listing_id)

        proposal.proposal_outcome = ProposalOutcome.ACCEPTED
        proposal.accepted_as_gift = bool(as_gift and proposal.requested_listing_id)
        conversation.state = NegotiationState.ACCEPTED
        conversation.last_resolution = None
        db.flush()

        listing = next(l for l in reserved if l.id == conversation.listing_id)
        logger.info(
            f"Conversation {conversation.id}: proposal accepted"
            f"{' as gift' if proposal.accepted_as_gift else ''}"
        )
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            message=proposal,
            events=self._event(
                EventKind.PROPOSAL_ACCEPTED, conversation, actor_id, listing,
                accepted_as_gift=proposal.accepted_as_gift,
            ),
        )

    def _recover_lost_claim(self, db, conversation, proposal, actor_id, lost_listing_id) -> NegotiationResult:
        notice = GIVEN_AWAY_NOTICE if lost_listing_id == conversation.listing_id else COUNTER_UNAVAILABLE_NOTICE
        proposal.proposal_outcome = ProposalOutcome.DECLINED
        self.conversations.append_message(
            db, conversation,
            sender_id=actor_id,
            body=notice,
            kind=MessageKind.SYSTEM,
            system_kind=SystemMessageKind.LISTING_UNAVAILABLE,
        )
        conversation.state = NegotiationState.IDLE
        conversation.last_resolution = ProposalResolution.UNAVAILABLE
        db.flush()

        listing = self.listings.get(conversation.listing_id, db, include_deleted=True)
        logger.warning(
            f"Conversation {conversation.id}: accept lost the claim on listing {lost_listing_id}"
        )
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            error_code=AlreadyClaimedError.code,
            notice=notice,
            events=self._event(
                EventKind.LISTING_UNAVAILABLE, conversation, actor_id, listing,
                body=notice, unavailable_listing_id=lost_listing_id,
            ),
        )

    def decline(self, actor_id: str, conversation_id: str, reason: Optional[str] = None) -> NegotiationResult:
        """Counterpart declines the pending proposal."""
        return self._write(self._decline, actor_id, conversation_id, reason)

    def _decline(self, db: DBSession, actor_id: str, conversation_id: str, reason: Optional[str]) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        if actor_id != conversation.counterpart_id:
            raise ForbiddenError("Only the other participant can decline a proposal")
        self._require_state(conversation, NegotiationState.PROPOSAL_PENDING)

        proposal = self._pending_proposal(db, conversation)
        proposal.proposal_outcome = ProposalOutcome.DECLINED
        reason = (reason or "").strip() or None
        body = f"Proposal declined: {reason}" if reason else "Proposal declined"
        self.conversations.append_message(
            db, conversation,
            sender_id=actor_id,
            body=body,
            kind=MessageKind.SYSTEM,
            system_kind=SystemMessageKind.PROPOSAL_DECLINED,
        )
        conversation.state = NegotiationState.IDLE
        conversation.last_resolution = ProposalResolution.DECLINED
        db.flush()

        listing = self.listings.get(conversation.listing_id, db, include_deleted=True)
        logger.info(f"Conversation {conversation.id}: proposal declined")
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            message=proposal,
            events=self._event(EventKind.PROPOSAL_DECLINED, conversation, actor_id, listing, body=reason),
        )

    def cancel(self, actor_id: str, conversation_id: str, reason: Optional[str] = None) -> NegotiationResult:
        """Proposer withdraws the pending proposal before it is accepted."""
        return self._write(self._cancel, actor_id, conversation_id, reason)

    def _cancel(self, db: DBSession, actor_id: str, conversation_id: str, reason: Optional[str]) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        self._require_state(conversation, NegotiationState.PROPOSAL_PENDING)

        proposal = self._pending_proposal(db, conversation)
        if proposal.sender_id != actor_id:
            raise ForbiddenError("Only the proposer can cancel a proposal")
        proposal.proposal_outcome = ProposalOutcome.CANCELLED
        reason = (reason or "").strip() or None
        body = f"Proposal cancelled: {reason}" if reason else "Proposal cancelled"
        self.conversations.append_message(
            db, conversation,
            sender_id=actor_id,
            body=body,
            kind=MessageKind.SYSTEM,
            system_kind=SystemMessageKind.PROPOSAL_CANCELLED,
        )
        conversation.state = NegotiationState.IDLE
        conversation.last_resolution = ProposalResolution.CANCELLED
        db.flush()

        listing = self.listings.get(conversation.listing_id, db, include_deleted=True)
        logger.info(f"Conversation {conversation.id}: proposal cancelled")
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            message=proposal,
            events=self._event(EventKind.PROPOSAL_CANCELLED, conversation, actor_id, listing, body=reason),
        )

    def dismiss(self, actor_id: str, conversation_id: str) -> NegotiationResult:
        """
        Counterpart hides a declined conversation from the owner's interest list.

        One-way: nothing clears the marker.
        """
        return self._write(self._dismiss, actor_id, conversation_id)

    def _dismiss(self, db: DBSession, actor_id: str, conversation_id: str) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        if actor_id != conversation.counterpart_id:
            raise ForbiddenError("Only the other participant can dismiss a conversation")
        if (
            conversation.state != NegotiationState.IDLE
            or conversation.last_resolution != ProposalResolution.DECLINED
        ):
            raise InvalidStateError(
                "Only a conversation whose last proposal was declined can be dismissed",
                current_state=conversation.state.value,
            )
        if not conversation.dismissed:
            conversation.dismissed = True
            db.flush()
            logger.info(f"Conversation {conversation.id} dismissed by {actor_id}")
        return NegotiationResult(conversation=conversation)

    def complete(self, actor_id: str, conversation_id: str) -> NegotiationResult:
        """
        Settle an accepted conversation.

        Repeating it on a settled conversation returns the current state.
        """
        return self._write(self._complete, actor_id, conversation_id)

    def _complete(self, db: DBSession, actor_id: str, conversation_id: str) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        listing = self.listings.get(conversation.listing_id, db, include_deleted=True)
        if conversation.state == NegotiationState.SETTLED:
            return NegotiationResult(conversation=conversation, listing=listing)

        conversation = self.ledger.settle(conversation.id, actor_id=actor_id, db=db)
        db.refresh(listing)
        return NegotiationResult(
            conversation=conversation,
            listing=listing,
            events=self._event(EventKind.COMPLETED, conversation, actor_id, listing),
        )

    def _pending_proposal(self, db: DBSession, conversation: Conversation):
        proposal = self.conversations.find_pending_proposal(conversation.id, db)
        if proposal is None:
            raise InvalidStateError(
                "No pending proposal in this conversation",
                current_state=conversation.state.value,
            )
        return proposal

    # ==================== Queries ====================

    def get_conversation(self, actor_id: str, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        self._require_participant(conversation, actor_id)
        return conversation

    def list_conversations(self, actor_id: str) -> list[Conversation]:
        return self.conversations.list_for_user(actor_id)

    def get_messages(self, actor_id: str, conversation_id: str):
        self.get_conversation(actor_id, conversation_id)
        return self.conversations.get_messages(conversation_id)

    def mark_read(self, actor_id: str, conversation_id: str) -> NegotiationResult:
        """Reset the actor's unread counter."""
        return self._write(self._mark_read, actor_id, conversation_id)

    def _mark_read(self, db: DBSession, actor_id: str, conversation_id: str) -> NegotiationResult:
        conversation = self.conversations.get_for_update(conversation_id, db)
        self._require_participant(conversation, actor_id)
        return NegotiationResult(conversation=self.conversations.mark_read(db, conversation, actor_id))

    def list_interests(self, actor_id: str, listing_id: str) -> list[InterestEntry]:
        """Interested parties on one of the actor's listings, dismissed ones hidden."""
        with get_db(self._session_factory) as db:
            listing = self.listings.get(listing_id, db)
            if listing.owner_id != actor_id:
                raise ForbiddenError("Only the owner can see interest in this listing")
            conversations = [
                c for c in self.conversations.list_for_listing(listing.id, db)
                if not c.dismissed and c.state != NegotiationState.VOIDED
            ]
            pending = self.conversations.conversations_with_pending_proposal(
                [c.id for c in conversations], db
            )
            return [InterestEntry(conversation=c, has_pending_proposal=c.id in pending) for c in conversations]

    def interest_summary(self, actor_id: str) -> InterestSummary:
        """Interest totals across the actor's available listings."""
        with get_db(self._session_factory) as db:
            available = self.listings.list_by_owner(actor_id, ListingLifecycle.AVAILABLE, db)
            conversations = [
                c for c in self.conversations.list_for_listings([l.id for l in available], db)
                if not c.dismissed
            ]
            return InterestSummary(
                total_count=len(conversations),
                unique_people=len({c.counterpart_id for c in conversations}),
                unique_listings=len({c.listing_id for c in conversations}),
            )

    def get_user_stats(self, user_id: str) -> UserStats:
        return self.ledger.get_stats(user_id)

    # ==================== Notification preferences ====================

    def get_notification_preferences(self, actor_id: str, user_id: str) -> dict[EventKind, bool]:
        if actor_id != user_id:
            raise ForbiddenError("You can only view your own notification preferences")
        return self.preferences.get_all(user_id)

    def update_notification_preferences(
        self, actor_id: str, user_id: str, changes: dict[EventKind, bool]
    ) -> dict[EventKind, bool]:
        """
        Toggle notice kinds for a user.

        Raises:
            ForbiddenError: Actor changing someone else's preferences
        """
        if actor_id != user_id:
            raise ForbiddenError("You can only change your own notification preferences")
        with get_db(self._session_factory, write=True) as db:
            return self.preferences.update(user_id, changes, db)


def build_negotiation_service(
    session_factory: Optional[sessionmaker] = None,
    transport: Optional[NotificationTransport] = None,
) -> NegotiationService:
    """Wire the default service graph."""
    factory = session_factory or SessionLocal
    if transport is None:
        from ..notifications.transport_factory import get_transport
        transport = get_transport()

    listings = ListingStore(factory)
    preferences = PreferenceStore(factory)
    conversations = ConversationStore(factory)
    return NegotiationService(
        session_factory=factory,
        listings=listings,
        conversations=conversations,
        arbiter=ClaimArbiter(listings),
        ledger=SettlementLedger(factory, listings, conversations),
        dispatcher=NotificationDispatcher(factory, conversations, transport, preferences=preferences),
        preferences=preferences,
    )
