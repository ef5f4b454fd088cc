"""
Negotiation scenarios end to end through the service.

WHAT: Gift and exchange paths, lost races, recovery, dismiss, deletion, notices
WHY: The state machine, arbiter, ledger and dispatcher must agree on every outcome
HOW: Real SQLite database per test; the recording transport captures notices
"""

import pytest
from sqlalchemy.orm.attributes import set_committed_value

from bookswap.core.models import (
    ListingKind, ListingLifecycle, MessageKind, NegotiationState,
    ProposalOutcome, ProposalResolution, SystemMessageKind,
)
from bookswap.models.negotiation import EventKind
from bookswap.services.negotiation import COUNTER_UNAVAILABLE_NOTICE, GIVEN_AWAY_NOTICE
from bookswap.utils.exceptions import (
    AlreadyClaimedError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError,
)


def _proposals(service, conversation_id):
    return [m for m in service.conversations.get_messages(conversation_id) if m.kind == MessageKind.PROPOSAL]


@pytest.mark.integration
class TestGiftPath:
    """Happy gift path."""

    def test_full_gift(self, service, make_listing, transport):
        listing = make_listing("alice", ListingKind.GIFT)

        opened = service.open_conversation("bob", listing.id, "Hi, is Dune still available?")
        assert opened.created
        conversation = opened.conversation
        assert transport.kinds("alice") == [EventKind.NEW_INTEREST]

        proposed = service.propose("alice", conversation.id)
        assert proposed.conversation.state == NegotiationState.PROPOSAL_PENDING
        assert proposed.message.proposal_outcome == ProposalOutcome.PENDING
        assert proposed.message.requested_listing_id is None
        assert transport.kinds("bob") == [EventKind.PROPOSAL_RECEIVED]

        accepted = service.accept("bob", conversation.id)
        assert accepted.ok
        assert accepted.conversation.state == NegotiationState.ACCEPTED
        assert accepted.listing.lifecycle == ListingLifecycle.RESERVED
        assert accepted.listing.reserved_conversation_id == conversation.id
        assert EventKind.PROPOSAL_ACCEPTED in transport.kinds("alice")

        completed = service.complete("alice", conversation.id)
        assert completed.conversation.state == NegotiationState.SETTLED
        assert completed.listing.lifecycle == ListingLifecycle.ARCHIVED
        assert completed.listing.recipient_id == "bob"
        assert transport.kinds("bob")[-1] == EventKind.COMPLETED

        stats = service.get_user_stats("alice")
        assert stats.books_given == 1
        assert service.get_user_stats("bob").books_received == 1

    def test_complete_twice_is_idempotent(self, service, make_listing, transport):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)
        service.complete("bob", conversation.id)
        sent = len(transport.sent)

        again = service.complete("alice", conversation.id)

        assert again.conversation.state == NegotiationState.SETTLED
        assert len(transport.sent) == sent
        assert service.get_user_stats("alice").books_given == 1

    def test_complete_before_accept_rejected(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        with pytest.raises(InvalidStateError):
            service.complete("alice", conversation.id)


@pytest.mark.integration
class TestLostRace:
    """Two counterparts accept against the same listing."""

    def test_second_acceptor_recovers(self, service, make_listing, transport):
        listing = make_listing("alice", ListingKind.GIFT)
        bob = service.open_conversation("bob", listing.id).conversation
        carol = service.open_conversation("carol", listing.id).conversation
        service.propose("alice", bob.id)
        service.propose("alice", carol.id)

        assert service.accept("bob", bob.id).ok
        lost = service.accept("carol", carol.id)

        assert not lost.ok
        assert lost.error_code == "ALREADY_CLAIMED"
        assert lost.notice == GIVEN_AWAY_NOTICE
        assert lost.conversation.state == NegotiationState.IDLE
        assert lost.conversation.last_resolution == ProposalResolution.UNAVAILABLE

        proposal = _proposals(service, carol.id)[-1]
        assert proposal.proposal_outcome == ProposalOutcome.DECLINED
        note = service.conversations.get_messages(carol.id)[-1]
        assert note.system_kind == SystemMessageKind.LISTING_UNAVAILABLE

        stored = service.listings.get(listing.id)
        assert stored.reserved_conversation_id == bob.id
        assert EventKind.LISTING_UNAVAILABLE in transport.kinds("alice")

    def test_owner_cannot_propose_on_reserved_listing(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        bob = service.open_conversation("bob", listing.id).conversation
        carol = service.open_conversation("carol", listing.id).conversation
        service.propose("alice", bob.id)
        service.accept("bob", bob.id)

        with pytest.raises(AlreadyClaimedError):
            service.propose("alice", carol.id)

    def test_new_conversation_on_reserved_listing_rejected(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        bob = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", bob.id)
        service.accept("bob", bob.id)

        with pytest.raises(AlreadyClaimedError):
            service.open_conversation("dave", listing.id)
        # Existing conversation is still reusable
        reopened = service.open_conversation("bob", listing.id)
        assert not reopened.created
        assert reopened.conversation.id == bob.id


@pytest.mark.integration
class TestExchange:
    """Exchange proposals and their fallbacks."""

    def test_exchange_settles_both_listings(self, service, make_listing):
        mine = make_listing("alice", ListingKind.EXCHANGE, title="Dune")
        theirs = make_listing("bob", ListingKind.EXCHANGE, title="Emma")
        conversation = service.open_conversation("bob", mine.id, "Swap?").conversation

        proposed = service.propose("alice", conversation.id, theirs.id)
        assert proposed.message.body == "Proposed exchange: Dune for Emma"

        assert service.accept("bob", conversation.id).ok
        assert service.listings.get(theirs.id).reserved_conversation_id == conversation.id

        service.complete("bob", conversation.id)
        assert service.listings.get(mine.id).received_listing_id == theirs.id
        assert service.listings.get(theirs.id).received_listing_id == mine.id
        assert service.get_user_stats("alice").books_traded == 1
        assert service.get_user_stats("bob").books_traded == 1

    def test_counter_listing_claimed_then_gift_fallback(self, service, make_listing):
        mine = make_listing("alice", ListingKind.EXCHANGE, title="Dune")
        theirs = make_listing("bob", ListingKind.GIFT, title="Emma")
        conversation = service.open_conversation("bob", mine.id).conversation
        service.propose("alice", conversation.id, theirs.id)

        # Bob's book goes to dave first
        dave = service.open_conversation("dave", theirs.id).conversation
        service.propose("bob", dave.id)
        service.accept("dave", dave.id)

        lost = service.accept("bob", conversation.id)
        assert lost.error_code == "ALREADY_CLAIMED"
        assert lost.notice == COUNTER_UNAVAILABLE_NOTICE
        assert service.listings.get(mine.id).lifecycle == ListingLifecycle.AVAILABLE

        # Owner falls back to a plain gift
        service.propose("alice", conversation.id)
        assert service.accept("bob", conversation.id).ok
        service.complete("alice", conversation.id)

        assert service.get_user_stats("alice").books_given == 1
        assert service.get_user_stats("bob").books_received == 0
        assert service.listings.get(mine.id).received_listing_id is None

    def test_accept_as_gift_leaves_counter_listing(self, service, make_listing):
        mine = make_listing("alice", ListingKind.EXCHANGE)
        theirs = make_listing("bob", ListingKind.EXCHANGE, title="Emma")
        conversation = service.open_conversation("bob", mine.id).conversation
        service.propose("alice", conversation.id, theirs.id)

        accepted = service.accept("bob", conversation.id, as_gift=True)

        assert accepted.ok
        assert accepted.message.accepted_as_gift
        assert service.listings.get(theirs.id).lifecycle == ListingLifecycle.AVAILABLE

    def test_proposal_validation(self, service, make_listing):
        gift = make_listing("alice", ListingKind.GIFT)
        exchange = make_listing("alice", ListingKind.EXCHANGE, title="Emma")
        bobs = make_listing("bob", ListingKind.EXCHANGE, title="Ubik")
        carols = make_listing("carol", ListingKind.EXCHANGE, title="Heat")
        on_gift = service.open_conversation("bob", gift.id).conversation
        on_exchange = service.open_conversation("bob", exchange.id).conversation

        with pytest.raises(ValidationError):
            service.propose("alice", on_gift.id, bobs.id)
        with pytest.raises(ValidationError):
            service.propose("alice", on_exchange.id, carols.id)
        with pytest.raises(ForbiddenError):
            service.propose("bob", on_exchange.id, bobs.id)

        service.propose("alice", on_exchange.id, bobs.id)
        with pytest.raises(InvalidStateError):
            service.propose("alice", on_exchange.id)


@pytest.mark.integration
class TestProposalResolution:
    """Cancel, decline and dismiss."""

    def test_reproposal_after_cancel_keeps_history(self, service, make_listing, transport):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)

        cancelled = service.cancel("alice", conversation.id, "changed my mind")
        assert cancelled.conversation.state == NegotiationState.IDLE
        assert cancelled.conversation.last_resolution == ProposalResolution.CANCELLED
        assert EventKind.PROPOSAL_CANCELLED in transport.kinds("bob")

        service.propose("alice", conversation.id)
        proposals = _proposals(service, conversation.id)
        assert [p.proposal_outcome for p in proposals] == [ProposalOutcome.CANCELLED, ProposalOutcome.PENDING]

    def test_only_proposer_cancels(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        with pytest.raises(ForbiddenError):
            service.cancel("bob", conversation.id)

    def test_cancel_after_accept_rejected(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)
        with pytest.raises(InvalidStateError):
            service.cancel("alice", conversation.id)

    def test_decline_then_dismiss(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)

        declined = service.decline("bob", conversation.id, "too far away")
        assert declined.conversation.last_resolution == ProposalResolution.DECLINED
        note = service.conversations.get_messages(conversation.id)[-1]
        assert note.body == "Proposal declined: too far away"
        assert service.listings.get(listing.id).lifecycle == ListingLifecycle.AVAILABLE

        with pytest.raises(ForbiddenError):
            service.dismiss("alice", conversation.id)
        dismissed = service.dismiss("bob", conversation.id)
        assert dismissed.conversation.dismissed
        assert service.list_interests("alice", listing.id) == []

        # A later message never clears the marker, and a fresh proposal is still allowed
        service.send_message("bob", conversation.id, "Actually, maybe later")
        assert service.get_conversation("bob", conversation.id).dismissed
        assert service.propose("alice", conversation.id).conversation.dismissed

    def test_dismiss_requires_decline(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        with pytest.raises(InvalidStateError):
            service.dismiss("bob", conversation.id)
        service.propose("alice", conversation.id)
        service.cancel("alice", conversation.id)
        with pytest.raises(InvalidStateError):
            service.dismiss("bob", conversation.id)


@pytest.mark.integration
class TestListingDeletion:
    """Deleting listings voids or releases what depends on them."""

    def test_delete_voids_conversations(self, service, make_listing, transport):
        listing = make_listing("alice", ListingKind.GIFT)
        bob = service.open_conversation("bob", listing.id).conversation
        carol = service.open_conversation("carol", listing.id).conversation
        service.propose("alice", carol.id)

        service.delete_listing("alice", listing.id)

        with pytest.raises(NotFoundError):
            service.get_listing(listing.id)
        for conversation_id in (bob.id, carol.id):
            conversation = service.get_conversation("alice", conversation_id)
            assert conversation.state == NegotiationState.VOIDED
            last = service.conversations.get_messages(conversation_id)[-1]
            assert last.system_kind == SystemMessageKind.LISTING_REMOVED
        assert _proposals(service, carol.id)[0].proposal_outcome == ProposalOutcome.DECLINED
        assert EventKind.CONVERSATION_VOIDED in transport.kinds("carol")

        with pytest.raises(InvalidStateError):
            service.send_message("bob", bob.id, "hello?")

    def test_delete_reserved_listing_releases_it(self, service, make_listing):
        mine = make_listing("alice", ListingKind.EXCHANGE)
        theirs = make_listing("bob", ListingKind.EXCHANGE, title="Emma")
        conversation = service.open_conversation("bob", mine.id).conversation
        service.propose("alice", conversation.id, theirs.id)
        service.accept("bob", conversation.id)

        service.delete_listing("alice", mine.id)

        stored = service.listings.get(theirs.id)
        assert stored.lifecycle == ListingLifecycle.AVAILABLE
        assert stored.reserved_conversation_id is None
        assert service.get_conversation("bob", conversation.id).state == NegotiationState.VOIDED

    def test_delete_closes_accepted_proposal_of_voided_conversation(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)

        service.delete_listing("alice", listing.id)

        stored = service.listings.get(listing.id, include_deleted=True)
        assert stored.lifecycle == ListingLifecycle.AVAILABLE
        assert stored.reserved_conversation_id is None
        assert service.get_conversation("bob", conversation.id).state == NegotiationState.VOIDED
        assert [m.proposal_outcome for m in _proposals(service, conversation.id)] == [ProposalOutcome.CANCELLED]

    def test_delete_decides_on_locked_listing_state(self, service, make_listing, monkeypatch):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)

        original_get = service.listings.get

        def get_seen_before_accept(listing_id, db=None, include_deleted=False, for_update=False):
            found = original_get(listing_id, db, include_deleted, for_update)
            if not for_update:
                # First read still shows the listing as it was before the accept committed
                set_committed_value(found, "lifecycle", ListingLifecycle.AVAILABLE)
                set_committed_value(found, "reserved_conversation_id", None)
            return found

        monkeypatch.setattr(service.listings, "get", get_seen_before_accept)
        service.delete_listing("alice", listing.id)
        monkeypatch.undo()

        stored = service.listings.get(listing.id, include_deleted=True)
        assert stored.is_deleted
        assert stored.lifecycle == ListingLifecycle.AVAILABLE
        assert stored.reserved_conversation_id is None
        assert service.get_conversation("bob", conversation.id).state == NegotiationState.VOIDED

    def test_delete_counter_listing_returns_conversation_to_idle(self, service, make_listing, transport):
        mine = make_listing("alice", ListingKind.EXCHANGE)
        theirs = make_listing("bob", ListingKind.EXCHANGE, title="Emma")
        conversation = service.open_conversation("bob", mine.id).conversation
        service.propose("alice", conversation.id, theirs.id)
        service.accept("bob", conversation.id)

        service.delete_listing("bob", theirs.id)

        stored = service.listings.get(mine.id)
        assert stored.lifecycle == ListingLifecycle.AVAILABLE
        assert stored.reserved_conversation_id is None
        reopened = service.get_conversation("alice", conversation.id)
        assert reopened.state == NegotiationState.IDLE
        assert reopened.last_resolution == ProposalResolution.UNAVAILABLE
        assert _proposals(service, conversation.id)[-1].proposal_outcome == ProposalOutcome.CANCELLED
        last = service.conversations.get_messages(conversation.id)[-1]
        assert last.system_kind == SystemMessageKind.RESERVATION_RELEASED
        assert EventKind.LISTING_UNAVAILABLE in transport.kinds("alice")

        # Negotiation can restart
        service.propose("alice", conversation.id)
        assert service.accept("bob", conversation.id).ok

    def test_delete_rules(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        with pytest.raises(ForbiddenError):
            service.delete_listing("bob", listing.id)
        service.delete_listing("moderator", listing.id, role="admin")
        with pytest.raises(NotFoundError):
            service.delete_listing("alice", listing.id)

    def test_archived_listing_cannot_be_deleted(self, service, make_listing):
        listing = make_listing("alice", ListingKind.GIFT)
        conversation = service.open_conversation("bob", listing.id).conversation
        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)
        service.complete("alice", conversation.id)

        with pytest.raises(InvalidStateError):
            service.delete_listing("alice", listing.id)


@pytest.mark.integration
class TestConversations:
    """Conversation reuse, messages, unread counters and interest views."""

    def test_reuse_and_own_listing(self, service, make_listing):
        listing = make_listing("alice")
        first = service.open_conversation("bob", listing.id)
        second = service.open_conversation("bob", listing.id)

        assert first.created and not second.created
        assert first.conversation.id == second.conversation.id
        with pytest.raises(ValidationError):
            service.open_conversation("alice", listing.id)

    def test_messages_and_unread(self, service, make_listing):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id, "hello").conversation
        service.send_message("bob", conversation.id, "are you there?")
        service.send_message("alice", conversation.id, "yes")

        current = service.get_conversation("alice", conversation.id)
        assert current.unread_counts == {"alice": 2, "bob": 1}
        assert service.mark_read("alice", conversation.id).conversation.unread_counts["alice"] == 0

        messages = service.get_messages("bob", conversation.id)
        assert [m.sequence for m in messages] == [1, 2, 3]
        assert [m.body for m in messages] == ["hello", "are you there?", "yes"]

    def test_message_validation_and_access(self, service, make_listing):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id).conversation

        with pytest.raises(ValidationError):
            service.send_message("bob", conversation.id, "   ")
        with pytest.raises(ValidationError):
            service.send_message("bob", conversation.id, "x" * 5001)
        with pytest.raises(ForbiddenError):
            service.send_message("mallory", conversation.id, "hi")
        with pytest.raises(ForbiddenError):
            service.get_messages("mallory", conversation.id)

    def test_interests(self, service, make_listing):
        first = make_listing("alice", title="Dune")
        second = make_listing("alice", title="Emma")
        bob = service.open_conversation("bob", first.id).conversation
        service.open_conversation("carol", first.id)
        service.open_conversation("bob", second.id)
        service.propose("alice", bob.id)

        interests = service.list_interests("alice", first.id)
        assert {e.conversation.counterpart_id: e.has_pending_proposal for e in interests} == {
            "bob": True,
            "carol": False,
        }
        with pytest.raises(ForbiddenError):
            service.list_interests("bob", first.id)

        summary = service.interest_summary("alice")
        assert (summary.total_count, summary.unique_people, summary.unique_listings) == (3, 2, 2)

        service.accept("bob", bob.id)
        # Reserved listings drop out of the summary
        summary = service.interest_summary("alice")
        assert (summary.total_count, summary.unique_people, summary.unique_listings) == (1, 1, 1)

    def test_list_conversations(self, service, make_listing):
        listing = make_listing("alice")
        other = make_listing("carol", title="Emma")
        service.open_conversation("bob", listing.id)
        service.open_conversation("bob", other.id)

        assert len(service.list_conversations("bob")) == 2
        assert len(service.list_conversations("alice")) == 1
        assert service.list_conversations("dave") == []


@pytest.mark.integration
class TestNotifications:
    """Debounce and failure isolation through the service."""

    def test_plain_messages_debounced(self, service, make_listing, transport):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id, "first").conversation
        service.send_message("bob", conversation.id, "second")
        service.send_message("bob", conversation.id, "third")

        assert transport.kinds("alice") == [EventKind.NEW_INTEREST]

        service.propose("alice", conversation.id)
        service.cancel("alice", conversation.id)
        assert transport.kinds("bob") == [EventKind.PROPOSAL_RECEIVED, EventKind.PROPOSAL_CANCELLED]

    def test_preview_and_thread_url(self, service, make_listing, transport):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id, "y" * 250).conversation

        _, _, payload = transport.sent[0]
        assert payload["message_preview"] == "y" * 200 + "..."
        assert payload["thread_url"].endswith(f"/messages/{conversation.id}")
        assert payload["book_title"] == "Dune"

    def test_transport_failure_never_rolls_back(self, service, make_listing, transport):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id).conversation
        transport.fail = True

        result = service.propose("alice", conversation.id)

        assert result.conversation.state == NegotiationState.PROPOSAL_PENDING
        assert service.get_conversation("alice", conversation.id).state == NegotiationState.PROPOSAL_PENDING

    def test_recipient_opt_out(self, service, make_listing, transport):
        listing = make_listing("alice")
        conversation = service.open_conversation("bob", listing.id).conversation
        service.update_notification_preferences("bob", "bob", {EventKind.PROPOSAL_RECEIVED: False})

        service.propose("alice", conversation.id)
        service.accept("bob", conversation.id)

        assert transport.kinds("bob") == []
        assert transport.kinds("alice") == [EventKind.PROPOSAL_ACCEPTED]
        assert service.get_notification_preferences("bob", "bob")[EventKind.PROPOSAL_RECEIVED] is False
        with pytest.raises(ForbiddenError):
            service.update_notification_preferences("alice", "bob", {EventKind.NEW_MESSAGE: False})
