"""
Listing store.

WHAT: Persistence for listings and the lifecycle compare-and-swap
WHY: transition() is the primitive the claim arbiter and settlement ledger build on
HOW: Single conditional UPDATE ... WHERE lifecycle = :expected; rowcount 0 means the race was lost
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.database import session_scope
from ..core.models import Listing, ListingKind, ListingLifecycle
from ..models.negotiation import BookRef, ListingFilter
from ..utils.exceptions import ConflictError, NotFoundError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Columns transition() may write alongside the lifecycle
TRANSITION_FIELDS = frozenset({
    "reserved_conversation_id",
    "reserved_counter_listing_id",
    "reserved_at",
    "recipient_id",
    "received_listing_id",
    "archived_at",
})


class ListingStore:
    """
    Listing persistence.

    Every method accepts an optional open session so it can join the caller's
    unit of work; without one it opens its own.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(
        self,
        owner_id: str,
        book: BookRef,
        kind: ListingKind,
        db: Optional[DBSession] = None,
    ) -> Listing:
        """Create an available listing."""
        with session_scope(self._session_factory, db, write=True) as session:
            listing = Listing(
                owner_id=owner_id,
                book=book.model_dump(),
                kind=ListingKind(kind),
                lifecycle=ListingLifecycle.AVAILABLE,
            )
            session.add(listing)
            session.flush()
            logger.info(f"Created {listing.kind.value} listing {listing.id} for owner {owner_id}")
            return listing

    def get(
        self,
        listing_id: str,
        db: Optional[DBSession] = None,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> Listing:
        """
        Fetch a listing.

        for_update row-locks it and refreshes any copy already in the session.

        Raises:
            NotFoundError: If absent, or deleted and include_deleted is False
        """
        with session_scope(self._session_factory, db) as session:
            if for_update:
                listing = session.scalars(
                    select(Listing)
                    .where(Listing.id == listing_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).first()
            else:
                listing = session.get(Listing, listing_id)
            if listing is None or (listing.is_deleted and not include_deleted):
                raise NotFoundError("listing", listing_id)
            return listing

    def get_many(self, listing_ids: list[str], db: DBSession) -> dict[str, Listing]:
        """Fetch several listings by id (deleted ones included)."""
        if not listing_ids:
            return {}
        rows = db.scalars(select(Listing).where(Listing.id.in_(listing_ids))).all()
        return {row.id: row for row in rows}

    def list_available(self, filter: Optional[ListingFilter] = None, db: Optional[DBSession] = None) -> list[Listing]:
        """Available, non-deleted listings, newest first."""
        filter = filter or ListingFilter()
        with session_scope(self._session_factory, db) as session:
            query = select(Listing).where(
                Listing.lifecycle == ListingLifecycle.AVAILABLE,
                Listing.deleted_at.is_(None),
            )
            if filter.kind is not None:
                query = query.where(Listing.kind == filter.kind)
            if filter.owner_id:
                query = query.where(Listing.owner_id == filter.owner_id)
            if filter.exclude_owner_id:
                query = query.where(Listing.owner_id != filter.exclude_owner_id)

            rows = session.scalars(
                query.order_by(Listing.created_at.desc(), Listing.id)
            ).all()

            # Genre lives inside the opaque book JSON; filter in Python to stay dialect neutral
            if filter.genre:
                wanted = filter.genre.lower()
                rows = [r for r in rows if ((r.book or {}).get("genre") or "").lower() == wanted]

            return list(rows[filter.offset:filter.offset + filter.limit])

    def list_by_owner(
        self,
        owner_id: str,
        lifecycle: Optional[ListingLifecycle] = None,
        db: Optional[DBSession] = None,
    ) -> list[Listing]:
        """An owner's non-deleted listings."""
        with session_scope(self._session_factory, db) as session:
            query = select(Listing).where(
                Listing.owner_id == owner_id,
                Listing.deleted_at.is_(None),
            )
            if lifecycle is not None:
                query = query.where(Listing.lifecycle == lifecycle)
            return list(session.scalars(query.order_by(Listing.created_at.desc())).all())

    def list_reserved_by(self, conversation_id: str, db: DBSession) -> list[Listing]:
        """Listings currently reserved by a conversation, ascending id."""
        return list(db.scalars(
            select(Listing)
            .where(
                Listing.lifecycle == ListingLifecycle.RESERVED,
                Listing.reserved_conversation_id == conversation_id,
            )
            .order_by(Listing.id)
        ).all())

    def transition(
        self,
        listing_id: str,
        expected: ListingLifecycle,
        new: ListingLifecycle,
        payload: Optional[dict] = None,
        reserved_by: Optional[str] = None,
        db: Optional[DBSession] = None,
    ) -> Listing:
        """
        Compare-and-swap the lifecycle of one listing.

        Args:
            listing_id: Listing to move
            expected: Lifecycle the caller believes the listing is in
            new: Target lifecycle
            payload: Reservation/disposition columns to write in the same UPDATE
            reserved_by: Additionally require reserved_conversation_id to match

        Returns:
            The refreshed listing

        Raises:
            NotFoundError: Listing absent or deleted
            ConflictError: Current lifecycle (or reservation owner) does not match
        """
        payload = dict(payload or {})
        unknown = set(payload) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"transition() cannot write {sorted(unknown)}")

        with session_scope(self._session_factory, db, write=True) as session:
            stmt = (
                update(Listing)
                .where(
                    Listing.id == listing_id,
                    Listing.lifecycle == expected,
                    Listing.deleted_at.is_(None),
                )
                .values(lifecycle=new, updated_at=datetime.utcnow(), **payload)
                .execution_options(synchronize_session=False)
            )
            if reserved_by is not None:
                stmt = stmt.where(Listing.reserved_conversation_id == reserved_by)

            result = session.execute(stmt)
            if result.rowcount != 1:
                current = session.get(Listing, listing_id, populate_existing=True)
                if current is None or current.is_deleted:
                    raise NotFoundError("listing", listing_id)
                logger.info(
                    f"Listing {listing_id} CAS lost: expected {expected.value}, "
                    f"found {current.lifecycle.value}"
                )
                raise ConflictError(listing_id, expected.value, current.lifecycle.value)

            listing = session.get(Listing, listing_id, populate_existing=True)
            logger.debug(f"Listing {listing_id}: {expected.value} -> {new.value}")
            return listing

    def mark_deleted(self, listing_id: str, db: Optional[DBSession] = None) -> Listing:
        """Soft-delete a listing; its row stays for conversation history."""
        with session_scope(self._session_factory, db, write=True) as session:
            listing = session.get(Listing, listing_id)
            if listing is None or listing.is_deleted:
                raise NotFoundError("listing", listing_id)
            listing.deleted_at = datetime.utcnow()
            session.flush()
            logger.info(f"Deleted listing {listing_id}")
            return listing
