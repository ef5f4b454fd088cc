"""
Notification preference store.

WHAT: Per-user opt-outs for each notification kind
WHY: The dispatcher must skip notices a recipient has switched off
HOW: Sparse rows keyed by (user_id, kind); absence means enabled
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession, sessionmaker

from ..core.database import session_scope
from ..core.models import NotificationPreference
from ..models.negotiation import EventKind
from ..utils.logger import get_logger

logger = get_logger(__name__)


class PreferenceStore:
    """Notification preference persistence."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def is_enabled(self, user_id: str, kind: EventKind, db: Optional[DBSession] = None) -> bool:
        with session_scope(self._session_factory, db) as session:
            row = session.get(NotificationPreference, (user_id, EventKind(kind).value))
            return row is None or row.enabled

    def get_all(self, user_id: str, db: Optional[DBSession] = None) -> dict[EventKind, bool]:
        """Every kind with its effective setting for the user."""
        with session_scope(self._session_factory, db) as session:
            rows = session.scalars(
                select(NotificationPreference).where(NotificationPreference.user_id == user_id)
            ).all()
            stored = {row.kind: row.enabled for row in rows}
            return {kind: stored.get(kind.value, True) for kind in EventKind}

    def update(self, user_id: str, changes: dict[EventKind, bool], db: DBSession) -> dict[EventKind, bool]:
        """Upsert the given toggles and return the full effective map."""
        for kind, enabled in changes.items():
            key = (user_id, EventKind(kind).value)
            row = db.get(NotificationPreference, key)
            if row is None:
                db.add(NotificationPreference(user_id=user_id, kind=key[1], enabled=enabled))
            else:
                row.enabled = enabled
        db.flush()
        logger.info(f"Updated notification preferences for {user_id}: {len(changes)} kind(s)")
        return self.get_all(user_id, db)
