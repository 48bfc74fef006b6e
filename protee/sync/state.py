"""
Sync state store — persisted per-type pull cursors.

Created empty on first run, advanced after each entity type completes a
pass, and cleared on demand (force resync). Clearing drops cursors only;
records and their sync ids are untouched.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from protee.storage.database import SessionLocal
from protee.sync.models import SyncState
from protee.sync.records import ENTITY_ORDER, EntityType

logger = logging.getLogger(__name__)


class SyncStateStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def get_cursor(self, entity_type: EntityType) -> Optional[datetime]:
        with self._session_factory() as db:
            state = db.get(SyncState, EntityType(entity_type).value)
            return state.cursor if state else None

    def commit_cursor(
        self,
        entity_type: EntityType,
        cursor: Optional[datetime],
        synced_at: datetime,
    ) -> None:
        """Record a completed pass for one type. A ``None`` cursor keeps the old one."""
        key = EntityType(entity_type).value
        with self._session_factory.begin() as db:
            state = db.get(SyncState, key)
            if state is None:
                state = SyncState(entity_type=key)
                db.add(state)
            if cursor is not None and (state.cursor is None or cursor > state.cursor):
                state.cursor = cursor
            state.last_synced_at = synced_at
        logger.debug("Committed %s cursor=%s", key, cursor)

    def cursors(self) -> dict[EntityType, Optional[datetime]]:
        return {et: self.get_cursor(et) for et in ENTITY_ORDER}

    def last_sync_at(self) -> Optional[datetime]:
        """Time of the last pass in which every entity type completed."""
        with self._session_factory() as db:
            states = {s.entity_type: s for s in db.execute(select(SyncState)).scalars()}
        stamps = [
            states[et.value].last_synced_at
            for et in ENTITY_ORDER
            if et.value in states and states[et.value].last_synced_at is not None
        ]
        if len(stamps) < len(ENTITY_ORDER):
            return None
        return min(stamps)

    def clear(self) -> None:
        """Force resync: forget every cursor so the next pass pulls everything."""
        with self._session_factory.begin() as db:
            db.execute(update(SyncState).values(cursor=None))
        logger.info("Sync cursors cleared; next pass re-pulls all remote records")
