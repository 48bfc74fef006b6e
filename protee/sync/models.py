"""
SQLAlchemy models for the sync engine.

- SyncState: per-entity-type pull cursor and last successful sync
"""

from sqlalchemy import Column, String

from protee.storage.database import Base, UTCDateTime, utcnow


class SyncState(Base):
    __tablename__ = "sync_state"

    entity_type = Column(String, primary_key=True)
    cursor = Column(UTCDateTime, nullable=True)          # newest remote pushed_at already pulled
    last_synced_at = Column(UTCDateTime, nullable=True)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
