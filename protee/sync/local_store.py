"""
Local store adapter — durable on-device CRUD for syncable entities.

Every call runs in its own short transaction so a failure never touches
other records. User-facing writes (create / update / soft_delete) mark the
row pending and bump ``updated_at``. Sync-facing writes are guarded by the
``updated_at`` the engine last observed: if the user edited the row in the
meantime the write is skipped and the next pass picks the edit up.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Generator, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from protee.models.tracking import SyncStatus, UserSettings, generate_sync_id
from protee.storage.database import SessionLocal, utcnow
from protee.sync.errors import LocalStorageError
from protee.sync.records import ENTITY_SPECS, EntityType, SyncRecord, spec_for

logger = logging.getLogger(__name__)

ENVELOPE_FIELDS = {"id", "sync_id", "updated_at", "deleted_at", "sync_status"}
UNSYNCED = (SyncStatus.pending, SyncStatus.failed)


class LocalStore:
    """CRUD plus "changed since" and outbox queries over the local database."""

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Local store transaction failed: %s", e)
            raise LocalStorageError(str(e)) from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _next_timestamp(self, previous: Optional[datetime]) -> datetime:
        """Clock reading, forced past ``previous`` so updated_at never stalls."""
        now = self._clock()
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    @staticmethod
    def _check_fields(model, fields: dict) -> None:
        forbidden = ENVELOPE_FIELDS.intersection(fields)
        if forbidden:
            raise ValueError(f"Envelope fields are managed by the store: {sorted(forbidden)}")
        columns = {col.key for col in model.__table__.columns}
        unknown = set(fields) - columns
        if unknown:
            raise ValueError(f"Unknown fields for {model.__tablename__}: {sorted(unknown)}")

    # ── User-facing writes ──────────────────────────────────────────

    def create(self, entity_type: EntityType, /, **fields):
        model = spec_for(entity_type).model
        self._check_fields(model, fields)
        obj = model(
            sync_id=generate_sync_id(),
            updated_at=self._clock(),
            sync_status=SyncStatus.pending,
            **fields,
        )
        with self._session() as db:
            db.add(obj)
        logger.debug("Created %s %s", entity_type, obj.sync_id)
        return obj

    def update(self, entity_type: EntityType, sync_id: str, /, **changes):
        model = spec_for(entity_type).model
        self._check_fields(model, changes)
        with self._session() as db:
            obj = self._get(db, model, sync_id)
            for key, value in changes.items():
                setattr(obj, key, value)
            obj.updated_at = self._next_timestamp(obj.updated_at)
            obj.sync_status = SyncStatus.pending
        return obj

    def soft_delete(self, entity_type: EntityType, sync_id: str, /):
        model = spec_for(entity_type).model
        with self._session() as db:
            obj = self._get(db, model, sync_id)
            stamp = self._next_timestamp(obj.updated_at)
            if obj.deleted_at is None:
                obj.deleted_at = stamp
            obj.updated_at = stamp
            obj.sync_status = SyncStatus.pending
        logger.debug("Soft-deleted %s %s", entity_type, sync_id)
        return obj

    @staticmethod
    def _get(db: Session, model, sync_id: str):
        obj = db.execute(select(model).where(model.sync_id == sync_id)).scalar_one_or_none()
        if obj is None:
            raise KeyError(f"{model.__tablename__} {sync_id} not found")
        return obj

    # ── Reads ───────────────────────────────────────────────────────

    def get_by_sync_id(self, entity_type: EntityType, sync_id: str):
        model = spec_for(entity_type).model
        with self._session() as db:
            return db.execute(select(model).where(model.sync_id == sync_id)).scalar_one_or_none()

    def list_changed_since(self, entity_type: EntityType, cursor: Optional[datetime]) -> list:
        model = spec_for(entity_type).model
        stmt = select(model).order_by(model.updated_at, model.id)
        if cursor is not None:
            stmt = stmt.where(model.updated_at > cursor)
        with self._session() as db:
            return list(db.execute(stmt).scalars())

    def list_pending(self, entity_type: EntityType) -> list:
        model = spec_for(entity_type).model
        stmt = (
            select(model)
            .where(model.sync_status.in_(UNSYNCED))
            .order_by(model.updated_at, model.id)
        )
        with self._session() as db:
            return list(db.execute(stmt).scalars())

    def list_live(self, entity_type: EntityType, date: Optional[str] = None) -> list:
        model = spec_for(entity_type).model
        stmt = select(model).where(model.deleted_at.is_(None))
        if date is not None:
            stmt = stmt.where(model.date == date)
        order_col = getattr(model, "created_at", model.updated_at)
        stmt = stmt.order_by(order_col, model.id)
        with self._session() as db:
            return list(db.execute(stmt).scalars())

    def count(self, entity_type: EntityType, include_deleted: bool = False) -> int:
        model = spec_for(entity_type).model
        stmt = select(func.count()).select_from(model)
        if not include_deleted:
            stmt = stmt.where(model.deleted_at.is_(None))
        with self._session() as db:
            return db.execute(stmt).scalar_one()

    def count_pending(self) -> int:
        """Records across all types still waiting to be pushed, tombstones included."""
        total = 0
        with self._session() as db:
            for spec in ENTITY_SPECS.values():
                model = spec.model
                total += db.execute(
                    select(func.count())
                    .select_from(model)
                    .where(model.sync_status.in_(UNSYNCED))
                ).scalar_one()
        return total

    # ── Sync-facing writes ──────────────────────────────────────────

    def _guarded_update(
        self,
        entity_type: EntityType,
        sync_id: str,
        expected_updated_at: Optional[datetime],
        values: dict,
    ) -> bool:
        model = spec_for(entity_type).model
        stmt = update(model).where(model.sync_id == sync_id)
        if expected_updated_at is not None:
            stmt = stmt.where(model.updated_at == expected_updated_at)
        with self._session() as db:
            result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 0:
            logger.debug("%s %s changed during sync; leaving it for the next pass", entity_type, sync_id)
            return False
        return True

    def mark_synced(self, entity_type: EntityType, sync_id: str, expected_updated_at: Optional[datetime] = None) -> bool:
        return self._guarded_update(entity_type, sync_id, expected_updated_at, {"sync_status": SyncStatus.synced})

    def mark_failed(self, entity_type: EntityType, sync_id: str, expected_updated_at: Optional[datetime] = None) -> bool:
        return self._guarded_update(entity_type, sync_id, expected_updated_at, {"sync_status": SyncStatus.failed})

    def mark_pending(self, entity_type: EntityType, sync_id: str, expected_updated_at: Optional[datetime] = None) -> bool:
        return self._guarded_update(entity_type, sync_id, expected_updated_at, {"sync_status": SyncStatus.pending})

    def apply_remote(self, entity_type: EntityType, record: SyncRecord, expected_updated_at: datetime) -> bool:
        """Overwrite the local row with the winning remote version."""
        values = record.row_values()
        values.pop("sync_id")
        values["sync_status"] = SyncStatus.synced
        return self._guarded_update(entity_type, record.sync_id, expected_updated_at, values)

    def insert_remote(self, entity_type: EntityType, record: SyncRecord):
        """Create a local row for a record first seen on the remote."""
        model = spec_for(entity_type).model
        obj = model(sync_status=SyncStatus.synced, **record.row_values())
        with self._session() as db:
            db.add(obj)
        return obj

    # ── Local-only settings ─────────────────────────────────────────

    def get_settings(self) -> UserSettings:
        with self._session() as db:
            obj = db.execute(select(UserSettings).limit(1)).scalar_one_or_none()
            if obj is None:
                obj = UserSettings()
                db.add(obj)
                db.flush()
            return obj

    def save_settings(self, **changes) -> UserSettings:
        columns = {col.key for col in UserSettings.__table__.columns} - {"id"}
        unknown = set(changes) - columns
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        with self._session() as db:
            obj = db.execute(select(UserSettings).limit(1)).scalar_one_or_none()
            if obj is None:
                obj = UserSettings()
                db.add(obj)
            for key, value in changes.items():
                setattr(obj, key, value)
        return obj
