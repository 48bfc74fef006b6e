"""
Sync protocol — push/pull/resolve for one entity type.

Push:    pending or failed local rows → remote upsert → mark synced / failed
Pull:    remote rows pushed since the stored cursor (minus a commit-latency overlap)
Resolve: upsert by sync id, last-writer-wins per whole record
Commit:  advance the type's cursor to the newest push time pulled
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from protee.models.tracking import SyncStatus
from protee.storage.database import utcnow
from protee.sync.conflict import Resolution, resolve
from protee.sync.errors import RemoteRejectedError, TransientTransportError
from protee.sync.local_store import LocalStore
from protee.sync.records import EntityType, SyncRecord, spec_for
from protee.sync.remote import PullBatch, RemoteClient
from protee.sync.state import SyncStateStore

logger = logging.getLogger(__name__)


@dataclass
class TypeStats:
    entity_type: str
    pushed: int = 0
    push_failed: int = 0
    pulled: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    kept_local: int = 0
    cursor: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cursor"] = self.cursor.isoformat() if self.cursor else None
        return data


class SyncProtocol:
    """Runs the four sync phases for a single entity type."""

    def __init__(
        self,
        local: LocalStore,
        remote: RemoteClient,
        state: SyncStateStore,
        pull_overlap: timedelta = timedelta(seconds=5),
        chat_window: Optional[timedelta] = timedelta(days=14),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.local = local
        self.remote = remote
        self.state = state
        self.pull_overlap = pull_overlap
        self.chat_window = chat_window
        self.clock = clock

    async def sync_type(self, entity_type: EntityType) -> TypeStats:
        stats = TypeStats(entity_type=entity_type.value)
        await self.push(entity_type, stats)
        batch = await self.pull(entity_type)
        stats.pulled = len(batch)
        self.resolve_all(entity_type, batch.records, stats)
        stats.cursor = batch.watermark
        self.state.commit_cursor(entity_type, stats.cursor, synced_at=self.clock())
        logger.info(
            "Synced %s: pushed=%d failed=%d pulled=%d inserted=%d updated=%d kept_local=%d",
            entity_type.value, stats.pushed, stats.push_failed, stats.pulled,
            stats.inserted, stats.updated, stats.kept_local,
        )
        return stats

    # ── Push ─────────────────────────────────────────────────────────

    async def push(self, entity_type: EntityType, stats: TypeStats) -> None:
        spec = spec_for(entity_type)
        for row in self.local.list_pending(entity_type):
            record = spec.to_record(row)
            try:
                await self.remote.push(entity_type, record)
            except (RemoteRejectedError, TransientTransportError) as e:
                logger.warning("Push failed for %s %s: %s", entity_type.value, record.sync_id, e)
                self.local.mark_failed(entity_type, record.sync_id, row.updated_at)
                stats.push_failed += 1
                continue
            # A user edit made while the request was in flight keeps the row pending.
            self.local.mark_synced(entity_type, record.sync_id, row.updated_at)
            stats.pushed += 1

    # ── Pull ─────────────────────────────────────────────────────────

    async def pull(self, entity_type: EntityType) -> PullBatch:
        cursor = self.state.get_cursor(entity_type)
        since = cursor - self.pull_overlap if cursor is not None else None
        created_after = None
        if entity_type == EntityType.chat_message and self.chat_window is not None:
            created_after = self.clock() - self.chat_window
        return await self.remote.pull(entity_type, since=since, created_after=created_after)

    # ── Resolve ──────────────────────────────────────────────────────

    def resolve_all(self, entity_type: EntityType, records: list[SyncRecord], stats: TypeStats) -> None:
        for remote in records:
            self.resolve_one(entity_type, remote, stats)

    def resolve_one(self, entity_type: EntityType, remote: SyncRecord, stats: TypeStats) -> Resolution:
        spec = spec_for(entity_type)
        row = self.local.get_by_sync_id(entity_type, remote.sync_id)
        if row is None:
            self.local.insert_remote(entity_type, remote)
            stats.inserted += 1
            return Resolution.REMOTE

        outcome = resolve(spec.to_record(row), remote)
        if outcome == Resolution.REMOTE:
            if self.local.apply_remote(entity_type, remote, expected_updated_at=row.updated_at):
                stats.updated += 1
        elif outcome == Resolution.LOCAL:
            # The remote holds an older copy; make sure ours goes out next pass.
            if row.sync_status == SyncStatus.synced:
                self.local.mark_pending(entity_type, remote.sync_id, row.updated_at)
            stats.kept_local += 1
        else:
            if row.sync_status != SyncStatus.synced:
                self.local.mark_synced(entity_type, remote.sync_id, row.updated_at)
            stats.unchanged += 1
        return outcome
