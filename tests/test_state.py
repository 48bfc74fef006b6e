"""Tests for sync bookkeeping and transfer records."""
from __future__ import annotations

from datetime import timedelta

import pytest

from protee.sync.errors import MalformedDataError
from protee.sync.records import ENTITY_ORDER, ChatMessageRecord, EntityType, FoodEntryRecord

from conftest import T0


class TestSyncStateStore:
    def test_empty_on_first_run(self, state):
        assert state.cursors() == {et: None for et in ENTITY_ORDER}
        assert state.last_sync_at() is None

    def test_commit_and_read(self, state):
        state.commit_cursor(EntityType.food_entry, T0, synced_at=T0)
        assert state.get_cursor(EntityType.food_entry) == T0
        assert state.get_cursor(EntityType.daily_goal) is None

    def test_cursor_never_moves_backwards(self, state):
        state.commit_cursor(EntityType.food_entry, T0, synced_at=T0)
        state.commit_cursor(EntityType.food_entry, T0 - timedelta(hours=1), synced_at=T0)
        assert state.get_cursor(EntityType.food_entry) == T0

    def test_empty_pull_keeps_cursor(self, state):
        state.commit_cursor(EntityType.food_entry, T0, synced_at=T0)
        state.commit_cursor(EntityType.food_entry, None, synced_at=T0 + timedelta(minutes=5))
        assert state.get_cursor(EntityType.food_entry) == T0

    def test_last_sync_needs_every_type(self, state):
        state.commit_cursor(EntityType.food_entry, T0, synced_at=T0)
        assert state.last_sync_at() is None
        state.commit_cursor(EntityType.daily_goal, None, synced_at=T0 + timedelta(seconds=1))
        state.commit_cursor(EntityType.chat_message, None, synced_at=T0 + timedelta(seconds=2))
        assert state.last_sync_at() == T0

    def test_clear_drops_cursors_only(self, state):
        for et in ENTITY_ORDER:
            state.commit_cursor(et, T0, synced_at=T0)
        state.clear()
        assert state.cursors() == {et: None for et in ENTITY_ORDER}
        assert state.last_sync_at() == T0


class TestRecords:
    def row(self, **overrides):
        row = {
            "sync_id": "e-1",
            "user_id": "user-1",
            "updated_at": "2026-03-01T08:00:00+00:00",
            "deleted_at": None,
            "date": "2026-03-01",
            "source": "photo",
            "food_name": "Salmon",
            "protein": 34,
            "calories": 410,
            "confidence": "medium",
            "created_at": "2026-03-01T08:00:00+00:00",
            "pushed_at": "2026-03-01T08:00:01+00:00",
        }
        row.update(overrides)
        return row

    def test_parse_remote_row(self):
        record = FoodEntryRecord.from_remote(self.row())
        assert record.sync_id == "e-1"
        assert record.updated_at == T0
        assert record.protein == 34

    def test_malformed_row(self):
        with pytest.raises(MalformedDataError):
            FoodEntryRecord.from_remote(self.row(protein="lots"))
        with pytest.raises(MalformedDataError):
            FoodEntryRecord.from_remote(self.row(updated_at="2026-03-01T08:00:00"))

    def test_wire_format_excludes_local_identity(self):
        record = FoodEntryRecord.from_remote(self.row())
        wire = record.to_remote("user-1")
        assert wire["user_id"] == "user-1"
        assert "id" not in wire
        assert "sync_status" not in wire
        assert wire["updated_at"].startswith("2026-03-01T08:00:00")

    def test_chat_role_travels_as_type(self):
        record = ChatMessageRecord(
            sync_id="m-1", updated_at=T0, role="assistant", content="Nice!", created_at=T0,
        )
        wire = record.to_remote("user-1")
        assert wire["type"] == "assistant"
        assert "role" not in wire
        assert ChatMessageRecord.from_remote(wire) == record
