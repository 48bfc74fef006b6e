"""
Transfer records exchanged with the remote backend.

Records carry the sync envelope (sync_id, updated_at, deleted_at) and the
entity payload. Local identity and sync status never leave the device.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, ValidationError

from protee.models.tracking import (
    ChatMessage, Confidence, DailyGoal, EntrySource, FoodEntry, MessageRole,
)
from protee.sync.errors import MalformedDataError


class EntityType(str, Enum):
    food_entry = "food_entry"
    daily_goal = "daily_goal"
    chat_message = "chat_message"


# Sync runs process types in this order.
ENTITY_ORDER = (EntityType.food_entry, EntityType.daily_goal, EntityType.chat_message)


class SyncRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sync_id: str
    updated_at: AwareDatetime
    deleted_at: Optional[AwareDatetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def payload(self) -> dict:
        """Entity fields without the envelope."""
        return self.model_dump(exclude={"sync_id", "updated_at", "deleted_at"})

    def same_content(self, other: "SyncRecord") -> bool:
        return (
            type(self) is type(other)
            and self.deleted_at == other.deleted_at
            and self.payload() == other.payload()
        )

    def to_remote(self, user_id: str) -> dict:
        row = self.model_dump(mode="json")
        row["user_id"] = user_id
        return row

    @classmethod
    def from_remote(cls, row: dict) -> "SyncRecord":
        data = {k: v for k, v in row.items() if k in cls.model_fields}
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedDataError(
                f"Malformed {cls.__name__} row {row.get('sync_id')!r}: {e}"
            ) from e

    @classmethod
    def from_row(cls, obj) -> "SyncRecord":
        return cls.model_validate(
            {name: getattr(obj, name) for name in cls.model_fields}
        )

    def row_values(self) -> dict:
        """Column values to write into the local ORM row."""
        return {name: getattr(self, name) for name in type(self).model_fields}


class FoodEntryRecord(SyncRecord):
    date: str
    source: EntrySource
    food_name: str
    protein: int
    calories: Optional[int] = None
    confidence: Confidence
    image_data: Optional[str] = None
    consumed_at: Optional[AwareDatetime] = None
    created_at: AwareDatetime


class DailyGoalRecord(SyncRecord):
    date: str
    goal: int
    calorie_goal: Optional[int] = None


class ChatMessageRecord(SyncRecord):
    role: MessageRole
    content: str
    food_entry_sync_id: Optional[str] = None
    quick_replies: Optional[list[str]] = None
    created_at: AwareDatetime

    def to_remote(self, user_id: str) -> dict:
        row = super().to_remote(user_id)
        row["type"] = row.pop("role")
        return row

    @classmethod
    def from_remote(cls, row: dict) -> "ChatMessageRecord":
        row = dict(row)
        if "type" in row and "role" not in row:
            row["role"] = row.pop("type")
        return super().from_remote(row)


@dataclass(frozen=True)
class EntitySpec:
    entity_type: EntityType
    model: type
    record: type[SyncRecord]
    table: str                       # remote table name

    def to_record(self, obj) -> SyncRecord:
        return self.record.from_row(obj)

    def parse_remote(self, row: dict[str, Any]) -> SyncRecord:
        return self.record.from_remote(row)


ENTITY_SPECS: dict[EntityType, EntitySpec] = {
    EntityType.food_entry: EntitySpec(EntityType.food_entry, FoodEntry, FoodEntryRecord, "food_entries"),
    EntityType.daily_goal: EntitySpec(EntityType.daily_goal, DailyGoal, DailyGoalRecord, "daily_goals"),
    EntityType.chat_message: EntitySpec(EntityType.chat_message, ChatMessage, ChatMessageRecord, "chat_messages"),
}


def spec_for(entity_type: EntityType | str) -> EntitySpec:
    return ENTITY_SPECS[EntityType(entity_type)]
