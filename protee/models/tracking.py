"""
SQLAlchemy models for tracked data.

FoodEntry, DailyGoal and ChatMessage carry the sync envelope and are mirrored
to the remote backend. UserSettings is device-local and never synced.
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, Text, JSON,
    Index, Enum as SAEnum,
)
from sqlalchemy.orm import declared_attr
import enum
import uuid

from protee.config.settings import settings
from protee.storage.database import Base, UTCDateTime, utcnow


def generate_sync_id() -> str:
    return str(uuid.uuid4())


class SyncStatus(str, enum.Enum):
    pending = "pending"
    synced = "synced"
    failed = "failed"


class EntrySource(str, enum.Enum):
    text = "text"
    photo = "photo"
    manual = "manual"
    label = "label"


class Confidence(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


class MessageRole(str, enum.Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class Theme(str, enum.Enum):
    light = "light"
    dark = "dark"
    system = "system"


class SyncEnvelopeMixin:
    """Columns shared by every syncable table."""

    id = Column(Integer, primary_key=True, autoincrement=True)   # local identity only
    sync_id = Column(String(36), nullable=False, unique=True, default=generate_sync_id)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    deleted_at = Column(UTCDateTime, nullable=True)
    sync_status = Column(SAEnum(SyncStatus), nullable=False, default=SyncStatus.pending)

    @declared_attr
    def __table_args__(cls):
        # Push phase reads "status IN (pending, failed)" on every pass.
        return (Index(f"ix_{cls.__tablename__}_sync_status", "sync_status"),)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class FoodEntry(SyncEnvelopeMixin, Base):
    __tablename__ = "food_entries"

    date = Column(String(10), nullable=False, index=True)   # YYYY-MM-DD
    source = Column(SAEnum(EntrySource), nullable=False, default=EntrySource.text)
    food_name = Column(String, nullable=False)
    protein = Column(Integer, nullable=False)                # grams
    calories = Column(Integer, nullable=True)                # kcal
    confidence = Column(SAEnum(Confidence), nullable=False, default=Confidence.medium)
    image_data = Column(Text, nullable=True)                 # base64 payload
    consumed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)


class DailyGoal(SyncEnvelopeMixin, Base):
    __tablename__ = "daily_goals"

    date = Column(String(10), nullable=False, index=True)
    goal = Column(Integer, nullable=False)                   # protein grams
    calorie_goal = Column(Integer, nullable=True)


class ChatMessage(SyncEnvelopeMixin, Base):
    __tablename__ = "chat_messages"

    role = Column(SAEnum(MessageRole), nullable=False)
    content = Column(Text, nullable=False)
    food_entry_sync_id = Column(String(36), nullable=True)
    quick_replies = Column(JSON, nullable=True)              # ["Sweet", "Savory"]
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    default_goal = Column(Integer, nullable=False, default=lambda: settings.default_protein_goal)
    calorie_goal = Column(Integer, nullable=True)
    calorie_tracking_enabled = Column(Boolean, nullable=False, default=False)
    mps_tracking_enabled = Column(Boolean, nullable=False, default=True)
    theme = Column(SAEnum(Theme), nullable=False, default=Theme.system)
