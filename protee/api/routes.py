"""
FastAPI REST routes for tracked data.

Every mutation goes through the local store (which marks the record pending)
and then nudges the sync engine with a debounced trigger.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field
import logging

from protee.models.tracking import Confidence, EntrySource, MessageRole, SyncStatus, Theme
from protee.storage.database import utcnow
from protee.sync.engine import SyncCoordinator, get_sync_coordinator
from protee.sync.records import EntityType
from protee.tracking.mps import analyze_mps, effective_time

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ── Request / Response Models ─────────────────────────────────────────────────

class EntryCreate(BaseModel):
    food_name: str
    protein: int = Field(ge=0)
    calories: Optional[int] = Field(default=None, ge=0)
    source: EntrySource = EntrySource.manual
    confidence: Confidence = Confidence.high
    date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    consumed_at: Optional[AwareDatetime] = None
    image_data: Optional[str] = None


class EntryUpdate(BaseModel):
    food_name: Optional[str] = None
    protein: Optional[int] = Field(default=None, ge=0)
    calories: Optional[int] = Field(default=None, ge=0)
    confidence: Optional[Confidence] = None
    date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    consumed_at: Optional[AwareDatetime] = None


class EntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sync_id: str
    date: str
    food_name: str
    protein: int
    calories: Optional[int]
    source: EntrySource
    confidence: Confidence
    consumed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    sync_status: SyncStatus


class GoalIn(BaseModel):
    goal: int = Field(gt=0)
    calorie_goal: Optional[int] = Field(default=None, gt=0)


class GoalOut(BaseModel):
    date: str
    goal: int
    calorie_goal: Optional[int] = None
    sync_id: Optional[str] = None       # None when falling back to the default goal


class MessageIn(BaseModel):
    role: MessageRole
    content: str
    food_entry_sync_id: Optional[str] = None
    quick_replies: Optional[list[str]] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sync_id: str
    role: MessageRole
    content: str
    food_entry_sync_id: Optional[str]
    quick_replies: Optional[list[str]]
    created_at: datetime


class NearMissOut(BaseModel):
    kind: str
    protein: Optional[int] = None
    minutes_since_last: Optional[int] = None


class MPSOut(BaseModel):
    date: str
    hit_count: int
    hits: list[EntryOut]
    minutes_since_last_hit: Optional[int]
    last_hit_protein: Optional[int]
    near_miss: Optional[NearMissOut] = None


class SettingsIO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    default_goal: Optional[int] = Field(default=None, gt=0)
    calorie_goal: Optional[int] = None
    calorie_tracking_enabled: Optional[bool] = None
    mps_tracking_enabled: Optional[bool] = None
    theme: Optional[Theme] = None


def _today() -> str:
    return utcnow().date().isoformat()


# ── Food Entries ──────────────────────────────────────────────────────────────

@router.post("/entries", response_model=EntryOut, status_code=201)
def create_entry(req: EntryCreate, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    fields = req.model_dump()
    now = utcnow()
    fields["date"] = req.date or (req.consumed_at or now).date().isoformat()
    fields["created_at"] = now
    entry = coordinator.local.create(EntityType.food_entry, **fields)
    coordinator.trigger_sync()
    return entry


@router.get("/entries", response_model=list[EntryOut])
def list_entries(date: Optional[str] = None, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    entries = coordinator.local.list_live(EntityType.food_entry, date=date or _today())
    return sorted(entries, key=effective_time)


@router.patch("/entries/{sync_id}", response_model=EntryOut)
def update_entry(
    sync_id: str,
    req: EntryUpdate,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
):
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(400, "Nothing to update")
    try:
        entry = coordinator.local.update(EntityType.food_entry, sync_id, **changes)
    except KeyError:
        raise HTTPException(404, "Entry not found")
    coordinator.trigger_sync()
    return entry


@router.delete("/entries/{sync_id}", status_code=204)
def delete_entry(sync_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Soft-delete; the tombstone syncs to other devices."""
    try:
        coordinator.local.soft_delete(EntityType.food_entry, sync_id)
    except KeyError:
        raise HTTPException(404, "Entry not found")
    coordinator.trigger_sync()


# ── Daily Goals ───────────────────────────────────────────────────────────────

@router.get("/goals/{date}", response_model=GoalOut)
def get_goal(date: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    goals = coordinator.local.list_live(EntityType.daily_goal, date=date)
    if goals:
        g = goals[-1]
        return GoalOut(date=date, goal=g.goal, calorie_goal=g.calorie_goal, sync_id=g.sync_id)
    prefs = coordinator.local.get_settings()
    return GoalOut(date=date, goal=prefs.default_goal, calorie_goal=prefs.calorie_goal)


@router.put("/goals/{date}", response_model=GoalOut)
def set_goal(date: str, req: GoalIn, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    local = coordinator.local
    existing = local.list_live(EntityType.daily_goal, date=date)
    if existing:
        g = local.update(EntityType.daily_goal, existing[-1].sync_id, **req.model_dump())
    else:
        g = local.create(EntityType.daily_goal, date=date, **req.model_dump())
    coordinator.trigger_sync()
    return GoalOut(date=date, goal=g.goal, calorie_goal=g.calorie_goal, sync_id=g.sync_id)


# ── Chat Messages ─────────────────────────────────────────────────────────────

@router.post("/messages", response_model=MessageOut, status_code=201)
def add_message(req: MessageIn, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    msg = coordinator.local.create(EntityType.chat_message, created_at=utcnow(), **req.model_dump())
    coordinator.trigger_sync()
    return msg


@router.get("/messages", response_model=list[MessageOut])
def list_messages(limit: int = 100, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    messages = coordinator.local.list_live(EntityType.chat_message)
    return messages[-limit:] if limit > 0 else []


# ── MPS ───────────────────────────────────────────────────────────────────────

@router.get("/mps", response_model=MPSOut)
def get_mps(date: Optional[str] = None, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    day = date or _today()
    entries = coordinator.local.list_live(EntityType.food_entry, date=day)
    analysis = analyze_mps(entries, now=utcnow())
    near_miss = None
    if analysis.near_miss:
        near_miss = NearMissOut(
            kind=analysis.near_miss.kind.value,
            protein=analysis.near_miss.protein,
            minutes_since_last=analysis.near_miss.minutes_since_last,
        )
    return MPSOut(
        date=day,
        hit_count=analysis.hit_count,
        hits=[EntryOut.model_validate(e) for e in analysis.hits],
        minutes_since_last_hit=analysis.minutes_since_last_hit,
        last_hit_protein=analysis.last_hit_protein,
        near_miss=near_miss,
    )


# ── Settings (device-local, never synced) ─────────────────────────────────────

@router.get("/settings", response_model=SettingsIO)
def get_settings(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    return coordinator.local.get_settings()


@router.patch("/settings", response_model=SettingsIO)
def update_settings(req: SettingsIO, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    return coordinator.local.save_settings(**req.model_dump(exclude_unset=True))
