"""
MPS (muscle protein synthesis) hit detection.

A hit is a single entry with at least 25 g of protein, eaten at least three
hours after the previous *accepted* hit. Entries are placed at their
effective time: consumed_at when known, otherwise created_at.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence, TypeVar

MIN_PROTEIN = 25
MIN_GAP = timedelta(hours=3)

# Near-miss bands for coaching feedback
NEAR_MISS_PROTEIN = 20                      # 20-24 g
NEAR_MISS_MINUTES = (120, 180)              # 2h to just under 3h


class ProteinEntry(Protocol):
    protein: int
    consumed_at: Optional[datetime]
    created_at: datetime


E = TypeVar("E", bound=ProteinEntry)


def effective_time(entry: ProteinEntry) -> datetime:
    return entry.consumed_at or entry.created_at


def _in_time_order(entries: Sequence[E]) -> list[E]:
    # sorted() is stable, so equal timestamps keep their input order
    return sorted(entries, key=effective_time)


def find_mps_hits(entries: Sequence[E]) -> list[E]:
    """Entries that count as MPS hits, in time order."""
    hits: list[E] = []
    last_hit: Optional[datetime] = None
    for entry in _in_time_order([e for e in entries if e.protein >= MIN_PROTEIN]):
        at = effective_time(entry)
        if last_hit is None or at - last_hit >= MIN_GAP:
            hits.append(entry)
            last_hit = at
    return hits


class NearMissKind(str, enum.Enum):
    protein = "protein"        # right timing, 20-24 g
    timing = "timing"          # enough protein, 2-3 h after the last hit
    both = "both"


@dataclass
class NearMiss:
    kind: NearMissKind
    protein: Optional[int] = None
    minutes_since_last: Optional[int] = None


@dataclass
class MPSAnalysis:
    hits: list
    minutes_since_last_hit: Optional[int]
    last_hit_protein: Optional[int]
    near_miss: Optional[NearMiss] = None

    @property
    def hit_count(self) -> int:
        return len(self.hits)


def _minutes(delta: timedelta) -> int:
    return int(delta.total_seconds() // 60)


def analyze_mps(entries: Sequence[E], now: datetime) -> MPSAnalysis:
    """Hits plus coaching context: time since the last hit and whether the
    most recent entry narrowly missed on protein, timing, or both."""
    ordered = _in_time_order(entries)
    hits = find_mps_hits(ordered)
    last_hit = hits[-1] if hits else None

    analysis = MPSAnalysis(
        hits=hits,
        minutes_since_last_hit=_minutes(now - effective_time(last_hit)) if last_hit else None,
        last_hit_protein=last_hit.protein if last_hit else None,
    )
    if not ordered:
        return analysis

    latest = ordered[-1]
    minutes_since_hit = None
    if last_hit is not None and latest is not last_hit:
        minutes_since_hit = _minutes(effective_time(latest) - effective_time(last_hit))

    protein_miss = NEAR_MISS_PROTEIN <= latest.protein < MIN_PROTEIN
    timing_miss = (
        minutes_since_hit is not None
        and NEAR_MISS_MINUTES[0] <= minutes_since_hit < NEAR_MISS_MINUTES[1]
    )

    if protein_miss and timing_miss:
        analysis.near_miss = NearMiss(NearMissKind.both, latest.protein, minutes_since_hit)
    elif timing_miss and latest.protein >= MIN_PROTEIN:
        analysis.near_miss = NearMiss(NearMissKind.timing, minutes_since_last=minutes_since_hit)
    elif protein_miss:
        analysis.near_miss = NearMiss(NearMissKind.protein, protein=latest.protein)
    return analysis
