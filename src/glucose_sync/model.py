"""Modelos tipados para lecturas de glucosa y registros del almacén."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

MG_DL_PER_MMOL_L = 18.0

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class MealRelation(str, Enum):
    """Relation of a measurement to a meal."""

    UNKNOWN = "unknown"
    BEFORE = "before"
    AFTER = "after"
    FASTING = "fasting"
    GENERAL = "general"


class SpecimenSource(str, Enum):
    """Blood specimen the measurement was taken from."""

    CAPILLARY = "capillary"
    VENOUS = "venous"
    ARTERIAL = "arterial"
    UNKNOWN = "unknown"


class RecordingMethod(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


@dataclass(frozen=True)
class Reading:
    """One normalized glucose measurement (mg/dL, absolute instant)."""

    value: float
    timestamp: datetime
    meal_relation: MealRelation = MealRelation.UNKNOWN


@dataclass(frozen=True)
class DeviceDescriptor:
    """Device that produced or entered a record."""

    manufacturer: str
    model: str
    device_type: str = "phone"


@dataclass(frozen=True)
class Provenance:
    """Origin metadata attached to every record written to the store."""

    source_id: str
    recording_method: RecordingMethod
    device: DeviceDescriptor
    last_modified: datetime


@dataclass(frozen=True)
class GlucoseRecord:
    """Store-compatible glucose record.

    ``instant`` is UTC-aware; ``zone_offset`` is the local offset that was in
    effect at that instant. ``record_id`` is assigned by the store.
    """

    value: float
    instant: datetime
    zone_offset: timedelta
    meal_relation: MealRelation
    specimen_source: SpecimenSource
    provenance: Provenance
    record_id: str | None = None

    @property
    def local_time(self) -> datetime:
        """Instant rendered at the recorded offset."""
        return self.instant.astimezone(timezone(self.zone_offset))


@dataclass(frozen=True)
class StoredRecordKey:
    """Identity used to detect duplicate measurements."""

    instant_ms: int
    value: float


@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range ``[start, end)`` with aware datetimes."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("TimeWindow bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("TimeWindow end must not precede start")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @classmethod
    def lookback(cls, now: datetime, delta: timedelta) -> TimeWindow:
        """Window ending just after ``now`` and reaching ``delta`` back."""
        end = now + timedelta(microseconds=1)
        return cls(start=now - delta, end=end)

    @classmethod
    def covering(cls, records: Iterable[GlucoseRecord]) -> TimeWindow:
        """Smallest window containing every record instant.

        Raises:
            ValueError: If ``records`` is empty.
        """
        instants = [r.instant for r in records]
        if not instants:
            raise ValueError("Cannot build a window from zero records")
        return cls(start=min(instants), end=max(instants) + timedelta(seconds=1))

    def aligned(self, resolution: timedelta) -> TimeWindow:
        """Widen to whole multiples of ``resolution`` counted from the epoch."""
        start = _EPOCH + (self.start - _EPOCH) // resolution * resolution
        end = _EPOCH - (_EPOCH - self.end) // resolution * resolution
        return TimeWindow(start=start, end=end)


def mmol_to_mg_dl(mmol_l: float) -> float:
    return mmol_l * MG_DL_PER_MMOL_L
