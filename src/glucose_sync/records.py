"""Conversión de lecturas en registros con metadatos de procedencia."""

from __future__ import annotations

import platform
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Protocol

from dateutil import tz

from glucose_sync.errors import InvalidReadingError
from glucose_sync.model import (
    DeviceDescriptor,
    GlucoseRecord,
    MealRelation,
    Provenance,
    Reading,
    RecordingMethod,
    SpecimenSource,
)

DEFAULT_SOURCE_ID = "glucose_sync"


class DeviceInfoProvider(Protocol):
    """Capability that describes the device running the engine."""

    def describe(self) -> DeviceDescriptor: ...


class PlatformDeviceInfo:
    """Device descriptor taken from the running platform."""

    def describe(self) -> DeviceDescriptor:
        uname = platform.uname()
        manufacturer = uname.system or "unknown"
        model = uname.machine or uname.node or "unknown"
        return DeviceDescriptor(manufacturer=manufacturer, model=model)


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class RecordBuilder:
    """Build ``GlucoseRecord`` values from parsed readings."""

    def __init__(
        self,
        *,
        source_id: str = DEFAULT_SOURCE_ID,
        device_info: DeviceInfoProvider | None = None,
        zone: tzinfo | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Create a builder.

        Args:
            source_id: Identifier stored as the record's data origin.
            device_info: Device capability (default: the running platform).
            zone: Zone whose rules give each record's offset (default: system).
            clock: Source of the ``last_modified`` timestamp.
        """
        self._source_id = source_id
        self._device = (device_info or PlatformDeviceInfo()).describe()
        self._zone = zone or tz.tzlocal()
        self._clock = clock

    def build(
        self,
        reading: Reading,
        meal_relation: MealRelation | None = None,
        specimen_source: SpecimenSource | None = None,
    ) -> GlucoseRecord:
        """Convert one reading into a manually-entered record.

        Args:
            reading: Parsed reading.
            meal_relation: Override for the reading's meal relation.
            specimen_source: Specimen override (default: capillary).

        Returns:
            Record ready to be written.

        Raises:
            InvalidReadingError: If the value is not positive or the
                timestamp is naive.
        """
        if not reading.value > 0:
            raise InvalidReadingError(
                f"Glucose value must be positive, got {reading.value!r}"
            )
        if reading.timestamp.tzinfo is None:
            raise InvalidReadingError("Reading timestamp must be timezone-aware")

        instant = reading.timestamp.astimezone(timezone.utc)
        return GlucoseRecord(
            value=float(reading.value),
            instant=instant,
            zone_offset=self.offset_at(instant),
            meal_relation=meal_relation or reading.meal_relation,
            specimen_source=specimen_source or SpecimenSource.CAPILLARY,
            provenance=Provenance(
                source_id=self._source_id,
                recording_method=RecordingMethod.MANUAL,
                device=self._device,
                last_modified=self._clock(),
            ),
        )

    def build_all(
        self,
        readings: Iterable[Reading],
        meal_relation: MealRelation | None = None,
        specimen_source: SpecimenSource | None = None,
    ) -> list[GlucoseRecord]:
        return [self.build(r, meal_relation, specimen_source) for r in readings]

    def offset_at(self, instant: datetime) -> timedelta:
        """Offset of the zone at ``instant``; differs across DST changes."""
        offset = instant.astimezone(self._zone).utcoffset()
        return offset if offset is not None else timedelta(0)


def build_records(
    readings: Iterable[Reading],
    *,
    meal_relation: MealRelation | None = None,
    specimen_source: SpecimenSource | None = None,
    builder: RecordBuilder | None = None,
) -> list[GlucoseRecord]:
    """Build records for all readings with a default or given builder."""
    builder = builder or RecordBuilder()
    return builder.build_all(readings, meal_relation, specimen_source)
