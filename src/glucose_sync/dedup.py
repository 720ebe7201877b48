"""Filtro de duplicados contra registros ya guardados."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from glucose_sync.model import GlucoseRecord, StoredRecordKey, TimeWindow
from glucose_sync.store import RecordLookup

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class DedupPolicy:
    """Store time resolution and value precision used to build keys."""

    time_resolution: timedelta = timedelta(seconds=1)
    value_precision: int = 1

    def __post_init__(self) -> None:
        if self.time_resolution <= timedelta(0):
            raise ValueError("time_resolution must be positive")


@dataclass(frozen=True)
class DedupResult:
    kept: tuple[GlucoseRecord, ...]
    duplicates: tuple[GlucoseRecord, ...]

    @property
    def skipped(self) -> int:
        return len(self.duplicates)


def record_key(
    record: GlucoseRecord, policy: DedupPolicy | None = None
) -> StoredRecordKey:
    """Truncated instant + rounded value; provenance is ignored."""
    policy = policy or DedupPolicy()
    resolution_ms = max(1, policy.time_resolution // timedelta(milliseconds=1))
    instant_ms = (record.instant - _EPOCH) // timedelta(milliseconds=1)
    return StoredRecordKey(
        instant_ms=instant_ms - instant_ms % resolution_ms,
        value=round(record.value, policy.value_precision),
    )


def filter_duplicates(
    candidates: Sequence[GlucoseRecord],
    stored: Iterable[GlucoseRecord],
    policy: DedupPolicy | None = None,
) -> DedupResult:
    """Drop candidates whose key matches a stored record or an earlier candidate.

    Args:
        candidates: Records about to be written, in input order.
        stored: Records already in the store for the same window.
        policy: Key policy.

    Returns:
        Kept and dropped candidates, both in input order.
    """
    policy = policy or DedupPolicy()
    seen = {record_key(r, policy) for r in stored}
    kept: list[GlucoseRecord] = []
    duplicates: list[GlucoseRecord] = []
    for record in candidates:
        key = record_key(record, policy)
        if key in seen:
            duplicates.append(record)
            continue
        seen.add(key)
        kept.append(record)
    return DedupResult(kept=tuple(kept), duplicates=tuple(duplicates))


async def dedup_against_store(
    candidates: Sequence[GlucoseRecord],
    window: TimeWindow,
    lookup: RecordLookup,
    policy: DedupPolicy | None = None,
) -> DedupResult:
    """Read what the store holds for ``window`` and filter ``candidates``."""
    stored = await lookup.read_records(window)
    result = filter_duplicates(candidates, stored, policy)
    logger.debug(
        "Dedup in %s..%s: %d stored, %d kept, %d duplicates",
        window.start.isoformat(),
        window.end.isoformat(),
        len(stored),
        len(result.kept),
        result.skipped,
    )
    return result
