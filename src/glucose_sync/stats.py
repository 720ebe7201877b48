"""Estadísticas de glucosa (promedio, mínimo, máximo) por período y por día."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import pandas as pd

from glucose_sync.model import GlucoseRecord, TimeWindow


@dataclass(frozen=True)
class GlucoseStatistics:
    """Summary of the records in one period; values are None when empty."""

    average: float | None
    minimum: float | None
    maximum: float | None
    count: int
    period: str


def records_to_frame(records: Sequence[GlucoseRecord]) -> pd.DataFrame:
    """Convert records to DataFrame with local datetime, date and value."""
    rows = [
        {
            "datetime": r.local_time,
            "date": r.local_time.date(),
            "glucose_mg_dl": r.value,
            "meal_relation": r.meal_relation.value,
        }
        for r in records
    ]
    df = pd.DataFrame(rows)
    if df.empty:
        return df
    return df.sort_values("datetime").reset_index(drop=True)


def summarize(records: Sequence[GlucoseRecord], period: str) -> GlucoseStatistics:
    """Compute average/min/max/count over ``records``."""
    if not records:
        return GlucoseStatistics(None, None, None, 0, period)
    values = pd.Series([r.value for r in records], dtype="float64")
    return GlucoseStatistics(
        average=round(float(values.mean()), 1),
        minimum=float(values.min()),
        maximum=float(values.max()),
        count=int(values.count()),
        period=period,
    )


def daily_summary(glucose_events: pd.DataFrame) -> pd.DataFrame:
    """Aggregate glucose by day (count/min/max/avg)."""
    if glucose_events.empty:
        return pd.DataFrame(
            columns=["date", "glucose_count", "glucose_min", "glucose_max", "glucose_avg"]
        )
    g = glucose_events.groupby("date", as_index=False).agg(
        glucose_count=("glucose_mg_dl", "count"),
        glucose_min=("glucose_mg_dl", "min"),
        glucose_max=("glucose_mg_dl", "max"),
        glucose_avg=("glucose_mg_dl", "mean"),
    )
    g["glucose_avg"] = g["glucose_avg"].round(2)
    return g.sort_values("date").reset_index(drop=True)


def standard_periods(
    records: Sequence[GlucoseRecord], now: datetime
) -> list[GlucoseStatistics]:
    """Hoy, últimos 7 días y últimos 30 días.

    Args:
        records: Records covering at least the last 30 days.
        now: Aware reference time; "today" starts at its local midnight.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    periods = [
        ("Today", TimeWindow(start=midnight, end=now + timedelta(microseconds=1))),
        ("Last 7 Days", TimeWindow.lookback(now, timedelta(days=7))),
        ("Last 30 Days", TimeWindow.lookback(now, timedelta(days=30))),
    ]
    return [
        summarize([r for r in records if window.contains(r.instant)], name)
        for name, window in periods
    ]
