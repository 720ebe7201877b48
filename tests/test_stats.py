from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pandas as pd

from fakes import make_record
from glucose_sync.stats import (
    daily_summary,
    records_to_frame,
    standard_periods,
    summarize,
)

NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


def test_summarize_empty_period() -> None:
    stats = summarize([], "Today")
    assert stats.count == 0
    assert stats.average is None
    assert stats.period == "Today"


def test_summarize_values() -> None:
    records = [make_record(v) for v in (100.0, 110.0, 135.0)]
    stats = summarize(records, "Last 7 Days")
    assert stats.average == 115.0
    assert stats.minimum == 100.0
    assert stats.maximum == 135.0
    assert stats.count == 3


def test_standard_periods_split_by_age() -> None:
    records = [
        make_record(100.0, NOW - timedelta(hours=2)),
        make_record(200.0, NOW - timedelta(days=3)),
        make_record(300.0, NOW - timedelta(days=20)),
        make_record(400.0, NOW - timedelta(days=45)),
    ]
    today, week, month = standard_periods(records, NOW)
    assert (today.period, today.count) == ("Today", 1)
    assert (week.period, week.count) == ("Last 7 Days", 2)
    assert (month.period, month.count) == ("Last 30 Days", 3)
    assert month.maximum == 300.0


def test_daily_summary_groups_by_local_date() -> None:
    records = [
        make_record(100.0, datetime(2025, 3, 1, 8, tzinfo=timezone.utc)),
        make_record(140.0, datetime(2025, 3, 1, 20, tzinfo=timezone.utc)),
        make_record(90.0, datetime(2025, 3, 2, 8, tzinfo=timezone.utc)),
    ]
    out = daily_summary(records_to_frame(records))
    assert list(out["glucose_count"]) == [2, 1]
    assert list(out["glucose_avg"]) == [120.0, 90.0]


def test_daily_summary_empty_frame() -> None:
    out = daily_summary(pd.DataFrame())
    assert out.empty
    assert "glucose_avg" in out.columns
