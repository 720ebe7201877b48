"""Parser tolerante de lecturas de glucosa desde líneas CSV."""

from __future__ import annotations

import csv
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo

from dateutil import parser as date_parser
from dateutil import tz

from glucose_sync.detect import DATE_RE, TIME_RE, Dialect
from glucose_sync.model import MealRelation, Reading, mmol_to_mg_dl

logger = logging.getLogger(__name__)

# US ordering first, as the vendor exports use it.
_DATE_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%Y-%m-%d",
)
_TIME_FORMATS: tuple[str, ...] = (
    "%H:%M:%S",
    "%H:%M",
    "%I:%M:%S %p",
    "%I:%M %p",
    "%I:%M%p",
)
_DATETIME_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%m-%d-%Y %H:%M:%S",
)

_NUMBER_RE = re.compile(r"(\d+(?:\.\d+)?)")
_VALUE_FIELD_RE = re.compile(
    r"^(\d+(?:\.\d+)?)\s*(mg/dl|mmol/l)?$", re.IGNORECASE
)
_HEADER_SCAN_LIMIT = 10
_DIAGNOSTIC_SET: tuple[tuple[float, int], ...] = ((120.0, 0), (115.0, 4), (105.0, 8))


@dataclass(frozen=True)
class ParseIssue:
    """A recoverable problem with one row; the row was skipped."""

    line_number: int
    line: str
    reason: str


@dataclass
class ParseLog:
    """Mutable collector filled while a reading generator is consumed."""

    issues: list[ParseIssue] = field(default_factory=list)
    synthesized_timestamps: int = 0

    def skip(self, line_number: int, line: str, reason: str) -> None:
        logger.debug("Skipping line %d (%s): %r", line_number, reason, line)
        self.issues.append(ParseIssue(line_number, line, reason))


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing one file.

    ``diagnostic`` is True when nothing could be extracted and ``readings``
    holds the fixed diagnostic set instead of data from the file. Callers
    must not treat those readings as real measurements.

    ``synthesized_timestamps`` counts readings whose time was not in the file
    and was estimated relative to the parse time. Those timestamps are a
    best-effort guess and may be wrong.
    """

    readings: tuple[Reading, ...]
    dialect: Dialect
    skipped: tuple[ParseIssue, ...] = ()
    synthesized_timestamps: int = 0
    diagnostic: bool = False

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def is_empty(self) -> bool:
        """True when the file itself produced no readings."""
        return self.diagnostic or not self.readings


@dataclass(frozen=True)
class _Layout:
    header_index: int
    delimiter: str
    value_idx: int
    date_idx: int | None = None
    time_idx: int | None = None
    datetime_idx: int | None = None
    meal_idx: int | None = None
    mmol: bool = False


def parse(
    lines: Sequence[str],
    dialect: Dialect,
    *,
    now: datetime | None = None,
    zone: tzinfo | None = None,
) -> ParseResult:
    """Parse classified lines into readings.

    Malformed rows are skipped and reported in ``ParseResult.skipped``; this
    function does not raise on readable content.

    Args:
        lines: Non-blank lines of the file.
        dialect: Result of ``detect_format`` for the same lines.
        now: Reference time for synthesized timestamps (default: current time).
        zone: Zone used to localize naive timestamps (default: system zone).

    Returns:
        The parse result. When zero readings were found, the diagnostic set
        is returned with ``diagnostic=True``.
    """
    zone = zone or tz.tzlocal()
    now = now or datetime.now(tz=zone)
    log = ParseLog()
    readings = tuple(iter_readings(lines, dialect, now=now, zone=zone, log=log))

    if not readings:
        logger.warning(
            "No readings found in %d lines (%s); returning diagnostic set",
            len(lines),
            dialect.value,
        )
        return ParseResult(
            readings=_diagnostic_readings(now),
            dialect=dialect,
            skipped=tuple(log.issues),
            diagnostic=True,
        )

    logger.info(
        "Parsed %d readings (%s), skipped %d rows, %d synthesized timestamps",
        len(readings),
        dialect.value,
        len(log.issues),
        log.synthesized_timestamps,
    )
    return ParseResult(
        readings=readings,
        dialect=dialect,
        skipped=tuple(log.issues),
        synthesized_timestamps=log.synthesized_timestamps,
    )


def iter_readings(
    lines: Sequence[str],
    dialect: Dialect,
    *,
    now: datetime | None = None,
    zone: tzinfo | None = None,
    log: ParseLog | None = None,
) -> Iterator[Reading]:
    """Lazily yield readings; restartable for the same ``lines`` and ``now``."""
    zone = zone or tz.tzlocal()
    now = now or datetime.now(tz=zone)
    log = log if log is not None else ParseLog()

    if dialect is Dialect.VENDOR_A:
        layout = _vendor_layout(lines)
        if layout is not None:
            yield from _iter_layout(lines, layout, zone, log)
            return
        logger.warning("Vendor header not found, trying generic layout")

    if dialect is not Dialect.UNKNOWN:
        layout = _generic_layout(lines)
        if layout is not None:
            attempt = ParseLog()
            readings = list(_iter_layout(lines, layout, zone, attempt))
            if readings:
                log.issues.extend(attempt.issues)
                yield from readings
                return
            logger.debug("Header-mapped layout produced nothing, using fallback")

    yield from _iter_tolerant(lines, now, zone, log)


def parse_meal_relation(text: str) -> MealRelation:
    """Map free text like 'Before Meal' or 'Ayunas' to a meal relation."""
    lowered = text.strip().lower()
    if "before" in lowered or lowered.startswith("pre") or "antes" in lowered:
        return MealRelation.BEFORE
    if "after" in lowered or lowered.startswith("post") or "desp" in lowered:
        return MealRelation.AFTER
    if "fasting" in lowered or "ayun" in lowered:
        return MealRelation.FASTING
    if "general" in lowered:
        return MealRelation.GENERAL
    return MealRelation.UNKNOWN


def parse_date_time(date_str: str, time_str: str, zone: tzinfo) -> datetime | None:
    """Combine separate date and time fields into an aware datetime.

    A date without a parseable time maps to midnight.
    """
    date_str = date_str.strip()
    time_str = time_str.strip()
    for date_fmt in _DATE_FORMATS:
        try:
            day = datetime.strptime(date_str, date_fmt).date()
        except ValueError:
            continue
        return _combine(day, _parse_time(time_str), zone)
    return None


def parse_datetime_text(text: str, zone: tzinfo) -> datetime | None:
    """Parse a combined date-time field (ISO 8601 and common exports)."""
    text = text.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None and re.search(r"\d[-/.]\d", text):
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            parsed = None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=zone)
    return parsed


def _parse_time(time_str: str) -> time:
    if not time_str:
        return time(0, 0)
    for time_fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(time_str.upper(), time_fmt).time()
        except ValueError:
            continue
    return time(0, 0)


def _combine(day: date, at: time, zone: tzinfo) -> datetime:
    return datetime.combine(day, at).replace(tzinfo=zone)


def _extract_number(text: str) -> float | None:
    """Primer número del campo ('120 mg/dL' -> 120.0)."""
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    return float(match.group(1))


def _sniff_delimiter(line: str) -> str:
    counts = {d: line.count(d) for d in (",", ";", "\t")}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] else ","


def _split(line: str, delimiter: str) -> list[str]:
    try:
        fields = next(csv.reader([line], delimiter=delimiter), [])
    except csv.Error:
        fields = line.split(delimiter)
    return [f.strip().strip('"').strip() for f in fields]


def _vendor_layout(lines: Sequence[str]) -> _Layout | None:
    for index, line in enumerate(lines):
        lowered = line.lower()
        if (
            "date" in lowered
            and ("time" in lowered or "clock" in lowered)
            and "glucose" in lowered
        ):
            delimiter = _sniff_delimiter(line)
            header = [h.lower() for h in _split(line, delimiter)]
            return _layout_from_header(index, delimiter, header)
    return None


def _generic_layout(lines: Sequence[str]) -> _Layout | None:
    for index, line in enumerate(lines[:_HEADER_SCAN_LIMIT]):
        delimiter = _sniff_delimiter(line)
        header = [h.lower() for h in _split(line, delimiter)]
        layout = _layout_from_header(index, delimiter, header)
        if layout is not None:
            return layout
    return None


def _layout_from_header(
    index: int, delimiter: str, header: list[str]
) -> _Layout | None:
    cols: dict[str, int] = {}
    for pos, name in enumerate(header):
        if "timestamp" in name or ("date" in name and "time" in name):
            kind = "datetime"
        elif "date" in name:
            kind = "date"
        elif "time" in name or "clock" in name:
            kind = "time"
        elif any(k in name for k in ("glucose", "reading", "value", "result")):
            kind = "value"
        elif any(k in name for k in ("meal", "event", "relation")):
            kind = "meal"
        else:
            continue
        cols.setdefault(kind, pos)

    if "value" not in cols or not ("datetime" in cols or "date" in cols):
        return None
    return _Layout(
        header_index=index,
        delimiter=delimiter,
        value_idx=cols["value"],
        date_idx=cols.get("date"),
        time_idx=cols.get("time"),
        datetime_idx=cols.get("datetime"),
        meal_idx=cols.get("meal"),
        mmol="mmol" in header[cols["value"]],
    )


def _iter_layout(
    lines: Sequence[str], layout: _Layout, zone: tzinfo, log: ParseLog
) -> Iterator[Reading]:
    required = [layout.value_idx]
    if layout.datetime_idx is not None:
        required.append(layout.datetime_idx)
    elif layout.date_idx is not None:
        required.append(layout.date_idx)

    for number in range(layout.header_index + 1, len(lines)):
        line = lines[number]
        fields = _split(line, layout.delimiter)
        if len(fields) <= max(required):
            log.skip(number, line, "too few fields")
            continue

        value = _extract_number(fields[layout.value_idx])
        if value is None or value <= 0:
            log.skip(number, line, "no positive glucose value")
            continue
        if layout.mmol:
            value = mmol_to_mg_dl(value)

        if layout.datetime_idx is not None:
            when = parse_datetime_text(fields[layout.datetime_idx], zone)
        else:
            time_str = _field(fields, layout.time_idx)
            when = parse_date_time(fields[layout.date_idx or 0], time_str, zone)
        if when is None:
            log.skip(number, line, "unparseable timestamp")
            continue

        meal = MealRelation.UNKNOWN
        if layout.meal_idx is not None:
            meal = parse_meal_relation(_field(fields, layout.meal_idx))
        yield Reading(value=value, timestamp=when, meal_relation=meal)


def _field(fields: list[str], index: int | None) -> str:
    if index is None or index >= len(fields):
        return ""
    return fields[index]


def _iter_tolerant(
    lines: Sequence[str], now: datetime, zone: tzinfo, log: ParseLog
) -> Iterator[Reading]:
    """Fallback: primer número positivo por fila, fecha si existe."""
    header_index = next(
        (
            i
            for i, line in enumerate(lines)
            if any(k in line.lower() for k in ("date", "time", "glucose"))
        ),
        -1,
    )
    total = len(lines)
    for number in range(header_index + 1, total):
        line = lines[number]
        fields = _split(line, _sniff_delimiter(line))
        date_str = ""
        time_str = ""
        value: float | None = None
        for item in fields:
            if not date_str and DATE_RE.match(item):
                date_str = item
            elif not time_str and TIME_RE.match(item):
                time_str = item
            elif value is None:
                match = _VALUE_FIELD_RE.match(item)
                if match is not None:
                    value = float(match.group(1))
                    if match.group(2) and match.group(2).lower() == "mmol/l":
                        value = mmol_to_mg_dl(value)

        if value is None or value <= 0:
            log.skip(number, line, "no positive glucose value")
            continue

        when = parse_date_time(date_str, time_str, zone) if date_str else None
        if when is None:
            # Estimated: later rows map to later times.
            when = now - timedelta(hours=total - number)
            log.synthesized_timestamps += 1
        yield Reading(value=value, timestamp=when)


def _diagnostic_readings(now: datetime) -> tuple[Reading, ...]:
    return tuple(
        Reading(value=value, timestamp=now - timedelta(hours=hours))
        for value, hours in _DIAGNOSTIC_SET
    )
