"""Detección del dialecto de exportaciones CSV de glucosa."""

from __future__ import annotations

import re
from collections.abc import Sequence
from enum import Enum

DATE_RE = re.compile(r"^\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}$")
TIME_RE = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?( ?[APap][Mm])?$")

_VENDOR_MARKERS = ("agamatrix", "wavesense", "jazz")
_UNIT_MARKERS = ("mg/dl", "mmol/l")


class Dialect(str, Enum):
    """Known CSV export variants."""

    VENDOR_A = "vendor_a"
    GENERIC_DATETIME = "generic_datetime"
    GENERIC_DELIMITED = "generic_delimited"
    UNKNOWN = "unknown"


def detect_format(lines: Sequence[str]) -> Dialect:
    """Classify raw lines into a dialect.

    Markers are checked in priority order over the whole line set: vendor
    names, then glucose keywords and units, then a date/time header, then any
    line with at least three comma-separated fields.

    Args:
        lines: Non-blank lines of the file, in order.

    Returns:
        The first matching dialect, or ``Dialect.UNKNOWN``.
    """
    lowered = [line.lower() for line in lines]
    if not lowered:
        return Dialect.UNKNOWN

    if any(marker in line for line in lowered for marker in _VENDOR_MARKERS):
        return Dialect.VENDOR_A
    if any(_has_glucose_keyword(line) for line in lowered):
        return Dialect.GENERIC_DATETIME
    if any(_has_date_and_time(line) for line in lowered):
        return Dialect.GENERIC_DATETIME
    if any(len(line.split(",")) >= 3 for line in lowered):
        return Dialect.GENERIC_DELIMITED
    return Dialect.UNKNOWN


def _has_glucose_keyword(line: str) -> bool:
    if "blood glucose data" in line:
        return True
    if "glucose" in line and "date" in line:
        return True
    return any(unit in line for unit in _UNIT_MARKERS)


def _has_date_and_time(line: str) -> bool:
    """Cabecera con palabras date/time, o fila con tokens fecha y hora."""
    if "date" in line and "time" in line:
        return True
    fields = [f.strip().strip('"') for f in re.split(r"[,;\t]", line)]
    has_date = any(DATE_RE.match(f) for f in fields)
    has_time = any(TIME_RE.match(f) for f in fields)
    return has_date and has_time
