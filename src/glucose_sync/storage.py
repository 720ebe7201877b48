"""Persistencia SQLite: almacén local de glucosa, ajustes y tokens."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pandas as pd

from glucose_sync.access import Tier
from glucose_sync.errors import TokenExpiredError
from glucose_sync.model import (
    DeviceDescriptor,
    GlucoseRecord,
    MealRelation,
    Provenance,
    RecordingMethod,
    SpecimenSource,
    TimeWindow,
)
from glucose_sync.store import (
    ChangesDone,
    ChangesMessage,
    ChangesPage,
    FailedRecord,
    RecordChange,
    WriteOutcome,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS glucose_records (
    id TEXT PRIMARY KEY,
    instant_ms INTEGER NOT NULL,
    zone_offset_s INTEGER NOT NULL,
    value REAL NOT NULL CHECK (value > 0),
    meal_relation TEXT NOT NULL,
    specimen_source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    recording_method TEXT NOT NULL,
    device_manufacturer TEXT,
    device_model TEXT,
    device_type TEXT,
    last_modified TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_glucose_records_instant
ON glucose_records(instant_ms);

CREATE TABLE IF NOT EXISTS record_changes (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('upsert', 'delete'))
);
"""

_TOKEN_PREFIX = "chg:"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class AppSettings:
    """Ajustes persistidos de la app (chequeo en segundo plano, comida)."""

    background_check_enabled: bool
    background_check_interval_hours: float
    default_meal_relation: MealRelation


class SQLiteStore:
    """Local health store backed by one SQLite file.

    Implements the ``HealthStore`` and ``TokenStore`` protocols. Blocking
    database work runs in a worker thread for the async methods.
    """

    def __init__(self, db_path: Path, *, page_size: int = 100) -> None:
        """Create store and ensure schema exists."""
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._db_path = db_path
        self._page_size = page_size
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    # -- HealthStore -------------------------------------------------------

    async def check_availability(self) -> bool:
        return await asyncio.to_thread(self.is_available)

    async def check_permission_tiers(self) -> set[Tier]:
        return await asyncio.to_thread(self.granted_tiers)

    async def write_records(self, records: Sequence[GlucoseRecord]) -> WriteOutcome:
        return await asyncio.to_thread(self.insert_records, records)

    async def read_records(self, window: TimeWindow) -> list[GlucoseRecord]:
        return await asyncio.to_thread(self.fetch_records, window)

    async def read_changes(self, token: str) -> ChangesMessage:
        return await asyncio.to_thread(self.changes_since, token)

    async def get_changes_token(self) -> str:
        return await asyncio.to_thread(self.current_token)

    # -- availability / permissions ----------------------------------------

    def is_available(self) -> bool:
        """Disponible si el archivo existe y no fue deshabilitado."""
        if not self._db_path.exists():
            return False
        return self._get_value("store_available", "1") == "1"

    def set_available(self, available: bool) -> None:
        self._set_values({"store_available": "1" if available else "0"})

    def granted_tiers(self) -> set[Tier]:
        raw = self._get_value("granted_tiers", "[]")
        return {Tier(item) for item in _parse_json_list(raw) if _is_tier(item)}

    def grant_tiers(self, tiers: Iterable[Tier]) -> None:
        """Record the tiers this store has been told the user granted."""
        payload = json.dumps(sorted(t.value for t in tiers))
        self._set_values({"granted_tiers": payload})

    # -- settings / tokens -------------------------------------------------

    def load_settings(self) -> AppSettings:
        """Devuelve ajustes guardados o defaults."""
        defaults = {
            "background_check_enabled": "0",
            "background_check_interval": "12",
            "default_meal_type": MealRelation.UNKNOWN.value,
        }
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM app_config").fetchall()
        values = {row["key"]: row["value"] for row in rows}
        merged = {**defaults, **values}
        return AppSettings(
            background_check_enabled=merged["background_check_enabled"] == "1",
            background_check_interval_hours=_parse_float(
                merged["background_check_interval"], 12.0
            ),
            default_meal_relation=_parse_meal(merged["default_meal_type"]),
        )

    def save_settings(self, settings: AppSettings) -> None:
        self._set_values(
            {
                "background_check_enabled": (
                    "1" if settings.background_check_enabled else "0"
                ),
                "background_check_interval": str(
                    settings.background_check_interval_hours
                ),
                "default_meal_type": settings.default_meal_relation.value,
            }
        )

    def load_token(self, key: str) -> str | None:
        return self._get_value(f"token:{key}", None)

    def save_token(self, key: str, token: str | None) -> None:
        if token is None:
            with self._connect() as conn:
                conn.execute("DELETE FROM app_config WHERE key = ?", (f"token:{key}",))
                conn.commit()
            return
        self._set_values({f"token:{key}": token})

    # -- records -----------------------------------------------------------

    def insert_records(self, records: Sequence[GlucoseRecord]) -> WriteOutcome:
        """Insert records, assigning ids. Rejected rows are reported, not raised."""
        succeeded: list[GlucoseRecord] = []
        failed: list[FailedRecord] = []
        with self._connect() as conn:
            for record in records:
                record_id = record.record_id or uuid.uuid4().hex
                try:
                    conn.execute(
                        """
                        INSERT INTO glucose_records(
                            id, instant_ms, zone_offset_s, value, meal_relation,
                            specimen_source, source_id, recording_method,
                            device_manufacturer, device_model, device_type,
                            last_modified
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            instant_ms=excluded.instant_ms,
                            zone_offset_s=excluded.zone_offset_s,
                            value=excluded.value,
                            meal_relation=excluded.meal_relation,
                            specimen_source=excluded.specimen_source,
                            last_modified=excluded.last_modified
                        """,
                        (record_id, *_record_values(record)),
                    )
                except sqlite3.IntegrityError as exc:
                    failed.append(FailedRecord(record=record, reason=str(exc)))
                    continue
                conn.execute(
                    "INSERT INTO record_changes(record_id, kind) VALUES (?, 'upsert')",
                    (record_id,),
                )
                succeeded.append(_with_id(record, record_id))
            conn.commit()
        return WriteOutcome(succeeded=tuple(succeeded), failed=tuple(failed))

    def delete_records(self, record_ids: Iterable[str]) -> int:
        """Borra registros y deja el cambio en el historial."""
        deleted = 0
        with self._connect() as conn:
            for record_id in record_ids:
                cur = conn.execute(
                    "DELETE FROM glucose_records WHERE id = ?", (record_id,)
                )
                if cur.rowcount:
                    deleted += 1
                    conn.execute(
                        "INSERT INTO record_changes(record_id, kind) "
                        "VALUES (?, 'delete')",
                        (record_id,),
                    )
            conn.commit()
        return deleted

    def fetch_records(self, window: TimeWindow | None = None) -> list[GlucoseRecord]:
        query = "SELECT * FROM glucose_records"
        params: tuple[object, ...] = ()
        if window is not None:
            query += " WHERE instant_ms >= ? AND instant_ms < ?"
            params = (_to_ms(window.start), _to_ms(window.end))
        query += " ORDER BY instant_ms, id"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def load_records_frame(self, window: TimeWindow | None = None) -> pd.DataFrame:
        """Carga registros como DataFrame (datetime, glucose_mg_dl, meal_relation)."""
        records = self.fetch_records(window)
        out = pd.DataFrame(
            [
                {
                    "record_id": r.record_id,
                    "datetime": r.local_time,
                    "glucose_mg_dl": r.value,
                    "meal_relation": r.meal_relation.value,
                    "source_id": r.provenance.source_id,
                }
                for r in records
            ]
        )
        if out.empty:
            return pd.DataFrame(
                columns=[
                    "record_id",
                    "datetime",
                    "glucose_mg_dl",
                    "meal_relation",
                    "source_id",
                ]
            )
        return out

    # -- change stream -----------------------------------------------------

    def current_token(self) -> str:
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(seq) AS seq FROM record_changes").fetchone()
        seq = row["seq"] if row is not None and row["seq"] is not None else 0
        return f"{_TOKEN_PREFIX}{max(int(seq), self._floor())}"

    def changes_since(self, token: str) -> ChangesMessage:
        """Next page of changes after ``token``, or ``ChangesDone``.

        Raises:
            TokenExpiredError: If the token is malformed, from the future, or
                older than the pruned part of the change log.
        """
        seq = _parse_token(token)
        with self._connect() as conn:
            max_row = conn.execute(
                "SELECT MAX(seq) AS seq FROM record_changes"
            ).fetchone()
            max_seq = int(max_row["seq"] or 0)
            floor = self._floor(conn)
            if seq < floor or seq > max(max_seq, floor):
                raise TokenExpiredError(f"Token {token!r} is no longer valid")

            rows = conn.execute(
                """
                SELECT c.seq, c.record_id, c.kind, r.*
                FROM record_changes c
                LEFT JOIN glucose_records r ON r.id = c.record_id
                WHERE c.seq > ?
                ORDER BY c.seq
                LIMIT ?
                """,
                (seq, self._page_size),
            ).fetchall()

        if not rows:
            return ChangesDone(resume_token=f"{_TOKEN_PREFIX}{seq}")
        changes = tuple(
            RecordChange(
                record_id=row["record_id"],
                record=(
                    _row_to_record(row)
                    if row["kind"] == "upsert" and row["id"] is not None
                    else None
                ),
            )
            for row in rows
        )
        return ChangesPage(changes=changes, token=f"{_TOKEN_PREFIX}{rows[-1]['seq']}")

    def prune_changes(self, keep_last: int = 0) -> int:
        """Drop old change-log entries; tokens before the cut become expired."""
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(seq) AS seq FROM record_changes").fetchone()
            max_seq = int(row["seq"] or 0)
            cutoff = max(max_seq - keep_last, self._floor(conn))
            cur = conn.execute("DELETE FROM record_changes WHERE seq <= ?", (cutoff,))
            conn.execute(
                """
                INSERT INTO app_config(key, value) VALUES('changes_floor', ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                (str(cutoff),),
            )
            conn.commit()
        return int(cur.rowcount)

    # -- helpers -----------------------------------------------------------

    def _floor(self, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            return int(self._get_value("changes_floor", "0") or 0)
        row = conn.execute(
            "SELECT value FROM app_config WHERE key = 'changes_floor'"
        ).fetchone()
        return int(row["value"]) if row is not None else 0

    def _get_value(self, key: str, default: Any) -> Any:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM app_config WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return default
        return row["value"]

    def _set_values(self, payload: dict[str, str]) -> None:
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO app_config(key, value) VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value
                """,
                payload.items(),
            )
            conn.commit()


def _to_ms(moment: datetime) -> int:
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def _record_values(record: GlucoseRecord) -> tuple[object, ...]:
    device = record.provenance.device
    return (
        _to_ms(record.instant),
        int(record.zone_offset.total_seconds()),
        record.value,
        record.meal_relation.value,
        record.specimen_source.value,
        record.provenance.source_id,
        record.provenance.recording_method.value,
        device.manufacturer,
        device.model,
        device.device_type,
        record.provenance.last_modified.isoformat(),
    )


def _with_id(record: GlucoseRecord, record_id: str) -> GlucoseRecord:
    return GlucoseRecord(
        value=record.value,
        instant=record.instant,
        zone_offset=record.zone_offset,
        meal_relation=record.meal_relation,
        specimen_source=record.specimen_source,
        provenance=record.provenance,
        record_id=record_id,
    )


def _row_to_record(row: sqlite3.Row) -> GlucoseRecord:
    return GlucoseRecord(
        value=float(row["value"]),
        instant=_EPOCH + timedelta(milliseconds=int(row["instant_ms"])),
        zone_offset=timedelta(seconds=int(row["zone_offset_s"])),
        meal_relation=_parse_meal(row["meal_relation"]),
        specimen_source=SpecimenSource(row["specimen_source"]),
        provenance=Provenance(
            source_id=row["source_id"],
            recording_method=RecordingMethod(row["recording_method"]),
            device=DeviceDescriptor(
                manufacturer=row["device_manufacturer"] or "unknown",
                model=row["device_model"] or "unknown",
                device_type=row["device_type"] or "unknown",
            ),
            last_modified=datetime.fromisoformat(row["last_modified"]),
        ),
        record_id=row["id"],
    )


def _parse_token(token: str) -> int:
    if not isinstance(token, str) or not token.startswith(_TOKEN_PREFIX):
        raise TokenExpiredError(f"Malformed changes token {token!r}")
    try:
        seq = int(token[len(_TOKEN_PREFIX) :])
    except ValueError as exc:
        raise TokenExpiredError(f"Malformed changes token {token!r}") from exc
    if seq < 0:
        raise TokenExpiredError(f"Malformed changes token {token!r}")
    return seq


def _parse_json_list(raw: str) -> list[str]:
    try:
        parsed: Any = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


def _is_tier(value: str) -> bool:
    return value in {t.value for t in Tier}


def _parse_meal(raw: str) -> MealRelation:
    try:
        return MealRelation(raw)
    except ValueError:
        return MealRelation.UNKNOWN


def _parse_float(raw: str, default: float) -> float:
    try:
        return float(raw)
    except ValueError:
        return default
