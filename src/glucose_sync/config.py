from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta, tzinfo
from pathlib import Path

from dateutil import tz


def _env_float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)).strip())


def _env_int(key: str, default: int) -> int:
    return int(os.getenv(key, str(default)).strip())


@dataclass(frozen=True)
class SyncConfig:
    base_dir: Path = None  # type: ignore[assignment]

    time_zone: str = os.getenv("GLUCOSE_SYNC_TZ", "").strip()
    source_id: str = os.getenv("GLUCOSE_SYNC_SOURCE_ID", "glucose_sync").strip()
    log_level: str = os.getenv("GLUCOSE_SYNC_LOG_LEVEL", "INFO").strip()

    batch_size: int = _env_int("GLUCOSE_SYNC_BATCH_SIZE", 1000)
    max_retries: int = _env_int("GLUCOSE_SYNC_MAX_RETRIES", 3)
    base_delay: float = _env_float("GLUCOSE_SYNC_RETRY_DELAY", 2.0)  # seconds
    call_timeout: float = _env_float("GLUCOSE_SYNC_CALL_TIMEOUT", 30.0)  # seconds

    poll_interval: timedelta = timedelta(
        hours=_env_float("GLUCOSE_SYNC_POLL_HOURS", 12.0)
    )
    poll_window: timedelta = timedelta(hours=24)
    lookback: timedelta = timedelta(days=_env_int("GLUCOSE_SYNC_LOOKBACK_DAYS", 30))

    db_path: Path = None  # type: ignore[assignment]
    logs_dir: Path = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        base = self.base_dir
        if base is None:
            base = Path(os.getenv("GLUCOSE_SYNC_HOME", str(Path.home() / ".glucose_sync")))
        base = base.expanduser().resolve()
        object.__setattr__(self, "base_dir", base)

        def _p(env_key: str, current: Path | None, default: Path) -> Path:
            if current is not None:
                return Path(current).expanduser().resolve()
            raw = os.getenv(env_key, str(default))
            return Path(raw).expanduser().resolve()

        object.__setattr__(
            self, "db_path", _p("GLUCOSE_SYNC_DB", self.db_path, base / "glucose_sync.sqlite3")
        )
        object.__setattr__(
            self, "logs_dir", _p("GLUCOSE_SYNC_LOGS_DIR", self.logs_dir, base / "logs")
        )

        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")

    @property
    def zone(self) -> tzinfo:
        """Configured zone, or the system zone when unset or unknown."""
        if self.time_zone:
            zone = tz.gettz(self.time_zone)
            if zone is not None:
                return zone
        return tz.tzlocal()
