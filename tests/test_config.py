from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest
from dateutil import tz

from glucose_sync.config import SyncConfig
from glucose_sync.logging_utils import setup_logger


def test_paths_derive_from_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GLUCOSE_SYNC_HOME", str(tmp_path))
    monkeypatch.delenv("GLUCOSE_SYNC_DB", raising=False)
    monkeypatch.delenv("GLUCOSE_SYNC_LOGS_DIR", raising=False)
    cfg = SyncConfig()
    assert cfg.base_dir == tmp_path.resolve()
    assert cfg.db_path == tmp_path.resolve() / "glucose_sync.sqlite3"
    assert cfg.logs_dir == tmp_path.resolve() / "logs"


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GLUCOSE_SYNC_DB", str(tmp_path / "env.sqlite3"))
    cfg = SyncConfig(base_dir=tmp_path, db_path=tmp_path / "arg.sqlite3")
    assert cfg.db_path.name == "arg.sqlite3"


def test_defaults(tmp_path: Path) -> None:
    cfg = SyncConfig(base_dir=tmp_path)
    assert cfg.batch_size == 1000
    assert cfg.max_retries == 3
    assert cfg.poll_interval == timedelta(hours=12)
    assert cfg.poll_window == timedelta(hours=24)
    assert cfg.lookback == timedelta(days=30)


@pytest.mark.parametrize("field", ["batch_size", "max_retries"])
def test_rejects_non_positive_limits(tmp_path: Path, field: str) -> None:
    with pytest.raises(ValueError):
        SyncConfig(base_dir=tmp_path, **{field: 0})  # type: ignore[arg-type]


def test_unknown_zone_falls_back_to_local(tmp_path: Path) -> None:
    cfg = SyncConfig(base_dir=tmp_path, time_zone="Not/AZone")
    assert isinstance(cfg.zone, tz.tzlocal)
    named = SyncConfig(base_dir=tmp_path, time_zone="America/Argentina/Buenos_Aires")
    assert named.zone is not None
    assert not isinstance(named.zone, tz.tzlocal)


def test_setup_logger_writes_rotating_file(tmp_path: Path) -> None:
    logger = setup_logger("glucose_sync_test", tmp_path / "logs", "DEBUG", to_console=False)
    try:
        logging.getLogger("glucose_sync_test.child").info("hola")
        for handler in logger.handlers:
            handler.flush()
        text = (tmp_path / "logs" / "glucose_sync_test.log").read_text(encoding="utf-8")
        assert "INFO glucose_sync_test.child: hola" in text
        assert logger.level == logging.DEBUG
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
