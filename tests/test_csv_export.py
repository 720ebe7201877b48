from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from glucose_sync.detect import Dialect
from glucose_sync.errors import ParseFatalError
from glucose_sync.sources.csv_export import CsvExportPaths, CsvExportSource

NOW = datetime(2025, 3, 10, 12, tzinfo=timezone.utc)


def test_validate_raises_when_root_missing(tmp_path: Path) -> None:
    missing = tmp_path / "noexiste"
    src = CsvExportSource(CsvExportPaths(root=missing))
    with pytest.raises(FileNotFoundError, match=str(missing)):
        src.validate()


def test_newest_csv_raises_when_no_files(tmp_path: Path) -> None:
    src = CsvExportSource(CsvExportPaths(root=tmp_path))
    with pytest.raises(FileNotFoundError, match="No CSV exports"):
        src.newest_csv()


def test_newest_csv_returns_newest_by_mtime(tmp_path: Path) -> None:
    old_f = tmp_path / "export_old.csv"
    new_f = tmp_path / "export_new.csv"
    old_f.write_text("a", encoding="utf-8")
    new_f.write_text("b", encoding="utf-8")
    os.utime(old_f, (1_000_000, 1_000_000))
    os.utime(new_f, (2_000_000, 2_000_000))

    src = CsvExportSource(CsvExportPaths(root=tmp_path))
    assert src.newest_csv() == new_f


def test_read_lines_drops_blanks_and_bom(tmp_path: Path) -> None:
    p = tmp_path / "export.csv"
    p.write_bytes(b"\xef\xbb\xbfDate,Time,Glucose\r\n\r\n03/01/2025,08:00,110\r\n")
    src = CsvExportSource(CsvExportPaths(root=tmp_path))
    assert src.read_lines(p) == ["Date,Time,Glucose", "03/01/2025,08:00,110"]


def test_read_lines_replaces_undecodable_bytes(tmp_path: Path) -> None:
    p = tmp_path / "export.csv"
    p.write_bytes(b"Fecha,Glucosa\n\xff\xfe,120\n")
    lines = CsvExportSource(CsvExportPaths(root=tmp_path)).read_lines(p)
    assert len(lines) == 2
    assert "�" in lines[1]


def test_unreadable_file_is_fatal(tmp_path: Path) -> None:
    src = CsvExportSource(CsvExportPaths(root=tmp_path))
    with pytest.raises(ParseFatalError):
        src.read_lines(tmp_path / "missing.csv")


def test_load_detects_and_parses(tmp_path: Path) -> None:
    p = tmp_path / "jazz.csv"
    p.write_text(
        "AgaMatrix Jazz\nDate,Time,Glucose\n03/01/2025,08:00,110\n",
        encoding="utf-8",
    )
    result = CsvExportSource(CsvExportPaths(root=tmp_path)).load(
        p, now=NOW, zone=timezone.utc
    )
    assert result.dialect == Dialect.VENDOR_A
    assert [r.value for r in result.readings] == [110.0]
