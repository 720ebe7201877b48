"""Lectura de exportaciones CSV de glucómetros."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from pathlib import Path

from glucose_sync.detect import Dialect, detect_format
from glucose_sync.errors import ParseFatalError
from glucose_sync.parser import ParseResult, parse
from glucose_sync.sources.base import DataSource, SourcePaths

logger = logging.getLogger(__name__)

_PATTERNS = ("*.csv", "*.CSV", "*.txt")


@dataclass(frozen=True)
class CsvExportPaths(SourcePaths):
    """Paths for meter CSV exports."""

    # root: folder containing the exported *.csv files


class CsvExportSource(DataSource):
    """CSV export source: finds, reads and parses meter exports."""

    def validate(self) -> None:
        if not self._paths.root.exists():
            raise FileNotFoundError(str(self._paths.root))

    def export_files(self) -> list[Path]:
        """Export files in the folder, newest first."""
        files = {p for pattern in _PATTERNS for p in self._paths.root.glob(pattern)}
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def newest_csv(self) -> Path:
        """Return newest export by mtime."""
        files = self.export_files()
        if not files:
            raise FileNotFoundError(f"No CSV exports in {self._paths.root}")
        return files[0]

    def read_lines(self, path: Path) -> list[str]:
        """Read ``path`` as text; undecodable bytes are replaced, not fatal.

        Args:
            path: Export file.

        Returns:
            Non-blank lines, stripped of trailing newlines.

        Raises:
            ParseFatalError: If the file cannot be opened or read.
        """
        try:
            text = path.read_text(encoding="utf-8-sig", errors="replace")
        except OSError as exc:
            raise ParseFatalError(f"Cannot read {path}: {exc}") from exc
        lines = [line.rstrip("\r") for line in text.split("\n")]
        return [line for line in lines if line.strip()]

    def load(
        self,
        path: Path,
        *,
        now: datetime | None = None,
        zone: tzinfo | None = None,
    ) -> ParseResult:
        """Read, detect and parse one export file."""
        lines = self.read_lines(path)
        dialect = detect_format(lines)
        if dialect is Dialect.UNKNOWN:
            logger.warning("Unrecognized format in %s, using tolerant parsing", path)
        return parse(lines, dialect, now=now, zone=zone)
