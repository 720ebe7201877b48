"""Clases base para fuentes de datos."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class SourcePaths:
    """Folder an export source reads from."""

    root: Path


class DataSource(ABC):
    """Abstract file-backed source of glucose exports."""

    def __init__(self, paths: SourcePaths) -> None:
        self._paths = paths

    @property
    def root(self) -> Path:
        return self._paths.root

    @abstractmethod
    def validate(self) -> None:
        """Check that the source folder exists.

        Raises:
            FileNotFoundError: If the folder is missing.
        """

    @abstractmethod
    def read_lines(self, path: Path) -> list[str]:
        """Return the non-blank lines of one export file.

        Raises:
            ParseFatalError: If the file cannot be read.
        """
