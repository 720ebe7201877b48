"""Excepciones del motor de sincronización."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from glucose_sync.access import Tier


class GlucoseSyncError(Exception):
    """Base exception for glucose sync errors."""


class ParseFatalError(GlucoseSyncError):
    """The input file could not be read at all."""


class InvalidReadingError(GlucoseSyncError, ValueError):
    """A reading cannot become a record (non-positive value)."""


class PermissionDeniedError(GlucoseSyncError):
    """The current access snapshot lacks the tier an operation needs."""

    def __init__(self, tier: Tier, message: str | None = None) -> None:
        self.tier = tier
        super().__init__(message or f"Permission tier '{tier.value}' not granted")


class StoreUnavailableError(GlucoseSyncError):
    """The health store is not available until the next explicit check."""


class TransientStoreError(GlucoseSyncError):
    """Timeout or rate limit; eligible for retry."""


class TokenExpiredError(GlucoseSyncError):
    """Continuation token unknown, malformed or no longer retained."""


class SyncInProgressError(GlucoseSyncError):
    """Another sync for the same window is already running."""
