"""Contrato del almacén de salud externo."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from glucose_sync.access import Tier
from glucose_sync.model import GlucoseRecord, TimeWindow


@dataclass(frozen=True)
class FailedRecord:
    """A record the store did not accept, with the reason."""

    record: GlucoseRecord
    reason: str


@dataclass(frozen=True)
class WriteOutcome:
    """Result of one ``write_records`` call."""

    succeeded: tuple[GlucoseRecord, ...] = ()
    failed: tuple[FailedRecord, ...] = ()


@dataclass(frozen=True)
class RecordChange:
    """One entry of the change stream; ``record`` is None for deletions."""

    record_id: str
    record: GlucoseRecord | None = None

    @property
    def is_deletion(self) -> bool:
        return self.record is None


@dataclass(frozen=True)
class ChangesPage:
    """A page of changes plus the token to request the next page."""

    changes: tuple[RecordChange, ...]
    token: str


@dataclass(frozen=True)
class ChangesDone:
    """No more changes; ``resume_token`` starts the next cycle."""

    resume_token: str


ChangesMessage = ChangesPage | ChangesDone


class RecordLookup(Protocol):
    async def read_records(self, window: TimeWindow) -> list[GlucoseRecord]: ...


class HealthStore(RecordLookup, Protocol):
    """Capabilities the engine needs from a health-data store.

    ``read_changes`` raises ``TokenExpiredError`` for unknown tokens and
    ``TransientStoreError`` for retryable failures.
    """

    async def check_availability(self) -> bool: ...

    async def check_permission_tiers(self) -> set[Tier]: ...

    async def write_records(
        self, records: Sequence[GlucoseRecord]
    ) -> WriteOutcome: ...

    async def read_changes(self, token: str) -> ChangesMessage: ...

    async def get_changes_token(self) -> str: ...


class TokenStore(Protocol):
    """Persistence for continuation tokens across sync cycles."""

    def load_token(self, key: str) -> str | None: ...

    def save_token(self, key: str, token: str | None) -> None: ...
