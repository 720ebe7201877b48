"""Estado de disponibilidad del almacén y niveles de permiso."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from glucose_sync.errors import (
    PermissionDeniedError,
    StoreUnavailableError,
    TransientStoreError,
)

if TYPE_CHECKING:
    from glucose_sync.store import HealthStore

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """Permission tiers, cumulative in declaration order."""

    BASIC = "basic"
    BACKGROUND = "background"
    HISTORICAL = "historical"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER: tuple[Tier, ...] = (Tier.BASIC, Tier.BACKGROUND, Tier.HISTORICAL)


class AccessPhase(str, Enum):
    UNCHECKED = "unchecked"
    STORE_UNAVAILABLE = "store_unavailable"
    NO_PERMISSION = "no_permission"
    BASIC_GRANTED = "basic_granted"
    BACKGROUND_GRANTED = "background_granted"
    HISTORICAL_GRANTED = "historical_granted"


_PHASE_BY_TIER = {
    Tier.BASIC: AccessPhase.BASIC_GRANTED,
    Tier.BACKGROUND: AccessPhase.BACKGROUND_GRANTED,
    Tier.HISTORICAL: AccessPhase.HISTORICAL_GRANTED,
}


def cumulative_tiers(tiers: Iterable[Tier]) -> frozenset[Tier]:
    """Expand tiers downwards: historical implies background implies basic."""
    ranks = [t.rank for t in tiers]
    if not ranks:
        return frozenset()
    return frozenset(_TIER_ORDER[: max(ranks) + 1])


@dataclass(frozen=True)
class AccessState:
    """Immutable snapshot of store availability and granted tiers."""

    checked: bool = False
    store_available: bool = False
    granted_tiers: frozenset[Tier] = field(default_factory=frozenset)

    @classmethod
    def from_check(cls, available: bool, tiers: Iterable[Tier]) -> AccessState:
        if not available:
            return cls(checked=True, store_available=False)
        return cls(
            checked=True,
            store_available=True,
            granted_tiers=cumulative_tiers(tiers),
        )

    @property
    def phase(self) -> AccessPhase:
        if not self.checked:
            return AccessPhase.UNCHECKED
        if not self.store_available:
            return AccessPhase.STORE_UNAVAILABLE
        if not self.granted_tiers:
            return AccessPhase.NO_PERMISSION
        highest = max(self.granted_tiers, key=lambda t: t.rank)
        return _PHASE_BY_TIER[highest]

    def allows(self, tier: Tier) -> bool:
        return self.store_available and tier in self.granted_tiers

    def require(self, tier: Tier) -> None:
        """Fail fast when ``tier`` is not usable.

        Raises:
            StoreUnavailableError: If the store was not checked or is unavailable.
            PermissionDeniedError: If the store is available but ``tier`` is
                not granted.
        """
        if not self.checked:
            raise StoreUnavailableError("Store availability has not been checked")
        if not self.store_available:
            raise StoreUnavailableError("Health store is not available")
        if tier not in self.granted_tiers:
            raise PermissionDeniedError(tier)


class AccessController:
    """Serializes access checks against the store and keeps the last snapshot.

    The snapshot is never persisted; a new process starts ``UNCHECKED``.
    """

    def __init__(self, store: HealthStore, *, timeout: float = 30.0) -> None:
        self._store = store
        self._timeout = timeout
        self._state = AccessState()
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> AccessState:
        return self._state

    async def check(self) -> AccessState:
        """Query the store and replace the snapshot.

        Concurrent callers run one after another, each getting a consistent
        snapshot. A ``StoreUnavailableError`` from the store marks it
        unavailable. A call that outlives ``timeout`` raises
        ``TransientStoreError``; that and any other error leave the snapshot
        unchanged.
        """
        async with self._lock:
            try:
                available = await asyncio.wait_for(
                    self._store.check_availability(), timeout=self._timeout
                )
                tiers: set[Tier] = set()
                if available:
                    tiers = await asyncio.wait_for(
                        self._store.check_permission_tiers(), timeout=self._timeout
                    )
            except StoreUnavailableError:
                available, tiers = False, set()
            except asyncio.TimeoutError as exc:
                logger.warning("Access check timed out after %.1fs", self._timeout)
                raise TransientStoreError("Access check timed out") from exc

            state = AccessState.from_check(available, tiers)
            if state.phase != self._state.phase:
                logger.info(
                    "Access state %s -> %s",
                    self._state.phase.value,
                    state.phase.value,
                )
            self._state = state
            return state
