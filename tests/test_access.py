from __future__ import annotations

import asyncio

import pytest

from fakes import FakeStore
from glucose_sync.access import (
    AccessController,
    AccessPhase,
    AccessState,
    Tier,
    cumulative_tiers,
)
from glucose_sync.errors import (
    PermissionDeniedError,
    StoreUnavailableError,
    TransientStoreError,
)


def test_tiers_are_cumulative() -> None:
    assert cumulative_tiers([Tier.HISTORICAL]) == {
        Tier.BASIC,
        Tier.BACKGROUND,
        Tier.HISTORICAL,
    }
    assert cumulative_tiers([Tier.BASIC]) == {Tier.BASIC}
    assert cumulative_tiers([]) == frozenset()


def test_unchecked_state_requires_a_check() -> None:
    state = AccessState()
    assert state.phase == AccessPhase.UNCHECKED
    with pytest.raises(StoreUnavailableError):
        state.require(Tier.BASIC)


def test_unavailable_store_blocks_every_tier() -> None:
    state = AccessState.from_check(False, [Tier.HISTORICAL])
    assert state.phase == AccessPhase.STORE_UNAVAILABLE
    assert state.granted_tiers == frozenset()
    with pytest.raises(StoreUnavailableError):
        state.require(Tier.BASIC)


@pytest.mark.parametrize(
    ("granted", "phase"),
    [
        ([], AccessPhase.NO_PERMISSION),
        ([Tier.BASIC], AccessPhase.BASIC_GRANTED),
        ([Tier.BACKGROUND], AccessPhase.BACKGROUND_GRANTED),
        ([Tier.HISTORICAL], AccessPhase.HISTORICAL_GRANTED),
    ],
)
def test_phase_follows_highest_tier(granted: list[Tier], phase: AccessPhase) -> None:
    assert AccessState.from_check(True, granted).phase == phase


def test_require_missing_tier_names_it() -> None:
    state = AccessState.from_check(True, [Tier.BASIC])
    state.require(Tier.BASIC)
    with pytest.raises(PermissionDeniedError) as info:
        state.require(Tier.HISTORICAL)
    assert info.value.tier == Tier.HISTORICAL
    assert "historical" in str(info.value)


@pytest.mark.asyncio
async def test_check_skips_tier_query_when_unavailable() -> None:
    store = FakeStore(available=False, tiers={Tier.BASIC})
    state = await AccessController(store).check()
    assert state.phase == AccessPhase.STORE_UNAVAILABLE
    assert store.calls == ["check_availability"]


@pytest.mark.asyncio
async def test_check_replaces_snapshot() -> None:
    store = FakeStore(tiers={Tier.BASIC})
    controller = AccessController(store)
    assert controller.snapshot.phase == AccessPhase.UNCHECKED

    first = await controller.check()
    store.tiers = {Tier.HISTORICAL}
    second = await controller.check()

    assert first.phase == AccessPhase.BASIC_GRANTED
    assert second.phase == AccessPhase.HISTORICAL_GRANTED
    assert controller.snapshot is second
    # Earlier snapshots stay as they were.
    assert first.granted_tiers == {Tier.BASIC}


@pytest.mark.asyncio
async def test_store_unavailable_error_marks_store_unavailable() -> None:
    class _Broken(FakeStore):
        async def check_availability(self) -> bool:
            raise StoreUnavailableError("gone")

    state = await AccessController(_Broken()).check()
    assert state.phase == AccessPhase.STORE_UNAVAILABLE


@pytest.mark.asyncio
async def test_concurrent_checks_are_serialized() -> None:
    active = 0
    peak = 0

    class _Slow(FakeStore):
        async def check_availability(self) -> bool:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return True

    controller = AccessController(_Slow(tiers={Tier.BASIC}))
    states = await asyncio.gather(*(controller.check() for _ in range(5)))

    assert peak == 1
    assert all(s.phase == AccessPhase.BASIC_GRANTED for s in states)


@pytest.mark.asyncio
async def test_hung_store_times_out_and_keeps_snapshot() -> None:
    class _Hung(FakeStore):
        hung = True

        async def check_availability(self) -> bool:
            if self.hung:
                await asyncio.sleep(3600)
            return True

    store = _Hung(tiers={Tier.BASIC})
    controller = AccessController(store, timeout=0.05)

    with pytest.raises(TransientStoreError):
        await asyncio.wait_for(controller.check(), 2.0)
    assert controller.snapshot.phase == AccessPhase.UNCHECKED

    # The lock is released, so a later check runs once the store answers.
    store.hung = False
    state = await asyncio.wait_for(controller.check(), 2.0)
    assert state.phase == AccessPhase.BASIC_GRANTED
