from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from fakes import BASE, make_record
from glucose_sync.access import AccessController, AccessPhase, AccessState, Tier
from glucose_sync.config import SyncConfig
from glucose_sync.errors import TokenExpiredError
from glucose_sync.model import MealRelation, TimeWindow
from glucose_sync.storage import AppSettings, SQLiteStore
from glucose_sync.store import ChangesDone, ChangesPage
from glucose_sync.sync import SyncOrchestrator, SyncStatus


def test_store_settings_round_trip(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    defaults = store.load_settings()
    assert not defaults.background_check_enabled
    assert defaults.background_check_interval_hours == 12.0
    assert defaults.default_meal_relation == MealRelation.UNKNOWN

    store.save_settings(
        AppSettings(
            background_check_enabled=True,
            background_check_interval_hours=6.0,
            default_meal_relation=MealRelation.FASTING,
        )
    )
    loaded = SQLiteStore(tmp_path / "app.sqlite3").load_settings()
    assert loaded.background_check_enabled
    assert loaded.background_check_interval_hours == 6.0
    assert loaded.default_meal_relation == MealRelation.FASTING


def test_insert_assigns_ids_and_reads_back(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    record = make_record(123.0, BASE)

    outcome = store.insert_records([record])

    assert len(outcome.succeeded) == 1
    stored = store.fetch_records()
    assert len(stored) == 1
    assert stored[0].record_id == outcome.succeeded[0].record_id
    assert stored[0].value == 123.0
    assert stored[0].instant == BASE
    assert stored[0].provenance == record.provenance


def test_store_rejects_non_positive_values(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    outcome = store.insert_records([make_record(0.0), make_record(95.0)])
    assert [r.value for r in outcome.succeeded] == [95.0]
    assert len(outcome.failed) == 1
    assert "CHECK" in outcome.failed[0].reason


def test_fetch_records_honours_half_open_window(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    store.insert_records(
        [make_record(100.0 + i, BASE + timedelta(hours=i)) for i in range(3)]
    )
    window = TimeWindow(start=BASE, end=BASE + timedelta(hours=2))
    assert [r.value for r in store.fetch_records(window)] == [100.0, 101.0]


def test_records_frame_has_expected_columns(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    assert store.load_records_frame().empty
    store.insert_records([make_record(123.0)])
    df = store.load_records_frame()
    assert list(df.columns) == [
        "record_id",
        "datetime",
        "glucose_mg_dl",
        "meal_relation",
        "source_id",
    ]
    assert df.iloc[0]["glucose_mg_dl"] == 123.0


def test_tokens_are_persisted_and_cleared(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    assert store.load_token("glucose") is None
    store.save_token("glucose", "chg:4")
    assert SQLiteStore(tmp_path / "app.sqlite3").load_token("glucose") == "chg:4"
    store.save_token("glucose", None)
    assert store.load_token("glucose") is None


def test_change_stream_pages_until_done(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3", page_size=2)
    start = store.current_token()
    written = store.insert_records(
        [make_record(100.0 + i, BASE + timedelta(hours=i)) for i in range(3)]
    ).succeeded
    store.delete_records([written[0].record_id or ""])

    first = store.changes_since(start)
    assert isinstance(first, ChangesPage)
    assert len(first.changes) == 2
    # Deleted before it was read: the upsert carries no record.
    assert first.changes[0].record is None

    second = store.changes_since(first.token)
    assert isinstance(second, ChangesPage)
    assert [c.is_deletion for c in second.changes] == [False, True]

    done = store.changes_since(second.token)
    assert done == ChangesDone(resume_token=second.token)


@pytest.mark.parametrize("token", ["bogus", "chg:-1", "chg:x", "chg:99"])
def test_invalid_tokens_are_expired(tmp_path: Path, token: str) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    with pytest.raises(TokenExpiredError):
        store.changes_since(token)


def test_pruned_tokens_are_expired(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    old = store.current_token()
    store.insert_records([make_record(100.0), make_record(101.0, BASE + timedelta(1))])

    assert store.prune_changes(keep_last=1) == 1
    with pytest.raises(TokenExpiredError):
        store.changes_since(old)
    assert store.current_token() == "chg:2"


def test_no_tiers_are_granted_by_default(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    assert store.is_available()
    assert store.granted_tiers() == set()
    store.grant_tiers([Tier.BASIC, Tier.BACKGROUND])
    assert store.granted_tiers() == {Tier.BASIC, Tier.BACKGROUND}


@pytest.mark.asyncio
async def test_disabled_store_reports_unavailable(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    store.grant_tiers([Tier.BASIC])
    store.set_available(False)

    state = await AccessController(store).check()

    assert state.phase == AccessPhase.STORE_UNAVAILABLE


@pytest.mark.asyncio
async def test_sync_against_sqlite_is_idempotent(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "app.sqlite3")
    access = AccessState.from_check(True, [Tier.HISTORICAL])
    records = [make_record(100.0 + i, BASE + timedelta(hours=i)) for i in range(5)]
    orchestrator = SyncOrchestrator(
        store, config=SyncConfig(base_dir=tmp_path), token_store=store
    )

    first = await orchestrator.sync(records, access=access)
    second = await orchestrator.sync(records, access=access)
    history = await orchestrator.fetch_history(
        store.current_token(), access=access
    )

    assert first.status == SyncStatus.COMPLETE
    assert second.uploaded == 0
    assert second.skipped_duplicates == 5
    assert len(store.fetch_records()) == 5
    assert history.records == ()
    assert store.load_token("glucose_changes") == history.token
