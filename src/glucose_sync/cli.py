"""CLI para importar exportaciones CSV de glucosa y sincronizarlas sin duplicados."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

from glucose_sync.access import AccessController, AccessState, Tier
from glucose_sync.config import SyncConfig
from glucose_sync.detect import detect_format
from glucose_sync.errors import (
    GlucoseSyncError,
    ParseFatalError,
    PermissionDeniedError,
    StoreUnavailableError,
)
from glucose_sync.logging_utils import setup_logger
from glucose_sync.model import MealRelation, TimeWindow
from glucose_sync.records import RecordBuilder
from glucose_sync.sources.csv_export import CsvExportPaths, CsvExportSource
from glucose_sync.stats import daily_summary, records_to_frame, standard_periods
from glucose_sync.storage import SQLiteStore
from glucose_sync.sync import PollResult, SyncOrchestrator, SyncReport, SyncStatus

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        prog="glucose-sync",
        description="Importa lecturas de glucosa desde CSV y las sincroniza sin duplicados.",
    )
    parser.add_argument("--db", default=None, help="Base SQLite (default: config).")
    parser.add_argument(
        "--log-level", default=None, help="Nivel de log (DEBUG, INFO, WARNING...)."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_detect = sub.add_parser("detect", help="Detecta el formato de un CSV.")
    p_detect.add_argument("path", help="Archivo CSV o carpeta de exportaciones.")

    p_import = sub.add_parser("import", help="Importa y sube lecturas de un CSV.")
    p_import.add_argument(
        "paths", nargs="+", help="Archivos CSV o carpetas de exportaciones."
    )
    p_import.add_argument(
        "--all",
        action="store_true",
        dest="all_files",
        help="En carpetas, importa todas las exportaciones y no solo la más nueva.",
    )
    p_import.add_argument(
        "--window-days",
        type=int,
        default=None,
        help="Ventana de deduplicación hacia atrás en días (default: la del archivo).",
    )
    p_import.add_argument(
        "--meal",
        choices=[m.value for m in MealRelation],
        default=None,
        help="Relación con la comida para todas las lecturas.",
    )
    p_import.add_argument(
        "--allow-diagnostic",
        action="store_true",
        help="Sube los datos de diagnóstico si el archivo no tiene lecturas.",
    )

    sub.add_parser("history", help="Trae cambios desde el último token guardado.")

    sub.add_parser("stats", help="Estadísticas de hoy, 7 y 30 días.")

    p_poll = sub.add_parser("poll", help="Chequeo periódico en segundo plano.")
    p_poll.add_argument("--once", action="store_true", help="Un solo ciclo.")

    p_grant = sub.add_parser("grant", help="Registra los permisos otorgados.")
    p_grant.add_argument(
        "tiers",
        nargs="*",
        choices=[t.value for t in Tier],
        help="Niveles otorgados; sin argumentos revoca todos.",
    )
    return parser.parse_args(argv)


def _resolve_csv(path: Path) -> tuple[CsvExportSource, Path]:
    source, paths = _resolve_csvs(path, all_files=False)
    return source, paths[0]


def _resolve_csvs(
    path: Path, *, all_files: bool
) -> tuple[CsvExportSource, list[Path]]:
    if not path.is_dir():
        return CsvExportSource(CsvExportPaths(root=path.parent)), [path]
    source = CsvExportSource(CsvExportPaths(root=path))
    source.validate()
    if not all_files:
        return source, [source.newest_csv()]
    files = source.export_files()
    if not files:
        raise FileNotFoundError(f"No CSV exports in {path}")
    return source, files[::-1]


def _cmd_detect(ns: argparse.Namespace) -> int:
    source, path = _resolve_csv(Path(ns.path).expanduser())
    dialect = detect_format(source.read_lines(path))
    print(f"{path}: {dialect.value}")
    return 0


async def _import_file(
    ns: argparse.Namespace,
    source: CsvExportSource,
    path: Path,
    orchestrator: SyncOrchestrator,
    access: AccessState,
    default_meal: MealRelation,
    config: SyncConfig,
) -> SyncReport:
    zone = config.zone
    result = source.load(path, zone=zone)
    for issue in result.skipped:
        logger.info("%s line %d skipped: %s", path.name, issue.line_number, issue.reason)

    readings = result.readings
    if ns.meal is None and default_meal is not MealRelation.UNKNOWN:
        readings = tuple(
            replace(r, meal_relation=default_meal)
            if r.meal_relation is MealRelation.UNKNOWN
            else r
            for r in readings
        )

    window = None
    if ns.window_days is not None:
        window = TimeWindow.lookback(
            datetime.now(tz=zone), timedelta(days=ns.window_days)
        )

    report = await orchestrator.sync_parse_result(
        replace(result, readings=readings),
        access=access,
        builder=RecordBuilder(source_id=config.source_id, zone=zone),
        meal_relation=MealRelation(ns.meal) if ns.meal else None,
        window=window,
        allow_diagnostic=ns.allow_diagnostic,
    )
    print(f"OK: File: {path} ({result.dialect.value})")
    print(f"OK: Readings: {len(result.readings)}, skipped lines: {result.skipped_count}")
    print(f"{report.status.value.upper()}: {report.message}")
    return report


async def _cmd_import(
    ns: argparse.Namespace, store: SQLiteStore, config: SyncConfig
) -> int:
    # Resolve everything first so a missing file fails before any upload.
    targets: list[tuple[CsvExportSource, Path]] = []
    for arg in ns.paths:
        source, paths = _resolve_csvs(Path(arg).expanduser(), all_files=ns.all_files)
        for path in paths:
            if not path.is_file():
                raise FileNotFoundError(str(path))
            targets.append((source, path))

    access = await AccessController(store, timeout=config.call_timeout).check()
    orchestrator = SyncOrchestrator(store, config=config, token_store=store)
    default_meal = store.load_settings().default_meal_relation
    ok = (SyncStatus.COMPLETE, SyncStatus.NOTHING_NEW)
    code = 0
    for source, path in targets:
        report = await _import_file(
            ns, source, path, orchestrator, access, default_meal, config
        )
        if report.status not in ok:
            code = 1
        if report.status is SyncStatus.BLOCKED:
            break
    if len(targets) > 1:
        print(f"OK: Files: {len(targets)}")
    return code


async def _cmd_history(store: SQLiteStore, config: SyncConfig) -> int:
    access = await AccessController(store, timeout=config.call_timeout).check()
    orchestrator = SyncOrchestrator(store, config=config, token_store=store)
    history = await orchestrator.fetch_history(access=access)
    if history.restarted:
        print("OK: Full resync (no valid token)")
    print(f"OK: Records: {len(history.records)}, deleted: {len(history.deleted_ids)}")
    print(f"OK: Token: {history.token}")
    return 0


def _cmd_stats(store: SQLiteStore, config: SyncConfig) -> int:
    now = datetime.now(tz=config.zone)
    records = store.fetch_records(TimeWindow.lookback(now, config.lookback))
    for stats in standard_periods(records, now):
        if stats.count == 0:
            print(f"{stats.period}: no readings")
            continue
        print(
            f"{stats.period}: avg {stats.average} mg/dL, "
            f"min {stats.minimum}, max {stats.maximum}, n={stats.count}"
        )
    daily = daily_summary(records_to_frame(records))
    if not daily.empty:
        print(daily.tail(7).to_string(index=False))
    return 0


def _print_poll(result: PollResult) -> None:
    recent = result.recent
    print(f"OK: {result.access.phase.value}: {recent.count} readings in window")
    if result.history is not None:
        print(f"OK: History records: {len(result.history.records)}")


async def _cmd_poll(
    ns: argparse.Namespace, store: SQLiteStore, config: SyncConfig
) -> int:
    controller = AccessController(store, timeout=config.call_timeout)
    if ns.once:
        orchestrator = SyncOrchestrator(store, config=config, token_store=store)
        _print_poll(await orchestrator.poll_once(controller))
        return 0

    settings = store.load_settings()
    if not settings.background_check_enabled:
        print("Background check is disabled in settings")
        return 1
    config = replace(
        config, poll_interval=timedelta(hours=settings.background_check_interval_hours)
    )
    orchestrator = SyncOrchestrator(store, config=config, token_store=store)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    await orchestrator.run_polling(controller, stop, on_result=_print_poll)
    return 0


async def _run(ns: argparse.Namespace, config: SyncConfig) -> int:
    store = SQLiteStore(config.db_path)
    if ns.command == "grant":
        store.grant_tiers(Tier(t) for t in ns.tiers)
        print(f"OK: Granted: {', '.join(ns.tiers) or 'none'}")
        return 0
    if ns.command == "import":
        return await _cmd_import(ns, store, config)
    if ns.command == "history":
        return await _cmd_history(store, config)
    if ns.command == "stats":
        return _cmd_stats(store, config)
    if ns.command == "poll":
        return await _cmd_poll(ns, store, config)
    raise ValueError(f"Unknown command: {ns.command}")


def main() -> int:
    """Run the glucose sync CLI.

    Returns:
        Exit code (0 on success, 1 when blocked or failed).
    """
    ns = parse_args()
    config = SyncConfig(db_path=Path(ns.db) if ns.db else None)  # type: ignore[arg-type]
    setup_logger("glucose_sync", config.logs_dir, ns.log_level or config.log_level)

    try:
        if ns.command == "detect":
            return _cmd_detect(ns)
        return asyncio.run(_run(ns, config))
    except (PermissionDeniedError, StoreUnavailableError) as exc:
        print(f"BLOCKED: {exc}")
        return 1
    except (FileNotFoundError, ParseFatalError) as exc:
        print(f"ERROR: {exc}")
        return 1
    except GlucoseSyncError as exc:
        logger.error("%s failed: %s", ns.command, exc)
        print(f"ERROR: {exc}")
        return 1
