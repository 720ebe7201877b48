"""Orquestador de sincronización: subida sin duplicados, historial y sondeo."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from glucose_sync.access import AccessController, AccessState, Tier
from glucose_sync.config import SyncConfig
from glucose_sync.dedup import DedupPolicy, dedup_against_store
from glucose_sync.errors import (
    GlucoseSyncError,
    PermissionDeniedError,
    StoreUnavailableError,
    SyncInProgressError,
    TokenExpiredError,
    TransientStoreError,
)
from glucose_sync.model import GlucoseRecord, MealRelation, TimeWindow
from glucose_sync.parser import ParseResult
from glucose_sync.records import RecordBuilder
from glucose_sync.stats import GlucoseStatistics, summarize
from glucose_sync.store import (
    ChangesDone,
    FailedRecord,
    HealthStore,
    TokenStore,
    WriteOutcome,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_TOKEN_KEY = "glucose_changes"


class SyncStatus(str, Enum):
    NOTHING_NEW = "nothing_new"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    BLOCKED = "blocked"
    DIAGNOSTIC = "diagnostic"


@dataclass(frozen=True)
class SyncReport:
    """Outcome of one sync attempt.

    ``BLOCKED`` means a permission or availability check failed, or the store
    went away before anything was written; ``error`` holds the reason. A
    ``PARTIAL`` report with ``error`` set lost the store midway. ``DIAGNOSTIC`` means the input
    held no real readings and nothing was uploaded.
    """

    status: SyncStatus
    uploaded: int = 0
    skipped_duplicates: int = 0
    failed: tuple[FailedRecord, ...] = ()
    record_ids: tuple[str, ...] = ()
    error: GlucoseSyncError | None = None

    @property
    def message(self) -> str:
        if self.status is SyncStatus.BLOCKED:
            return f"Blocked: {self.error}"
        if self.status is SyncStatus.DIAGNOSTIC:
            return "No readings found in input; diagnostic data was not uploaded"
        if self.status is SyncStatus.NOTHING_NEW:
            return f"Nothing new ({self.skipped_duplicates} already stored)"
        text = (
            f"Uploaded {self.uploaded}, skipped {self.skipped_duplicates} "
            f"duplicates, {len(self.failed)} failed"
        )
        if self.failed:
            reasons = sorted({f.reason for f in self.failed})
            text += f" ({'; '.join(reasons)})"
        return text


@dataclass(frozen=True)
class HistoryResult:
    """Records collected from the change stream plus the token to resume."""

    records: tuple[GlucoseRecord, ...]
    deleted_ids: tuple[str, ...]
    token: str
    restarted: bool = False


@dataclass(frozen=True)
class PollResult:
    access: AccessState
    recent: GlucoseStatistics
    history: HistoryResult | None = None


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _batches(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class _MemoryTokenStore:
    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}

    def load_token(self, key: str) -> str | None:
        return self._tokens.get(key)

    def save_token(self, key: str, token: str | None) -> None:
        if token is None:
            self._tokens.pop(key, None)
        else:
            self._tokens[key] = token


class SyncOrchestrator:
    """Drives uploads, history pagination and background polling.

    Every operation takes the ``AccessState`` snapshot it runs under; the
    caller refreshes it through ``AccessController.check``.
    """

    def __init__(
        self,
        store: HealthStore,
        *,
        config: SyncConfig | None = None,
        token_store: TokenStore | None = None,
        policy: DedupPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utc_now,
        token_key: str = HISTORY_TOKEN_KEY,
    ) -> None:
        self._store = store
        self._config = config or SyncConfig()
        self._tokens: TokenStore = token_store or _MemoryTokenStore()
        self._policy = policy or DedupPolicy()
        self._sleep = sleep
        self._clock = clock
        self._token_key = token_key
        self._in_flight: list[TimeWindow] = []

    # -- upload ------------------------------------------------------------

    async def sync(
        self,
        records: Sequence[GlucoseRecord],
        window: TimeWindow | None = None,
        *,
        access: AccessState,
        diagnostic: bool = False,
        allow_diagnostic: bool = False,
    ) -> SyncReport:
        """Upload records that are not stored yet.

        Args:
            records: Candidate records, in input order.
            window: Window the dedup read covers (default: the records' span).
                Records outside it are reported as failed.
            access: Current access snapshot; needs ``Tier.BASIC``.
            diagnostic: Records come from the diagnostic set of an empty parse.
            allow_diagnostic: Upload diagnostic records anyway.

        Returns:
            The sync report.

        Raises:
            SyncInProgressError: If a sync over an overlapping window is running.
        """
        try:
            access.require(Tier.BASIC)
        except (PermissionDeniedError, StoreUnavailableError) as exc:
            logger.warning("Sync blocked: %s", exc)
            return SyncReport(status=SyncStatus.BLOCKED, error=exc)

        if diagnostic and not allow_diagnostic:
            logger.warning("Diagnostic records only; nothing uploaded")
            return SyncReport(status=SyncStatus.DIAGNOSTIC)
        if not records:
            return SyncReport(status=SyncStatus.NOTHING_NEW)

        window = window or TimeWindow.covering(records)
        inside = [r for r in records if window.contains(r.instant)]
        failed = [
            FailedRecord(record=r, reason="outside sync window")
            for r in records
            if not window.contains(r.instant)
        ]

        self._claim(window)
        try:
            return await self._upload(inside, failed, window)
        finally:
            self._in_flight.remove(window)

    async def sync_parse_result(
        self,
        result: ParseResult,
        *,
        access: AccessState,
        builder: RecordBuilder | None = None,
        meal_relation: MealRelation | None = None,
        window: TimeWindow | None = None,
        allow_diagnostic: bool = False,
    ) -> SyncReport:
        """Build records from a parse result and sync them.

        Diagnostic results are not uploaded unless ``allow_diagnostic`` is set.
        """
        builder = builder or RecordBuilder(
            source_id=self._config.source_id, zone=self._config.zone
        )
        records = builder.build_all(result.readings, meal_relation)
        return await self.sync(
            records,
            window,
            access=access,
            diagnostic=result.diagnostic,
            allow_diagnostic=allow_diagnostic,
        )

    async def _upload(
        self,
        records: list[GlucoseRecord],
        failed: list[FailedRecord],
        window: TimeWindow,
    ) -> SyncReport:
        read_window = window.aligned(self._policy.time_resolution)
        try:
            dedup = await self._retry(
                lambda: dedup_against_store(
                    records, read_window, self._store, self._policy
                ),
                "read_records",
            )
        except StoreUnavailableError as exc:
            return SyncReport(status=SyncStatus.BLOCKED, error=exc)
        except TransientStoreError as exc:
            failed += [FailedRecord(r, f"dedup read failed: {exc}") for r in records]
            return SyncReport(status=SyncStatus.FAILED, failed=tuple(failed), error=exc)

        if dedup.skipped:
            logger.info("Skipping %d records already stored", dedup.skipped)
        if not dedup.kept and not failed:
            return SyncReport(
                status=SyncStatus.NOTHING_NEW, skipped_duplicates=dedup.skipped
            )

        uploaded = 0
        record_ids: list[str] = []
        error: StoreUnavailableError | None = None
        batches = list(_batches(dedup.kept, self._config.batch_size))
        for number, batch in enumerate(batches):
            # A cancelled sync still finishes the batch being written.
            task = asyncio.ensure_future(self._write_batch(list(batch), read_window))
            try:
                outcome, error = await asyncio.shield(task)
            except asyncio.CancelledError:
                outcome, _ = await task
                logger.warning(
                    "Sync cancelled after writing %d records",
                    uploaded + len(outcome.succeeded),
                )
                raise
            uploaded += len(outcome.succeeded)
            record_ids += [r.record_id for r in outcome.succeeded if r.record_id]
            failed += outcome.failed
            if error is not None:
                rest = [r for later in batches[number + 1 :] for r in later]
                failed += [FailedRecord(r, "store unavailable") for r in rest]
                logger.error(
                    "Store unavailable; %d records not attempted: %s", len(rest), error
                )
                break

        if error is not None:
            status = SyncStatus.PARTIAL if uploaded else SyncStatus.BLOCKED
        elif failed and uploaded:
            status = SyncStatus.PARTIAL
        elif failed:
            status = SyncStatus.FAILED
        else:
            status = SyncStatus.COMPLETE
        report = SyncReport(
            status=status,
            uploaded=uploaded,
            skipped_duplicates=dedup.skipped,
            failed=tuple(failed),
            record_ids=tuple(record_ids),
            error=error,
        )
        logger.info("Sync %s: %s", status.value, report.message)
        return report

    async def _write_batch(
        self, batch: list[GlucoseRecord], window: TimeWindow
    ) -> tuple[WriteOutcome, StoreUnavailableError | None]:
        """Write with retries; after a timeout, re-read to skip records that landed.

        An unavailable store ends the batch at once; the error is returned
        with whatever landed so the caller stops writing.
        """
        pending = batch
        landed: list[GlucoseRecord] = []
        timed_out = False
        try:
            async for attempt in self._retrying("write_records"):
                with attempt:
                    if timed_out:
                        timed_out = False
                        pending, landed = await self._refilter(pending, landed, window)
                        if not pending:
                            return WriteOutcome(succeeded=tuple(landed)), None
                    try:
                        outcome = await asyncio.wait_for(
                            self._store.write_records(pending),
                            timeout=self._config.call_timeout,
                        )
                    except asyncio.TimeoutError:
                        timed_out = True
                        raise
                    succeeded = (*landed, *outcome.succeeded)
                    return replace(outcome, succeeded=succeeded), None
        except StoreUnavailableError as exc:
            reason = f"store unavailable: {exc}"
            failed = tuple(FailedRecord(r, reason) for r in pending)
            return WriteOutcome(succeeded=tuple(landed), failed=failed), exc
        except (asyncio.TimeoutError, TransientStoreError) as exc:
            reason = str(exc) or "timeout"
            logger.error(
                "Batch of %d records failed after %d attempts: %s",
                len(pending),
                self._config.max_retries,
                reason,
            )
            failed = tuple(FailedRecord(r, f"transient: {reason}") for r in pending)
            return WriteOutcome(succeeded=tuple(landed), failed=failed), None
        raise AssertionError("unreachable")

    async def _refilter(
        self,
        pending: list[GlucoseRecord],
        landed: list[GlucoseRecord],
        window: TimeWindow,
    ) -> tuple[list[GlucoseRecord], list[GlucoseRecord]]:
        """Drop pending records the store already holds.

        Raises:
            StoreUnavailableError: If the store went away; the batch stops.
        """
        try:
            dedup = await self._retry(
                lambda: dedup_against_store(pending, window, self._store, self._policy),
                "read_records",
            )
        except TransientStoreError as exc:
            logger.warning("Could not re-read window after timeout: %s", exc)
            return pending, landed
        if dedup.skipped:
            logger.info("%d records landed despite the timeout", dedup.skipped)
        return list(dedup.kept), [*landed, *dedup.duplicates]

    def _claim(self, window: TimeWindow) -> None:
        for other in self._in_flight:
            if window.start < other.end and other.start < window.end:
                raise SyncInProgressError(
                    f"Sync already running for {other.start.isoformat()}"
                    f"..{other.end.isoformat()}"
                )
        self._in_flight.append(window)

    # -- history -----------------------------------------------------------

    async def fetch_history(
        self,
        token: str | None = None,
        *,
        access: AccessState,
        baseline: TimeWindow | None = None,
    ) -> HistoryResult:
        """Follow the change stream from ``token`` (or the persisted one).

        Each page's token is persisted before the next request, so a restart
        resumes after the last complete page. A missing or expired token
        restarts from ``baseline`` (default: the configured lookback).

        Raises:
            PermissionDeniedError: Without ``Tier.HISTORICAL``.
            StoreUnavailableError: If the store is unavailable.
            TransientStoreError: If a store call keeps failing.
        """
        access.require(Tier.HISTORICAL)
        token = token or self._tokens.load_token(self._token_key)
        if token is None:
            logger.info("No changes token stored; running full resync")
            return await self._full_resync(baseline)

        collected: dict[str, GlucoseRecord] = {}
        deleted: dict[str, None] = {}
        try:
            while True:
                current = token
                message = await self._retry(
                    lambda: self._store.read_changes(current), "read_changes"
                )
                if isinstance(message, ChangesDone):
                    token = message.resume_token
                    self._tokens.save_token(self._token_key, token)
                    break
                for change in message.changes:
                    collected.pop(change.record_id, None)
                    if change.record is None:
                        deleted[change.record_id] = None
                    else:
                        deleted.pop(change.record_id, None)
                        collected[change.record_id] = change.record
                token = message.token
                self._tokens.save_token(self._token_key, token)
        except TokenExpiredError:
            logger.warning("Changes token %r expired; restarting from baseline", token)
            return await self._full_resync(baseline)

        logger.info(
            "History: %d changed records, %d deletions", len(collected), len(deleted)
        )
        return HistoryResult(
            records=tuple(collected.values()),
            deleted_ids=tuple(deleted),
            token=token,
        )

    async def _full_resync(self, baseline: TimeWindow | None) -> HistoryResult:
        window = baseline or TimeWindow.lookback(self._clock(), self._config.lookback)
        # Token first, so changes made during the read are seen next cycle.
        token = await self._retry(self._store.get_changes_token, "get_changes_token")
        records = await self._retry(
            lambda: self._store.read_records(window), "read_records"
        )
        self._tokens.save_token(self._token_key, token)
        return HistoryResult(
            records=tuple(records), deleted_ids=(), token=token, restarted=True
        )

    # -- background polling ------------------------------------------------

    async def poll_once(self, controller: AccessController) -> PollResult:
        """Refresh access, summarize the recent window and pull history.

        Raises:
            PermissionDeniedError: Without ``Tier.BACKGROUND``.
            StoreUnavailableError: If the store is unavailable.
        """
        access = await controller.check()
        access.require(Tier.BACKGROUND)
        window = TimeWindow.lookback(self._clock(), self._config.poll_window)
        recent = await self._retry(
            lambda: self._store.read_records(window), "read_records"
        )
        stats = summarize(recent, period="Recent")
        logger.info(
            "Background check: %d readings, average %s mg/dL", stats.count, stats.average
        )
        history = None
        if access.allows(Tier.HISTORICAL):
            history = await self.fetch_history(access=access)
        return PollResult(access=access, recent=stats, history=history)

    async def run_polling(
        self,
        controller: AccessController,
        stop: asyncio.Event,
        on_result: Callable[[PollResult], None] | None = None,
    ) -> int:
        """Poll every ``config.poll_interval`` until ``stop`` is set.

        Returns:
            Number of completed poll cycles.
        """
        interval = self._config.poll_interval.total_seconds()
        cycles = 0
        while not stop.is_set():
            try:
                result = await self.poll_once(controller)
            except (PermissionDeniedError, StoreUnavailableError) as exc:
                logger.warning("Background check blocked: %s", exc)
            except TransientStoreError as exc:
                logger.warning("Background check failed: %s", exc)
            else:
                cycles += 1
                if on_result is not None:
                    on_result(result)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Background polling stopped after %d cycles", cycles)
        return cycles

    # -- retries -----------------------------------------------------------

    def _retrying(self, name: str) -> AsyncRetrying:
        attempts = self._config.max_retries

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                name,
                state.attempt_number,
                attempts,
                str(exc) or "timeout",
                state.next_action.sleep if state.next_action else 0.0,
            )

        return AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._config.base_delay),
            retry=retry_if_exception_type((TransientStoreError, asyncio.TimeoutError)),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _retry(self, call: Callable[[], Awaitable[T]], name: str) -> T:
        """Run a store call with a timeout and bounded exponential backoff."""
        try:
            async for attempt in self._retrying(name):
                with attempt:
                    return await asyncio.wait_for(
                        call(), timeout=self._config.call_timeout
                    )
        except (asyncio.TimeoutError, TransientStoreError) as exc:
            raise TransientStoreError(
                f"{name} failed after {self._config.max_retries} attempts"
            ) from exc
        raise AssertionError("unreachable")
