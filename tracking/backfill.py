"""
Backfill Orchestrator — resumable, cancellable historical ATH computation.

Flow per run:
  1. Select entries with missing / incomplete / stale records
  2. Group them by token (earliest entry time is the shared fetch lower bound)
  3. Process token groups in waves of `concurrency`, pausing between waves
  4. Per group: one candle series, then accumulate + merge + upsert per entry

State machine: idle → running → complete | paused | error.
The orchestrator is the only writer of BackfillProgress.
"""

from __future__ import annotations
import asyncio
import copy
import json
import time
from collections import OrderedDict, deque
from dataclasses import asdict, replace
from typing import TYPE_CHECKING, Awaitable, Callable, Deque, List, Optional, Sequence, Set
import logging

from core.accumulator import (
    accumulate,
    check_invariants,
    merge_records,
    trivial_record,
    with_backfill_stamp,
)
from core.errors import FatalConfigError, InvariantViolation, PersistenceError
from exchange.models import (
    BackfillFilter,
    BackfillPhase,
    BackfillProgress,
    BackfillStatus,
    Candle,
    HOUR_MS,
    TrackedEntry,
)

if TYPE_CHECKING:
    from config import BackfillConfig
    from data.historical import HistoricalFetcher
    from notifications.telegram import TelegramNotifier
    from storage.database import Database

logger = logging.getLogger(__name__)

PROGRESS_KEY = "backfill_progress"
RESUME_KEY = "backfill_resume"


def _now_ms() -> int:
    return int(time.time() * 1000)


def estimate_eta(unit_durations_ms: Sequence[float], remaining_units: int, concurrency: int) -> Optional[int]:
    """Moving-average unit time × remaining units ÷ parallelism. None until a unit finished."""
    if not unit_durations_ms:
        return None
    if remaining_units <= 0:
        return 0
    avg = sum(unit_durations_ms) / len(unit_durations_ms)
    return int(avg * remaining_units / max(1, concurrency))


def group_by_token(entries: List[TrackedEntry]) -> "OrderedDict[str, List[TrackedEntry]]":
    """Token -> entries, earliest entry first. Groups keep first-seen token order."""
    groups: "OrderedDict[str, List[TrackedEntry]]" = OrderedDict()
    for entry in entries:
        groups.setdefault(entry.token_id, []).append(entry)
    for group in groups.values():
        group.sort(key=lambda e: (e.entry_time, e.id or 0))
    return groups


def _same_selection(a: Optional[BackfillFilter], b: Optional[BackfillFilter]) -> bool:
    if a is None or b is None:
        return a is b
    return replace(a, refreshed_before_ms=None) == replace(b, refreshed_before_ms=None)


class BackfillOrchestrator:
    """
    Owns the backfill run and its progress.
    start()/stop()/reset() decide synchronously, so a second start()
    while running is rejected before any await.
    """

    def __init__(
        self,
        config: "BackfillConfig",
        db: "Database",
        fetcher: "HistoricalFetcher",
        notifier: Optional["TelegramNotifier"] = None,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.db = db
        self.fetcher = fetcher
        self.notifier = notifier
        self._clock = clock
        self._sleep = sleep

        self._progress = BackfillProgress()
        self._filter: Optional[BackfillFilter] = None
        self._abort = False
        self._task: Optional[asyncio.Task] = None
        # Cumulative across pause/resume so totals never double-count
        self._processed_ids: Set[int] = set()
        self._processed_tokens: Set[str] = set()
        self._unit_durations: Deque[float] = deque(maxlen=max(1, config.eta_window))

    # ==================== Operator Surface ====================

    @property
    def is_running(self) -> bool:
        return self._progress.status == BackfillStatus.RUNNING

    @property
    def is_complete(self) -> bool:
        return self._progress.status == BackfillStatus.COMPLETE

    def get_progress(self) -> BackfillProgress:
        """Snapshot copy; callers never see later mutations."""
        return copy.deepcopy(self._progress)

    def default_filter(self) -> BackfillFilter:
        return BackfillFilter(
            force_refresh=self.config.force_refresh,
            stale_after_ms=self.config.stale_after_hours * HOUR_MS or None,
        )

    def start(self, flt: Optional[BackfillFilter] = None) -> bool:
        """
        Launch a run in the background. Returns False if one is already running.
        A paused run resumes when started with the same selection (or none).
        """
        if self.is_running:
            logger.warning("[BACKFILL] Start rejected: already running")
            return False

        resuming = self._progress.status == BackfillStatus.PAUSED and (
            flt is None or _same_selection(flt, self._filter)
        )
        now = self._clock()

        if resuming:
            logger.info("[BACKFILL] Resuming paused run")
        else:
            self._filter = replace(flt) if flt is not None else self.default_filter()
            if self._filter.force_refresh and self._filter.refreshed_before_ms is None:
                self._filter.refreshed_before_ms = now
            self._progress = BackfillProgress(started_at=now)
            self._processed_ids.clear()
            self._processed_tokens.clear()
            self._unit_durations.clear()

        self._abort = False
        self._progress.status = BackfillStatus.RUNNING
        self._progress.phase = BackfillPhase.INIT
        self._progress.ended_at = None
        self._progress.last_error = None
        self._progress.updated_at = now
        self._persist()

        self._task = asyncio.create_task(self._run(resuming))
        return True

    def stop(self) -> bool:
        """Request a cooperative pause. Takes effect between token groups."""
        if not self.is_running:
            return False
        self._abort = True
        logger.info("[BACKFILL] Stop requested, pausing after current units")
        return True

    def reset(self) -> bool:
        """Back to idle, forgetting resume state. Rejected while running."""
        if self.is_running:
            logger.warning("[BACKFILL] Reset rejected: run in progress")
            return False
        self._progress = BackfillProgress(updated_at=self._clock())
        self._filter = None
        self._processed_ids.clear()
        self._processed_tokens.clear()
        self._unit_durations.clear()
        self._persist()
        logger.info("[BACKFILL] Progress reset")
        return True

    async def wait(self) -> BackfillProgress:
        """Await the current run (if any) and return the final progress."""
        if self._task is not None:
            await self._task
        return self.get_progress()

    async def run(self, flt: Optional[BackfillFilter] = None) -> BackfillProgress:
        """start() + wait(). Returns the progress unchanged when rejected."""
        if not self.start(flt):
            return self.get_progress()
        return await self.wait()

    # ==================== Persistence of Progress ====================

    def restore(self):
        """Load persisted progress. A run that was in flight at shutdown becomes paused."""
        raw = self.db.get_state(PROGRESS_KEY)
        if raw:
            self._progress = BackfillProgress.from_dict(json.loads(raw))
            if self._progress.status == BackfillStatus.RUNNING:
                self._progress.status = BackfillStatus.PAUSED

        raw_resume = self.db.get_state(RESUME_KEY)
        if raw_resume:
            resume = json.loads(raw_resume)
            if resume.get("filter") is not None:
                self._filter = BackfillFilter(**resume["filter"])
            self._processed_ids = set(resume.get("entry_ids", []))
            self._processed_tokens = set(resume.get("tokens", []))

        logger.info(f"[BACKFILL] Restored state: {self._progress.status.value}")

    def _persist(self):
        self.db.set_state(PROGRESS_KEY, json.dumps(self._progress.to_dict()))
        self.db.set_state(RESUME_KEY, json.dumps({
            "filter": asdict(self._filter) if self._filter is not None else None,
            "entry_ids": sorted(self._processed_ids),
            "tokens": sorted(self._processed_tokens),
        }))

    # ==================== Run ====================

    async def _run(self, resumed: bool):
        progress = self._progress
        try:
            progress.phase = BackfillPhase.SELECTING
            entries = self.db.get_entries_needing_computation(
                self._filter, self._clock(), exclude_ids=self._processed_ids,
            )
            groups = group_by_token(entries)

            progress.total_entries = len(self._processed_ids | {e.id for e in entries})
            progress.total_groups = len(self._processed_tokens | set(groups))
            progress.processed_entries = len(self._processed_ids)
            progress.processed_groups = len(self._processed_tokens)

            units = list(groups.items())

            logger.info(
                f"[BACKFILL] {'Resuming' if resumed else 'Starting'}: "
                f"{len(entries)} entries across {len(units)} tokens "
                f"(concurrency={self.config.concurrency})"
            )
            if self.notifier:
                await self.notifier.send_backfill_started(
                    progress.total_entries, progress.total_groups, resumed,
                )

            progress.phase = BackfillPhase.PROCESSING
            self._persist()

            concurrency = max(1, self.config.concurrency)
            waves = [units[i:i + concurrency] for i in range(0, len(units), concurrency)]
            for n, wave in enumerate(waves, start=1):
                if self._abort:
                    break
                if n > 1 and self.config.inter_wave_delay_sec > 0:
                    await self._sleep(self.config.inter_wave_delay_sec)
                    if self._abort:
                        break

                results = await asyncio.gather(
                    *(self._process_group(token, group) for token, group in wave),
                    return_exceptions=True,
                )
                # Siblings have settled; a store outage still ends the run
                for result in results:
                    if isinstance(result, BaseException):
                        raise result
                self._after_wave(n, len(waves))

            if self._abort:
                progress.status = BackfillStatus.PAUSED
                logger.info(
                    f"[BACKFILL] Paused at {progress.processed_entries}/{progress.total_entries} entries"
                )
            else:
                progress.status = BackfillStatus.COMPLETE
                progress.phase = BackfillPhase.COMPLETE
                progress.eta_ms = 0
                logger.info(
                    f"[BACKFILL] Complete: {progress.updated_count} updated, "
                    f"{progress.trivial_count} trivial, {progress.skipped_count} skipped, "
                    f"{progress.error_count} errors"
                )

        except Exception as e:
            progress.status = BackfillStatus.ERROR
            progress.last_error = f"{type(e).__name__}: {e}"
            logger.error(f"[BACKFILL] Run failed: {e}", exc_info=True)

        finally:
            progress.current_token = None
            progress.ended_at = self._clock()
            progress.updated_at = progress.ended_at
            self._persist()

        if self.notifier:
            await self.notifier.send_backfill_finished(self.get_progress())

    def _update_eta(self):
        progress = self._progress
        remaining = progress.total_groups - progress.processed_groups
        if self._unit_durations:
            progress.avg_unit_ms = sum(self._unit_durations) / len(self._unit_durations)
        progress.eta_ms = estimate_eta(list(self._unit_durations), remaining, self.config.concurrency)
        progress.updated_at = self._clock()

    def _after_wave(self, wave_no: int, wave_count: int):
        progress = self._progress
        self._persist()

        pct = 100.0 * progress.processed_groups / progress.total_groups if progress.total_groups else 100.0
        eta = f"{progress.eta_ms / 1000:.0f}s" if progress.eta_ms is not None else "n/a"
        logger.info(
            f"[BACKFILL] Wave {wave_no}/{wave_count}: {progress.processed_groups}/"
            f"{progress.total_groups} tokens ({pct:.1f}%), {progress.processed_entries}/"
            f"{progress.total_entries} entries, ETA {eta}"
        )

    async def _process_group(self, token_id: str, entries: List[TrackedEntry]):
        """One unit of work: a token and every selected entry on it."""
        if self._abort:
            return
        started = time.monotonic()
        self._progress.current_token = token_id

        valid: List[TrackedEntry] = []
        for entry in entries:
            if entry.entry_price is None or entry.entry_price <= 0:
                logger.warning(f"[BACKFILL] Entry {entry.id} ({token_id}): no entry price, skipping")
                self._progress.skipped_count += 1
                self._mark_processed(entry)
            else:
                valid.append(entry)

        if valid:
            await self._process_valid(token_id, valid)

        self._processed_tokens.add(token_id)
        self._progress.processed_groups = len(self._processed_tokens)
        self._unit_durations.append((time.monotonic() - started) * 1000)
        self._update_eta()

    async def _process_valid(self, token_id: str, entries: List[TrackedEntry]):
        now = self._clock()
        earliest = min(e.entry_time for e in entries)
        try:
            candles = await self.fetcher.fetch_series(
                token_id, earliest - self.config.tolerance_ms, now,
            )
        except Exception as e:
            # Counted against this token's entries only; the run continues
            self._progress.error_count += len(entries)
            self._progress.last_error = f"{token_id}: {type(e).__name__}: {e}"
            logger.error(f"[BACKFILL] {token_id}: candle fetch failed: {e}", exc_info=True)
            for entry in entries:
                self._mark_processed(entry)
            return

        for entry in entries:
            try:
                had_data = self._compute_entry(entry, candles, now)
            except (FatalConfigError, InvariantViolation, PersistenceError) as e:
                self._progress.error_count += 1
                logger.warning(f"[BACKFILL] Entry {entry.id} ({token_id}): {type(e).__name__}: {e}")
            else:
                if had_data:
                    self._progress.updated_count += 1
                else:
                    self._progress.trivial_count += 1
            self._mark_processed(entry)

    def _compute_entry(self, entry: TrackedEntry, candles: List[Candle], now: int) -> bool:
        """Compute, check and store one entry. Returns False when no candle data existed."""
        existing = self.db.get_record(entry.id)
        fresh = accumulate(
            entry, candles, prior=existing, tolerance_ms=self.config.tolerance_ms, now_ms=now,
        )

        if fresh is None:
            # No data: keep what we have, or fall back to the entry price
            record = existing if existing is not None else trivial_record(entry, now)
        else:
            record = merge_records(entry, existing, fresh)

        record = with_backfill_stamp(record, now)
        check_invariants(entry, record, self.config.tolerance_ms)
        self.db.upsert_extremum_record(entry.id, record)
        return fresh is not None

    def _mark_processed(self, entry: TrackedEntry):
        self._processed_ids.add(entry.id)
        self._progress.processed_entries = len(self._processed_ids)
