"""
Live Refresh Loop — cheap forward tracking of ATH after backfill completes.
One batched price lookup per cycle; never fetches candles.
"""

from __future__ import annotations
import asyncio
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional
import logging

from core.accumulator import DEFAULT_TOLERANCE_MS, accumulate, check_invariants, merge_records
from core.errors import InvariantViolation, PersistenceError

if TYPE_CHECKING:
    from config import RefreshConfig
    from exchange.jupiter_rest import JupiterPriceClient
    from storage.database import Database
    from tracking.backfill import BackfillOrchestrator

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class LiveRefreshLoop:
    """
    Raises ATH from current prices on a fixed interval.
    A slow cycle makes later ticks skip instead of queueing behind it.
    """

    def __init__(
        self,
        config: "RefreshConfig",
        db: "Database",
        oracle: "JupiterPriceClient",
        backfill: "BackfillOrchestrator",
        tolerance_ms: int = DEFAULT_TOLERANCE_MS,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.db = db
        self.oracle = oracle
        self.backfill = backfill
        self.tolerance_ms = tolerance_ms
        self._clock = clock
        self._sleep = sleep
        self._running = False
        self._cycle_in_flight = False
        self._cycle_task: Optional[asyncio.Task] = None
        self.skipped_ticks = 0

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle_in_flight

    async def start(self):
        """Start the refresh loop."""
        self._running = True
        logger.info(f"[REFRESH] Active. Interval: {self.config.interval_sec}s")

        while self._running:
            self.tick()
            await self._sleep(self.config.interval_sec)

    async def stop(self):
        self._running = False
        if self._cycle_task and not self._cycle_task.done():
            await self._cycle_task

    def tick(self) -> bool:
        """Launch a cycle unless one is still running. Returns whether one was launched."""
        if self._cycle_in_flight:
            self.skipped_ticks += 1
            logger.debug("[REFRESH] Previous cycle still running, skipping tick")
            return False
        self._cycle_in_flight = True
        self._cycle_task = asyncio.create_task(self._guarded_cycle())
        return True

    async def _guarded_cycle(self):
        try:
            await self.run_cycle()
        except Exception as e:
            logger.error(f"[REFRESH] Cycle error: {e}", exc_info=True)
        finally:
            self._cycle_in_flight = False

    async def run_cycle(self) -> int:
        """One refresh pass. Returns the number of records written."""
        if not self.backfill.is_complete:
            logger.debug("[REFRESH] Backfill not complete, skipping")
            return 0

        entries = self.db.get_active_entries()
        if not entries:
            return 0

        prices = await self.oracle.fetch_current_prices([e.token_id for e in entries])
        if not self.backfill.is_complete:
            # A backfill started while prices were in flight
            return 0

        now = self._clock()
        written = 0
        for entry in entries:
            price = prices.get(entry.token_id)
            if price is None or entry.entry_price is None or entry.entry_price <= 0:
                continue

            existing = self.db.get_record(entry.id)
            if existing is not None and price <= existing.ath_price:
                continue

            fresh = accumulate(
                entry, [], current_price=price, current_at=now,
                tolerance_ms=self.tolerance_ms, now_ms=now,
            )
            record = merge_records(entry, existing, fresh)
            try:
                check_invariants(entry, record, self.tolerance_ms)
                self.db.upsert_extremum_record(entry.id, record)
            except (InvariantViolation, PersistenceError) as e:
                logger.warning(f"[REFRESH] Entry {entry.id} ({entry.token_id}): {e}")
                continue

            written += 1
            if existing is None:
                logger.info(f"[REFRESH] {entry.token_id} #{entry.id}: created record, ATH {record.ath_price}")
            else:
                logger.info(
                    f"[REFRESH] {entry.token_id} #{entry.id}: new ATH {record.ath_price} "
                    f"({record.ath_multiple:.2f}x)"
                )

        if written:
            logger.info(f"[REFRESH] Cycle wrote {written} records from {len(entries)} active entries")
        return written
