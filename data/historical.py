"""
Historical candle series — Planner → Candle Source → one merged series.

Responsibilities:
- Run the resolution plan for a token over [from, to)
- Keep only candles that fall inside each planned range
- Merge everything into one ascending series, deduplicated per minute
"""

from __future__ import annotations
import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Iterable, List
import logging

from core.planner import floor_to, plan_fetch_ranges
from exchange.models import Candle, MINUTE_MS

if TYPE_CHECKING:
    from exchange.gecko_rest import GeckoTerminalClient

logger = logging.getLogger(__name__)


def merge_candle_series(*series: Iterable[Candle]) -> List[Candle]:
    """
    Merge candle lists into one ascending series.
    Timestamps are rounded to the nearest minute for dedupe; the later source wins.
    """
    merged: Dict[int, Candle] = {}
    for candles in series:
        for candle in candles:
            key = (candle.timestamp + MINUTE_MS // 2) // MINUTE_MS * MINUTE_MS
            merged[key] = candle
    return [merged[k] for k in sorted(merged)]


class HistoricalFetcher:
    """Fetches a full multi-resolution candle series for one token."""

    def __init__(
        self,
        source: "GeckoTerminalClient",
        max_candles: int = 1000,
        inter_range_delay_sec: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.max_candles = max_candles
        self.inter_range_delay_sec = inter_range_delay_sec
        self._sleep = sleep

    async def fetch_series(self, token_id: str, from_ms: int, to_ms: int) -> List[Candle]:
        """All candles for [from_ms, to_ms), coarser further from the start. [] if none."""
        plan = plan_fetch_ranges(from_ms, to_ms, self.max_candles)
        series: List[Candle] = []

        for i, fetch_range in enumerate(plan):
            if i > 0 and self.inter_range_delay_sec > 0:
                await self._sleep(self.inter_range_delay_sec)

            candles = await self.source.fetch_candles(
                token_id, fetch_range.timeframe, fetch_range.limit, before_ms=fetch_range.end,
            )
            lower = floor_to(fetch_range.start, fetch_range.timeframe.ms)
            in_range = [c for c in candles if lower <= c.timestamp < fetch_range.end]
            series = merge_candle_series(series, in_range)

        logger.debug(
            f"[BACKFILL] {token_id}: {len(series)} candles from {len(plan)} ranges"
        )
        return series
