"""
Resolution Planner — splits a time span into boundary-aligned fetches.

Minute candles up to the next hour boundary, hour candles up to the next
day boundary, day candles for the rest. Each phase is paginated so no single
request asks for more than max_candles candles. The ranges tile
[from_ts, to_ts) exactly.
"""

from __future__ import annotations
from typing import List
from exchange.models import FetchRange, Timeframe


def floor_to(ts: int, step: int) -> int:
    return ts - ts % step


def ceil_to(ts: int, step: int) -> int:
    return -(-ts // step) * step


def plan_fetch_ranges(from_ts: int, to_ts: int, max_candles: int = 1000) -> List[FetchRange]:
    """
    Plan candle requests covering [from_ts, to_ts).
    Returns an empty plan when to_ts <= from_ts.
    """
    if to_ts <= from_ts:
        return []
    if max_candles < 1:
        raise ValueError("max_candles must be >= 1")

    hour_edge = min(ceil_to(from_ts, Timeframe.HOUR.ms), to_ts)
    day_edge = min(ceil_to(hour_edge, Timeframe.DAY.ms), to_ts)

    plan: List[FetchRange] = []
    for timeframe, start, end in (
        (Timeframe.MINUTE, from_ts, hour_edge),
        (Timeframe.HOUR, hour_edge, day_edge),
        (Timeframe.DAY, day_edge, to_ts),
    ):
        plan.extend(_paginate(timeframe, start, end, max_candles))
    return plan


def _paginate(timeframe: Timeframe, start: int, end: int, max_candles: int) -> List[FetchRange]:
    """Same-timeframe pages; each page's end stays on a candle boundary except the last."""
    step = timeframe.ms
    ranges: List[FetchRange] = []
    cursor = start
    while cursor < end:
        page_end = min(floor_to(cursor, step) + step * max_candles, end)
        limit = ceil_to(page_end, step) // step - floor_to(cursor, step) // step
        ranges.append(FetchRange(timeframe=timeframe, start=cursor, end=page_end, limit=limit))
        cursor = page_end
    return ranges
