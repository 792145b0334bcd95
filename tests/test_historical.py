from core.planner import plan_fetch_ranges
from data.historical import HistoricalFetcher, merge_candle_series
from exchange.models import DAY_MS, HOUR_MS, MINUTE_MS, Timeframe
from tests.helpers import candle


class FakeSource:
    """Returns candles from a per-timeframe pool, limited by `before_ms` like the API."""

    def __init__(self, by_timeframe):
        self.by_timeframe = by_timeframe
        self.calls = []

    async def fetch_candles(self, token_id, timeframe, limit, before_ms=None):
        self.calls.append((token_id, timeframe, limit, before_ms))
        pool = [c for c in self.by_timeframe.get(timeframe, []) if before_ms is None or c.timestamp < before_ms]
        return pool[-limit:]


def test_merge_dedupes_to_nearest_minute_keeping_later_source():
    first = [candle(60_000, high="1", low="1"), candle(120_000, high="2", low="2")]
    second = [candle(60_010, high="9", low="9")]

    merged = merge_candle_series(first, second)

    assert [c.timestamp for c in merged] == [60_010, 120_000]
    assert merged[0].high == 9


def test_merge_sorts_unordered_input():
    merged = merge_candle_series([candle(180_000, "3", "3"), candle(60_000, "1", "1")])
    assert [c.timestamp for c in merged] == [60_000, 180_000]


async def test_fetch_series_follows_plan_and_filters_ranges(sleep_recorder):
    from_ms = 10 * DAY_MS + 23 * HOUR_MS + 30 * MINUTE_MS
    to_ms = 12 * DAY_MS + 6 * HOUR_MS

    source = FakeSource({
        Timeframe.MINUTE: [candle(from_ms - 10 * MINUTE_MS, "100", "100")]
        + [candle(from_ms + i * MINUTE_MS, "1", "1") for i in range(30)]
        # Past the minute range end, never requested
        + [candle(11 * DAY_MS + i * MINUTE_MS, "50", "50") for i in range(5)],
        Timeframe.HOUR: [],
        Timeframe.DAY: [candle(d * DAY_MS, "2", "0.5") for d in range(5, 13)],
    })
    fetcher = HistoricalFetcher(source, inter_range_delay_sec=0.5, sleep=sleep_recorder)

    series = await fetcher.fetch_series("MINT", from_ms, to_ms)

    plan = plan_fetch_ranges(from_ms, to_ms)
    assert [(tf, limit, before) for _, tf, limit, before in source.calls] == [
        (r.timeframe, r.limit, r.end) for r in plan
    ]
    assert sleep_recorder.delays == [0.5] * (len(plan) - 1)

    timestamps = [c.timestamp for c in series]
    assert timestamps == sorted(timestamps)
    assert timestamps[0] == from_ms
    assert all(c.high != 100 and c.high != 50 for c in series)
    assert timestamps[-2:] == [11 * DAY_MS, 12 * DAY_MS]


async def test_empty_span_fetches_nothing():
    source = FakeSource({})
    fetcher = HistoricalFetcher(source)
    assert await fetcher.fetch_series("MINT", 1000, 1000) == []
    assert source.calls == []
