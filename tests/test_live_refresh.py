import asyncio
from types import SimpleNamespace

from config import RefreshConfig
from core.accumulator import accumulate, with_backfill_stamp
from tracking.live_refresh import LiveRefreshLoop
from tests.helpers import NOW, FakeOracle, candle, minute, D


def make_loop(db, oracle, complete=True):
    backfill = SimpleNamespace(is_complete=complete)
    loop = LiveRefreshLoop(RefreshConfig(interval_sec=1), db, oracle, backfill, clock=lambda: NOW)
    return loop, backfill


def backfilled(db, entry, high="2.0"):
    record = accumulate(entry, [candle(minute(1), high=high, low="0.8")], now_ms=NOW - 1000)
    record = with_backfill_stamp(record, NOW - 1000)
    db.upsert_extremum_record(entry.id, record)
    return record


async def test_cycle_is_noop_until_backfill_complete(db, add_entry):
    add_entry("A")
    oracle = FakeOracle({"A": D("5")})
    loop, _ = make_loop(db, oracle, complete=False)

    assert await loop.run_cycle() == 0
    assert oracle.calls == []


async def test_higher_price_raises_ath_and_keeps_history(db, add_entry):
    entry = add_entry("A")
    before = backfilled(db, entry)
    loop, _ = make_loop(db, FakeOracle({"A": D("3.5")}))

    assert await loop.run_cycle() == 1

    record = db.get_record(entry.id)
    assert record.ath_price == D("3.5")
    assert record.ath_at == NOW
    assert record.current_price == D("3.5")
    # Drawdown and milestones come from the backfilled history
    assert record.min_low_price == before.min_low_price
    assert record.time_to_2x == before.time_to_2x
    assert record.time_to_3x == NOW - entry.entry_time
    assert record.backfilled_at == before.backfilled_at


async def test_price_at_or_below_ath_writes_nothing(db, add_entry):
    entry = add_entry("A")
    before = backfilled(db, entry)
    loop, _ = make_loop(db, FakeOracle({"A": D("2.0")}))

    assert await loop.run_cycle() == 0
    assert db.get_record(entry.id) == before


async def test_missing_record_is_created_without_backfill_stamp(db, add_entry):
    above = add_entry("A")
    below = add_entry("B")
    loop, _ = make_loop(db, FakeOracle({"A": D("1.5"), "B": D("0.5")}))

    assert await loop.run_cycle() == 2

    a = db.get_record(above.id)
    assert a.ath_price == D("1.5")
    assert a.backfilled_at is None
    b = db.get_record(below.id)
    assert b.ath_price == D("1.0")
    assert b.current_price == D("0.5")


async def test_unknown_price_and_priceless_entries_are_skipped(db, add_entry):
    add_entry("A", price=None)
    unknown = add_entry("B")
    loop, _ = make_loop(db, FakeOracle({"A": D("9")}))

    assert await loop.run_cycle() == 0
    assert db.get_record(unknown.id) is None


async def test_backfill_started_mid_cycle_discards_prices(db, add_entry):
    entry = add_entry("A")
    oracle = FakeOracle({"A": D("4")})
    oracle.gate = asyncio.Event()
    loop, backfill = make_loop(db, oracle)

    cycle = asyncio.create_task(loop.run_cycle())
    await asyncio.sleep(0)
    backfill.is_complete = False
    oracle.gate.set()

    assert await cycle == 0
    assert db.get_record(entry.id) is None


async def test_overlapping_ticks_are_skipped(db, add_entry):
    add_entry("A")
    oracle = FakeOracle({"A": D("4")})
    oracle.gate = asyncio.Event()
    loop, _ = make_loop(db, oracle)

    assert loop.tick() is True
    await asyncio.sleep(0)
    assert loop.cycle_in_flight
    assert loop.tick() is False
    assert loop.skipped_ticks == 1

    oracle.gate.set()
    await loop.stop()
    assert not loop.cycle_in_flight
    assert len(oracle.calls) == 1


async def test_refresh_never_lowers_ath(db, add_entry):
    entry = add_entry("A")
    backfilled(db, entry, high="8")
    loop, _ = make_loop(db, FakeOracle({"A": D("7")}))

    await loop.run_cycle()

    assert db.get_record(entry.id).ath_price == D("8")
