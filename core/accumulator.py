"""
Extremum Accumulator — ATH, drawdown and milestone times for one entry.

Pure functions only. Both the backfill and the live refresh path call
accumulate() + merge_records(), so the two never drift apart.

Rules:
  ATH       running max of entry price, candle highs, then current price.
            Strict comparison, so ties keep the first occurrence.
  Min low   lowest positive candle low between entry time and ATH time.
            Drawdown is the dip endured on the way to the peak.
  Milestone first time price >= entry × {2,3,5,10}. Set once.
"""

from __future__ import annotations
import time
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional
from core.errors import FatalConfigError, InvariantViolation
from exchange.models import Candle, ExtremumRecord, TrackedEntry, MILESTONES

DEFAULT_TOLERANCE_MS = 5 * 60_000

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def _now_ms() -> int:
    return int(time.time() * 1000)


def accumulate(
    entry: TrackedEntry,
    candles: List[Candle],
    current_price: Optional[Decimal] = None,
    current_at: Optional[int] = None,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
    now_ms: Optional[int] = None,
    prior: Optional[ExtremumRecord] = None,
) -> Optional[ExtremumRecord]:
    """
    Compute a fresh record from candles and an optional current price.
    With a stored `prior` whose ATH will survive the merge, the min-low scan
    runs up to that ATH time so the merged drawdown sees every dip before it.
    Returns None when there is nothing to compute from (insufficient data).
    Raises FatalConfigError when the entry has no usable entry price.
    """
    entry_price = _require_entry_price(entry)
    now = now_ms if now_ms is not None else _now_ms()
    t0 = entry.entry_time

    window = sorted(
        (c for c in candles if c.timestamp >= t0 - tolerance_ms),
        key=lambda c: c.timestamp,
    )
    if not window and current_price is None:
        return None

    ath_price, ath_at = entry_price, t0
    milestones: Dict[int, Optional[int]] = {m: None for m in MILESTONES}

    def observe(price: Decimal, ts: int):
        nonlocal ath_price, ath_at
        if price > ath_price:
            ath_price, ath_at = price, ts
        for m in MILESTONES:
            if milestones[m] is None and price >= entry_price * m:
                milestones[m] = ts - t0

    for candle in window:
        # Candles inside the skew tolerance count as happening at entry
        observe(candle.high, max(candle.timestamp, t0))

    if current_price is None:
        current_price = window[-1].close
        current_at = max(window[-1].timestamp, t0)
    elif current_at is None:
        current_at = now
    if current_price > 0:
        observe(current_price, max(current_at, t0))

    horizon = ath_at
    if prior is not None and prior.ath_price >= ath_price:
        horizon = prior.ath_at

    min_low, min_low_at = entry_price, t0
    for candle in window:
        ts = max(candle.timestamp, t0)
        if ts > horizon:
            break
        if _ZERO < candle.low < min_low:
            min_low, min_low_at = candle.low, ts

    return _build_record(
        entry,
        current_price=current_price,
        ath_price=ath_price,
        ath_at=ath_at,
        min_low_price=min_low,
        min_low_at=min_low_at,
        milestones=milestones,
        coverage_start=window[0].timestamp if window else None,
        watermark=window[-1].timestamp if window else None,
        backfilled_at=None,
        updated_at=now,
    )


def trivial_record(entry: TrackedEntry, now_ms: Optional[int] = None) -> ExtremumRecord:
    """Entry price as the ATH. Used when no data exists for a token."""
    entry_price = _require_entry_price(entry)
    return _build_record(
        entry,
        current_price=entry_price,
        ath_price=entry_price,
        ath_at=entry.entry_time,
        min_low_price=entry_price,
        min_low_at=entry.entry_time,
        milestones={m: None for m in MILESTONES},
        coverage_start=None,
        watermark=None,
        backfilled_at=None,
        updated_at=now_ms if now_ms is not None else _now_ms(),
    )


def merge_records(
    entry: TrackedEntry,
    old: Optional[ExtremumRecord],
    new: ExtremumRecord,
) -> ExtremumRecord:
    """
    Fold a fresh computation into the stored record.
    ATH never decreases, min low never increases, milestones are kept once set,
    watermark never moves backwards.
    """
    if old is None:
        return new

    if new.ath_price > old.ath_price:
        ath_price, ath_at = new.ath_price, new.ath_at
    else:
        ath_price, ath_at = old.ath_price, old.ath_at

    min_low, min_low_at = old.min_low_price, old.min_low_at
    if (
        _covers_new_range(old, new)
        and new.min_low_at <= ath_at
        and new.min_low_price < min_low
    ):
        min_low, min_low_at = new.min_low_price, new.min_low_at

    milestones = {
        m: old.milestone(m) if old.milestone(m) is not None else new.milestone(m)
        for m in MILESTONES
    }

    return _build_record(
        entry,
        current_price=new.current_price,
        ath_price=ath_price,
        ath_at=ath_at,
        min_low_price=min_low,
        min_low_at=min_low_at,
        milestones=milestones,
        coverage_start=_min_opt(old.coverage_start, new.coverage_start),
        watermark=_max_opt(old.watermark, new.watermark),
        backfilled_at=_max_opt(old.backfilled_at, new.backfilled_at),
        updated_at=max(old.updated_at, new.updated_at),
    )


def check_invariants(
    entry: TrackedEntry,
    record: ExtremumRecord,
    tolerance_ms: int = DEFAULT_TOLERANCE_MS,
):
    """Raise InvariantViolation if the record breaks an ATH/drawdown rule."""
    entry_price = _require_entry_price(entry)
    if record.ath_price < entry_price:
        raise InvariantViolation(f"ath {record.ath_price} below entry {entry_price}")
    if record.ath_price < record.current_price:
        raise InvariantViolation(f"ath {record.ath_price} below current {record.current_price}")
    if record.ath_at < entry.entry_time - tolerance_ms:
        raise InvariantViolation(f"ath_at {record.ath_at} before entry time {entry.entry_time}")
    if record.time_to_ath < 0:
        raise InvariantViolation(f"negative time_to_ath {record.time_to_ath}")
    if record.min_low_price > entry_price or record.max_drawdown > 0:
        raise InvariantViolation(
            f"min low {record.min_low_price} / drawdown {record.max_drawdown} above entry"
        )


def with_backfill_stamp(record: ExtremumRecord, now_ms: int) -> ExtremumRecord:
    return replace(record, backfilled_at=now_ms, updated_at=now_ms)


# ==================== Internals ====================

def _require_entry_price(entry: TrackedEntry) -> Decimal:
    if entry.entry_price is None or entry.entry_price <= 0:
        raise FatalConfigError(f"entry {entry.id} ({entry.token_id}) has no entry price")
    return entry.entry_price


def _covers_new_range(old: ExtremumRecord, new: ExtremumRecord) -> bool:
    """True when new saw candles outside the span old was computed from."""
    if new.watermark is not None and (old.watermark is None or new.watermark > old.watermark):
        return True
    if new.coverage_start is not None and (
        old.coverage_start is None or new.coverage_start < old.coverage_start
    ):
        return True
    return False


def _min_opt(a: Optional[int], b: Optional[int]) -> Optional[int]:
    values = [v for v in (a, b) if v is not None]
    return min(values) if values else None


def _max_opt(a: Optional[int], b: Optional[int]) -> Optional[int]:
    values = [v for v in (a, b) if v is not None]
    return max(values) if values else None


def _build_record(
    entry: TrackedEntry,
    *,
    current_price: Decimal,
    ath_price: Decimal,
    ath_at: int,
    min_low_price: Decimal,
    min_low_at: int,
    milestones: Dict[int, Optional[int]],
    coverage_start: Optional[int],
    watermark: Optional[int],
    backfilled_at: Optional[int],
    updated_at: int,
) -> ExtremumRecord:
    entry_price = entry.entry_price
    t0 = entry.entry_time
    drawdown = min(_ZERO, (min_low_price - entry_price) / entry_price * _HUNDRED)
    dipped = min_low_price < entry_price

    return ExtremumRecord(
        entry_id=entry.id,
        current_price=current_price,
        current_multiple=current_price / entry_price,
        current_market_cap=entry.market_cap_at(current_price),
        ath_price=ath_price,
        ath_multiple=ath_price / entry_price,
        ath_market_cap=entry.market_cap_at(ath_price),
        ath_at=ath_at,
        min_low_price=min_low_price,
        min_low_at=min_low_at,
        max_drawdown=drawdown,
        max_drawdown_market_cap=entry.market_cap_at(min_low_price),
        time_to_ath=ath_at - t0,
        time_to_drawdown=min_low_at - t0,
        time_from_drawdown_to_ath=(ath_at - min_low_at) if dipped else None,
        time_to_2x=milestones.get(2),
        time_to_3x=milestones.get(3),
        time_to_5x=milestones.get(5),
        time_to_10x=milestones.get(10),
        coverage_start=coverage_start,
        watermark=watermark,
        backfilled_at=backfilled_at,
        updated_at=updated_at,
    )
