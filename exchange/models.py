"""
Data models for the ATH Tracker.
Uses Decimal for all price/market-cap calculations — no floating point errors.
All timestamps are Unix milliseconds (UTC).
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


class Timeframe(Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def ms(self) -> int:
        return {
            Timeframe.MINUTE: MINUTE_MS,
            Timeframe.HOUR: HOUR_MS,
            Timeframe.DAY: DAY_MS,
        }[self]


class TrackingStatus(Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class BackfillStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"


class BackfillPhase(Enum):
    INIT = "init"
    SELECTING = "selecting"
    PROCESSING = "processing"
    COMPLETE = "complete"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueType(Enum):
    MISSING_ENTRY = "MISSING_ENTRY"
    MISSING_ATH = "MISSING_ATH"
    ATH_BELOW_ENTRY = "ATH_BELOW_ENTRY"
    IMPOSSIBLE_MULTIPLE = "IMPOSSIBLE_MULTIPLE"
    NEGATIVE_TIME = "NEGATIVE_TIME"
    INVALID_TIME = "INVALID_TIME"
    STALE_METRICS = "STALE_METRICS"
    DRAWDOWN_AFTER_ATH = "DRAWDOWN_AFTER_ATH"


# Repaired deterministically by the validator
AUTO_FIXABLE = frozenset({
    IssueType.ATH_BELOW_ENTRY,
    IssueType.NEGATIVE_TIME,
    IssueType.INVALID_TIME,
})

MILESTONES = (2, 3, 5, 10)


@dataclass(frozen=True)
class Candle:
    """Standard OHLCV candle."""
    timestamp: int          # Unix ms, candle open time
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass(frozen=True)
class FetchRange:
    """One planned candle request: [start, end) at a single timeframe."""
    timeframe: Timeframe
    start: int
    end: int
    limit: int


@dataclass
class TrackedEntry:
    """A tracked call. Entry fields are fixed once the price is known."""
    id: Optional[int] = None
    token_id: str = ""
    entry_price: Optional[Decimal] = None
    entry_supply: Optional[Decimal] = None
    entry_market_cap: Optional[Decimal] = None
    entry_time: int = 0
    status: TrackingStatus = TrackingStatus.PENDING

    @property
    def supply(self) -> Optional[Decimal]:
        """Circulating supply at entry, derived from market cap when missing."""
        if self.entry_supply:
            return self.entry_supply
        if self.entry_market_cap and self.entry_price and self.entry_price > 0:
            return self.entry_market_cap / self.entry_price
        return None

    def market_cap_at(self, price: Optional[Decimal]) -> Optional[Decimal]:
        supply = self.supply
        if price is None or supply is None:
            return None
        return price * supply


@dataclass
class ExtremumRecord:
    """ATH / drawdown statistics for one tracked entry (1:1)."""
    entry_id: int
    current_price: Decimal
    current_multiple: Decimal
    current_market_cap: Optional[Decimal]
    ath_price: Decimal
    ath_multiple: Decimal
    ath_market_cap: Optional[Decimal]
    ath_at: int
    min_low_price: Decimal
    min_low_at: int
    max_drawdown: Decimal               # percent, always <= 0
    max_drawdown_market_cap: Optional[Decimal] = None
    time_to_ath: int = 0                # ms
    time_to_drawdown: int = 0           # ms
    time_from_drawdown_to_ath: Optional[int] = None
    time_to_2x: Optional[int] = None
    time_to_3x: Optional[int] = None
    time_to_5x: Optional[int] = None
    time_to_10x: Optional[int] = None
    coverage_start: Optional[int] = None    # earliest candle incorporated
    watermark: Optional[int] = None         # latest candle incorporated
    backfilled_at: Optional[int] = None     # last historical pass
    updated_at: int = 0

    def milestone(self, multiple: int) -> Optional[int]:
        return getattr(self, f"time_to_{multiple}x")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackfillFilter:
    """Selection filter for entries needing (re)computation."""
    force_refresh: bool = False
    active_since_ms: Optional[int] = None
    stale_after_ms: Optional[int] = None
    refreshed_before_ms: Optional[int] = None
    token_ids: Optional[List[str]] = None
    limit: Optional[int] = None


@dataclass
class BackfillProgress:
    """Process-wide backfill state. Owned by the BackfillOrchestrator."""
    status: BackfillStatus = BackfillStatus.IDLE
    phase: BackfillPhase = BackfillPhase.INIT
    total_groups: int = 0
    processed_groups: int = 0
    total_entries: int = 0
    processed_entries: int = 0
    updated_count: int = 0
    trivial_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    current_token: Optional[str] = None
    started_at: Optional[int] = None
    updated_at: Optional[int] = None
    ended_at: Optional[int] = None
    avg_unit_ms: float = 0.0
    eta_ms: Optional[int] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackfillProgress":
        data = dict(data)
        data["status"] = BackfillStatus(data.get("status", "idle"))
        data["phase"] = BackfillPhase(data.get("phase", "init"))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ValidationIssue:
    entry_id: int
    token_id: str
    type: IssueType
    severity: Severity
    message: str
    current_value: Optional[float] = None
    expected_value: Optional[float] = None


@dataclass
class ValidationReport:
    total_entries: int = 0
    validated_entries: int = 0
    with_record: int = 0
    issue_count: int = 0
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    counts_by_type: Dict[str, int] = field(default_factory=dict)
    issues: List[ValidationIssue] = field(default_factory=list)
    health_score: int = 100
    generated_at: int = 0
