"""
Consistency Validator — audits stored records and repairs what is safe to repair.

Checks per entry:
  MISSING_ENTRY        error    no usable entry price
  MISSING_ATH          warning  no record yet
  ATH_BELOW_ENTRY      warning  ath < entry × 0.95
  IMPOSSIBLE_MULTIPLE  error if <= 0, warning if > 10000x
  NEGATIVE_TIME        error    time_to_ath < 0
  INVALID_TIME         warning  ath_at before entry time (beyond tolerance)
  DRAWDOWN_AFTER_ATH   info     min low after ATH with drawdown worse than -10%
  STALE_METRICS        info     record older than the stale threshold

ATH_BELOW_ENTRY, NEGATIVE_TIME and INVALID_TIME are auto-fixable.
"""

from __future__ import annotations
import asyncio
import math
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, List, Optional
import logging

from core.errors import PersistenceError
from exchange.models import (
    AUTO_FIXABLE,
    ExtremumRecord,
    IssueType,
    Severity,
    TrackedEntry,
    TrackingStatus,
    ValidationIssue,
    ValidationReport,
)

if TYPE_CHECKING:
    from config import ValidationConfig
    from notifications.telegram import TelegramNotifier
    from storage.database import Database

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FixResult:
    fixed_count: int = 0
    failed_count: int = 0
    details: List[str] = field(default_factory=list)


def compute_health_score(total: int, with_record: int, errors: int, warnings: int) -> int:
    """
    completeness = 100 · with_record / total (100 when there is nothing to check)
    score = clamp(completeness − min(5·errors, 50) − min(2·warnings, 30), 0, 100), rounded half up
    """
    completeness = 100.0 * with_record / total if total else 100.0
    score = completeness - min(5 * errors, 50) - min(2 * warnings, 30)
    score = max(0.0, min(100.0, score))
    return int(math.floor(score + 0.5))


def validate_entry(
    entry: TrackedEntry,
    record: Optional[ExtremumRecord],
    now_ms: int,
    config: "ValidationConfig",
) -> List[ValidationIssue]:
    """All issues for one entry. Pure."""
    issues: List[ValidationIssue] = []

    def add(issue_type: IssueType, severity: Severity, message: str,
            current: Optional[float] = None, expected: Optional[float] = None):
        issues.append(ValidationIssue(
            entry_id=entry.id, token_id=entry.token_id, type=issue_type,
            severity=severity, message=message,
            current_value=current, expected_value=expected,
        ))

    entry_price = entry.entry_price
    if entry_price is None or entry_price <= 0:
        add(IssueType.MISSING_ENTRY, Severity.ERROR, "Entry has no valid entry price")
        return issues

    if record is None:
        add(IssueType.MISSING_ATH, Severity.WARNING, "Entry has no extremum record")
        return issues

    if Decimal("0") < record.ath_price < entry_price * config.ath_tolerance:
        add(
            IssueType.ATH_BELOW_ENTRY, Severity.WARNING,
            f"ATH price ({record.ath_price}) is below entry price ({entry_price})",
            float(record.ath_price), float(entry_price),
        )

    if record.ath_multiple <= 0 or record.ath_multiple > config.max_multiple:
        invalid = record.ath_multiple <= 0
        add(
            IssueType.IMPOSSIBLE_MULTIPLE,
            Severity.ERROR if invalid else Severity.WARNING,
            f"ATH multiple ({record.ath_multiple:.2f}x) is {'invalid' if invalid else 'unusually high'}",
            float(record.ath_multiple),
        )

    if record.time_to_ath < 0:
        add(
            IssueType.NEGATIVE_TIME, Severity.ERROR,
            f"Time to ATH is negative ({record.time_to_ath}ms)",
            float(record.time_to_ath),
        )

    if record.ath_at < entry.entry_time - config.time_tolerance_ms:
        add(
            IssueType.INVALID_TIME, Severity.WARNING,
            f"ATH time ({record.ath_at}) is before entry time ({entry.entry_time})",
            float(record.ath_at), float(entry.entry_time),
        )

    if record.min_low_at > record.ath_at and record.max_drawdown < config.drawdown_after_ath_pct:
        add(
            IssueType.DRAWDOWN_AFTER_ATH, Severity.INFO,
            "Lowest point occurred after ATH",
            float(record.min_low_at), float(record.ath_at),
        )

    age = now_ms - record.updated_at
    if age > config.stale_after_ms:
        add(
            IssueType.STALE_METRICS, Severity.INFO,
            f"Metrics are {round(age / 3_600_000)} hours old",
            float(age),
        )

    return issues


def repair_record(
    entry: TrackedEntry,
    record: ExtremumRecord,
    config: "ValidationConfig",
    now_ms: int,
) -> Optional[ExtremumRecord]:
    """Deterministic repair of the auto-fixable issues. None when nothing needed fixing."""
    entry_price = entry.entry_price
    t0 = entry.entry_time
    changes = {}

    if record.ath_price < entry_price * config.ath_tolerance:
        changes.update(
            ath_price=entry_price,
            ath_multiple=Decimal("1.0"),
            ath_market_cap=entry.market_cap_at(entry_price),
            ath_at=t0,
            time_to_ath=0,
        )

    if record.time_to_ath < 0:
        changes["time_to_ath"] = 0
        if record.ath_at < t0:
            changes["ath_at"] = t0

    if record.ath_at < t0 - config.time_tolerance_ms:
        changes.update(ath_at=t0, time_to_ath=0)

    if record.min_low_at < t0 - config.time_tolerance_ms:
        changes.update(min_low_at=t0, time_to_drawdown=0)

    if not changes:
        return None

    fixed = replace(record, updated_at=now_ms, **changes)
    if fixed.min_low_price < entry_price and fixed.min_low_at <= fixed.ath_at:
        fixed.time_from_drawdown_to_ath = fixed.ath_at - fixed.min_low_at
    else:
        fixed.time_from_drawdown_to_ath = None
    return fixed


def format_report(report: ValidationReport, max_issues: int = 10) -> str:
    """Plain-text summary for operators."""
    lines = [
        f"Health score: {report.health_score}/100",
        f"Entries: {report.total_entries} ({report.with_record} with records)",
        f"Issues: {report.issue_count} "
        f"(errors {report.error_count}, warnings {report.warning_count}, info {report.info_count})",
    ]
    if report.counts_by_type:
        lines.append("")
        for issue_type, count in sorted(report.counts_by_type.items(), key=lambda kv: -kv[1]):
            lines.append(f"  {issue_type}: {count}")
    shown = [i for i in report.issues if i.severity != Severity.INFO][:max_issues]
    if shown:
        lines.append("")
        for issue in shown:
            lines.append(f"  #{issue.entry_id} {issue.token_id[:8]}… {issue.type.value}: {issue.message}")
    return "\n".join(lines)


class Validator:
    """Runs validation passes over the store and applies repairs."""

    def __init__(
        self,
        config: "ValidationConfig",
        db: "Database",
        notifier: Optional["TelegramNotifier"] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.config = config
        self.db = db
        self.notifier = notifier
        self._clock = clock
        self._running = False

    def run_validation(self, only_active: bool = False) -> ValidationReport:
        now = self._clock()
        pairs = self.db.get_entries_with_records()
        if only_active:
            pairs = [(e, r) for e, r in pairs if e.status == TrackingStatus.ACTIVE]

        issues: List[ValidationIssue] = []
        for entry, record in pairs:
            issues.extend(validate_entry(entry, record, now, self.config))

        by_severity = Counter(i.severity for i in issues)
        with_record = sum(1 for _, r in pairs if r is not None)
        report = ValidationReport(
            total_entries=len(pairs),
            validated_entries=len(pairs),
            with_record=with_record,
            issue_count=len(issues),
            error_count=by_severity[Severity.ERROR],
            warning_count=by_severity[Severity.WARNING],
            info_count=by_severity[Severity.INFO],
            counts_by_type=dict(Counter(i.type.value for i in issues)),
            issues=issues,
            health_score=compute_health_score(
                len(pairs), with_record, by_severity[Severity.ERROR], by_severity[Severity.WARNING],
            ),
            generated_at=now,
        )
        logger.info(
            f"[VALIDATE] Health {report.health_score}/100: {report.error_count} errors, "
            f"{report.warning_count} warnings, {report.info_count} info "
            f"across {report.total_entries} entries"
        )
        return report

    def auto_fix(self, report: Optional[ValidationReport] = None) -> FixResult:
        """Repair every entry with an auto-fixable issue in the report."""
        report = report or self.run_validation()
        entry_ids = sorted({i.entry_id for i in report.issues if i.type in AUTO_FIXABLE})
        result = FixResult()
        now = self._clock()

        for entry_id in entry_ids:
            entry = self.db.get_entry(entry_id)
            record = self.db.get_record(entry_id)
            if entry is None or record is None or not entry.entry_price:
                result.failed_count += 1
                continue

            fixed = repair_record(entry, record, self.config, now)
            if fixed is None:
                continue
            try:
                self.db.upsert_extremum_record(entry_id, fixed)
            except PersistenceError as e:
                result.failed_count += 1
                logger.warning(f"[VALIDATE] Fix for entry {entry_id} failed: {e}")
                continue
            result.fixed_count += 1
            result.details.append(f"Entry {entry_id}: repaired")

        logger.info(f"[VALIDATE] Auto-fix: {result.fixed_count} fixed, {result.failed_count} failed")
        return result

    async def start(self):
        """Periodic audit loop."""
        self._running = True
        logger.info(f"[VALIDATE] Audit loop active. Interval: {self.config.audit_interval_sec}s")

        while self._running:
            try:
                await self._audit()
            except Exception as e:
                logger.error(f"[VALIDATE] Audit error: {e}", exc_info=True)

            await asyncio.sleep(self.config.audit_interval_sec)

    async def stop(self):
        self._running = False

    async def _audit(self):
        report = self.run_validation()
        if self.config.auto_fix and any(i.type in AUTO_FIXABLE for i in report.issues):
            self.auto_fix(report)
            report = self.run_validation()
        if self.notifier and (report.error_count or report.warning_count):
            await self.notifier.send_validation_report(format_report(report))
