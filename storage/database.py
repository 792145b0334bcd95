"""
SQLite Storage Layer.
Handles persistence for tracked entries, extremum records, and tracker state.
All monetary values stored as TEXT to preserve Decimal precision.
All times stored as INTEGER Unix milliseconds.
"""

from __future__ import annotations
import sqlite3
import time
from decimal import Decimal
from typing import List, Optional, Set, Tuple
from core.errors import PersistenceError
from exchange.models import BackfillFilter, ExtremumRecord, TrackedEntry, TrackingStatus
import logging

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "entry_id", "current_price", "current_multiple", "current_market_cap",
    "ath_price", "ath_multiple", "ath_market_cap", "ath_at",
    "min_low_price", "min_low_at", "max_drawdown", "max_drawdown_market_cap",
    "time_to_ath", "time_to_drawdown", "time_from_drawdown_to_ath",
    "time_to_2x", "time_to_3x", "time_to_5x", "time_to_10x",
    "coverage_start", "watermark", "backfilled_at", "updated_at",
)

_DECIMAL_COLUMNS = frozenset({
    "current_price", "current_multiple", "current_market_cap",
    "ath_price", "ath_multiple", "ath_market_cap",
    "min_low_price", "max_drawdown", "max_drawdown_market_cap",
})


def _to_text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _to_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


class Database:
    """SQLite database manager with typed accessors."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self):
        """Initialize database connection and create tables."""
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()
        logger.info(f"[DB] Connected to {self.db_path}")

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        assert self._conn is not None, "Database not connected"
        return self._conn

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS tracked_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                token_id TEXT NOT NULL,
                entry_price TEXT,
                entry_supply TEXT,
                entry_market_cap TEXT,
                entry_time INTEGER NOT NULL,
                status TEXT NOT NULL DEFAULT 'PENDING'
            );

            CREATE TABLE IF NOT EXISTS extremum_records (
                entry_id INTEGER PRIMARY KEY REFERENCES tracked_entries(id) ON DELETE CASCADE,
                current_price TEXT NOT NULL,
                current_multiple TEXT NOT NULL,
                current_market_cap TEXT,
                ath_price TEXT NOT NULL,
                ath_multiple TEXT NOT NULL,
                ath_market_cap TEXT,
                ath_at INTEGER NOT NULL,
                min_low_price TEXT NOT NULL,
                min_low_at INTEGER NOT NULL,
                max_drawdown TEXT NOT NULL,
                max_drawdown_market_cap TEXT,
                time_to_ath INTEGER NOT NULL,
                time_to_drawdown INTEGER NOT NULL,
                time_from_drawdown_to_ath INTEGER,
                time_to_2x INTEGER,
                time_to_3x INTEGER,
                time_to_5x INTEGER,
                time_to_10x INTEGER,
                coverage_start INTEGER,
                watermark INTEGER,
                backfilled_at INTEGER,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS bot_state (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at INTEGER
            );

            CREATE INDEX IF NOT EXISTS idx_entries_token ON tracked_entries(token_id);
            CREATE INDEX IF NOT EXISTS idx_entries_status ON tracked_entries(status);
        """)
        self.conn.commit()

    # ==================== Entry Operations ====================

    def add_entry(self, entry: TrackedEntry) -> int:
        """Insert a new tracked entry and return its ID."""
        cursor = self.conn.execute(
            """INSERT INTO tracked_entries (token_id, entry_price, entry_supply,
               entry_market_cap, entry_time, status) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                entry.token_id,
                _to_text(entry.entry_price),
                _to_text(entry.entry_supply),
                _to_text(entry.entry_market_cap),
                entry.entry_time,
                entry.status.value,
            ),
        )
        self.conn.commit()
        entry.id = cursor.lastrowid
        return entry.id

    def set_entry_status(self, entry_id: int, status: TrackingStatus):
        self.conn.execute(
            "UPDATE tracked_entries SET status = ? WHERE id = ?",
            (status.value, entry_id),
        )
        self.conn.commit()

    def get_entry(self, entry_id: int) -> Optional[TrackedEntry]:
        row = self.conn.execute("SELECT * FROM tracked_entries WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def get_active_entries(self) -> List[TrackedEntry]:
        rows = self.conn.execute(
            "SELECT * FROM tracked_entries WHERE status = ? ORDER BY id",
            (TrackingStatus.ACTIVE.value,),
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_entries_needing_computation(
        self,
        flt: Optional[BackfillFilter] = None,
        now_ms: Optional[int] = None,
        exclude_ids: Optional[Set[int]] = None,
    ) -> List[TrackedEntry]:
        """
        Non-INACTIVE entries whose record is missing, incomplete, or stale.
        Ordered by entry time so the earliest entry of a token comes first.
        `exclude_ids` are dropped before `limit` applies.
        """
        flt = flt or BackfillFilter()
        now = now_ms if now_ms is not None else int(time.time() * 1000)

        where = ["e.status != ?"]
        params: list = [TrackingStatus.INACTIVE.value]

        if flt.force_refresh:
            if flt.refreshed_before_ms is not None:
                where.append("(r.entry_id IS NULL OR r.backfilled_at IS NULL OR r.backfilled_at < ?)")
                params.append(flt.refreshed_before_ms)
        else:
            needs = [
                "r.entry_id IS NULL",
                "r.backfilled_at IS NULL",
                "CAST(r.ath_price AS REAL) <= 0",
            ]
            if flt.stale_after_ms:
                needs.append("r.backfilled_at < ?")
                params.append(now - flt.stale_after_ms)
            where.append("(" + " OR ".join(needs) + ")")

        if flt.active_since_ms is not None:
            where.append("e.entry_time >= ?")
            params.append(flt.active_since_ms)
        if flt.token_ids:
            where.append(f"e.token_id IN ({','.join('?' * len(flt.token_ids))})")
            params.extend(flt.token_ids)

        sql = (
            "SELECT e.* FROM tracked_entries e "
            "LEFT JOIN extremum_records r ON r.entry_id = e.id "
            f"WHERE {' AND '.join(where)} ORDER BY e.entry_time, e.id"
        )
        if flt.limit and not exclude_ids:
            sql += " LIMIT ?"
            params.append(flt.limit)

        entries = [self._row_to_entry(r) for r in self.conn.execute(sql, params).fetchall()]
        if exclude_ids:
            entries = [e for e in entries if e.id not in exclude_ids]
            if flt.limit:
                entries = entries[:flt.limit]
        return entries

    # ==================== Record Operations ====================

    def get_record(self, entry_id: int) -> Optional[ExtremumRecord]:
        row = self.conn.execute(
            "SELECT * FROM extremum_records WHERE entry_id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def upsert_extremum_record(self, entry_id: int, record: ExtremumRecord):
        """Atomic per-entry upsert. Raises PersistenceError on failure."""
        values = []
        for col in _RECORD_COLUMNS:
            value = entry_id if col == "entry_id" else getattr(record, col)
            values.append(_to_text(value) if col in _DECIMAL_COLUMNS else value)

        try:
            with self.conn:
                self.conn.execute(
                    f"INSERT OR REPLACE INTO extremum_records ({', '.join(_RECORD_COLUMNS)}) "
                    f"VALUES ({', '.join('?' * len(_RECORD_COLUMNS))})",
                    values,
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"upsert for entry {entry_id} failed: {e}") from e

    def get_entries_with_records(self) -> List[Tuple[TrackedEntry, Optional[ExtremumRecord]]]:
        """Every entry paired with its record (or None). Used by the validator."""
        records = {
            r["entry_id"]: self._row_to_record(r)
            for r in self.conn.execute("SELECT * FROM extremum_records").fetchall()
        }
        entries = self.conn.execute("SELECT * FROM tracked_entries ORDER BY id").fetchall()
        return [(self._row_to_entry(e), records.get(e["id"])) for e in entries]

    # ==================== Bot State ====================

    def set_state(self, key: str, value: str):
        self.conn.execute(
            "INSERT OR REPLACE INTO bot_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, int(time.time() * 1000)),
        )
        self.conn.commit()

    def get_state(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM bot_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    # ==================== Row Converters ====================

    def _row_to_entry(self, row) -> TrackedEntry:
        return TrackedEntry(
            id=row["id"],
            token_id=row["token_id"],
            entry_price=_to_decimal(row["entry_price"]),
            entry_supply=_to_decimal(row["entry_supply"]),
            entry_market_cap=_to_decimal(row["entry_market_cap"]),
            entry_time=row["entry_time"],
            status=TrackingStatus(row["status"]),
        )

    def _row_to_record(self, row) -> ExtremumRecord:
        return ExtremumRecord(**{
            col: _to_decimal(row[col]) if col in _DECIMAL_COLUMNS else row[col]
            for col in _RECORD_COLUMNS
        })
