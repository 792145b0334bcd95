"""
ATH Tracker — Configuration
All tunable parameters in one place.
"""

import os
from decimal import Decimal
from dataclasses import dataclass, field


@dataclass
class SourceConfig:
    gecko_base_url: str = "https://api.geckoterminal.com/api/v2"
    dexscreener_base_url: str = "https://api.dexscreener.com"
    network: str = "solana"
    request_timeout_sec: float = 15.0
    max_candles_per_call: int = 1000
    retry_attempts: int = 3             # Total attempts per call
    backoff_floor_sec: float = 10.0
    backoff_cap_sec: float = 30.0
    inter_range_delay_sec: float = 0.5  # Pacing between planned ranges


@dataclass
class OracleConfig:
    price_url: str = "https://lite-api.jup.ag/price/v3"
    api_key: str = ""
    chunk_size: int = 100
    request_timeout_sec: float = 10.0


@dataclass
class BackfillConfig:
    concurrency: int = 3                # Token groups per wave
    inter_wave_delay_sec: float = 2.0
    tolerance_ms: int = 5 * 60_000      # Clock skew allowed before entry
    eta_window: int = 20                # Units in the moving average
    stale_after_hours: int = 24         # 0 disables staleness selection
    run_on_start: bool = False
    force_refresh: bool = False


@dataclass
class RefreshConfig:
    enabled: bool = True
    interval_sec: int = 10


@dataclass
class ValidationConfig:
    ath_tolerance: Decimal = Decimal("0.95")    # ATH below entry × this is flagged
    max_multiple: Decimal = Decimal("10000")
    time_tolerance_ms: int = 5 * 60_000
    stale_after_ms: int = 24 * 3_600_000
    drawdown_after_ath_pct: Decimal = Decimal("-10")
    audit_interval_sec: int = 3600
    auto_fix: bool = False


@dataclass
class NotificationConfig:
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    enabled: bool = True


@dataclass
class StorageConfig:
    db_path: str = "./data/tracker.db"


@dataclass
class DashboardConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class TrackerConfig:
    source: SourceConfig = field(default_factory=SourceConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.source.network = os.getenv("GECKO_NETWORK", config.source.network)
        config.oracle.api_key = os.getenv("JUPITER_API_KEY", "")
        config.backfill.concurrency = int(os.getenv("BACKFILL_CONCURRENCY", str(config.backfill.concurrency)))
        config.backfill.run_on_start = os.getenv("BACKFILL_ON_START", "false").lower() == "true"
        config.backfill.force_refresh = os.getenv("BACKFILL_FORCE", "false").lower() == "true"
        config.refresh.enabled = os.getenv("LIVE_REFRESH", "true").lower() == "true"
        config.refresh.interval_sec = int(os.getenv("LIVE_REFRESH_INTERVAL", str(config.refresh.interval_sec)))
        config.validation.auto_fix = os.getenv("VALIDATION_AUTO_FIX", "false").lower() == "true"
        config.notifications.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        config.notifications.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID", "")
        config.storage.db_path = os.getenv("DB_PATH", "./data/tracker.db")
        config.dashboard.enabled = os.getenv("DASHBOARD", "true").lower() == "true"
        config.dashboard.port = int(os.getenv("DASHBOARD_PORT", str(config.dashboard.port)))
        config.log_level = os.getenv("LOG_LEVEL", "INFO")
        return config
