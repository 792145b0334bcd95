"""
ATH Tracker — Main Orchestrator.
Ties all components together: startup, backfill, live refresh, audits, shutdown.
"""

from __future__ import annotations
import asyncio
import os
import sys
import signal
import logging

from dotenv import load_dotenv

# Load .env file before anything else
load_dotenv()

# Create data dir before FileHandler
os.makedirs("data", exist_ok=True)

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("data/tracker.log"),
    ],
)
logger = logging.getLogger(__name__)

from config import TrackerConfig
from dashboard import Dashboard
from data.historical import HistoricalFetcher
from exchange.gecko_rest import GeckoTerminalClient
from exchange.jupiter_rest import JupiterPriceClient
from exchange.resilience import RetryPolicy
from notifications.telegram import TelegramNotifier
from storage.database import Database
from tracking.backfill import BackfillOrchestrator
from tracking.live_refresh import LiveRefreshLoop
from tracking.validator import Validator


class Tracker:
    """Main tracker orchestrator."""

    def __init__(self, config: TrackerConfig):
        self.config = config
        self._running = False

        # Initialize components
        self.db = Database(config.storage.db_path)
        self.notifier = TelegramNotifier(
            bot_token=config.notifications.telegram_bot_token,
            chat_id=config.notifications.telegram_chat_id,
            enabled=config.notifications.enabled,
        )

        # External sources
        src = config.source
        self.source = GeckoTerminalClient(
            base_url=src.gecko_base_url,
            dexscreener_url=src.dexscreener_base_url,
            network=src.network,
            timeout_sec=src.request_timeout_sec,
            max_candles=src.max_candles_per_call,
            policy=RetryPolicy(
                attempts=src.retry_attempts,
                floor_sec=src.backoff_floor_sec,
                cap_sec=src.backoff_cap_sec,
            ),
        )
        self.oracle = JupiterPriceClient(
            price_url=config.oracle.price_url,
            api_key=config.oracle.api_key,
            chunk_size=config.oracle.chunk_size,
            timeout_sec=config.oracle.request_timeout_sec,
        )

        # Engines
        self.fetcher = HistoricalFetcher(
            self.source,
            max_candles=src.max_candles_per_call,
            inter_range_delay_sec=src.inter_range_delay_sec,
        )
        self.backfill = BackfillOrchestrator(
            config=config.backfill,
            db=self.db,
            fetcher=self.fetcher,
            notifier=self.notifier,
        )
        self.live_refresh = LiveRefreshLoop(
            config=config.refresh,
            db=self.db,
            oracle=self.oracle,
            backfill=self.backfill,
            tolerance_ms=config.backfill.tolerance_ms,
        )
        self.validator = Validator(config.validation, self.db, notifier=self.notifier)
        self.dashboard = Dashboard(self, host=config.dashboard.host, port=config.dashboard.port)

    async def start(self):
        """Full startup sequence."""
        logger.info("=" * 60)
        logger.info("   ATH TRACKER — STARTING")
        logger.info("=" * 60)

        # 1. Connect database
        os.makedirs(os.path.dirname(self.config.storage.db_path) or "data", exist_ok=True)
        self.db.connect()

        # 2. Restore backfill progress (an interrupted run comes back paused)
        self.backfill.restore()

        # 3. Operator API
        if self.config.dashboard.enabled:
            await self.dashboard.start()

        # 4. Kick off backfill if configured
        if self.config.backfill.run_on_start:
            self.backfill.start()

        # 5. Send startup notification
        progress = self.backfill.get_progress()
        await self.notifier.send_bot_status(
            f"Started ✅\nBackfill: {progress.status.value} "
            f"({progress.processed_entries}/{progress.total_entries} entries)"
        )

        # 6. Run all async tasks
        self._running = True
        logger.info("[BOOT] ✅ All systems go. Running...")

        loops = [self.validator.start()]
        if self.config.refresh.enabled:
            loops.append(self.live_refresh.start())
        await asyncio.gather(*loops)

    async def stop(self):
        """Graceful shutdown."""
        logger.info("[SHUTDOWN] Stopping tracker...")
        self._running = False

        self.backfill.stop()
        await self.backfill.wait()
        await self.live_refresh.stop()
        await self.validator.stop()
        await self.dashboard.stop()
        await self.source.close()
        await self.oracle.close()
        await self.notifier.send_bot_status("Stopped 🔴")
        await self.notifier.close()
        self.db.close()

        logger.info("[SHUTDOWN] Complete.")


async def main():
    """Entry point."""
    config = TrackerConfig.from_env()
    logging.getLogger().setLevel(config.log_level.upper())

    tracker = Tracker(config)

    # Graceful shutdown handler
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}. Initiating shutdown...")
            asyncio.create_task(_shutdown(tracker))

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

    try:
        await tracker.start()
    except asyncio.CancelledError:
        logger.info("Main task cancelled.")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        await tracker.stop()
        sys.exit(1)


async def _shutdown(tracker: Tracker):
    """Stop components, then cancel the remaining loops."""
    await tracker.stop()
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current:
            task.cancel()


if __name__ == "__main__":
    asyncio.run(main())
