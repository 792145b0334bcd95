"""
Telegram Notifier — Sends backfill lifecycle updates and validation reports.
"""

from __future__ import annotations
import asyncio
import aiohttp
from typing import TYPE_CHECKING, Optional
import logging

if TYPE_CHECKING:
    from exchange.models import BackfillProgress

logger = logging.getLogger(__name__)


def _fmt_duration(ms: Optional[int]) -> str:
    if ms is None:
        return "n/a"
    seconds = int(ms // 1000)
    hours, rem = divmod(seconds, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class TelegramNotifier:
    """Sends messages via Telegram Bot API."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        enabled: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.enabled = enabled and bool(bot_token) and bool(chat_id)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def send(self, message: str, parse_mode: str = "HTML"):
        """Send a message to the configured chat."""
        if not self.enabled:
            logger.debug(f"[TG] (disabled) Would send: {message[:100]}...")
            return

        try:
            session = await self._get_session()
            url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
            payload = {
                "chat_id": self.chat_id,
                "text": message,
                "parse_mode": parse_mode,
                "disable_web_page_preview": True,
            }

            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"[TG] Send failed ({resp.status}): {body[:200]}")
                else:
                    logger.debug(f"[TG] Sent: {message[:80]}...")

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[TG] Error sending message: {e}")

    async def send_backfill_started(self, total_entries: int, total_groups: int, resumed: bool):
        verb = "RESUMED" if resumed else "STARTED"
        await self.send(
            f"⏳ <b>ATH BACKFILL {verb}</b>\n\n"
            f"Entries: <code>{total_entries}</code>\n"
            f"Tokens: <code>{total_groups}</code>"
        )

    async def send_backfill_finished(self, progress: "BackfillProgress"):
        """Summary for complete, paused, and error outcomes."""
        status = progress.status.value.upper()
        emoji = {"COMPLETE": "✅", "PAUSED": "⏸", "ERROR": "❌"}.get(status, "ℹ️")
        elapsed = None
        if progress.started_at is not None and progress.ended_at is not None:
            elapsed = progress.ended_at - progress.started_at
        msg = (
            f"{emoji} <b>ATH BACKFILL {status}</b>\n\n"
            f"Entries: <code>{progress.processed_entries}/{progress.total_entries}</code>\n"
            f"Tokens: <code>{progress.processed_groups}/{progress.total_groups}</code>\n"
            f"Updated: {progress.updated_count} | Trivial: {progress.trivial_count} | "
            f"Skipped: {progress.skipped_count} | Errors: {progress.error_count}\n"
            f"Elapsed: {_fmt_duration(elapsed)}"
        )
        if progress.last_error:
            msg += f"\n\nLast error: <code>{progress.last_error[:200]}</code>"
        await self.send(msg)

    async def send_validation_report(self, report_text: str):
        await self.send(f"🩺 <b>VALIDATION</b>\n\n{report_text}")

    async def send_bot_status(self, status: str):
        """Send tracker lifecycle status."""
        await self.send(f"🤖 <b>TRACKER</b>: {status}")
