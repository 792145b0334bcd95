"""
Jupiter price oracle — batched current USD prices.
"""

from __future__ import annotations
import asyncio
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional
import aiohttp
import logging

from core.errors import TrackerError
from exchange.resilience import RetryPolicy, get_json, resilient_call

logger = logging.getLogger(__name__)


class JupiterPriceClient:
    """Async Jupiter price/v3 wrapper."""

    def __init__(
        self,
        price_url: str = "https://lite-api.jup.ag/price/v3",
        api_key: str = "",
        chunk_size: int = 100,
        timeout_sec: float = 10.0,
        policy: RetryPolicy = RetryPolicy(attempts=2, floor_sec=2.0, cap_sec=10.0),
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.price_url = price_url
        self.api_key = api_key
        self.chunk_size = chunk_size
        self.timeout_sec = timeout_sec
        self.policy = policy
        self._session = session
        self._sleep = sleep

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def fetch_current_prices(self, token_ids: List[str]) -> Dict[str, Optional[Decimal]]:
        """
        Current price per token id. Every requested id is present in the result;
        unknown tokens and failed chunks map to None.
        """
        unique = list(dict.fromkeys(token_ids))
        prices: Dict[str, Optional[Decimal]] = {t: None for t in unique}
        if not unique:
            return prices

        session = await self._get_session()
        for i in range(0, len(unique), self.chunk_size):
            chunk = unique[i:i + self.chunk_size]
            try:
                data = await resilient_call(
                    get_json, session, self.price_url, {"ids": ",".join(chunk)},
                    self._headers(), self.timeout_sec,
                    policy=self.policy, sleep=self._sleep,
                )
            except TrackerError as e:
                logger.warning(f"[JUP] Price chunk of {len(chunk)} failed: {e}")
                continue

            if not isinstance(data, dict):
                logger.warning(f"[JUP] Price chunk of {len(chunk)}: unexpected payload shape")
                continue
            for token_id in chunk:
                prices[token_id] = _parse_price(data.get(token_id))

        found = sum(1 for p in prices.values() if p is not None)
        logger.debug(f"[JUP] Prices: {found}/{len(unique)} found")
        return prices


def _parse_price(info) -> Optional[Decimal]:
    if not isinstance(info, dict):
        return None
    raw = info.get("usdPrice")
    if raw is None:
        return None
    try:
        price = Decimal(str(raw))
    except InvalidOperation:
        return None
    return price if price.is_finite() and price > 0 else None
