"""
GeckoTerminal candle source, with DexScreener as the pool-lookup fallback.
Public methods never raise: exhausted retries degrade to [] / None.
"""

from __future__ import annotations
import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional
import aiohttp
import logging

from core.errors import DataUnavailable, TrackerError, TransientFetchError
from exchange.models import Candle, Timeframe
from exchange.resilience import RetryPolicy, get_json, resilient_call

logger = logging.getLogger(__name__)

_HEADERS = {"Accept": "application/json"}


class GeckoTerminalClient:
    """Async GeckoTerminal OHLCV wrapper."""

    def __init__(
        self,
        base_url: str = "https://api.geckoterminal.com/api/v2",
        dexscreener_url: str = "https://api.dexscreener.com",
        network: str = "solana",
        timeout_sec: float = 15.0,
        max_candles: int = 1000,
        policy: RetryPolicy = RetryPolicy(),
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.dexscreener_url = dexscreener_url.rstrip("/")
        self.network = network
        self.timeout_sec = timeout_sec
        self.max_candles = max_candles
        self.policy = policy
        self._session = session
        self._sleep = sleep
        # token -> pool address (None = definitively no pool)
        self._pool_cache: Dict[str, Optional[str]] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        """GET through the shared retry policy."""
        session = await self._get_session()
        return await resilient_call(
            get_json, session, url, params, _HEADERS, self.timeout_sec,
            policy=self.policy, sleep=self._sleep,
        )

    # ==================== Pool Lookup ====================

    async def resolve_pool(self, token_id: str) -> Optional[str]:
        """
        Most relevant trading pool for a token, or None.
        Only definitive answers are cached; transient failures are retried next call.
        """
        if token_id in self._pool_cache:
            return self._pool_cache[token_id]

        definitive = True
        pool: Optional[str] = None
        for lookup in (self._gecko_top_pool, self._dexscreener_top_pair):
            try:
                pool = await lookup(token_id)
            except DataUnavailable:
                pool = None
            except TrackerError as e:
                logger.warning(f"[GECKO] {token_id}: pool lookup via {lookup.__name__} failed: {e}")
                definitive = False
                pool = None
            if pool:
                definitive = True
                break

        if definitive:
            self._pool_cache[token_id] = pool
        if pool is None:
            logger.debug(f"[GECKO] {token_id}: no pool found")
        return pool

    async def _gecko_top_pool(self, token_id: str) -> Optional[str]:
        url = f"{self.base_url}/networks/{self.network}/tokens/{token_id}/pools"
        data = await self._request(url, {"page": "1"})
        pools = _as_dict(data).get("data")
        if not isinstance(pools, list) or not pools:
            return None
        return _as_dict(_as_dict(pools[0]).get("attributes")).get("address") or None

    async def _dexscreener_top_pair(self, token_id: str) -> Optional[str]:
        url = f"{self.dexscreener_url}/latest/dex/tokens/{token_id}"
        data = await self._request(url)
        pairs = _as_dict(data).get("pairs")
        if not isinstance(pairs, list):
            return None
        pairs = [p for p in pairs if isinstance(p, dict) and p.get("pairAddress")]
        if not pairs:
            return None
        return max(pairs, key=_liquidity_usd)["pairAddress"]

    # ==================== Candles ====================

    async def fetch_candles(
        self,
        token_id: str,
        timeframe: Timeframe,
        limit: int,
        before_ms: Optional[int] = None,
    ) -> List[Candle]:
        """
        Up to `limit` candles ending at before_ms (or now), oldest first.
        Returns [] when there is no pool, no data, or retries are exhausted.
        """
        pool = await self.resolve_pool(token_id)
        if not pool:
            return []

        url = f"{self.base_url}/networks/{self.network}/pools/{pool}/ohlcv/{timeframe.value}"
        params = {
            "aggregate": "1",
            "limit": str(max(1, min(limit, self.max_candles))),
            "currency": "usd",
        }
        if before_ms is not None:
            params["before_timestamp"] = str(before_ms // 1000)

        try:
            data = await self._request(url, params)
        except DataUnavailable:
            return []
        except TransientFetchError as e:
            logger.error(f"[GECKO] {token_id} {timeframe.value}: giving up after retries: {e}")
            return []

        rows = _as_dict(_as_dict(_as_dict(data).get("data")).get("attributes")).get("ohlcv_list")
        if not isinstance(rows, list):
            if data is not None:
                logger.warning(f"[GECKO] {token_id} {timeframe.value}: unexpected OHLCV payload shape")
            return []
        candles = []
        for row in rows:
            candle = _parse_ohlcv_row(row)
            if candle is not None:
                candles.append(candle)
        # API returns newest first
        candles.sort(key=lambda c: c.timestamp)
        logger.debug(f"[GECKO] {token_id}: {len(candles)} {timeframe.value} candles")
        return candles


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _liquidity_usd(pair: Dict[str, Any]) -> float:
    try:
        return float(_as_dict(pair.get("liquidity")).get("usd") or 0)
    except (TypeError, ValueError):
        return 0.0


def _parse_ohlcv_row(row: Any) -> Optional[Candle]:
    """[ts_sec, open, high, low, close, volume] -> Candle."""
    try:
        ts, o, h, l, c, v = row[:6]
        return Candle(
            timestamp=int(ts) * 1000,
            open=Decimal(str(o)),
            high=Decimal(str(h)),
            low=Decimal(str(l)),
            close=Decimal(str(c)),
            volume=Decimal(str(v)),
        )
    except (TypeError, ValueError, InvalidOperation):
        logger.debug(f"[GECKO] Skipping malformed OHLCV row: {row!r}")
        return None
