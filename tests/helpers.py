"""Fakes and builders shared by the tracker tests."""

from __future__ import annotations
import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from exchange.models import Candle, MINUTE_MS

T0 = 1_700_000_000_000
NOW = T0 + 10 * 24 * 3_600_000


def D(value) -> Decimal:
    return Decimal(str(value))


def candle(ts: int, high, low, close=None, open_=None, volume=1) -> Candle:
    close = high if close is None else close
    open_ = low if open_ is None else open_
    return Candle(
        timestamp=ts, open=D(open_), high=D(high), low=D(low), close=D(close), volume=D(volume),
    )


def minute(n: int) -> int:
    return T0 + n * MINUTE_MS


# ==================== HTTP fakes ====================

class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status = status
        self._payload = payload
        self.headers = headers or {}

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return str(self._payload)


class _RequestContext:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Stand-in for aiohttp.ClientSession.
    Routes map a URL substring to a list of outcomes (FakeResponse or exception);
    outcomes are consumed in order and the last one repeats.
    """

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes: Dict[str, List[Any]] = routes or {}
        self.calls: List[Tuple[str, str, Optional[dict]]] = []
        self.closed = False

    def _dispatch(self, method: str, url: str, params: Optional[dict]):
        self.calls.append((method, url, params))
        for fragment, outcomes in self.routes.items():
            if fragment in url:
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                return _RequestContext(outcome)
        return _RequestContext(FakeResponse(404, {}))

    def get(self, url, params=None, headers=None, timeout=None):
        return self._dispatch("GET", url, params)

    def post(self, url, json=None, **kwargs):
        return self._dispatch("POST", url, json)

    def calls_to(self, fragment: str) -> int:
        return sum(1 for _, url, _ in self.calls if fragment in url)

    async def close(self):
        self.closed = True


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        await asyncio.sleep(0)


# ==================== Engine fakes ====================

class FakeFetcher:
    """HistoricalFetcher stand-in: fixed series per token, optional per-token hook."""

    def __init__(self, series: Optional[Dict[str, List[Candle]]] = None):
        self.series = series or {}
        self.calls: List[Tuple[str, int, int]] = []
        self.hooks: Dict[str, Any] = {}
        self.gate: Optional[asyncio.Event] = None

    async def fetch_series(self, token_id: str, from_ms: int, to_ms: int) -> List[Candle]:
        self.calls.append((token_id, from_ms, to_ms))
        hook = self.hooks.get(token_id)
        if hook is not None:
            hook()
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        return list(self.series.get(token_id, []))

    def tokens_fetched(self) -> List[str]:
        return [t for t, _, _ in self.calls]


class FakeOracle:
    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = prices or {}
        self.calls: List[List[str]] = []
        self.gate: Optional[asyncio.Event] = None

    async def fetch_current_prices(self, token_ids):
        self.calls.append(list(token_ids))
        if self.gate is not None:
            await self.gate.wait()
        return {t: self.prices.get(t) for t in token_ids}


