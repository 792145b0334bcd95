"""
Resilient call wrapper — the single retry/backoff policy for outbound calls.

Built on tenacity. Only TransientFetchError is retried; anything else
propagates on the first attempt. get_json() is the HTTP seam that turns
status codes and transport failures into that taxonomy.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
import aiohttp
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base
from core.errors import DataUnavailable, TransientFetchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    floor_sec: float = 10.0
    cap_sec: float = 30.0


def backoff_delay(
    attempt: int,
    retry_after: Optional[float] = None,
    floor: float = 10.0,
    cap: float = 30.0,
) -> float:
    """
    Seconds to wait after the given failed attempt (1-based).
    A server Retry-After is clamped to [floor, cap]; otherwise floor·2^(n-1), capped.
    """
    if retry_after is not None:
        return min(cap, max(floor, retry_after))
    return min(cap, floor * (2 ** max(0, attempt - 1)))


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransientFetchError)


class wait_retry_after(wait_base):
    """tenacity wait strategy delegating to backoff_delay()."""

    def __init__(self, floor: float, cap: float):
        self.floor = floor
        self.cap = cap

    def __call__(self, retry_state: RetryCallState) -> float:
        retry_after = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            exc = retry_state.outcome.exception()
            retry_after = getattr(exc, "retry_after", None)
        return backoff_delay(retry_state.attempt_number, retry_after, self.floor, self.cap)


def _log_retry(retry_state: RetryCallState):
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"[RETRY] {getattr(retry_state.fn, '__name__', 'call')} attempt "
        f"{retry_state.attempt_number} failed ({exc}); retrying in {wait:.1f}s"
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


async def get_json(
    session: aiohttp.ClientSession,
    url: str,
    params: Optional[Dict[str, str]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout_sec: float = 15.0,
) -> Any:
    """
    One GET, classified for the retry layer.
    429/5xx/timeouts/connection errors -> TransientFetchError,
    other 4xx and undecodable bodies -> DataUnavailable.
    """
    try:
        async with session.get(
            url,
            params=params,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_sec),
        ) as resp:
            if resp.status == 429:
                raise TransientFetchError(
                    f"rate limited: {url}",
                    status=429,
                    retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                )
            if resp.status >= 500:
                raise TransientFetchError(f"HTTP {resp.status}: {url}", status=resp.status)
            if resp.status >= 400:
                raise DataUnavailable(f"HTTP {resp.status}: {url}")
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise DataUnavailable(f"non-JSON body: {url}") from e
    except asyncio.TimeoutError as e:
        raise TransientFetchError(f"timeout: {url}") from e
    except aiohttp.ClientError as e:
        raise TransientFetchError(f"{type(e).__name__}: {url}") from e


async def resilient_call(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> Any:
    """
    Await fn(*args, **kwargs), retrying transient failures per policy.
    The last exception is re-raised once attempts are exhausted.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_retry_after(policy.floor_sec, policy.cap_sec),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry,
        reraise=True,
        sleep=sleep,
    )
    return await retrying(fn, *args, **kwargs)
