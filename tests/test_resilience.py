import pytest

from core.errors import DataUnavailable, TransientFetchError
from exchange.resilience import RetryPolicy, backoff_delay, get_json, is_retryable, resilient_call
from tests.helpers import FakeResponse, FakeSession


@pytest.mark.parametrize("attempt,expected", [(1, 10), (2, 20), (3, 30), (6, 30)])
def test_exponential_backoff_is_floored_and_capped(attempt, expected):
    assert backoff_delay(attempt) == expected


@pytest.mark.parametrize("retry_after,expected", [(2, 10), (15, 15), (120, 30)])
def test_retry_after_is_clamped(retry_after, expected):
    assert backoff_delay(1, retry_after=retry_after) == expected


def test_only_transient_errors_are_retryable():
    assert is_retryable(TransientFetchError("429", status=429))
    assert not is_retryable(DataUnavailable("no pool"))
    assert not is_retryable(ValueError("boom"))


class Flaky:
    def __init__(self, failures):
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return value


async def test_retries_transient_failures_then_succeeds(sleep_recorder):
    fn = Flaky([TransientFetchError("a"), TransientFetchError("b")])
    result = await resilient_call(fn, "ok", policy=RetryPolicy(attempts=3), sleep=sleep_recorder)
    assert result == "ok"
    assert fn.calls == 3
    assert sleep_recorder.delays == [10, 20]


async def test_honours_server_retry_after(sleep_recorder):
    fn = Flaky([TransientFetchError("429", status=429, retry_after=15)])
    await resilient_call(fn, 1, sleep=sleep_recorder)
    assert sleep_recorder.delays == [15]


async def test_reraises_after_attempts_exhausted(sleep_recorder):
    fn = Flaky([TransientFetchError(str(i)) for i in range(5)])
    with pytest.raises(TransientFetchError):
        await resilient_call(fn, 1, policy=RetryPolicy(attempts=3), sleep=sleep_recorder)
    assert fn.calls == 3
    assert len(sleep_recorder.delays) == 2


async def test_non_retryable_error_is_not_retried(sleep_recorder):
    fn = Flaky([DataUnavailable("gone")])
    with pytest.raises(DataUnavailable):
        await resilient_call(fn, 1, sleep=sleep_recorder)
    assert fn.calls == 1
    assert sleep_recorder.delays == []


async def test_get_json_classifies_statuses():
    session = FakeSession({
        "/limited": [FakeResponse(429, {}, {"Retry-After": "7"})],
        "/broken": [FakeResponse(503, {})],
        "/missing": [FakeResponse(404, {})],
        "/ok": [FakeResponse(200, {"a": 1})],
    })

    with pytest.raises(TransientFetchError) as exc_info:
        await get_json(session, "https://x/limited")
    assert exc_info.value.status == 429
    assert exc_info.value.retry_after == 7.0

    with pytest.raises(TransientFetchError):
        await get_json(session, "https://x/broken")
    with pytest.raises(DataUnavailable):
        await get_json(session, "https://x/missing")
    assert await get_json(session, "https://x/ok") == {"a": 1}


async def test_get_json_maps_timeouts_to_transient():
    import asyncio

    session = FakeSession({"/slow": [asyncio.TimeoutError()]})
    with pytest.raises(TransientFetchError):
        await get_json(session, "https://x/slow")
