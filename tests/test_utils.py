import json
import logging

import httpx
import pytest

from fragment_sync.utils.logging import JsonFormatter, TextFormatter
from fragment_sync.utils.rate_limit import AsyncRateLimiter
from fragment_sync.utils.retry import async_retry, is_transient


def status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://node.test")
    return httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(status, request=request)
    )


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("fragment_sync.test", logging.INFO, __file__, 1, "Sync pass complete", None, None)
    record.__dict__.update(extra)
    return record


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ConnectError("refused"), True),
        (status_error(503), True),
        (status_error(429), True),
        (status_error(400), False),
        (ValueError("bad"), False),
    ],
)
def test_is_transient(exc, expected):
    assert is_transient(exc) is expected


@pytest.mark.asyncio
async def test_async_retry_stops_on_permanent_error():
    calls = []

    async def fail():
        calls.append(1)
        raise status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        await async_retry(fail, attempts=3, base_wait=0)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_async_retry_returns_after_transient_errors():
    outcomes = iter([httpx.ConnectError("refused"), httpx.ReadTimeout("slow"), "0x1"])

    async def flaky():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert await async_retry(flaky, attempts=3, base_wait=0) == "0x1"


def test_rate_limiter_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        AsyncRateLimiter(0)


@pytest.mark.asyncio
async def test_rate_limiter_allows_burst_then_paces():
    limiter = AsyncRateLimiter(rate=20, burst=2)

    await limiter.acquire()
    await limiter.acquire()
    assert limiter.throttled_seconds == 0

    await limiter.acquire()
    assert limiter.throttled_seconds > 0


def test_json_formatter_flattens_context_and_static_fields():
    formatter = JsonFormatter({"service": "fragment-sync"})
    line = formatter.format(make_record(ctx_from_block=500, ctx_to_block=1500))
    data = json.loads(line)

    assert data["message"] == "Sync pass complete"
    assert data["level"] == "INFO"
    assert data["service"] == "fragment-sync"
    assert data["from_block"] == 500
    assert data["to_block"] == 1500
    assert "ctx_from_block" not in data


def test_text_formatter_appends_context():
    line = TextFormatter().format(make_record(ctx_applied=3))
    assert line.endswith("Sync pass complete applied=3")
