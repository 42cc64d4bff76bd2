from __future__ import annotations

import pytest

from tenantshift.core.errors import ProviderError, ProviderUnavailableError
from tenantshift.services.resilience import RetryPolicy, retry_async
from tenantshift.services.telemetry import counters_snapshot


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise ProviderUnavailableError("blip")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(name="provision", max_attempts=3, backoff_ms=0),
        sleep=_no_sleep,
    )
    assert result == "ok"
    assert calls["count"] == 3
    assert counters_snapshot()["retries_total.provision"] == 2


@pytest.mark.asyncio
async def test_retry_async_stops_at_attempt_ceiling() -> None:
    calls = {"count": 0}

    async def always_down() -> None:
        calls["count"] += 1
        raise TimeoutError("still down")

    with pytest.raises(TimeoutError):
        await retry_async(
            always_down,
            policy=RetryPolicy(name="provision", max_attempts=3, backoff_ms=0),
            sleep=_no_sleep,
        )
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise ProviderError("bad request")

    with pytest.raises(ProviderError):
        await retry_async(broken, policy=RetryPolicy(name="rollback", max_attempts=5, backoff_ms=0), sleep=_no_sleep)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_sleeps_with_exponential_backoff() -> None:
    delays: list[float] = []

    async def record(seconds: float) -> None:
        delays.append(seconds)

    async def always_down() -> None:
        raise OSError("connection reset")

    with pytest.raises(OSError):
        await retry_async(
            always_down,
            policy=RetryPolicy(name="provision", max_attempts=4, backoff_ms=100, jitter=False),
            sleep=record,
        )
    assert delays == [0.1, 0.2, 0.4]


def test_jittered_delay_stays_near_base() -> None:
    policy = RetryPolicy(name="provision", max_attempts=3, backoff_ms=1000)
    for attempt in (1, 2, 3):
        base = 2 ** (attempt - 1)
        assert 0.5 * base <= policy.delay_s(attempt) <= 1.5 * base
