from __future__ import annotations

import pytest

from tenantsync.core.errors import WarehouseError
from tenantsync.services.resilience import RetryPolicy, backoff_delay_s, retry_async
from tenantsync.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_raises_non_retryable_immediately() -> None:
    calls = {"count": 0}

    async def broken() -> None:
        calls["count"] += 1
        raise WarehouseError("bad query", status_code=400)

    with pytest.raises(WarehouseError):
        await retry_async(broken, policy=RetryPolicy(timeout_ms=100, max_attempts=5, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_stops_after_max_attempts() -> None:
    calls = {"count": 0}

    async def down() -> None:
        calls["count"] += 1
        raise WarehouseError("unavailable", status_code=503)

    with pytest.raises(WarehouseError):
        await retry_async(down, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 3


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(timeout_ms=100, max_attempts=10, backoff_ms=100, max_backoff_ms=400)
    # Jitter stays within [0.5, 1.5] of the nominal delay.
    assert 0.05 <= backoff_delay_s(policy, 1) <= 0.15
    assert 0.1 <= backoff_delay_s(policy, 2) <= 0.3
    assert backoff_delay_s(policy, 8) <= 0.6
