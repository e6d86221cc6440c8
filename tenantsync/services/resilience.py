from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenantsync.core.config import get_settings
from tenantsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    if getattr(exc, "transient", False):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize external retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 30000


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    # Jittered exponential backoff, capped so long outages do not stall a worker.
    jitter = random.uniform(0.5, 1.5)
    delay_ms = min(policy.backoff_ms * (2 ** (attempt - 1)), policy.max_backoff_ms)
    return (delay_ms / 1000.0) * jitter


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    operation: str = "external_call",
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            sleep_s = backoff_delay_s(policy, attempt)
            logger.warning(
                "retrying_transient_failure operation=%s attempt=%s sleep_s=%.2f error=%s",
                operation,
                attempt,
                sleep_s,
                type(exc).__name__,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1
