from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class JobSample:
    ts: float
    job: str
    status: str
    duration_ms: float
    rows_written: int


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_job_samples: Deque[JobSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture warehouse and token endpoint latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_job(*, job: str, status: str, duration_ms: float, rows_written: int) -> None:
    # Track job outcomes so operators can spot stalled or failing tenants.
    _job_samples.append(
        JobSample(
            ts=time.time(),
            job=job,
            status=status,
            duration_ms=duration_ms,
            rows_written=rows_written,
        )
    )
    increment_counter(f"jobs_{job}_{status}_total")


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    # Aggregate external call latency for integrations in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[float]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample.latency_ms)
    result: dict[str, dict[str, float | None]] = {}
    for integration, latencies in by_integration.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[integration] = {
            "p95": latencies[p95_idx],
            "max": latencies[-1],
        }
    return result


def job_stats(window_s: int) -> dict[str, dict[str, int]]:
    # Count job outcomes per job type in the window.
    cutoff = time.time() - window_s
    result: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    for sample in _job_samples:
        if sample.ts < cutoff:
            continue
        result[sample.job][sample.status] += 1
    return {job: dict(statuses) for job, statuses in result.items()}


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    # Tests start from empty buffers.
    _external_samples.clear()
    _job_samples.clear()
    _counters.clear()
