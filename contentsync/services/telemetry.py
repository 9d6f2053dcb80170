from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class JobSample:
    ts: float
    job_name: str
    status: str
    duration_ms: float


_job_samples: Deque[JobSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards; process-local by design of the single-instance deployment.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_job_outcome(*, job_name: str, status: str, duration_ms: float) -> None:
    # Track per-job durations and outcomes for the ops metrics endpoint.
    _job_samples.append(JobSample(ts=time.time(), job_name=job_name, status=status, duration_ms=duration_ms))
    increment_counter(f"job_runs_total.{job_name}.{status}")


def job_duration_stats(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Summarize p95/max duration and failure counts per job name in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[JobSample]] = defaultdict(list)
    for sample in _job_samples:
        if sample.ts >= cutoff:
            grouped[sample.job_name].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for job_name, samples in grouped.items():
        durations = sorted(sample.duration_ms for sample in samples)
        idx = max(0, math.ceil(0.95 * len(durations)) - 1)
        result[job_name] = {
            "runs": len(samples),
            "failed": sum(1 for sample in samples if sample.status == "failed"),
            "p95_ms": durations[idx],
            "max_ms": durations[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests reset process-wide registries between cases.
    _job_samples.clear()
    _counters.clear()
    _gauges.clear()
