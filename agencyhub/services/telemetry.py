from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class StepSample:
    ts: float
    step: str
    duration_ms: float
    success: bool


_step_samples: Deque[StepSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for pool churn, retries and login outcomes.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_step(*, step: str, duration_ms: float, success: bool) -> None:
    # Capture provisioning step latency so slow migrations are visible.
    _step_samples.append(
        StepSample(ts=time.time(), step=step, duration_ms=duration_ms, success=success)
    )


def step_latency(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate p95/max duration per provisioning step over the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _step_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.step].append(sample.duration_ms)
    result: dict[str, dict[str, float]] = {}
    for step, durations in grouped.items():
        durations.sort()
        p95_idx = max(0, math.ceil(0.95 * len(durations)) - 1)
        result[step] = {"p95": durations[p95_idx], "max": durations[-1]}
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Allow tests to assert on counters without cross-test leakage.
    _counters.clear()
    _gauges.clear()
    _step_samples.clear()
