from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class DeliverySample:
    ts: float
    platform: str
    latency_ms: float
    success: bool


@dataclass(frozen=True)
class QueuePassSample:
    ts: float
    trigger: str
    duration_ms: float
    processed: int


_delivery_samples: Deque[DeliverySample] = deque(maxlen=10000)
_pass_samples: Deque[QueuePassSample] = deque(maxlen=2000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_delivery(*, platform: str, latency_ms: float, success: bool) -> None:
    # Capture webhook call latency and outcome per target platform.
    _delivery_samples.append(
        DeliverySample(
            ts=time.time(),
            platform=platform,
            latency_ms=latency_ms,
            success=success,
        )
    )


def record_queue_pass(*, trigger: str, duration_ms: float, processed: int) -> None:
    # Track pass durations separately for scheduled and manual triggers.
    _pass_samples.append(
        QueuePassSample(
            ts=time.time(),
            trigger=trigger,
            duration_ms=duration_ms,
            processed=processed,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _p95(values: list[float]) -> float:
    values.sort()
    idx = max(0, math.ceil(0.95 * len(values)) - 1)
    return values[idx]


def delivery_latency_by_platform(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate webhook latency and success ratio per platform in the window.
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for sample in _delivery_samples:
        if sample.ts < cutoff:
            continue
        latencies[sample.platform].append(sample.latency_ms)
        if not sample.success:
            failures[sample.platform] += 1
    result: dict[str, dict[str, float | int | None]] = {}
    for platform, values in latencies.items():
        result[platform] = {
            "count": len(values),
            "failures": failures[platform],
            "p95": _p95(values),
            "max": max(values),
        }
    return result


def queue_pass_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[QueuePassSample]] = defaultdict(list)
    for sample in _pass_samples:
        if sample.ts >= cutoff:
            grouped[sample.trigger].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for trigger, samples in grouped.items():
        durations = [sample.duration_ms for sample in samples]
        result[trigger] = {
            "passes": len(samples),
            "processed": sum(sample.processed for sample in samples),
            "p95_ms": _p95(durations),
            "max_ms": max(durations),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests reset module state between cases.
    _delivery_samples.clear()
    _pass_samples.clear()
    _counters.clear()
    _gauges.clear()
