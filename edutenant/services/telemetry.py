from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class OperationSample:
    ts: float
    operation: str
    latency_ms: float
    success: bool


_operation_samples: Deque[OperationSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_operation(*, operation: str, latency_ms: float, success: bool) -> None:
    # Capture latency and outcome of provisioning steps.
    _operation_samples.append(
        OperationSample(
            ts=time.time(),
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def operation_latency(window_s: int) -> dict[str, dict[str, float | int]]:
    # Aggregate p95/max and failure counts per operation in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[OperationSample]] = defaultdict(list)
    for sample in _operation_samples:
        if sample.ts >= cutoff:
            grouped[sample.operation].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for operation, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[operation] = {
            "p95": latencies[idx],
            "max": latencies[-1],
            "failures": sum(1 for sample in samples if not sample.success),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests only.
    _operation_samples.clear()
    _counters.clear()
    _gauges.clear()
