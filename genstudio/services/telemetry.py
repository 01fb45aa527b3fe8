from __future__ import annotations

from collections import Counter, deque
import math
import time
from typing import Any, NamedTuple


class _CallSample(NamedTuple):
    at: float
    latency_ms: float
    ok: bool


_SAMPLES_PER_INTEGRATION = 2000

_calls: dict[str, deque[_CallSample]] = {}
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    samples = _calls.get(integration)
    if samples is None:
        samples = _calls[integration] = deque(maxlen=_SAMPLES_PER_INTEGRATION)
    samples.append(_CallSample(at=time.time(), latency_ms=latency_ms, ok=success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(sorted(_counters.items()))


def gauges_snapshot() -> dict[str, float]:
    return dict(sorted(_gauges.items()))


def _p95(latencies: list[float]) -> float:
    ordered = sorted(latencies)
    index = max(math.ceil(len(ordered) * 0.95) - 1, 0)
    return round(ordered[index], 2)


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, Any]]:
    """Per-integration call health over the trailing window.

    Integrations with no calls inside the window are omitted.
    """
    cutoff = time.time() - window_s
    summary: dict[str, dict[str, Any]] = {}
    for integration, samples in sorted(_calls.items()):
        recent = [sample for sample in samples if sample.at >= cutoff]
        if not recent:
            continue
        latencies = [sample.latency_ms for sample in recent]
        summary[integration] = {
            "calls": len(recent),
            "failures": sum(1 for sample in recent if not sample.ok),
            "p95_latency_ms": _p95(latencies),
            "max_latency_ms": round(max(latencies), 2),
        }
    return summary


def reset_telemetry() -> None:
    _calls.clear()
    _counters.clear()
    _gauges.clear()
