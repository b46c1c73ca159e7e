from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import time
from typing import Deque, Iterable

# Process-local only; each API replica and worker reports its own numbers.


@dataclass(frozen=True)
class ProviderCall:
    at: float
    integration: str
    latency_ms: float
    ok: bool


_provider_calls: Deque[ProviderCall] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _provider_calls.append(ProviderCall(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def _percentile(sorted_values: list[float], fraction: float) -> float | None:
    if not sorted_values:
        return None
    return sorted_values[max(0, math.ceil(fraction * len(sorted_values)) - 1)]


def _summarize(calls: Iterable[ProviderCall]) -> dict[str, float | None]:
    calls = list(calls)
    latencies = sorted(call.latency_ms for call in calls)
    failed = sum(1 for call in calls if not call.ok)
    return {
        "calls": float(len(calls)),
        "p50_ms": _percentile(latencies, 0.50),
        "p95_ms": _percentile(latencies, 0.95),
        "error_rate": failed / len(calls) if calls else None,
    }


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    """Per-gateway call volume, latency percentiles and error rate over ``window_s``."""
    cutoff = time.time() - window_s
    recent: dict[str, list[ProviderCall]] = {}
    for call in _provider_calls:
        if call.at >= cutoff:
            recent.setdefault(call.integration, []).append(call)
    return {integration: _summarize(calls) for integration, calls in recent.items()}


def reset_telemetry() -> None:
    _provider_calls.clear()
    _counters.clear()
    _gauges.clear()
