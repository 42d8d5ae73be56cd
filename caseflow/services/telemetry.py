from __future__ import annotations

import math
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Deque


_LATENCY_WINDOW = 500

_counters: Counter[str] = Counter()


@dataclass
class _CallStats:
    calls: int = 0
    failures: int = 0
    latencies_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=_LATENCY_WINDOW))

    def summary(self) -> dict[str, float | int | None]:
        ordered = sorted(self.latencies_ms)
        p95 = ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)] if ordered else None
        return {
            "calls": self.calls,
            "failures": self.failures,
            "error_rate": self.failures / self.calls if self.calls else 0.0,
            "p95_ms": p95,
        }


_external_calls: dict[str, _CallStats] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Fail-open paths (quota, audit, notices) are reconciled from these counters.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    stats = _external_calls.setdefault(integration, _CallStats())
    stats.calls += 1
    if not success:
        stats.failures += 1
    stats.latencies_ms.append(latency_ms)


def external_call_summary() -> dict[str, dict[str, float | int | None]]:
    """Per-collaborator call counts, error rate and p95 latency over the recent window."""
    return {name: stats.summary() for name, stats in sorted(_external_calls.items())}


def reset_telemetry() -> None:
    _counters.clear()
    _external_calls.clear()
