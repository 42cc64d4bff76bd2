from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class TransitionSample:
    ts: float
    job_id: str
    from_state: str
    to_state: str
    duration_ms: float


_transition_samples: Deque[TransitionSample] = deque(maxlen=5000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards; persistence and alerting live elsewhere.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def record_transition(*, job_id: str, from_state: str, to_state: str, duration_ms: float) -> None:
    # Track per-state dwell time so slow steps are visible to operators.
    _transition_samples.append(
        TransitionSample(
            ts=time.time(),
            job_id=job_id,
            from_state=from_state,
            to_state=to_state,
            duration_ms=duration_ms,
        )
    )
    increment_counter(f"migration_transitions_total.{to_state}")


def state_duration_stats(window_s: int) -> dict[str, dict[str, float]]:
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _transition_samples:
        if sample.ts >= cutoff:
            grouped[sample.from_state].append(sample.duration_ms)
    return {
        state: {"count": float(len(values)), "max_ms": max(values), "avg_ms": sum(values) / len(values)}
        for state, values in grouped.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Allow tests to assert on counters without cross-test leakage.
    _transition_samples.clear()
    _counters.clear()
    _gauges.clear()
