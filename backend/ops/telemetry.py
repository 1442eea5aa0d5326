"""
In-process telemetry: counters and gauges for reviews, posts and live streams.

Intent:
    Keep instrumentation simple while providing introspection hooks for unit
    tests and the admin-only `/internal/telemetry` endpoint. Values live in
    process memory; each instance reports its own numbers.
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Tuple

LabelKey = Tuple[Tuple[str, str], ...]
_counters: Dict[str, Dict[LabelKey, int]] = defaultdict(dict)
_gauges: Dict[str, Dict[LabelKey, float]] = defaultdict(dict)
_lock = Lock()


def _label_key(labels: dict[str, str] | None) -> LabelKey:
    if not labels:
        return tuple()
    return tuple(sorted((str(k), str(v)) for k, v in labels.items()))


def increment_counter(name: str, *, amount: int = 1, **labels: str) -> None:
    """Increase a named counter by `amount` (defaults to 1)."""
    if amount == 0:
        return
    key = _label_key(labels)
    with _lock:
        _counters[name][key] = _counters[name].get(key, 0) + amount


def adjust_gauge(name: str, delta: float, **labels: str) -> None:
    """Adjust a gauge by `delta`, clamping the stored value to zero or above."""
    key = _label_key(labels)
    with _lock:
        new_value = _gauges[name].get(key, 0.0) + float(delta)
        _gauges[name][key] = new_value if new_value > 0.0 else 0.0


def counter_snapshot(name: str) -> dict[LabelKey, int]:
    with _lock:
        return dict(_counters.get(name, {}))


def gauge_snapshot(name: str) -> dict[LabelKey, float]:
    with _lock:
        return dict(_gauges.get(name, {}))


def counter_total(name: str) -> int:
    with _lock:
        return sum(_counters.get(name, {}).values())


def _flatten(values: Dict[LabelKey, float]) -> list[dict]:
    return [{"labels": dict(key), "value": value} for key, value in sorted(values.items())]


def export() -> dict:
    """Return every counter and gauge as JSON-friendly lists keyed by metric name."""
    with _lock:
        return {
            "counters": {name: _flatten(vals) for name, vals in sorted(_counters.items())},
            "gauges": {name: _flatten(vals) for name, vals in sorted(_gauges.items())},
        }


def reset_for_tests() -> None:
    """Clear all counters and gauges. Intended for pytest fixtures."""
    with _lock:
        _counters.clear()
        _gauges.clear()
