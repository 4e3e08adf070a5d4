from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for delivery dashboards and retry-storm detection.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    # Keep the latest value only; gauges describe current state such as breaker position.
    _gauges[name] = float(value)


def counters_snapshot(prefix: str | None = None) -> dict[str, int]:
    if prefix is None:
        return dict(_counters)
    return {name: value for name, value in _counters.items() if name.startswith(prefix)}


def gauges_snapshot(prefix: str | None = None) -> dict[str, float]:
    if prefix is None:
        return dict(_gauges)
    return {name: value for name, value in _gauges.items() if name.startswith(prefix)}


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _counters.clear()
    _gauges.clear()
