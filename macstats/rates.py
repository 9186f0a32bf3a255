"""Per-second rates from cumulative counters."""
from dataclasses import dataclass
from typing import Optional


def counter_delta(previous: float, current: float) -> float:
    """Difference between two counter readings. A decrease is a reset, not negative traffic."""
    return max(0.0, float(current) - float(previous))


def compute_rate(
    previous_counter: float,
    previous_timestamp: float,
    current_counter: float,
    current_timestamp: float,
) -> float:
    """
    Convert two cumulative samples into a per-second rate.

    Returns 0 when no time has elapsed (or the clock went backwards) and when
    the counter decreased.
    """
    elapsed = current_timestamp - previous_timestamp
    if elapsed <= 0:
        return 0.0
    return counter_delta(previous_counter, current_counter) / elapsed


@dataclass(frozen=True)
class CpuTicks:
    """Cumulative CPU time split by state."""
    user: float = 0.0
    system: float = 0.0
    idle: float = 0.0
    nice: float = 0.0


def cpu_usage_percent(previous: CpuTicks, current: CpuTicks) -> float:
    """Share of non-idle ticks between two readings, 0..100."""
    busy = (
        counter_delta(previous.user, current.user)
        + counter_delta(previous.system, current.system)
        + counter_delta(previous.nice, current.nice)
    )
    total = busy + counter_delta(previous.idle, current.idle)
    if total <= 0:
        return 0.0
    return min(100.0, busy / total * 100.0)


class CpuUsageCalculator:
    """Remembers the previous tick reading so each call yields usage since the last one."""

    def __init__(self):
        self._previous: Optional[CpuTicks] = None

    def update(self, ticks: CpuTicks) -> float:
        previous, self._previous = self._previous, ticks
        if previous is None:
            return 0.0
        return cpu_usage_percent(previous, ticks)
