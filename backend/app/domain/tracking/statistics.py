"""
Statistics engine.

Derives distance, speed and idle time from a sliding window of the
history ledger and folds the window totals into the running statistics.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Sequence

from backend.app.domain.tracking.geo import haversine_km
from backend.app.domain.tracking.history import HistoryFix

IDLE_SPEED_KMH = 2.0


@dataclass(frozen=True)
class WindowTotals:
    distance_km: float = 0.0
    hours: float = 0.0
    max_speed: float = 0.0
    idle_minutes: float = 0.0


@dataclass(frozen=True)
class MotionStatistics:
    total_distance: float = 0.0   # km
    average_speed: float = 0.0    # km/h
    max_speed: float = 0.0        # km/h
    idle_time: float = 0.0        # minutes
    last_calculated: Optional[datetime] = None


def summarize_window(
    window: Sequence[HistoryFix],
    idle_speed_kmh: float = IDLE_SPEED_KMH
) -> Optional[WindowTotals]:
    """
    Walk consecutive pairs of the window.

    Speed and idle attribution use the later point of each pair. Elapsed
    time between out-of-order fixes counts as zero.

    Returns:
        WindowTotals, or None when the window has fewer than 2 points
    """
    if len(window) < 2:
        return None

    distance = 0.0
    hours = 0.0
    max_speed = 0.0
    idle_minutes = 0.0

    for prev, curr in zip(window, window[1:]):
        distance += haversine_km(prev.latitude, prev.longitude, curr.latitude, curr.longitude)

        elapsed_hours = max(0.0, (curr.recorded_at - prev.recorded_at).total_seconds() / 3600.0)
        hours += elapsed_hours

        speed = curr.speed or 0.0
        max_speed = max(max_speed, speed)
        if speed < idle_speed_kmh:
            idle_minutes += elapsed_hours * 60.0

    return WindowTotals(
        distance_km=distance,
        hours=hours,
        max_speed=max_speed,
        idle_minutes=idle_minutes,
    )


def merge_statistics(
    current: MotionStatistics,
    window: Sequence[HistoryFix],
    now: datetime,
    idle_speed_kmh: float = IDLE_SPEED_KMH
) -> MotionStatistics:
    """
    Fold a window into the running statistics.

    A window with fewer than two points leaves the statistics untouched,
    including last_calculated.

    The whole window is re-added on every call, so total_distance grows
    faster than odometer distance once the window holds many fixes.
    """
    totals = summarize_window(window, idle_speed_kmh)
    if totals is None:
        return current

    return replace(
        current,
        total_distance=current.total_distance + totals.distance_km,
        average_speed=(totals.distance_km / totals.hours) if totals.hours > 0 else 0.0,
        max_speed=max(current.max_speed, totals.max_speed),
        idle_time=current.idle_time + totals.idle_minutes,
        last_calculated=now,
    )
