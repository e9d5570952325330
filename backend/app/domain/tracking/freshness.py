"""
Freshness and liveness classification from record timestamps.
"""

import enum
from datetime import datetime, timedelta
from typing import Optional

FRESH_AGE = timedelta(seconds=30)
RECENT_AGE = timedelta(minutes=5)
STALE_AGE = timedelta(minutes=30)
ONLINE_TIMEOUT = timedelta(minutes=5)
MOVING_SPEED_KMH = 5.0


class LocationFreshness(str, enum.Enum):
    FRESH = "fresh"
    RECENT = "recent"
    STALE = "stale"
    OUTDATED = "outdated"


def location_freshness(last_updated: Optional[datetime], now: datetime) -> LocationFreshness:
    """Tier of the current position's age."""
    if last_updated is None:
        return LocationFreshness.OUTDATED
    age = now - last_updated
    if age < FRESH_AGE:
        return LocationFreshness.FRESH
    if age < RECENT_AGE:
        return LocationFreshness.RECENT
    if age < STALE_AGE:
        return LocationFreshness.STALE
    return LocationFreshness.OUTDATED


def is_online(
    last_heartbeat: Optional[datetime],
    now: datetime,
    timeout: timedelta = ONLINE_TIMEOUT
) -> bool:
    """A device is online while its heartbeat is younger than the timeout."""
    if last_heartbeat is None:
        return False
    return (now - last_heartbeat) < timeout


def connection_age_seconds(last_heartbeat: Optional[datetime], now: datetime) -> Optional[float]:
    if last_heartbeat is None:
        return None
    return (now - last_heartbeat).total_seconds()


def is_moving(speed: Optional[float], threshold_kmh: float = MOVING_SPEED_KMH) -> bool:
    # Strict: exactly the threshold is not moving
    return (speed or 0.0) > threshold_kmh
