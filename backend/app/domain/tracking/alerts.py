"""
Alert engine.

Evaluates the built-in rules (speeding, idle timeout, low battery) against
the latest fix and builds caller-raised alerts (route deviation, panic,
maintenance). Persisting alerts and the acknowledge/resolve transitions
live in the tracking service.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from backend.app.models.tracking_enums import AlertSeverity, AlertType

IDLE_SPEED_KMH = 2.0

DEFAULT_SEVERITY = {
    AlertType.SPEEDING: AlertSeverity.MEDIUM,
    AlertType.IDLE_TIMEOUT: AlertSeverity.LOW,
    AlertType.ROUTE_DEVIATION: AlertSeverity.HIGH,
    AlertType.PANIC: AlertSeverity.CRITICAL,
    AlertType.MAINTENANCE: AlertSeverity.MEDIUM,
    AlertType.LOW_BATTERY: AlertSeverity.MEDIUM,
}


@dataclass(frozen=True)
class AlertRules:
    speed_limit_kmh: float = 80.0
    idle_timeout_minutes: float = 30.0
    low_battery_threshold: float = 20.0


@dataclass(frozen=True)
class AlertCandidate:
    type: AlertType
    severity: AlertSeverity
    message: str


def next_idle_since(
    idle_since: Optional[datetime],
    speed: Optional[float],
    recorded_at: datetime,
    idle_speed_kmh: float = IDLE_SPEED_KMH
) -> Optional[datetime]:
    """Start of the current continuous idle period, or None when moving."""
    if (speed or 0.0) >= idle_speed_kmh:
        return None
    return idle_since or recorded_at


def evaluate_rules(
    rules: AlertRules,
    speed: Optional[float],
    recorded_at: datetime,
    idle_since: Optional[datetime] = None,
    battery_level: Optional[float] = None
) -> List[AlertCandidate]:
    """Return the alerts the latest fix triggers, in rule order."""
    triggered = []
    speed = speed or 0.0

    if speed > rules.speed_limit_kmh:
        excess = speed - rules.speed_limit_kmh
        triggered.append(AlertCandidate(
            type=AlertType.SPEEDING,
            severity=AlertSeverity.HIGH if excess >= 20 else AlertSeverity.MEDIUM,
            message=f"Speed {speed:.1f} km/h exceeds limit of {rules.speed_limit_kmh:.0f} km/h",
        ))

    if idle_since is not None:
        idle_minutes = (recorded_at - idle_since).total_seconds() / 60.0
        if idle_minutes > rules.idle_timeout_minutes:
            triggered.append(AlertCandidate(
                type=AlertType.IDLE_TIMEOUT,
                severity=DEFAULT_SEVERITY[AlertType.IDLE_TIMEOUT],
                message=f"Vehicle idle for {idle_minutes:.0f} minutes",
            ))

    if battery_level is not None and battery_level < rules.low_battery_threshold:
        triggered.append(AlertCandidate(
            type=AlertType.LOW_BATTERY,
            severity=AlertSeverity.HIGH if battery_level < 5 else AlertSeverity.MEDIUM,
            message=f"Device battery at {battery_level:.0f}%",
        ))

    return triggered


def custom_alert(
    alert_type: AlertType,
    message: str,
    severity: Optional[AlertSeverity] = None
) -> AlertCandidate:
    """Build a caller-raised alert, defaulting severity by type."""
    return AlertCandidate(
        type=alert_type,
        severity=severity or DEFAULT_SEVERITY[alert_type],
        message=message,
    )


def filter_duplicates(
    candidates: Iterable[AlertCandidate],
    open_types: Iterable[AlertType],
    dedupe: bool = True
) -> List[AlertCandidate]:
    """Drop candidates whose type already has an unresolved alert."""
    if not dedupe:
        return list(candidates)
    blocked = set(open_types)
    kept = []
    for candidate in candidates:
        if candidate.type in blocked:
            continue
        blocked.add(candidate.type)
        kept.append(candidate)
    return kept
