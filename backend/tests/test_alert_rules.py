"""
Alert rule evaluation tests.
"""

from datetime import datetime, timedelta

from backend.app.domain.tracking.alerts import (
    AlertRules, custom_alert, evaluate_rules, filter_duplicates, next_idle_since
)
from backend.app.models.tracking_enums import AlertSeverity, AlertType

NOW = datetime(2024, 3, 1, 12, 0, 0)
RULES = AlertRules(speed_limit_kmh=80, idle_timeout_minutes=30, low_battery_threshold=20)


def _types(candidates):
    return [candidate.type for candidate in candidates]


def test_no_alerts_for_normal_fix():
    assert evaluate_rules(RULES, speed=60, recorded_at=NOW, battery_level=80) == []


def test_speeding_severity_scales_with_excess():
    medium = evaluate_rules(RULES, speed=90, recorded_at=NOW)
    high = evaluate_rules(RULES, speed=100, recorded_at=NOW)
    assert _types(medium) == [AlertType.SPEEDING]
    assert medium[0].severity == AlertSeverity.MEDIUM
    assert high[0].severity == AlertSeverity.HIGH


def test_speed_at_limit_is_not_speeding():
    assert evaluate_rules(RULES, speed=80, recorded_at=NOW) == []


def test_idle_timeout_after_threshold():
    idle_since = NOW - timedelta(minutes=31)
    alerts = evaluate_rules(RULES, speed=0, recorded_at=NOW, idle_since=idle_since)
    assert _types(alerts) == [AlertType.IDLE_TIMEOUT]
    assert alerts[0].severity == AlertSeverity.LOW

    short = evaluate_rules(RULES, speed=0, recorded_at=NOW, idle_since=NOW - timedelta(minutes=10))
    assert short == []


def test_low_battery_severity():
    assert evaluate_rules(RULES, speed=0, recorded_at=NOW, battery_level=15)[0].severity == AlertSeverity.MEDIUM
    assert evaluate_rules(RULES, speed=0, recorded_at=NOW, battery_level=3)[0].severity == AlertSeverity.HIGH
    assert evaluate_rules(RULES, speed=0, recorded_at=NOW, battery_level=20) == []


def test_next_idle_since_tracks_continuous_idle_period():
    start = NOW - timedelta(minutes=10)
    assert next_idle_since(None, 0.0, start) == start
    assert next_idle_since(start, 1.0, NOW) == start
    assert next_idle_since(start, 30.0, NOW) is None


def test_custom_alert_default_severity():
    assert custom_alert(AlertType.PANIC, "Driver pressed panic").severity == AlertSeverity.CRITICAL
    assert custom_alert(AlertType.ROUTE_DEVIATION, "Off route", AlertSeverity.LOW).severity == AlertSeverity.LOW


def test_filter_duplicates_against_open_types():
    candidates = evaluate_rules(RULES, speed=95, recorded_at=NOW, battery_level=10)
    kept = filter_duplicates(candidates, [AlertType.SPEEDING])
    assert _types(kept) == [AlertType.LOW_BATTERY]

    assert len(filter_duplicates(candidates, [AlertType.SPEEDING], dedupe=False)) == 2
