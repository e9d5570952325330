"""
Location tracking enumerations.

Defines value sets for alerts, devices and history entries.
"""

import enum


class AlertType(str, enum.Enum):
    """
    Alert rule types.

    SPEEDING, IDLE_TIMEOUT and LOW_BATTERY are evaluated on every ingestion.
    ROUTE_DEVIATION, PANIC and MAINTENANCE are raised by callers.
    """
    SPEEDING = "speeding"
    IDLE_TIMEOUT = "idle-timeout"
    ROUTE_DEVIATION = "route-deviation"
    PANIC = "panic"
    MAINTENANCE = "maintenance"
    LOW_BATTERY = "low-battery"


class AlertSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DeviceType(str, enum.Enum):
    SMARTPHONE = "smartphone"
    GPS_TRACKER = "gps-tracker"
    OBD_DEVICE = "obd-device"
    TABLET = "tablet"


class FixSource(str, enum.Enum):
    GPS = "gps"
    NETWORK = "network"
    MANUAL = "manual"
    ESTIMATED = "estimated"


class FixQuality(str, enum.Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
