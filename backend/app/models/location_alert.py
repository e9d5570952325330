"""
Location Alert database model.

Rule-based alerts raised against a vehicle's location record.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Enum
from backend.app.db.session import Base
from backend.app.models.tracking_enums import AlertType, AlertSeverity


class LocationAlert(Base):
    """
    Location Alert.

    Lifecycle: triggered -> acknowledged -> resolved.
    location_snapshot copies the current position at trigger time.
    """
    __tablename__ = "location_alerts"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    vehicle_location_id = Column(Integer, ForeignKey('vehicle_locations.id'), nullable=False, index=True)

    type = Column(Enum(AlertType), nullable=False, index=True)
    severity = Column(Enum(AlertSeverity), nullable=False, default=AlertSeverity.MEDIUM)
    message = Column(Text, nullable=False)
    location_snapshot = Column(JSON, nullable=False)

    triggered_at = Column(DateTime, nullable=False)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(100), nullable=True)
    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<LocationAlert(id={self.id}, type='{self.type}', resolved={self.resolved})>"
