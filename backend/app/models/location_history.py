"""
Location History database model.

Per-vehicle ring buffer of superseded fixes.
"""

from sqlalchemy import Column, Integer, Float, ForeignKey, DateTime, Enum, UniqueConstraint, Index
from backend.app.db.session import Base
from backend.app.models.tracking_enums import FixSource, FixQuality


class LocationHistory(Base):
    """
    Location History model.

    Entry N of a vehicle lives in slot N % capacity; the unique
    (vehicle_location_id, slot) key caps each vehicle at `capacity` rows.
    Order is by sequence, oldest first.
    """
    __tablename__ = "location_history"
    __table_args__ = (
        UniqueConstraint("vehicle_location_id", "slot", name="uq_location_history_slot"),
        Index("ix_location_history_record_sequence", "vehicle_location_id", "sequence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # References
    vehicle_location_id = Column(Integer, ForeignKey('vehicle_locations.id'), nullable=False)
    vehicle_id = Column(Integer, nullable=False, index=True)

    # Ring position
    sequence = Column(Integer, nullable=False)
    slot = Column(Integer, nullable=False)

    # GPS fix
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)  # meters
    speed = Column(Float, nullable=False, default=0.0)
    heading = Column(Float, nullable=False, default=0.0)
    altitude = Column(Float, nullable=True)
    source = Column(Enum(FixSource), nullable=False, default=FixSource.GPS)
    quality = Column(Enum(FixQuality), nullable=False, default=FixQuality.GOOD)

    recorded_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<LocationHistory(vehicle_id={self.vehicle_id}, seq={self.sequence}, lat={self.latitude}, lng={self.longitude})>"
