"""
Fleet Vehicle database model.

The fleet registry's view of a vehicle. The tracking engine only checks
that a vehicle exists and refreshes its last-known-position mirror.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime
from backend.app.db.session import Base


class FleetVehicle(Base):
    """
    Fleet Vehicle model.

    last_latitude / last_longitude / last_location_at are a denormalized
    copy of the vehicle's current position, written after each ingestion
    as a separate, non-transactional step.
    """
    __tablename__ = "fleet_vehicles"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Vehicle identification
    vehicle_number = Column(String(100), unique=True, nullable=False, index=True)
    vehicle_type = Column(String(100), nullable=True, index=True)  # e.g., "Bus", "Van", "Truck"

    # Status
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Last known position mirror
    last_latitude = Column(Float, nullable=True)
    last_longitude = Column(Float, nullable=True)
    last_location_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FleetVehicle(id={self.id}, number='{self.vehicle_number}')>"
