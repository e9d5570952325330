"""
Vehicle Location database model.

One row per vehicle holding its current position, device state,
running motion statistics and liveness flags.
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from backend.app.db.session import Base
from backend.app.models.tracking_enums import DeviceType, FixSource, FixQuality


class VehicleLocation(Base):
    """
    Vehicle Location model.

    Created by the first ingested fix for a vehicle and updated in place
    by every later fix. (spatial_lon, spatial_lat) is the indexed point and
    always mirrors (longitude, latitude).
    """
    __tablename__ = "vehicle_locations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # One record per fleet vehicle
    vehicle_id = Column(Integer, ForeignKey('fleet_vehicles.id'), unique=True, nullable=False, index=True)

    # Current position
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False, default=10.0)  # meters
    speed = Column(Float, nullable=False, default=0.0)  # km/h
    heading = Column(Float, nullable=False, default=0.0)  # degrees, [0, 360)
    altitude = Column(Float, nullable=True)  # meters above sea level
    last_updated = Column(DateTime, nullable=False, index=True)
    is_moving = Column(Boolean, nullable=False, default=False)
    source = Column(Enum(FixSource), nullable=False, default=FixSource.GPS)
    quality = Column(Enum(FixQuality), nullable=False, default=FixQuality.GOOD)

    # Indexed point
    spatial_lon = Column(Float, nullable=False, index=True)
    spatial_lat = Column(Float, nullable=False, index=True)

    # Start of the current continuous idle period
    idle_since = Column(DateTime, nullable=True)

    # Route progress (written by the trip collaborator)
    next_stop_name = Column(String(255), nullable=True)
    next_stop_eta = Column(DateTime, nullable=True)
    distance_to_next_stop_km = Column(Float, nullable=True)
    progress_percentage = Column(Float, nullable=True)

    # Device
    device_id = Column(String(100), nullable=True)
    device_type = Column(Enum(DeviceType), nullable=False, default=DeviceType.GPS_TRACKER)
    battery_level = Column(Float, nullable=True)  # percent
    signal_strength = Column(Float, nullable=True)  # dBm
    device_last_seen = Column(DateTime, nullable=True)

    # Running statistics
    total_distance_km = Column(Float, nullable=False, default=0.0)
    average_speed_kmh = Column(Float, nullable=False, default=0.0)
    max_speed_kmh = Column(Float, nullable=False, default=0.0)
    idle_time_minutes = Column(Float, nullable=False, default=0.0)
    statistics_calculated_at = Column(DateTime, nullable=True)

    # Liveness
    is_online = Column(Boolean, nullable=False, default=True, index=True)
    last_heartbeat = Column(DateTime, nullable=False, index=True)

    # History ring head: sequence number of the next pushed entry
    history_sequence = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    alerts = relationship(
        "LocationAlert",
        lazy="selectin",
        order_by="LocationAlert.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<VehicleLocation(vehicle_id={self.vehicle_id}, lat={self.latitude}, lng={self.longitude})>"
