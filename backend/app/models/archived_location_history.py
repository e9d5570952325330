"""
Archived Location History model.

Cold storage for history entries past the retention horizon.
"""

from sqlalchemy import Column, Integer, Float, DateTime
from backend.app.db.session import Base


class ArchivedLocationHistory(Base):
    """
    Archived Location History.
    Same fix fields as LocationHistory without the ring bookkeeping.
    Optimized for bulk inserts, not real-time query.
    """
    __tablename__ = "archived_location_history"

    id = Column(Integer, primary_key=True, autoincrement=True)

    original_id = Column(Integer, nullable=False) # Keep reference
    vehicle_id = Column(Integer, nullable=False, index=True)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)

    recorded_at = Column(DateTime, nullable=False)
    archived_at = Column(DateTime, nullable=False)
