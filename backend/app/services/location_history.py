"""
Location history store.

Persists each vehicle's history as a fixed-capacity ring in the
location_history table and loads it back as a HistoryLedger.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.domain.tracking.history import HistoryFix, HistoryLedger
from backend.app.models.location_history import LocationHistory
from backend.app.models.tracking_enums import FixSource, FixQuality
from backend.app.models.vehicle_location import VehicleLocation


def snapshot_fix(record: VehicleLocation) -> HistoryFix:
    """The record's current position as a history fix."""
    return HistoryFix(
        latitude=record.latitude,
        longitude=record.longitude,
        recorded_at=record.last_updated,
        speed=record.speed or 0.0,
        heading=record.heading or 0.0,
        accuracy=record.accuracy,
        altitude=record.altitude,
        source=record.source.value if record.source else "gps",
        quality=record.quality.value if record.quality else "good",
    )


def _to_fix(entry: LocationHistory) -> HistoryFix:
    return HistoryFix(
        latitude=entry.latitude,
        longitude=entry.longitude,
        recorded_at=entry.recorded_at,
        speed=entry.speed or 0.0,
        heading=entry.heading or 0.0,
        accuracy=entry.accuracy,
        altitude=entry.altitude,
        source=entry.source.value,
        quality=entry.quality.value,
    )


class LocationHistoryStore:
    """Ring-buffer access to location_history for one session."""

    def __init__(self, db: AsyncSession, capacity: int = settings.history_max_entries):
        if capacity < 1:
            raise ValueError("History capacity must be at least 1")
        self.db = db
        self.capacity = capacity

    async def push(self, record: VehicleLocation, fix: HistoryFix) -> LocationHistory:
        """
        Append a fix to the record's ring.

        Entry N overwrites the slot of entry N - capacity, so the oldest
        entry is evicted before the new one lands. The record must be
        flushed (have an id).
        """
        sequence = record.history_sequence or 0
        slot = sequence % self.capacity

        result = await self.db.execute(
            select(LocationHistory).where(
                LocationHistory.vehicle_location_id == record.id,
                LocationHistory.slot == slot
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            entry = LocationHistory(
                vehicle_location_id=record.id,
                vehicle_id=record.vehicle_id,
                slot=slot,
            )
            self.db.add(entry)

        entry.sequence = sequence
        entry.latitude = fix.latitude
        entry.longitude = fix.longitude
        entry.accuracy = fix.accuracy
        entry.speed = fix.speed
        entry.heading = fix.heading
        entry.altitude = fix.altitude
        entry.source = FixSource(fix.source)
        entry.quality = FixQuality(fix.quality)
        entry.recorded_at = fix.recorded_at

        record.history_sequence = sequence + 1
        await self.db.flush()

        # Slots beyond a since-lowered capacity
        await self.db.execute(
            delete(LocationHistory).where(
                LocationHistory.vehicle_location_id == record.id,
                LocationHistory.sequence <= sequence - self.capacity
            )
        )
        return entry

    async def load_ledger(self, record: VehicleLocation, size: Optional[int] = None) -> HistoryLedger:
        """Load the most recent `size` entries (all retained when None) oldest first."""
        size = min(size or self.capacity, self.capacity)
        if record.id is None:
            return HistoryLedger(capacity=size)

        result = await self.db.execute(
            select(LocationHistory)
            .where(LocationHistory.vehicle_location_id == record.id)
            .order_by(LocationHistory.sequence.desc())
            .limit(size)
        )
        entries = list(result.scalars().all())
        entries.reverse()
        return HistoryLedger(capacity=size, fixes=(_to_fix(entry) for entry in entries))

    async def query(
        self,
        record_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100
    ) -> List[LocationHistory]:
        """
        Most recent `limit` entries within [start, end], returned oldest first.
        """
        query = select(LocationHistory).where(LocationHistory.vehicle_location_id == record_id)
        if start:
            query = query.where(LocationHistory.recorded_at >= start)
        if end:
            query = query.where(LocationHistory.recorded_at <= end)
        query = query.order_by(LocationHistory.sequence.desc()).limit(limit)

        result = await self.db.execute(query)
        entries = list(result.scalars().all())
        entries.reverse()
        return entries

    async def count(self, record_id: int) -> int:
        result = await self.db.execute(
            select(func.count(LocationHistory.id)).where(
                LocationHistory.vehicle_location_id == record_id
            )
        )
        return result.scalar() or 0
