"""
Retention Sweeper.

Background and admin-triggered cleanup:
- expired history purge (optionally archiving to cold storage)
- whole-record purge for vehicles silent for N days
- offline marking for devices past the heartbeat timeout

Sweeps commit per record and check the stop event between records, so an
interrupted sweep never leaves a record half-processed and a rerun picks
up where it stopped.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select, delete, insert, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings
from backend.app.core.exceptions import LocationValidationError, RetentionSweepError
from backend.app.domain.tracking.spatial_index import SpatialIndex
from backend.app.models.archived_location_history import ArchivedLocationHistory
from backend.app.models.location_history import LocationHistory
from backend.app.models.vehicle_location import VehicleLocation

logger = logging.getLogger("fleet_tracking.retention")


class RetentionSweeper:

    def __init__(
        self,
        db: AsyncSession,
        spatial_index: Optional[SpatialIndex] = None,
        config: Settings = settings,
        stop_event: Optional[asyncio.Event] = None
    ):
        self.db = db
        self.spatial_index = spatial_index
        self.config = config
        self.stop_event = stop_event or asyncio.Event()

    def stop(self) -> None:
        """Ask a running sweep to finish after the current record."""
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    async def purge_expired_history(
        self,
        max_age_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> int:
        """
        Delete history entries recorded before now - max_age_days.

        Returns:
            Number of history entries removed

        Raises:
            RetentionSweepError: On storage failure, with the count so far
        """
        max_age_days = self.config.history_retention_days if max_age_days is None else max_age_days
        if max_age_days < 0:
            raise LocationValidationError("max_age_days", "must be >= 0", max_age_days)
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=max_age_days)

        removed = 0
        try:
            result = await self.db.execute(
                select(LocationHistory.vehicle_location_id)
                .where(LocationHistory.recorded_at < cutoff)
                .distinct()
            )
            record_ids = sorted(result.scalars().all())

            for record_id in record_ids:
                if self.stopping:
                    logger.info("History purge stopped after %d entries", removed)
                    break
                purged = await self._purge_record_history(record_id, cutoff, now)
                await self.db.commit()
                removed += purged
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("History purge failed after %d entries: %s", removed, exc)
            raise RetentionSweepError("purge_expired_history", removed, str(exc)) from exc

        logger.info("History purge removed %d entries older than %s", removed, cutoff.isoformat())
        return removed

    async def _purge_record_history(self, record_id: int, cutoff: datetime, now: datetime) -> int:
        expired = (
            LocationHistory.vehicle_location_id == record_id,
            LocationHistory.recorded_at < cutoff,
        )
        if self.config.retention_archive_enabled:
            result = await self.db.execute(select(LocationHistory).where(*expired))
            rows = result.scalars().all()
            if rows:
                await self.db.execute(insert(ArchivedLocationHistory), [
                    {
                        "original_id": row.id,
                        "vehicle_id": row.vehicle_id,
                        "latitude": row.latitude,
                        "longitude": row.longitude,
                        "accuracy": row.accuracy,
                        "speed": row.speed,
                        "heading": row.heading,
                        "altitude": row.altitude,
                        "recorded_at": row.recorded_at,
                        "archived_at": now,
                    }
                    for row in rows
                ])

        result = await self.db.execute(delete(LocationHistory).where(*expired))
        return result.rowcount or 0

    async def purge_records_older_than(self, days_old: int = 30, now: Optional[datetime] = None) -> int:
        """
        Delete whole location records last updated more than days_old days ago.

        A record exactly days_old old is kept.

        Returns:
            Number of records deleted
        """
        if days_old < 0:
            raise LocationValidationError("days_old", "must be >= 0", days_old)
        now = now or datetime.utcnow()
        cutoff = now - timedelta(days=days_old)

        deleted = 0
        try:
            result = await self.db.execute(
                select(VehicleLocation.id).where(VehicleLocation.last_updated < cutoff)
            )
            record_ids = sorted(result.scalars().all())

            for record_id in record_ids:
                if self.stopping:
                    logger.info("Record purge stopped after %d records", deleted)
                    break
                vehicle_id = await self._delete_record(record_id, cutoff)
                await self.db.commit()
                if vehicle_id is not None:
                    deleted += 1
                    await self._unindex(vehicle_id)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Record purge failed after %d records: %s", deleted, exc)
            raise RetentionSweepError("purge_records_older_than", deleted, str(exc)) from exc

        logger.info("Purged %d location records older than %d days", deleted, days_old)
        return deleted

    async def _delete_record(self, record_id: int, cutoff: datetime) -> Optional[int]:
        result = await self.db.execute(
            select(VehicleLocation)
            .where(VehicleLocation.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        # Skip records a fix refreshed since the scan
        if record is None or record.last_updated >= cutoff:
            return None

        vehicle_id = record.vehicle_id
        await self.db.execute(
            delete(LocationHistory).where(LocationHistory.vehicle_location_id == record_id)
        )
        await self.db.delete(record)
        return vehicle_id

    async def _unindex(self, vehicle_id: int) -> None:
        if self.spatial_index is None:
            return
        try:
            await self.spatial_index.remove(vehicle_id)
        except Exception as exc:
            logger.warning("Could not remove vehicle %s from spatial index: %s", vehicle_id, exc)

    async def mark_offline_devices(self, now: Optional[datetime] = None) -> int:
        """
        Clear the stored online flag where the heartbeat is past the timeout.

        Returns:
            Number of records marked offline
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=self.config.online_timeout_minutes)

        marked = 0
        try:
            result = await self.db.execute(
                select(VehicleLocation.id).where(
                    VehicleLocation.is_online == True,
                    VehicleLocation.last_heartbeat < cutoff
                )
            )
            record_ids = sorted(result.scalars().all())

            for record_id in record_ids:
                if self.stopping:
                    break
                result = await self.db.execute(
                    update(VehicleLocation)
                    .where(
                        VehicleLocation.id == record_id,
                        VehicleLocation.last_heartbeat < cutoff
                    )
                    .values(is_online=False)
                    .execution_options(synchronize_session="fetch")
                )
                await self.db.commit()
                marked += result.rowcount or 0
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Offline sweep failed after %d records: %s", marked, exc)
            raise RetentionSweepError("mark_offline_devices", marked, str(exc)) from exc

        if marked:
            logger.info("Marked %d devices offline", marked)
        return marked


async def run_retention_loop(
    session_factory: Callable[[], AsyncSession],
    spatial_index: Optional[SpatialIndex],
    stop_event: asyncio.Event,
    interval_seconds: Optional[int] = None,
    config: Settings = settings
) -> None:
    """
    Periodic history purge and offline marking until stop_event is set.

    Failures are logged and retried on the next tick.
    """
    interval_seconds = interval_seconds or config.retention_sweep_interval_seconds
    logger.info("Retention loop started (interval %ss)", interval_seconds)

    while not stop_event.is_set():
        async with session_factory() as db:
            sweeper = RetentionSweeper(db, spatial_index, config=config, stop_event=stop_event)
            try:
                await sweeper.purge_expired_history()
                await sweeper.mark_offline_devices()
            except RetentionSweepError as exc:
                logger.error("Retention sweep failed: %s", exc.message)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Retention loop stopped")
