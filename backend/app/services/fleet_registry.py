"""
Fleet registry collaborator.

Checks vehicle existence before ingestion and keeps the registry's
last-known-position mirror in step with the tracking record. The mirror
write is a second transaction after the location commit; when it fails
the payload is parked in the dead letter queue for an administrator retry.
"""

import logging
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.fleet_vehicle import FleetVehicle

logger = logging.getLogger("fleet_tracking.registry")

MIRROR_REFRESH_TASK = "fleet_mirror_refresh"


class FleetRegistry:

    @staticmethod
    async def require_vehicle(db: AsyncSession, vehicle_id: int) -> FleetVehicle:
        """
        Look up a vehicle in the registry.

        Raises:
            ResourceNotFoundError: If the vehicle is not registered
        """
        result = await db.execute(
            select(FleetVehicle).where(FleetVehicle.id == vehicle_id)
        )
        vehicle = result.scalar_one_or_none()
        if not vehicle:
            raise ResourceNotFoundError("Vehicle", vehicle_id)
        return vehicle

    @staticmethod
    async def _write_mirror(db: AsyncSession, payload: Dict[str, Any]) -> None:
        await db.execute(
            update(FleetVehicle)
            .where(FleetVehicle.id == payload["vehicle_id"])
            .values(
                last_latitude=payload["latitude"],
                last_longitude=payload["longitude"],
                last_location_at=datetime.fromisoformat(payload["recorded_at"]),
            )
        )
        await db.commit()

    @staticmethod
    async def refresh_position_mirror(
        db: AsyncSession,
        vehicle_id: int,
        latitude: float,
        longitude: float,
        recorded_at: datetime
    ) -> bool:
        """
        Copy the latest coordinates onto the registry's vehicle row.

        Returns:
            True if the mirror was written, False if it was deferred to the DLQ.
            On False the session has been rolled back and loaded objects are expired.
        """
        payload = {
            "vehicle_id": vehicle_id,
            "latitude": latitude,
            "longitude": longitude,
            "recorded_at": recorded_at.isoformat(),
        }
        try:
            await FleetRegistry._write_mirror(db, payload)
            return True
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Fleet mirror refresh failed for vehicle %s: %s", vehicle_id, exc)
            await FleetRegistry._park_failure(db, payload, str(exc))
            return False

    @staticmethod
    async def _park_failure(db: AsyncSession, payload: Dict[str, Any], error: str) -> None:
        try:
            db.add(DeadLetterQueue(
                task_name=MIRROR_REFRESH_TASK,
                error_message=error,
                payload=payload,
                status=DLQStatus.FAILED,
            ))
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            logger.exception("Could not record failed mirror refresh for vehicle %s", payload["vehicle_id"])

    @staticmethod
    async def retry_mirror_refresh(db: AsyncSession, item: DeadLetterQueue) -> bool:
        """
        Replay a parked mirror refresh.

        Returns:
            True if the replay succeeded and the item is PROCESSED
        """
        item.retry_count = (item.retry_count or 0) + 1
        item.last_retry_at = datetime.utcnow()
        item.status = DLQStatus.RETRYING
        dlq_id = item.id
        try:
            await FleetRegistry._write_mirror(db, item.payload)
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("Retry of DLQ item %s failed: %s", dlq_id, exc)
            result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
            item = result.scalar_one()
            item.status = DLQStatus.FAILED
            item.retry_count = (item.retry_count or 0) + 1
            item.last_retry_at = datetime.utcnow()
            item.error_message = str(exc)
            await db.commit()
            return False

        item.status = DLQStatus.PROCESSED
        await db.commit()
        return True
