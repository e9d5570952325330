"""
Admin Operations API Endpoints.

Retention sweeps, spatial index maintenance, dead letter queue retries
and cache control.
"""

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.dependencies import get_retention_sweeper, get_spatial_index
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.db.session import get_db
from backend.app.domain.tracking.spatial_index import SpatialIndex
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.schemas.location import PurgeResponse, SweepResponse
from backend.app.services.cache import CacheService
from backend.app.services.fleet_registry import FleetRegistry, MIRROR_REFRESH_TASK
from backend.app.services.proximity import rebuild_spatial_index
from backend.app.services.retention import RetentionSweeper

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.delete("/locations/cleanup", response_model=PurgeResponse)
async def cleanup_old_locations(
    days_old: int = Query(30, description="Delete records not updated for this many days"),
    sweeper: RetentionSweeper = Depends(get_retention_sweeper)
):
    """
    Delete location records (with their history and alerts) whose last
    update is older than `days_old` days.
    """
    deleted = await sweeper.purge_records_older_than(days_old)
    return PurgeResponse(
        message=f"Deleted {deleted} location records older than {days_old} days",
        deleted_count=deleted,
    )


@router.post("/history/purge-expired", response_model=PurgeResponse)
async def purge_expired_history(
    max_age_days: int = Query(None, description="Defaults to the configured retention"),
    sweeper: RetentionSweeper = Depends(get_retention_sweeper)
):
    """Delete (or archive, when enabled) history entries past retention."""
    removed = await sweeper.purge_expired_history(max_age_days)
    return PurgeResponse(message="History purge completed", deleted_count=removed)


@router.post("/offline-sweep", response_model=SweepResponse)
async def run_offline_sweep(
    sweeper: RetentionSweeper = Depends(get_retention_sweeper)
):
    """Mark devices offline once their heartbeat is past the timeout."""
    marked = await sweeper.mark_offline_devices()
    return SweepResponse(message="Offline sweep completed", processed=marked)


@router.post("/spatial-index/rebuild", response_model=SweepResponse)
async def rebuild_index(
    db: AsyncSession = Depends(get_db),
    spatial_index: SpatialIndex = Depends(get_spatial_index)
):
    """Reload the spatial index from the committed location records."""
    indexed = await rebuild_spatial_index(db, spatial_index)
    return SweepResponse(message="Spatial index rebuilt", processed=indexed)


@router.post("/dlq/{dlq_id}/retry")
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    db: AsyncSession = Depends(get_db)
):
    """
    Replay a parked fleet mirror refresh.
    """
    result = await db.execute(select(DeadLetterQueue).where(DeadLetterQueue.id == dlq_id))
    item = result.scalar_one_or_none()

    if not item:
        raise ResourceNotFoundError("DLQ item", dlq_id)

    if item.status == DLQStatus.PROCESSED:
        return {"message": f"Task {item.task_name} already processed", "status": item.status.value}

    if item.task_name != MIRROR_REFRESH_TASK:
        item.status = DLQStatus.ARCHIVED
        await db.commit()
        return {"message": f"No handler for task {item.task_name}", "status": item.status.value}

    replayed = await FleetRegistry.retry_mirror_refresh(db, item)
    return {
        "message": f"Task {MIRROR_REFRESH_TASK} {'replayed' if replayed else 'failed again'}",
        "status": DLQStatus.PROCESSED.value if replayed else DLQStatus.FAILED.value,
    }


@router.post("/clear-cache")
async def clear_system_cache():
    """Clear the internal cache."""
    await CacheService.clear()
    return {"message": "Cache cleared successfully"}
