"""
Service dependencies for FastAPI.

Wires the database session and the process-wide spatial index into the
tracking, proximity and retention services.
"""

from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings
from backend.app.core.redis_client import redis_client
from backend.app.db.session import get_db
from backend.app.domain.tracking.spatial_index import GridSpatialIndex, RedisGeoIndex, SpatialIndex
from backend.app.services.location_tracking import LocationTrackingService
from backend.app.services.proximity import ProximityService
from backend.app.services.retention import RetentionSweeper

_spatial_index: Optional[SpatialIndex] = None


def build_spatial_index(config: Settings = settings) -> SpatialIndex:
    """Create the spatial index backend named by spatial_index_backend."""
    backend = config.spatial_index_backend.lower()
    if backend == "redis":
        return RedisGeoIndex(redis_client, key=config.spatial_index_key)
    if backend == "grid":
        return GridSpatialIndex(cell_size_degrees=config.grid_cell_size_degrees)
    raise ValueError(f"Unknown spatial index backend: {config.spatial_index_backend}")


def get_spatial_index() -> SpatialIndex:
    """Process-wide spatial index, created on first use."""
    global _spatial_index
    if _spatial_index is None:
        _spatial_index = build_spatial_index()
    return _spatial_index


async def get_tracking_service(
    db: AsyncSession = Depends(get_db),
    spatial_index: SpatialIndex = Depends(get_spatial_index)
) -> LocationTrackingService:
    return LocationTrackingService(db, spatial_index)


async def get_proximity_service(
    db: AsyncSession = Depends(get_db),
    spatial_index: SpatialIndex = Depends(get_spatial_index)
) -> ProximityService:
    return ProximityService(db, spatial_index)


async def get_retention_sweeper(
    db: AsyncSession = Depends(get_db),
    spatial_index: SpatialIndex = Depends(get_spatial_index)
) -> RetentionSweeper:
    return RetentionSweeper(db, spatial_index)
