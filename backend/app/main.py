"""
FastAPI Application Entry Point.

This is the main application file for the Fleet Location Tracking service.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.dependencies import get_spatial_index
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.redis_client import ping_redis
from backend.app.db.session import engine, Base, AsyncSessionLocal
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from backend.app.services.proximity import rebuild_spatial_index
from backend.app.services.retention import run_retention_loop

# Import models to ensure they are registered with Base
from backend.app.models.fleet_vehicle import FleetVehicle
from backend.app.models.vehicle_location import VehicleLocation
from backend.app.models.location_history import LocationHistory
from backend.app.models.location_alert import LocationAlert
from backend.app.models.dlq import DeadLetterQueue
from backend.app.models.archived_location_history import ArchivedLocationHistory

configure_logging(settings.log_level)
logger = logging.getLogger("fleet_tracking.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Reloads the spatial index from committed records.
    3. Runs the retention loop when enabled, stopping it on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    spatial_index = get_spatial_index()
    try:
        async with AsyncSessionLocal() as db:
            await rebuild_spatial_index(db, spatial_index)
    except Exception as exc:
        # Proximity queries fall back until the index is reachable
        logger.error("Spatial index rebuild failed at startup: %s", exc)

    stop_event = asyncio.Event()
    sweep_task = None
    if settings.retention_sweep_enabled:
        sweep_task = asyncio.create_task(
            run_retention_loop(AsyncSessionLocal, spatial_index, stop_event)
        )

    yield

    stop_event.set()
    if sweep_task is not None:
        await sweep_task
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Real-time vehicle location ingestion, history and proximity queries",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "spatial_index_backend": settings.spatial_index_backend,
        "redis": "ok" if await ping_redis() else "unavailable",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Fleet Location Tracking API",
        "docs": "/docs",
        "health": "/health",
    }
