"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import locations, admin_ops

router = APIRouter()

# Location ingestion, reads, proximity and alerts
router.include_router(locations.router)

# Retention, spatial index and DLQ operations
router.include_router(admin_ops.router)
