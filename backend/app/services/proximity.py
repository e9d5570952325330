"""
Proximity Query Service.

Answers "which online vehicles are near this point". The spatial index
is consulted through the circuit breaker; when it is unavailable the
query degrades to the most recently updated online vehicles with the
fallback flag set, instead of failing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings
from backend.app.core.exceptions import LocationValidationError, SpatialQueryDegraded
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, spatial_circuit_breaker
from backend.app.domain.tracking.geo import haversine_m
from backend.app.domain.tracking.spatial_index import SpatialIndex
from backend.app.models.vehicle_location import VehicleLocation

logger = logging.getLogger("fleet_tracking.proximity")

FALLBACK_MESSAGE = "Spatial index unavailable, showing most recently updated online vehicles"


@dataclass
class NearbyResult:
    vehicles: List[Tuple[VehicleLocation, Optional[float]]] = field(default_factory=list)
    fallback: bool = False
    message: Optional[str] = None


class ProximityService:

    def __init__(
        self,
        db: AsyncSession,
        spatial_index: SpatialIndex,
        breaker: CircuitBreaker = spatial_circuit_breaker,
        config: Settings = settings
    ):
        self.db = db
        self.spatial_index = spatial_index
        self.breaker = breaker
        self.config = config

    def _validate(self, latitude: float, longitude: float, radius_m: float, limit: int) -> None:
        if latitude is None or not (-90 <= latitude <= 90):
            raise LocationValidationError("latitude", "must be between -90 and 90", latitude)
        if longitude is None or not (-180 <= longitude <= 180):
            raise LocationValidationError("longitude", "must be between -180 and 180", longitude)
        if not (0 < radius_m <= self.config.nearby_max_radius_m):
            raise LocationValidationError(
                "radius", f"must be greater than 0 and at most {self.config.nearby_max_radius_m}", radius_m
            )
        if not (1 <= limit <= self.config.nearby_max_limit):
            raise LocationValidationError(
                "limit", f"must be between 1 and {self.config.nearby_max_limit}", limit
            )

    async def find_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_m: Optional[float] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> NearbyResult:
        """
        Online vehicles within radius_m of the point, nearest first.

        Args:
            latitude: Search center latitude
            longitude: Search center longitude
            radius_m: Search radius in meters (default 5000, max 50000)
            limit: Max results (default 20, max 100)
            now: Reference time for the online check

        Raises:
            LocationValidationError: Invalid center, radius or limit
        """
        radius_m = self.config.nearby_default_radius_m if radius_m is None else radius_m
        limit = self.config.nearby_default_limit if limit is None else limit
        self._validate(latitude, longitude, radius_m, limit)
        now = now or datetime.utcnow()

        try:
            hits = await self._query_index(longitude, latitude, radius_m)
        except SpatialQueryDegraded as exc:
            logger.warning("Proximity query degraded: %s", exc.message)
            return await self._fallback(limit, now)

        return await self._resolve_hits(hits, latitude, longitude, radius_m, limit, now)

    async def _query_index(self, longitude: float, latitude: float, radius_m: float) -> List[Tuple[int, float]]:
        try:
            # No count here: offline members are filtered after the lookup
            return await self.breaker.call(self.spatial_index.query_radius, longitude, latitude, radius_m)
        except CircuitOpenError as exc:
            raise SpatialQueryDegraded(str(exc)) from exc
        except Exception as exc:
            raise SpatialQueryDegraded(f"{type(exc).__name__}: {exc}") from exc

    def _online_filter(self, query, now: datetime):
        cutoff = now - timedelta(minutes=self.config.online_timeout_minutes)
        return query.where(
            VehicleLocation.is_online == True,
            VehicleLocation.last_heartbeat >= cutoff
        )

    async def _resolve_hits(
        self,
        hits: List[Tuple[int, float]],
        latitude: float,
        longitude: float,
        radius_m: float,
        limit: int,
        now: datetime
    ) -> NearbyResult:
        if not hits:
            return NearbyResult()

        vehicle_ids = [vehicle_id for vehicle_id, _ in hits]
        result = await self.db.execute(
            self._online_filter(
                select(VehicleLocation).where(VehicleLocation.vehicle_id.in_(vehicle_ids)), now
            )
        )

        matches = []
        for record in result.scalars().all():
            # The index can lag the committed record
            distance = haversine_m(latitude, longitude, record.spatial_lat, record.spatial_lon)
            if distance <= radius_m:
                matches.append((record, distance))

        matches.sort(key=lambda match: (match[1], match[0].vehicle_id))
        return NearbyResult(vehicles=matches[:limit])

    async def _fallback(self, limit: int, now: datetime) -> NearbyResult:
        result = await self.db.execute(
            self._online_filter(select(VehicleLocation), now)
            .order_by(VehicleLocation.last_updated.desc())
            .limit(limit)
        )
        return NearbyResult(
            vehicles=[(record, None) for record in result.scalars().all()],
            fallback=True,
            message=FALLBACK_MESSAGE,
        )


async def rebuild_spatial_index(db: AsyncSession, index: SpatialIndex) -> int:
    """
    Reload the index from the committed location records.

    Returns:
        Number of indexed vehicles
    """
    result = await db.execute(
        select(VehicleLocation.vehicle_id, VehicleLocation.spatial_lon, VehicleLocation.spatial_lat)
    )
    rows = result.all()

    await index.clear()
    for vehicle_id, spatial_lon, spatial_lat in rows:
        await index.upsert(vehicle_id, spatial_lon, spatial_lat)

    logger.info("Spatial index rebuilt with %d vehicles", len(rows))
    return len(rows)
