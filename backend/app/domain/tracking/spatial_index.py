"""
Spatial index over current vehicle positions.

Two backends share one async interface:

- RedisGeoIndex: Redis GEO sorted set (GEOADD / GEOSEARCH), shared by
  every API worker.
- GridSpatialIndex: in-process grid of lat/lon cells, for single-process
  deployments and tests.

Index members are vehicle ids. Distances are meters.
"""

import math
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from backend.app.domain.tracking.geo import bounding_box, haversine_m


class SpatialIndex(ABC):
    """Interface for radius queries over one point per vehicle."""

    @abstractmethod
    async def upsert(self, vehicle_id: int, longitude: float, latitude: float) -> None:
        ...

    @abstractmethod
    async def remove(self, vehicle_id: int) -> None:
        ...

    @abstractmethod
    async def query_radius(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        """Return (vehicle_id, distance_m) pairs within radius, nearest first."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...


class GridSpatialIndex(SpatialIndex):
    """
    Fixed-size lat/lon grid.

    Each vehicle sits in exactly one cell. A radius query scans the cells
    overlapping the circle's bounding box and filters by Haversine distance.
    """

    def __init__(self, cell_size_degrees: float = 0.05):
        if cell_size_degrees <= 0:
            raise ValueError("cell_size_degrees must be positive")
        self.cell_size_degrees = cell_size_degrees
        self._points: Dict[int, Tuple[float, float]] = {}
        self._cells: Dict[Tuple[int, int], Set[int]] = defaultdict(set)

    def _cell_for(self, longitude: float, latitude: float) -> Tuple[int, int]:
        return (
            math.floor(latitude / self.cell_size_degrees),
            math.floor(longitude / self.cell_size_degrees),
        )

    def __len__(self) -> int:
        return len(self._points)

    async def upsert(self, vehicle_id: int, longitude: float, latitude: float) -> None:
        previous = self._points.get(vehicle_id)
        if previous is not None:
            old_cell = self._cell_for(*previous)
            self._cells[old_cell].discard(vehicle_id)
            if not self._cells[old_cell]:
                del self._cells[old_cell]
        self._points[vehicle_id] = (longitude, latitude)
        self._cells[self._cell_for(longitude, latitude)].add(vehicle_id)

    async def remove(self, vehicle_id: int) -> None:
        previous = self._points.pop(vehicle_id, None)
        if previous is None:
            return
        cell = self._cell_for(*previous)
        self._cells[cell].discard(vehicle_id)
        if not self._cells[cell]:
            del self._cells[cell]

    def _candidates(self, longitude: float, latitude: float, radius_m: float) -> Set[int]:
        min_lat, max_lat, min_lon, max_lon = bounding_box(latitude, longitude, radius_m)
        lat_lo, lon_lo = self._cell_for(min_lon, min_lat)
        lat_hi, lon_hi = self._cell_for(max_lon, max_lat)

        # Scanning every point is cheaper than a huge cell range
        if (lat_hi - lat_lo + 1) * (lon_hi - lon_lo + 1) > len(self._cells):
            return set(self._points)

        found: Set[int] = set()
        for lat_cell in range(lat_lo, lat_hi + 1):
            for lon_cell in range(lon_lo, lon_hi + 1):
                found.update(self._cells.get((lat_cell, lon_cell), ()))
        return found

    async def query_radius(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        hits = []
        for vehicle_id in self._candidates(longitude, latitude, radius_m):
            point_lon, point_lat = self._points[vehicle_id]
            distance = haversine_m(latitude, longitude, point_lat, point_lon)
            if distance <= radius_m:
                hits.append((vehicle_id, distance))
        hits.sort(key=lambda hit: (hit[1], hit[0]))
        if limit is not None:
            hits = hits[:limit]
        return hits

    async def clear(self) -> None:
        self._points.clear()
        self._cells.clear()


class RedisGeoIndex(SpatialIndex):
    """
    Redis GEO backed index (requires Redis >= 6.2 for GEOSEARCH).

    Redis only accepts latitudes within +/-85.05112878 degrees; GEOADD
    raises for points beyond that band.
    """

    def __init__(self, client, key: str = "fleet:positions"):
        self.client = client
        self.key = key

    async def upsert(self, vehicle_id: int, longitude: float, latitude: float) -> None:
        await self.client.geoadd(self.key, (longitude, latitude, str(vehicle_id)))

    async def remove(self, vehicle_id: int) -> None:
        await self.client.zrem(self.key, str(vehicle_id))

    async def query_radius(
        self,
        longitude: float,
        latitude: float,
        radius_m: float,
        limit: Optional[int] = None
    ) -> List[Tuple[int, float]]:
        rows = await self.client.geosearch(
            self.key,
            longitude=longitude,
            latitude=latitude,
            radius=radius_m,
            unit="m",
            sort="ASC",
            count=limit,
            withdist=True,
        )
        return [(int(member), float(distance)) for member, distance in rows]

    async def clear(self) -> None:
        await self.client.delete(self.key)
