"""
Location Tracking Service.

Single entry point for position fixes and the read-side queries over
vehicle location records.

Ingestion order per fix:
1. Validate, check the vehicle in the fleet registry
2. Find-or-create the record under a row lock
3. Push the superseded position into the history ring
4. Overwrite the current position and spatial point
5. Refresh device info, heartbeat and online flag
6. Statistics, then alerts
7. Commit, then refresh the spatial index and the registry mirror
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings
from backend.app.core.exceptions import (
    AppException, BatchTooLargeError, LocationValidationError, ResourceNotFoundError
)
from backend.app.domain.tracking.alerts import (
    AlertCandidate, AlertRules, custom_alert, evaluate_rules, filter_duplicates, next_idle_since
)
from backend.app.domain.tracking.freshness import is_moving
from backend.app.domain.tracking.spatial_index import SpatialIndex
from backend.app.domain.tracking.statistics import MotionStatistics, merge_statistics
from backend.app.models.fleet_vehicle import FleetVehicle
from backend.app.models.location_alert import LocationAlert
from backend.app.models.location_history import LocationHistory
from backend.app.models.tracking_enums import AlertSeverity, AlertType, DeviceType
from backend.app.models.vehicle_location import VehicleLocation
from backend.app.schemas.location import (
    BatchIngestResponse, BatchItemFailure, BatchItemSuccess, HeatmapPoint,
    LocationIngest, RouteProgressUpdate
)
from backend.app.services.cache import CacheService
from backend.app.services.fleet_registry import FleetRegistry
from backend.app.services.location_history import LocationHistoryStore, snapshot_fix

logger = logging.getLogger("fleet_tracking.ingestion")

DEFAULT_ACCURACY_M = 10.0
HEATMAP_MAX_POINTS = 10000
REALTIME_MAX_ITEMS = 500


def validate_fix(payload: Any) -> LocationIngest:
    """
    Coerce a raw payload into a LocationIngest.

    Raises:
        LocationValidationError: naming the first offending field
    """
    if isinstance(payload, LocationIngest):
        return payload
    try:
        return LocationIngest.model_validate(payload)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        value = error.get("input")
        if not isinstance(value, (str, int, float, bool)):
            value = None
        raise LocationValidationError(field, error.get("msg", "invalid value"), value) from exc


def normalize_heading(heading: Optional[float]) -> float:
    # 360 and 0 are the same bearing
    return (heading or 0.0) % 360.0


def location_snapshot(record: VehicleLocation) -> Dict[str, Any]:
    return {
        "latitude": record.latitude,
        "longitude": record.longitude,
        "accuracy": record.accuracy,
        "speed": record.speed,
        "heading": record.heading,
        "altitude": record.altitude,
        "last_updated": record.last_updated.isoformat() if record.last_updated else None,
    }


class LocationTrackingService:
    """Ingestion pipeline and read queries for vehicle locations."""

    def __init__(
        self,
        db: AsyncSession,
        spatial_index: SpatialIndex,
        config: Settings = settings
    ):
        self.db = db
        self.spatial_index = spatial_index
        self.config = config
        self.history = LocationHistoryStore(db, capacity=config.history_max_entries)
        self.rules = AlertRules(
            speed_limit_kmh=config.alert_speed_limit_kmh,
            idle_timeout_minutes=config.alert_idle_timeout_minutes,
            low_battery_threshold=config.alert_low_battery_threshold,
        )

    @property
    def online_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.online_timeout_minutes)

    # Ingestion

    async def ingest(self, payload: Any, now: Optional[datetime] = None) -> VehicleLocation:
        """
        Apply one position fix.

        Args:
            payload: LocationIngest or a mapping with the same fields
            now: Receive time (defaults to current UTC time)

        Returns:
            The updated location record

        Raises:
            LocationValidationError: Out-of-range or malformed input (nothing written)
            ResourceNotFoundError: Vehicle not registered in the fleet registry
        """
        fix = validate_fix(payload)
        now = now or datetime.utcnow()
        recorded_at = fix.recorded_at or now

        vehicle = await FleetRegistry.require_vehicle(self.db, fix.vehicle_id)

        try:
            record = await self._apply_fix(vehicle.id, fix, recorded_at, now)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._index_position(record)

        mirrored = await FleetRegistry.refresh_position_mirror(
            self.db, record.vehicle_id, record.latitude, record.longitude, record.last_updated
        )
        if not mirrored:
            await self.db.refresh(record)

        logger.debug(
            "Ingested fix for vehicle %s at (%.6f, %.6f) speed=%.1f",
            record.vehicle_id, record.latitude, record.longitude, record.speed
        )
        return record

    async def ingest_batch(self, items: Sequence[Any], now: Optional[datetime] = None) -> BatchIngestResponse:
        """
        Apply many fixes, each in its own transaction.

        Raises:
            BatchTooLargeError: More items than batch_max_items (nothing applied)
        """
        if len(items) > self.config.batch_max_items:
            raise BatchTooLargeError(len(items), self.config.batch_max_items)

        successes = []
        failures = []
        for index, item in enumerate(items):
            vehicle_id = item.get("vehicle_id") if isinstance(item, dict) else None
            try:
                record = await self.ingest(item, now=now)
            except AppException as exc:
                failures.append(BatchItemFailure(
                    index=index,
                    vehicle_id=vehicle_id,
                    reason=exc.message,
                    error_code=exc.error_code,
                    details=exc.details,
                ))
                continue
            except SQLAlchemyError as exc:
                logger.warning("Batch item %s failed in storage: %s", index, exc)
                failures.append(BatchItemFailure(
                    index=index,
                    vehicle_id=vehicle_id,
                    reason="Storage error while applying fix",
                    error_code="ERR_STORAGE",
                ))
                continue
            except Exception:
                logger.exception("Batch item %s failed unexpectedly", index)
                failures.append(BatchItemFailure(
                    index=index,
                    vehicle_id=vehicle_id,
                    reason="Internal error while applying fix",
                    error_code="ERR_INTERNAL_SERVER",
                ))
                continue

            successes.append(BatchItemSuccess(
                index=index,
                vehicle_id=record.vehicle_id,
                last_updated=record.last_updated,
            ))

        logger.info("Batch ingestion: %d applied, %d failed", len(successes), len(failures))
        return BatchIngestResponse(
            successes=successes,
            failures=failures,
            success_count=len(successes),
            failure_count=len(failures),
        )

    async def _lock_record(self, vehicle_id: int) -> Optional[VehicleLocation]:
        result = await self.db.execute(
            select(VehicleLocation)
            .where(VehicleLocation.vehicle_id == vehicle_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _create_record(self, vehicle_id: int, fix: LocationIngest, recorded_at: datetime) -> Optional[VehicleLocation]:
        """Insert the first record for a vehicle. None if another writer won the race."""
        record = VehicleLocation(
            vehicle_id=vehicle_id,
            latitude=fix.latitude,
            longitude=fix.longitude,
            spatial_lon=fix.longitude,
            spatial_lat=fix.latitude,
            last_updated=recorded_at,
            last_heartbeat=recorded_at,
            history_sequence=0,
            total_distance_km=0.0,
            average_speed_kmh=0.0,
            max_speed_kmh=0.0,
            idle_time_minutes=0.0,
            alerts=[],
        )
        self.db.add(record)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return None
        return record

    async def _apply_fix(
        self,
        vehicle_id: int,
        fix: LocationIngest,
        recorded_at: datetime,
        now: datetime
    ) -> VehicleLocation:
        created = False
        record = await self._lock_record(vehicle_id)
        if record is None:
            record = await self._create_record(vehicle_id, fix, recorded_at)
            if record is None:
                record = await self._lock_record(vehicle_id)
            else:
                created = True

        if not created and (record.latitude != fix.latitude or record.longitude != fix.longitude):
            await self.history.push(record, snapshot_fix(record))

        speed = fix.speed or 0.0

        # Position and indexed point move together
        record.latitude = fix.latitude
        record.longitude = fix.longitude
        record.spatial_lon = fix.longitude
        record.spatial_lat = fix.latitude
        record.accuracy = fix.accuracy if fix.accuracy is not None else DEFAULT_ACCURACY_M
        record.speed = speed
        record.heading = normalize_heading(fix.heading)
        record.altitude = fix.altitude
        record.last_updated = recorded_at
        record.source = fix.source
        record.quality = fix.quality
        record.is_moving = is_moving(speed, self.config.moving_speed_threshold_kmh)
        record.idle_since = next_idle_since(
            record.idle_since, speed, recorded_at, self.config.idle_speed_threshold_kmh
        )

        if fix.device_id is not None:
            record.device_id = fix.device_id
        if fix.device_type is not None:
            record.device_type = fix.device_type
        elif record.device_type is None:
            record.device_type = DeviceType.GPS_TRACKER
        if fix.battery_level is not None:
            record.battery_level = fix.battery_level
        if fix.signal_strength is not None:
            record.signal_strength = fix.signal_strength
        record.device_last_seen = now

        record.last_heartbeat = now
        record.is_online = True

        await self._update_statistics(record, now)
        self._evaluate_alerts(record, recorded_at, now)
        return record

    async def _update_statistics(self, record: VehicleLocation, now: datetime) -> None:
        window_size = self.config.statistics_window_size
        ledger = await self.history.load_ledger(record, window_size)
        current = MotionStatistics(
            total_distance=record.total_distance_km or 0.0,
            average_speed=record.average_speed_kmh or 0.0,
            max_speed=record.max_speed_kmh or 0.0,
            idle_time=record.idle_time_minutes or 0.0,
            last_calculated=record.statistics_calculated_at,
        )
        merged = merge_statistics(
            current, ledger.window(window_size), now, self.config.idle_speed_threshold_kmh
        )
        if merged is current:
            return
        record.total_distance_km = merged.total_distance
        record.average_speed_kmh = merged.average_speed
        record.max_speed_kmh = merged.max_speed
        record.idle_time_minutes = merged.idle_time
        record.statistics_calculated_at = merged.last_calculated

    def _evaluate_alerts(self, record: VehicleLocation, recorded_at: datetime, now: datetime) -> None:
        candidates = evaluate_rules(
            self.rules,
            speed=record.speed,
            recorded_at=recorded_at,
            idle_since=record.idle_since,
            battery_level=record.battery_level,
        )
        for candidate in self._dedupe(record, candidates):
            self._open_alert(record, candidate, now)

    def _dedupe(self, record: VehicleLocation, candidates: List[AlertCandidate]) -> List[AlertCandidate]:
        open_types = [alert.type for alert in record.alerts if not alert.resolved]
        return filter_duplicates(candidates, open_types, dedupe=self.config.alert_dedupe_open)

    def _open_alert(self, record: VehicleLocation, candidate: AlertCandidate, now: datetime) -> LocationAlert:
        alert = LocationAlert(
            type=candidate.type,
            severity=candidate.severity,
            message=candidate.message,
            location_snapshot=location_snapshot(record),
            triggered_at=now,
            resolved=False,
        )
        record.alerts.append(alert)
        logger.info(
            "Alert %s (%s) raised for vehicle %s: %s",
            candidate.type.value, candidate.severity.value, record.vehicle_id, candidate.message
        )
        return alert

    async def _index_position(self, record: VehicleLocation) -> None:
        try:
            await self.spatial_index.upsert(record.vehicle_id, record.spatial_lon, record.spatial_lat)
        except Exception as exc:
            # The committed record stays authoritative; the next fix or a rebuild re-indexes it
            logger.warning("Spatial index update failed for vehicle %s: %s", record.vehicle_id, exc)

    # Direct lookups

    async def get_current(self, vehicle_id: int) -> VehicleLocation:
        result = await self.db.execute(
            select(VehicleLocation).where(VehicleLocation.vehicle_id == vehicle_id)
        )
        record = result.scalar_one_or_none()
        if not record:
            raise ResourceNotFoundError("Location record for vehicle", vehicle_id)
        return record

    async def get_history(
        self,
        vehicle_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100
    ) -> List[LocationHistory]:
        if limit < 1 or limit > self.config.history_max_entries:
            raise LocationValidationError("limit", f"must be between 1 and {self.config.history_max_entries}", limit)
        if start and end and start > end:
            raise LocationValidationError("start_date", "must not be after end_date")
        record = await self.get_current(vehicle_id)
        return await self.history.query(record.id, start=start, end=end, limit=limit)

    async def update_route_progress(self, vehicle_id: int, progress: RouteProgressUpdate) -> VehicleLocation:
        record = await self.get_current(vehicle_id)
        for field, value in progress.model_dump(exclude_unset=True).items():
            setattr(record, field, value)
        await self.db.commit()
        return record

    # Alerts

    async def trigger_alert(
        self,
        vehicle_id: int,
        alert_type: AlertType,
        message: str,
        severity: Optional[AlertSeverity] = None,
        now: Optional[datetime] = None
    ) -> Tuple[VehicleLocation, Optional[LocationAlert]]:
        """
        Raise a caller-driven alert (route deviation, panic, maintenance...).

        Returns:
            (record, alert) where alert is None if an open alert of the
            same type already exists
        """
        now = now or datetime.utcnow()
        record = await self.get_current(vehicle_id)
        kept = self._dedupe(record, [custom_alert(alert_type, message, severity)])
        alert = self._open_alert(record, kept[0], now) if kept else None
        await self.db.commit()
        return record, alert

    def _find_alert(self, record: VehicleLocation, alert_id: int) -> Optional[LocationAlert]:
        return next((alert for alert in record.alerts if alert.id == alert_id), None)

    async def acknowledge_alert(
        self,
        vehicle_id: int,
        alert_id: int,
        user_id: str,
        now: Optional[datetime] = None
    ) -> VehicleLocation:
        """First acknowledgement wins. Unknown alert ids are ignored."""
        record = await self.get_current(vehicle_id)
        alert = self._find_alert(record, alert_id)
        if alert is not None and alert.acknowledged_at is None:
            alert.acknowledged_at = now or datetime.utcnow()
            alert.acknowledged_by = user_id
            await self.db.commit()
        return record

    async def resolve_alert(
        self,
        vehicle_id: int,
        alert_id: int,
        now: Optional[datetime] = None
    ) -> VehicleLocation:
        """Mark an alert resolved. Unknown or already resolved alerts are ignored."""
        record = await self.get_current(vehicle_id)
        alert = self._find_alert(record, alert_id)
        if alert is not None and not alert.resolved:
            alert.resolved = True
            alert.resolved_at = now or datetime.utcnow()
            await self.db.commit()
        return record

    # Monitoring scans

    async def find_stale(self, minutes_old: int = 30, now: Optional[datetime] = None) -> List[VehicleLocation]:
        """Online records whose position is older than `minutes_old` minutes."""
        if minutes_old < 0:
            raise LocationValidationError("minutes", "must be >= 0", minutes_old)
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=minutes_old)
        result = await self.db.execute(
            select(VehicleLocation).where(
                VehicleLocation.last_updated < cutoff,
                VehicleLocation.is_online == True
            ).order_by(VehicleLocation.last_updated)
        )
        return list(result.scalars().all())

    async def find_offline(self, now: Optional[datetime] = None) -> List[VehicleLocation]:
        """Records whose heartbeat is older than the online timeout."""
        cutoff = (now or datetime.utcnow()) - self.online_timeout
        result = await self.db.execute(
            select(VehicleLocation).where(
                VehicleLocation.last_heartbeat < cutoff
            ).order_by(VehicleLocation.last_heartbeat)
        )
        return list(result.scalars().all())

    # Feeds

    async def get_realtime_feed(
        self,
        limit: int = 50,
        online_only: bool = False,
        now: Optional[datetime] = None
    ) -> List[Tuple[VehicleLocation, FleetVehicle]]:
        """Latest record per vehicle, most recently updated first."""
        if limit < 1 or limit > REALTIME_MAX_ITEMS:
            raise LocationValidationError("limit", f"must be between 1 and {REALTIME_MAX_ITEMS}", limit)
        query = select(VehicleLocation, FleetVehicle).join(
            FleetVehicle, FleetVehicle.id == VehicleLocation.vehicle_id
        )
        if online_only:
            cutoff = (now or datetime.utcnow()) - self.online_timeout
            query = query.where(
                VehicleLocation.is_online == True,
                VehicleLocation.last_heartbeat >= cutoff
            )
        query = query.order_by(VehicleLocation.last_updated.desc()).limit(limit)
        result = await self.db.execute(query)
        return [(row[0], row[1]) for row in result.all()]

    async def get_heatmap(
        self,
        min_lat: Optional[float] = None,
        max_lat: Optional[float] = None,
        min_lon: Optional[float] = None,
        max_lon: Optional[float] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        vehicle_type: Optional[str] = None,
        limit: int = 1000
    ) -> List[HeatmapPoint]:
        """
        Reduced point list from history and current positions.

        Points are most recent first. Results are cached briefly per
        distinct filter set.
        """
        bbox = (min_lat, max_lat, min_lon, max_lon)
        has_bbox = any(value is not None for value in bbox)
        if has_bbox:
            if any(value is None for value in bbox):
                raise LocationValidationError("bounding_box", "requires min_lat, max_lat, min_lon and max_lon")
            if not (-90 <= min_lat <= max_lat <= 90):
                raise LocationValidationError("bounding_box", "latitudes must satisfy -90 <= min_lat <= max_lat <= 90")
            if not (-180 <= min_lon <= max_lon <= 180):
                raise LocationValidationError("bounding_box", "longitudes must satisfy -180 <= min_lon <= max_lon <= 180")
        if start and end and start > end:
            raise LocationValidationError("start_date", "must not be after end_date")
        if limit < 1 or limit > HEATMAP_MAX_POINTS:
            raise LocationValidationError("limit", f"must be between 1 and {HEATMAP_MAX_POINTS}", limit)

        cache_key = "heatmap:" + json.dumps(
            [min_lat, max_lat, min_lon, max_lon, start, end, vehicle_type, limit], default=str
        )
        cached = await CacheService.get(cache_key)
        if cached is not None:
            return cached

        def _filtered(query, lat_col, lon_col, time_col):
            if has_bbox:
                query = query.where(
                    lat_col >= min_lat, lat_col <= max_lat,
                    lon_col >= min_lon, lon_col <= max_lon
                )
            if start:
                query = query.where(time_col >= start)
            if end:
                query = query.where(time_col <= end)
            if vehicle_type:
                query = query.where(FleetVehicle.vehicle_type == vehicle_type)
            return query.order_by(time_col.desc()).limit(limit)

        history_query = _filtered(
            select(
                LocationHistory.latitude, LocationHistory.longitude, LocationHistory.speed,
                LocationHistory.recorded_at, FleetVehicle.vehicle_type
            ).join(FleetVehicle, FleetVehicle.id == LocationHistory.vehicle_id),
            LocationHistory.latitude, LocationHistory.longitude, LocationHistory.recorded_at
        )
        current_query = _filtered(
            select(
                VehicleLocation.latitude, VehicleLocation.longitude, VehicleLocation.speed,
                VehicleLocation.last_updated, FleetVehicle.vehicle_type
            ).join(FleetVehicle, FleetVehicle.id == VehicleLocation.vehicle_id),
            VehicleLocation.latitude, VehicleLocation.longitude, VehicleLocation.last_updated
        )

        rows = list((await self.db.execute(history_query)).all())
        rows.extend((await self.db.execute(current_query)).all())
        rows.sort(key=lambda row: row[3], reverse=True)

        points = [
            HeatmapPoint(
                latitude=row[0],
                longitude=row[1],
                speed=row[2] or 0.0,
                timestamp=row[3],
                vehicle_type=row[4],
            )
            for row in rows[:limit]
        ]
        await CacheService.set(cache_key, points, ttl_seconds=self.config.heatmap_cache_ttl_seconds)
        return points
