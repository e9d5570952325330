"""
Vehicle Location API Endpoints.

Ingestion of position fixes, current/historical reads, proximity search,
monitoring scans and alert lifecycle.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

from backend.app.core.config import settings
from backend.app.core.dependencies import get_proximity_service, get_tracking_service
from backend.app.domain.tracking.freshness import connection_age_seconds, is_online, location_freshness
from backend.app.models.vehicle_location import VehicleLocation
from backend.app.schemas.location import (
    AlertAcknowledgeRequest, AlertResponse, AlertTriggerRequest,
    BatchIngestRequest, BatchIngestResponse, CurrentPositionResponse,
    DeviceInfoResponse, HeatmapResponse, HistoryEntryResponse, HistoryResponse,
    LocationIngest, LocationRecordResponse, NearbyResponse, NearbyVehicleResponse,
    RealtimeFeedItem, RealtimeFeedResponse, RouteProgressResponse, RouteProgressUpdate,
    SpatialPointResponse, StatisticsResponse, as_naive_utc
)
from backend.app.services.location_tracking import LocationTrackingService
from backend.app.services.proximity import ProximityService

router = APIRouter(prefix="/locations", tags=["Locations"])


def _record_fields(record: VehicleLocation, now: datetime) -> dict:
    route_progress = None
    if any(value is not None for value in (
        record.next_stop_name, record.next_stop_eta,
        record.distance_to_next_stop_km, record.progress_percentage
    )):
        route_progress = RouteProgressResponse(
            next_stop_name=record.next_stop_name,
            next_stop_eta=record.next_stop_eta,
            distance_to_next_stop_km=record.distance_to_next_stop_km,
            progress_percentage=record.progress_percentage,
        )

    return {
        "vehicle_id": record.vehicle_id,
        "current_position": CurrentPositionResponse(
            latitude=record.latitude,
            longitude=record.longitude,
            accuracy=record.accuracy,
            speed=record.speed,
            heading=record.heading,
            altitude=record.altitude,
            last_updated=record.last_updated,
            is_moving=record.is_moving,
        ),
        "spatial_point": SpatialPointResponse(coordinates=[record.spatial_lon, record.spatial_lat]),
        "route_progress": route_progress,
        "device_info": DeviceInfoResponse(
            device_id=record.device_id,
            device_type=record.device_type,
            battery_level=record.battery_level,
            signal_strength=record.signal_strength,
            last_seen=record.device_last_seen,
        ),
        "statistics": StatisticsResponse(
            total_distance_km=record.total_distance_km,
            average_speed_kmh=record.average_speed_kmh,
            max_speed_kmh=record.max_speed_kmh,
            idle_time_minutes=record.idle_time_minutes,
            last_calculated=record.statistics_calculated_at,
        ),
        "alerts": [AlertResponse.model_validate(alert) for alert in record.alerts],
        "is_online": record.is_online and is_online(
            record.last_heartbeat, now, timedelta(minutes=settings.online_timeout_minutes)
        ),
        "last_heartbeat": record.last_heartbeat,
        "connection_age_seconds": connection_age_seconds(record.last_heartbeat, now),
        "location_freshness": location_freshness(record.last_updated, now).value,
    }


def _record_response(record: VehicleLocation, now: Optional[datetime] = None) -> LocationRecordResponse:
    return LocationRecordResponse(**_record_fields(record, now or datetime.utcnow()))


@router.post("", response_model=LocationRecordResponse, status_code=status.HTTP_201_CREATED)
async def ingest_location(
    fix: LocationIngest,
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """
    Ingest one position fix.

    Creates the vehicle's location record on the first fix; later fixes
    push the previous position into history and update it in place.
    """
    record = await service.ingest(fix)
    return _record_response(record)


@router.post("/batch", response_model=BatchIngestResponse)
async def ingest_location_batch(
    request: BatchIngestRequest,
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """
    Ingest many fixes. Each item succeeds or fails on its own.
    """
    return await service.ingest_batch(request.items)


@router.get("/realtime", response_model=RealtimeFeedResponse)
async def get_realtime_feed(
    limit: int = Query(50, description="Max vehicles"),
    online_only: bool = Query(False, description="Only vehicles with a live heartbeat"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """Latest position per vehicle, most recently updated first."""
    now = datetime.utcnow()
    rows = await service.get_realtime_feed(limit=limit, online_only=online_only, now=now)
    data = [
        RealtimeFeedItem(
            **_record_fields(record, now),
            vehicle_number=vehicle.vehicle_number,
            vehicle_type=vehicle.vehicle_type,
        )
        for record, vehicle in rows
    ]
    return RealtimeFeedResponse(data=data, count=len(data))


@router.get("/nearby", response_model=NearbyResponse)
async def find_nearby_vehicles(
    lat: float = Query(..., description="Center latitude"),
    lng: float = Query(..., description="Center longitude"),
    radius: Optional[float] = Query(None, description="Radius in meters (default 5000)"),
    limit: Optional[int] = Query(None, description="Max results (default 20)"),
    service: ProximityService = Depends(get_proximity_service)
):
    """
    Online vehicles near a point, nearest first.

    When the spatial index is unavailable the response carries
    `fallback: true` and lists recently updated online vehicles instead.
    """
    now = datetime.utcnow()
    result = await service.find_nearby(lat, lng, radius_m=radius, limit=limit, now=now)
    data = [
        NearbyVehicleResponse(**_record_fields(record, now), distance_meters=distance)
        for record, distance in result.vehicles
    ]
    return NearbyResponse(
        data=data,
        count=len(data),
        fallback=result.fallback,
        message=result.message,
        search={
            "latitude": lat,
            "longitude": lng,
            "radius_meters": radius if radius is not None else service.config.nearby_default_radius_m,
        },
    )


@router.get("/heatmap", response_model=HeatmapResponse)
async def get_heatmap(
    min_lat: Optional[float] = Query(None),
    max_lat: Optional[float] = Query(None),
    min_lon: Optional[float] = Query(None),
    max_lon: Optional[float] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    vehicle_type: Optional[str] = Query(None),
    limit: int = Query(1000, description="Max points (up to 10000)"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """Position points for density maps, most recent first."""
    points = await service.get_heatmap(
        min_lat=min_lat, max_lat=max_lat, min_lon=min_lon, max_lon=max_lon,
        start=as_naive_utc(start_date), end=as_naive_utc(end_date),
        vehicle_type=vehicle_type, limit=limit,
    )
    return HeatmapResponse(points=points, count=len(points))


@router.get("/stale")
async def find_stale_locations(
    minutes: int = Query(30, description="Age threshold in minutes"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """Online vehicles whose last position is older than `minutes`."""
    now = datetime.utcnow()
    records = await service.find_stale(minutes_old=minutes, now=now)
    data = [_record_response(record, now) for record in records]
    return {"data": data, "count": len(data)}


@router.get("/offline")
async def find_offline_vehicles(
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """Vehicles whose device heartbeat is past the online timeout."""
    now = datetime.utcnow()
    records = await service.find_offline(now=now)
    data = [_record_response(record, now) for record in records]
    return {"data": data, "count": len(data)}


@router.get("/{vehicle_id}", response_model=LocationRecordResponse)
async def get_current_location(
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    record = await service.get_current(vehicle_id)
    return _record_response(record)


@router.get("/{vehicle_id}/history", response_model=HistoryResponse)
async def get_location_history(
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, description="Max entries"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """
    Past positions in the time range, oldest first.

    Returns the most recent `limit` matching entries.
    """
    entries = await service.get_history(
        vehicle_id,
        start=as_naive_utc(start_date),
        end=as_naive_utc(end_date),
        limit=limit,
    )
    return HistoryResponse(
        vehicle_id=vehicle_id,
        entries=[HistoryEntryResponse.model_validate(entry) for entry in entries],
        count=len(entries),
    )


@router.put("/{vehicle_id}/route-progress", response_model=LocationRecordResponse)
async def update_route_progress(
    progress: RouteProgressUpdate,
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    record = await service.update_route_progress(vehicle_id, progress)
    return _record_response(record)


@router.post("/{vehicle_id}/alerts", response_model=LocationRecordResponse, status_code=status.HTTP_201_CREATED)
async def trigger_alert(
    request: AlertTriggerRequest,
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    """
    Raise a caller-driven alert (route deviation, panic, maintenance).

    No new alert is added while one of the same type is still open.
    """
    record, _ = await service.trigger_alert(
        vehicle_id, request.type, request.message, severity=request.severity
    )
    return _record_response(record)


@router.post("/{vehicle_id}/alerts/{alert_id}/acknowledge", response_model=LocationRecordResponse)
async def acknowledge_alert(
    request: AlertAcknowledgeRequest,
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    alert_id: int = Path(..., description="Alert ID"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    record = await service.acknowledge_alert(vehicle_id, alert_id, request.user_id)
    return _record_response(record)


@router.post("/{vehicle_id}/alerts/{alert_id}/resolve", response_model=LocationRecordResponse)
async def resolve_alert(
    vehicle_id: int = Path(..., description="Fleet vehicle ID"),
    alert_id: int = Path(..., description="Alert ID"),
    service: LocationTrackingService = Depends(get_tracking_service)
):
    record = await service.resolve_alert(vehicle_id, alert_id)
    return _record_response(record)
