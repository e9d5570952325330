"""
Location tracking Pydantic schemas.

Defines request and response models for ingestion, reads, proximity,
alerts and retention.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from backend.app.models.tracking_enums import (
    AlertType, AlertSeverity, DeviceType, FixSource, FixQuality
)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Timestamps are stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class LocationIngest(BaseModel):
    """Schema for one incoming position fix."""
    vehicle_id: int = Field(..., gt=0, description="Fleet vehicle ID")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed: Optional[float] = Field(None, ge=0, le=120, description="km/h")
    heading: Optional[float] = Field(None, ge=0, le=360, description="Degrees, 360 is stored as 0")
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy in meters")
    altitude: Optional[float] = Field(None, description="Meters above sea level")
    recorded_at: Optional[datetime] = Field(None, description="Device timestamp, defaults to receive time")

    # Device
    device_id: Optional[str] = Field(None, max_length=100)
    device_type: Optional[DeviceType] = None
    battery_level: Optional[float] = Field(None, ge=0, le=100)
    signal_strength: Optional[float] = Field(None, ge=-120, le=0, description="dBm")

    source: FixSource = FixSource.GPS
    quality: FixQuality = FixQuality.GOOD

    @field_validator("recorded_at")
    @classmethod
    def normalize_recorded_at(cls, value):
        return as_naive_utc(value)


class BatchIngestRequest(BaseModel):
    """
    Schema for bulk ingestion.

    Items stay untyped here so one malformed item is reported on its own
    instead of rejecting the whole request.
    """
    items: List[Dict[str, Any]]


class BatchItemSuccess(BaseModel):
    index: int
    vehicle_id: int
    last_updated: datetime


class BatchItemFailure(BaseModel):
    index: int
    vehicle_id: Optional[Any] = None
    reason: str
    error_code: str
    details: Dict[str, Any] = {}


class BatchIngestResponse(BaseModel):
    successes: List[BatchItemSuccess]
    failures: List[BatchItemFailure]
    success_count: int
    failure_count: int


class CurrentPositionResponse(BaseModel):
    latitude: float
    longitude: float
    accuracy: float
    speed: float
    heading: float
    altitude: Optional[float]
    last_updated: datetime
    is_moving: bool


class SpatialPointResponse(BaseModel):
    type: str = "Point"
    coordinates: List[float]  # [longitude, latitude]


class RouteProgressUpdate(BaseModel):
    """Schema for the trip collaborator's route progress write."""
    next_stop_name: Optional[str] = Field(None, max_length=255)
    next_stop_eta: Optional[datetime] = None
    distance_to_next_stop_km: Optional[float] = Field(None, ge=0)
    progress_percentage: Optional[float] = Field(None, ge=0, le=100)

    @field_validator("next_stop_eta")
    @classmethod
    def normalize_eta(cls, value):
        return as_naive_utc(value)


class RouteProgressResponse(BaseModel):
    next_stop_name: Optional[str]
    next_stop_eta: Optional[datetime]
    distance_to_next_stop_km: Optional[float]
    progress_percentage: Optional[float]


class DeviceInfoResponse(BaseModel):
    device_id: Optional[str]
    device_type: DeviceType
    battery_level: Optional[float]
    signal_strength: Optional[float]
    last_seen: Optional[datetime]


class StatisticsResponse(BaseModel):
    total_distance_km: float
    average_speed_kmh: float
    max_speed_kmh: float
    idle_time_minutes: float
    last_calculated: Optional[datetime]


class AlertResponse(BaseModel):
    """Alert entry response."""
    id: int
    type: AlertType
    severity: AlertSeverity
    message: str
    triggered_at: datetime
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]
    resolved: bool
    resolved_at: Optional[datetime]
    location_snapshot: Dict[str, Any]

    class Config:
        from_attributes = True


class LocationRecordResponse(BaseModel):
    """Current state of one vehicle."""
    vehicle_id: int
    current_position: CurrentPositionResponse
    spatial_point: SpatialPointResponse
    route_progress: Optional[RouteProgressResponse]
    device_info: DeviceInfoResponse
    statistics: StatisticsResponse
    alerts: List[AlertResponse]
    is_online: bool
    last_heartbeat: datetime
    connection_age_seconds: Optional[float]
    location_freshness: str


class NearbyVehicleResponse(LocationRecordResponse):
    distance_meters: Optional[float] = None


class NearbyResponse(BaseModel):
    data: List[NearbyVehicleResponse]
    count: int
    fallback: bool = False
    message: Optional[str] = None
    search: Dict[str, Any]


class RealtimeFeedItem(LocationRecordResponse):
    vehicle_number: Optional[str] = None
    vehicle_type: Optional[str] = None


class RealtimeFeedResponse(BaseModel):
    data: List[RealtimeFeedItem]
    count: int


class HistoryEntryResponse(BaseModel):
    """Past fix response."""
    sequence: int
    latitude: float
    longitude: float
    accuracy: Optional[float]
    speed: float
    heading: float
    altitude: Optional[float]
    source: FixSource
    quality: FixQuality
    recorded_at: datetime

    class Config:
        from_attributes = True


class HistoryResponse(BaseModel):
    vehicle_id: int
    entries: List[HistoryEntryResponse]
    count: int


class HeatmapPoint(BaseModel):
    latitude: float
    longitude: float
    speed: float
    vehicle_type: Optional[str]
    timestamp: datetime


class HeatmapResponse(BaseModel):
    points: List[HeatmapPoint]
    count: int


class AlertTriggerRequest(BaseModel):
    """Schema for raising a caller-driven alert."""
    type: AlertType
    message: str = Field(..., min_length=1, max_length=1000)
    severity: Optional[AlertSeverity] = None


class AlertAcknowledgeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=100)


class PurgeResponse(BaseModel):
    message: str
    deleted_count: int


class SweepResponse(BaseModel):
    message: str
    processed: int
