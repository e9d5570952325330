"""
Location ingestion pipeline tests.

Covers record creation, history push, derived flags, statistics,
validation and batch ingestion through LocationTrackingService.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from backend.app.core.config import settings
from backend.app.core.exceptions import BatchTooLargeError, LocationValidationError, ResourceNotFoundError
from backend.app.domain.tracking.geo import haversine_km
from backend.app.models.location_history import LocationHistory
from backend.app.models.tracking_enums import AlertSeverity, AlertType, DeviceType
from backend.app.models.vehicle_location import VehicleLocation
from backend.app.services.location_tracking import LocationTrackingService


def _payload(vehicle_id, lat, lon, at, **extra):
    return {"vehicle_id": vehicle_id, "latitude": lat, "longitude": lon, "recorded_at": at, **extra}


async def _history_count(db, record):
    result = await db.execute(
        select(func.count(LocationHistory.id)).where(LocationHistory.vehicle_location_id == record.id)
    )
    return result.scalar()


@pytest.fixture
def service(db_session, spatial_index):
    return LocationTrackingService(db_session, spatial_index)


@pytest.mark.asyncio
async def test_first_fix_creates_record(service, vehicle_factory, db_session, base_time):
    """First fix creates the record with empty history."""
    vehicle = await vehicle_factory("V1")

    record = await service.ingest(_payload(vehicle.id, 6.9271, 79.8612, base_time, speed=40), now=base_time)

    assert record.vehicle_id == vehicle.id
    assert record.is_moving is True
    assert record.is_online is True
    assert record.spatial_lon == 79.8612 and record.spatial_lat == 6.9271
    assert record.accuracy == 10.0
    assert record.device_type == DeviceType.GPS_TRACKER
    assert record.last_heartbeat == base_time
    assert await _history_count(db_session, record) == 0


@pytest.mark.asyncio
async def test_second_fix_pushes_previous_into_history(service, vehicle_factory, db_session, base_time):
    vehicle = await vehicle_factory("V1")
    await service.ingest(_payload(vehicle.id, 6.9271, 79.8612, base_time, speed=40), now=base_time)

    later = base_time + timedelta(minutes=2)
    record = await service.ingest(_payload(vehicle.id, 6.9300, 79.8700, later, speed=0), now=later)

    assert record.is_moving is False
    assert (record.latitude, record.longitude) == (6.9300, 79.8700)
    entries = await service.get_history(vehicle.id)
    assert len(entries) == 1
    assert (entries[0].latitude, entries[0].longitude) == (6.9271, 79.8612)
    assert entries[0].speed == 40
    assert entries[0].recorded_at == base_time


@pytest.mark.asyncio
async def test_unchanged_coordinates_do_not_grow_history(service, vehicle_factory, db_session, base_time):
    vehicle = await vehicle_factory()
    await service.ingest(_payload(vehicle.id, 6.9271, 79.8612, base_time), now=base_time)
    record = await service.ingest(
        _payload(vehicle.id, 6.9271, 79.8612, base_time + timedelta(seconds=30)),
        now=base_time + timedelta(seconds=30)
    )
    assert await _history_count(db_session, record) == 0


@pytest.mark.asyncio
async def test_total_distance_matches_pairwise_haversine(service, vehicle_factory, base_time):
    """Three fixes: statistics cover the two positions now in history."""
    vehicle = await vehicle_factory()
    points = [(6.9271, 79.8612), (6.9400, 79.8800), (6.9600, 79.9000)]

    record = None
    for n, (lat, lon) in enumerate(points):
        at = base_time + timedelta(minutes=5 * n)
        record = await service.ingest(_payload(vehicle.id, lat, lon, at, speed=30), now=at)

    expected = haversine_km(*points[0], *points[1])
    assert record.total_distance_km == pytest.approx(expected, rel=1e-3)
    assert record.average_speed_kmh == pytest.approx(expected / (5 / 60), rel=1e-3)
    assert record.max_speed_kmh == 30
    assert record.statistics_calculated_at == base_time + timedelta(minutes=10)


@pytest.mark.asyncio
async def test_history_is_capped_at_capacity(db_session, spatial_index, vehicle_factory, base_time):
    """The ring keeps only the most recent entries."""
    config = settings.model_copy(update={"history_max_entries": 3})
    service = LocationTrackingService(db_session, spatial_index, config=config)
    vehicle = await vehicle_factory()

    for n in range(6):
        at = base_time + timedelta(minutes=n)
        await service.ingest(_payload(vehicle.id, 6.9 + n * 0.001, 79.8, at), now=at)

    entries = await service.get_history(vehicle.id, limit=3)
    # Fixes 0..4 were pushed; fix 5 is current
    assert [round(entry.latitude, 3) for entry in entries] == [6.902, 6.903, 6.904]
    assert [entry.sequence for entry in entries] == [2, 3, 4]

    record = await service.get_current(vehicle.id)
    assert await _history_count(db_session, record) == 3


@pytest.mark.asyncio
async def test_history_limit_returns_most_recent_oldest_first(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()
    for n in range(5):
        at = base_time + timedelta(minutes=n)
        await service.ingest(_payload(vehicle.id, 6.9 + n * 0.001, 79.8, at), now=at)

    entries = await service.get_history(vehicle.id, limit=2)
    assert [entry.recorded_at for entry in entries] == [
        base_time + timedelta(minutes=2), base_time + timedelta(minutes=3)
    ]

    windowed = await service.get_history(
        vehicle.id, start=base_time, end=base_time + timedelta(minutes=1)
    )
    assert len(windowed) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("field,value", [("latitude", 999), ("longitude", 999), ("speed", 150), ("heading", 361)])
async def test_out_of_range_fix_is_rejected_without_writes(service, vehicle_factory, db_session, base_time, field, value):
    vehicle = await vehicle_factory()
    payload = _payload(vehicle.id, 6.9271, 79.8612, base_time)
    payload[field] = value

    with pytest.raises(LocationValidationError) as exc_info:
        await service.ingest(payload)

    assert exc_info.value.field == field
    assert exc_info.value.details["value"] == value
    count = await db_session.execute(select(func.count(VehicleLocation.id)))
    assert count.scalar() == 0


@pytest.mark.asyncio
async def test_unknown_vehicle_is_rejected(service, base_time):
    with pytest.raises(ResourceNotFoundError):
        await service.ingest(_payload(424242, 6.9271, 79.8612, base_time))


@pytest.mark.asyncio
async def test_moving_threshold_and_heading_normalization(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()

    record = await service.ingest(_payload(vehicle.id, 6.9, 79.8, base_time, speed=5.0, heading=360))
    assert record.is_moving is False
    assert record.heading == 0.0

    record = await service.ingest(_payload(vehicle.id, 6.91, 79.8, base_time + timedelta(seconds=5), speed=5.1))
    assert record.is_moving is True


@pytest.mark.asyncio
async def test_device_fields_only_overwritten_when_supplied(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()
    await service.ingest(_payload(
        vehicle.id, 6.9, 79.8, base_time,
        device_id="dev-1", device_type="smartphone", battery_level=80, signal_strength=-70
    ))
    record = await service.ingest(_payload(vehicle.id, 6.91, 79.8, base_time + timedelta(seconds=5)))

    assert record.device_id == "dev-1"
    assert record.device_type == DeviceType.SMARTPHONE
    assert record.battery_level == 80
    assert record.signal_strength == -70


@pytest.mark.asyncio
async def test_online_and_offline_scans(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()
    await service.ingest(_payload(vehicle.id, 6.9, 79.8, base_time), now=base_time)

    assert await service.find_offline(now=base_time + timedelta(minutes=4)) == []
    offline = await service.find_offline(now=base_time + timedelta(minutes=6))
    assert [record.vehicle_id for record in offline] == [vehicle.id]

    assert await service.find_stale(minutes_old=30, now=base_time + timedelta(minutes=10)) == []
    stale = await service.find_stale(minutes_old=30, now=base_time + timedelta(minutes=31))
    assert [record.vehicle_id for record in stale] == [vehicle.id]


@pytest.mark.asyncio
async def test_rule_alerts_are_raised_once_while_open(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()

    record = await service.ingest(_payload(vehicle.id, 6.9, 79.8, base_time, speed=105, battery_level=15))
    assert sorted(alert.type for alert in record.alerts) == [AlertType.LOW_BATTERY, AlertType.SPEEDING]
    speeding = next(alert for alert in record.alerts if alert.type == AlertType.SPEEDING)
    assert speeding.severity == AlertSeverity.HIGH
    assert speeding.location_snapshot["latitude"] == 6.9

    record = await service.ingest(_payload(vehicle.id, 6.91, 79.8, base_time + timedelta(seconds=5), speed=110))
    assert len(record.alerts) == 2


@pytest.mark.asyncio
async def test_idle_timeout_alert(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()
    await service.ingest(_payload(vehicle.id, 6.9, 79.8, base_time, speed=0))
    record = await service.ingest(_payload(vehicle.id, 6.9, 79.8, base_time + timedelta(minutes=31), speed=0))

    assert record.idle_since == base_time
    assert [alert.type for alert in record.alerts] == [AlertType.IDLE_TIMEOUT]


@pytest.mark.asyncio
async def test_batch_over_limit_is_rejected(service):
    items = [{"vehicle_id": 1, "latitude": 0, "longitude": 0}] * 101
    with pytest.raises(BatchTooLargeError):
        await service.ingest_batch(items)


@pytest.mark.asyncio
async def test_batch_reports_each_item(service, vehicle_factory, base_time):
    first = await vehicle_factory()
    second = await vehicle_factory()
    items = []
    for n in range(100):
        vehicle_id = first.id if n % 2 == 0 else second.id
        items.append(_payload(vehicle_id, 6.9 + n * 0.0001, 79.8, base_time + timedelta(seconds=n)))
    items[42]["latitude"] = 999

    response = await service.ingest_batch(items)

    assert response.success_count == 99
    assert response.failure_count == 1
    failure = response.failures[0]
    assert failure.index == 42
    assert failure.error_code == "ERR_VALIDATION_LOCATION"
    assert failure.details["field"] == "latitude"


@pytest.mark.asyncio
async def test_batch_unknown_vehicle_fails_alone(service, vehicle_factory, base_time):
    vehicle = await vehicle_factory()
    response = await service.ingest_batch([
        _payload(vehicle.id, 6.9, 79.8, base_time),
        _payload(99999, 6.9, 79.8, base_time),
    ])
    assert response.success_count == 1
    assert response.failures[0].error_code == "ERR_NOT_FOUND_001"
    assert response.failures[0].vehicle_id == 99999


@pytest.mark.asyncio
async def test_history_keeps_most_recent_thousand_of_1500_fixes(service, vehicle_factory, db_session, base_time):
    """At the default capacity, 1500 fixes leave fixes #500..#1499 in history and #1500 current."""
    assert settings.history_max_entries == 1000
    vehicle = await vehicle_factory()

    for n in range(1500):
        at = base_time + timedelta(seconds=n)
        await service.ingest(_payload(vehicle.id, 6.9 + n * 0.0001, 79.8, at, speed=30), now=at)

    record = await service.get_current(vehicle.id)
    assert await _history_count(db_session, record) == 1000

    entries = await service.get_history(vehicle.id, limit=1000)
    assert len(entries) == 1000
    assert entries[0].sequence == 499
    assert entries[0].recorded_at == base_time + timedelta(seconds=499)
    assert entries[-1].sequence == 1498
    assert entries[-1].recorded_at == base_time + timedelta(seconds=1498)
    assert record.last_updated == base_time + timedelta(seconds=1499)


@pytest.mark.asyncio
async def test_batch_unexpected_error_fails_alone(service, vehicle_factory, base_time, mocker):
    first = await vehicle_factory()
    broken = await vehicle_factory()
    last = await vehicle_factory()
    apply_fix = service.ingest

    async def flaky_ingest(item, now=None):
        if item["vehicle_id"] == broken.id:
            raise RuntimeError("unexpected failure")
        return await apply_fix(item, now=now)

    mocker.patch.object(service, "ingest", side_effect=flaky_ingest)

    response = await service.ingest_batch([
        _payload(first.id, 6.9, 79.8, base_time),
        _payload(broken.id, 6.9, 79.8, base_time),
        _payload(last.id, 6.9, 79.8, base_time),
    ])

    assert response.success_count == 2
    assert [success.vehicle_id for success in response.successes] == [first.id, last.id]
    assert response.failures[0].index == 1
    assert response.failures[0].error_code == "ERR_INTERNAL_SERVER"
