"""
Retention sweeper tests.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.config import settings
from backend.app.core.exceptions import RetentionSweepError
from backend.app.models.archived_location_history import ArchivedLocationHistory
from backend.app.models.location_alert import LocationAlert
from backend.app.models.location_history import LocationHistory
from backend.app.models.vehicle_location import VehicleLocation
from backend.app.services.location_tracking import LocationTrackingService
from backend.app.services.retention import RetentionSweeper

NOW = datetime(2024, 6, 1, 12, 0, 0)


def _payload(vehicle_id, lat, lon, at, **extra):
    return {"vehicle_id": vehicle_id, "latitude": lat, "longitude": lon, "recorded_at": at, **extra}


async def _count(db, model):
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar()


@pytest.fixture
def tracking(db_session, spatial_index):
    return LocationTrackingService(db_session, spatial_index)


@pytest.mark.asyncio
async def test_purge_older_than_uses_half_open_cutoff(db_session, tracking, spatial_index, vehicle_factory):
    """29 and exactly 30 days old survive; 31 days old is removed."""
    ages = {}
    for days in (29, 30, 31):
        vehicle = await vehicle_factory()
        at = NOW - timedelta(days=days)
        await tracking.ingest(_payload(vehicle.id, 6.9, 79.8, at, speed=100), now=at)
        await tracking.ingest(_payload(vehicle.id, 6.91, 79.8, at), now=at)
        ages[days] = vehicle.id

    sweeper = RetentionSweeper(db_session, spatial_index)
    deleted = await sweeper.purge_records_older_than(30, now=NOW)

    assert deleted == 1
    result = await db_session.execute(select(VehicleLocation.vehicle_id))
    assert sorted(result.scalars().all()) == sorted([ages[29], ages[30]])
    assert await _count(db_session, LocationHistory) == 2
    assert await _count(db_session, LocationAlert) == 2
    hits = await spatial_index.query_radius(79.8, 6.91, 1000)
    assert ages[31] not in [vehicle_id for vehicle_id, _ in hits]


@pytest.mark.asyncio
async def test_purge_is_idempotent(db_session, tracking, vehicle_factory):
    vehicle = await vehicle_factory()
    at = NOW - timedelta(days=40)
    await tracking.ingest(_payload(vehicle.id, 6.9, 79.8, at), now=at)

    sweeper = RetentionSweeper(db_session)
    assert await sweeper.purge_records_older_than(30, now=NOW) == 1
    assert await sweeper.purge_records_older_than(30, now=NOW) == 0


@pytest.mark.asyncio
async def test_purge_expired_history_keeps_recent_entries(db_session, tracking, vehicle_factory):
    vehicle = await vehicle_factory()
    times = [NOW - timedelta(days=35), NOW - timedelta(days=31), NOW - timedelta(days=5), NOW]
    for n, at in enumerate(times):
        await tracking.ingest(_payload(vehicle.id, 6.9 + n * 0.01, 79.8, at), now=at)

    sweeper = RetentionSweeper(db_session)
    removed = await sweeper.purge_expired_history(now=NOW)

    assert removed == 2
    entries = await tracking.get_history(vehicle.id)
    assert [entry.recorded_at for entry in entries] == [times[2]]
    assert await _count(db_session, ArchivedLocationHistory) == 0


@pytest.mark.asyncio
async def test_purge_expired_history_archives_when_enabled(db_session, tracking, vehicle_factory):
    vehicle = await vehicle_factory()
    old = NOW - timedelta(days=45)
    await tracking.ingest(_payload(vehicle.id, 6.9, 79.8, old), now=old)
    await tracking.ingest(_payload(vehicle.id, 6.95, 79.8, NOW), now=NOW)

    config = settings.model_copy(update={"retention_archive_enabled": True})
    sweeper = RetentionSweeper(db_session, config=config)
    assert await sweeper.purge_expired_history(now=NOW) == 1

    result = await db_session.execute(select(ArchivedLocationHistory))
    archived = result.scalars().all()
    assert len(archived) == 1
    assert archived[0].vehicle_id == vehicle.id
    assert archived[0].recorded_at == old
    assert archived[0].archived_at == NOW


@pytest.mark.asyncio
async def test_stopped_sweeper_processes_nothing(db_session, tracking, vehicle_factory):
    vehicle = await vehicle_factory()
    at = NOW - timedelta(days=40)
    await tracking.ingest(_payload(vehicle.id, 6.9, 79.8, at), now=at)

    sweeper = RetentionSweeper(db_session)
    sweeper.stop()

    assert await sweeper.purge_records_older_than(30, now=NOW) == 0
    assert await _count(db_session, VehicleLocation) == 1


@pytest.mark.asyncio
async def test_mark_offline_devices(db_session, tracking, vehicle_factory):
    stale = await vehicle_factory()
    fresh = await vehicle_factory()
    await tracking.ingest(_payload(stale.id, 6.9, 79.8, NOW), now=NOW - timedelta(minutes=10))
    await tracking.ingest(_payload(fresh.id, 6.9, 79.8, NOW), now=NOW - timedelta(minutes=1))

    sweeper = RetentionSweeper(db_session)
    assert await sweeper.mark_offline_devices(now=NOW) == 1
    assert await sweeper.mark_offline_devices(now=NOW) == 0

    result = await db_session.execute(
        select(VehicleLocation.vehicle_id).where(VehicleLocation.is_online == False)
    )
    assert result.scalars().all() == [stale.id]


@pytest.mark.asyncio
async def test_storage_failure_reports_processed_count(db_session, tracking, vehicle_factory, mocker):
    vehicle = await vehicle_factory()
    at = NOW - timedelta(days=40)
    await tracking.ingest(_payload(vehicle.id, 6.9, 79.8, at), now=at)

    mocker.patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk full"))
    sweeper = RetentionSweeper(db_session)

    with pytest.raises(RetentionSweepError) as exc_info:
        await sweeper.purge_records_older_than(30, now=NOW)
    assert exc_info.value.processed == 0
    assert exc_info.value.error_code == "ERR_RETENTION_SWEEP"
