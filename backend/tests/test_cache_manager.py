from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from airhealth.cache_manager import OutOfOrderReadingError, from_db_timestamp, to_db_timestamp
from airhealth.data_processor import LOCATIONS
from airhealth.models import HealthIndexRecord

from conftest import utc


def _record(hour, aqhi=2.0, category="LOW", quality="GOOD"):
    return HealthIndexRecord(
        location_id=1,
        hour_timestamp=hour,
        pm25_3h_avg=35.5,
        o3_3h_avg=90.0,
        aqhi=aqhi,
        aqhi_category=category,
        data_quality=quality,
        collection_status="collected",
        policy="thai_health_department",
    )


def test_timestamps_are_stored_as_naive_utc():
    bangkok = timezone(timedelta(hours=7))
    value = datetime(2026, 3, 1, 19, 0, tzinfo=bangkok)

    assert to_db_timestamp(value) == "2026-03-01 12:00:00"
    assert from_db_timestamp("2026-03-01 12:00:00") == utc(2026, 3, 1, 12)
    assert from_db_timestamp(None) is None
    assert from_db_timestamp("not a date") is None


async def test_locations_are_upserted(cache):
    await cache.cache_locations(LOCATIONS)
    await cache.cache_locations(LOCATIONS)

    stored = await cache.get_locations()

    assert len(stored) == 15
    assert stored[0].district == "Phra Nakhon"
    assert stored[9].population is None


async def test_reading_upsert_is_idempotent(cache):
    await cache.cache_locations(LOCATIONS[:1])
    hour = utc(2026, 3, 1, 12)

    await cache.upsert_readings(1, hour, {"pm25": 30.0}, "waqi")
    await cache.upsert_readings(1, hour, {"pm25": 35.5, "o3": 90.0}, "waqi", native_units=True)

    readings = await cache.query_readings(1, hour - timedelta(hours=3))
    assert len(readings) == 1
    assert readings[0].pm25 == 35.5
    assert readings[0].o3 == 90.0
    assert readings[0].pm10 is None
    assert readings[0].native_units is True
    assert readings[0].timestamp == hour


async def test_out_of_order_reading_is_rejected(cache):
    await cache.cache_locations(LOCATIONS[:2])
    await cache.upsert_readings(1, utc(2026, 3, 1, 12), {"pm25": 10.0}, "waqi")

    with pytest.raises(OutOfOrderReadingError):
        await cache.upsert_readings(1, utc(2026, 3, 1, 11), {"pm25": 99.0}, "waqi")

    # ordering is per location, whichever provider wrote the newest row
    with pytest.raises(OutOfOrderReadingError):
        await cache.upsert_readings(1, utc(2026, 3, 1, 11), {"o3": 80.0}, "google")

    # the newest hour can still be written by another provider
    await cache.upsert_readings(1, utc(2026, 3, 1, 12), {"o3": 80.0}, "google")
    # other locations are unaffected
    await cache.upsert_readings(2, utc(2026, 3, 1, 11), {"pm25": 5.0}, "waqi")

    readings = await cache.query_readings(1, utc(2026, 3, 1, 0))
    assert sorted((r.provider, r.pm25, r.o3) for r in readings) == [("google", None, 80.0), ("waqi", 10.0, None)]


async def test_query_window_is_inclusive(cache):
    await cache.cache_locations(LOCATIONS[:1])
    for hour in (8, 9, 10, 11, 12):
        await cache.upsert_readings(1, utc(2026, 3, 1, hour), {"pm25": float(hour)}, "waqi")

    readings = await cache.query_readings(1, utc(2026, 3, 1, 9), utc(2026, 3, 1, 12))

    assert [r.pm25 for r in readings] == [9.0, 10.0, 11.0, 12.0]


async def test_latest_reading_per_provider(cache):
    await cache.cache_locations(LOCATIONS[:1])
    await cache.upsert_readings(1, utc(2026, 3, 1, 10), {"pm25": 1.0}, "waqi")
    await cache.upsert_readings(1, utc(2026, 3, 1, 11), {"pm25": 2.0}, "waqi")

    latest = await cache.get_latest_reading(1, "waqi")

    assert latest.pm25 == 2.0
    assert await cache.get_latest_reading(1, "google") is None


async def test_unknown_location_violates_foreign_key(cache):
    with pytest.raises(aiosqlite.IntegrityError):
        await cache.upsert_readings(999, utc(2026, 3, 1, 10), {"pm25": 1.0}, "waqi")


async def test_health_index_upsert_keeps_one_row_per_hour(cache):
    await cache.cache_locations(LOCATIONS[:1])
    hour = utc(2026, 3, 1, 12)

    await cache.upsert_health_index(_record(hour, aqhi=2.0))
    await cache.upsert_health_index(_record(hour, aqhi=4.5, category="MODERATE"))

    stored = await cache.get_health_index(1, hour)
    assert stored.aqhi == 4.5
    assert stored.aqhi_category == "MODERATE"
    assert (await cache.count_rows())["health_index"] == 1


async def test_latest_and_history(cache):
    await cache.cache_locations(LOCATIONS[:2])
    for hour in (10, 11, 12):
        await cache.upsert_health_index(_record(utc(2026, 3, 1, hour), aqhi=float(hour)))

    latest = await cache.get_latest_health_index()
    history = await cache.get_health_index_history(1, utc(2026, 3, 1, 11))

    assert list(latest) == [1]
    assert latest[1].aqhi == 12.0
    assert [r.aqhi for r in history] == [12.0, 11.0]


async def test_job_state_keeps_last_success(cache):
    first = utc(2026, 3, 1, 10)
    await cache.upsert_job_state(job_name="collection_cycle", last_run_at=first, last_success_at=first, last_error=None)
    await cache.upsert_job_state(
        job_name="collection_cycle", last_run_at=utc(2026, 3, 1, 11), last_success_at=None, last_error="boom"
    )

    state = await cache.get_job_state("collection_cycle")

    assert state["last_success_at"] == "2026-03-01 10:00:00"
    assert state["last_run_at"] == "2026-03-01 11:00:00"
    assert state["last_error"] == "boom"


async def test_prune_readings(cache):
    await cache.cache_locations(LOCATIONS[:1])
    await cache.upsert_readings(1, utc(2026, 2, 1), {"pm25": 1.0}, "waqi")
    await cache.upsert_readings(1, utc(2026, 3, 1), {"pm25": 2.0}, "waqi")

    assert await cache.prune_readings(utc(2026, 2, 20)) == 1
    assert (await cache.count_rows())["raw_readings"] == 1
