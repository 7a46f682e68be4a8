from datetime import timedelta

import pytest

from airhealth.data_processor import (
    LOCATIONS,
    POLLUTANTS,
    QUALITY_EXCELLENT,
    QUALITY_FAIR,
    QUALITY_GOOD,
    QUALITY_LIMITED,
    QUALITY_NO_DATA,
    DataProcessor,
    floor_to_hour,
)
from airhealth.models import Location, RawReading
from airhealth.payloads import WaqiStationSummary

from conftest import utc

NOW = utc(2026, 3, 1, 12)
WINDOW = timedelta(hours=3)
INTERVAL = timedelta(minutes=60)


def _reading(hour, minute=0, provider="waqi", **values):
    return RawReading(location_id=1, provider=provider, timestamp=utc(2026, 3, 1, hour, minute), **values)


def _average(readings):
    return DataProcessor.rolling_average(1, readings, NOW, WINDOW, INTERVAL)


def test_catalogue():
    assert len(LOCATIONS) == 15
    assert len({loc.id for loc in LOCATIONS}) == 15
    assert POLLUTANTS["co"]["unit"] == "mg/m³"


def test_floor_to_hour():
    assert floor_to_hour(utc(2026, 3, 1, 12, 59, 59)) == NOW


def test_null_values_never_count_as_zero():
    rolling = _average([
        _reading(10, pm25=30.0),
        _reading(11, pm25=None, o3=80.0),
        _reading(12, pm25=40.0),
    ])

    assert rolling.value("pm25") == 35.0
    assert rolling.pollutants["pm25"].sample_count == 2
    assert rolling.value("o3") == 80.0
    assert rolling.value("no2") is None
    assert rolling.pollutants["no2"].sample_count == 0
    assert rolling.sample_count == 3


def test_window_is_closed_on_both_ends():
    rolling = _average([
        _reading(8, 59, pm25=1000.0),
        _reading(9, pm25=10.0),
        _reading(12, pm25=20.0),
    ])

    assert rolling.value("pm25") == 15.0
    assert rolling.oldest_sample == utc(2026, 3, 1, 9)
    assert rolling.newest_sample == NOW


def test_future_and_foreign_readings_are_ignored():
    other = RawReading(location_id=2, provider="waqi", timestamp=NOW, pm25=500.0)
    rolling = _average([_reading(12, pm25=20.0), _reading(13, pm25=500.0), other])

    assert rolling.value("pm25") == 20.0


def test_providers_at_same_timestamp_are_one_sample():
    rolling = _average([
        _reading(12, pm25=35.5),
        _reading(12, provider="google", o3=90.0),
    ])

    assert rolling.sample_count == 1
    assert rolling.value("pm25") == 35.5
    assert rolling.value("o3") == 90.0


def test_rows_without_values_are_not_samples():
    rolling = _average([_reading(11), _reading(12, pm25=20.0)])

    assert rolling.sample_count == 1


@pytest.mark.parametrize(
    "hours, expected",
    [
        ((10, 11, 12), QUALITY_EXCELLENT),
        ((9, 10, 11, 12), QUALITY_EXCELLENT),
        ((10, 12), QUALITY_FAIR),
        ((12,), QUALITY_LIMITED),
        ((), QUALITY_NO_DATA),
    ],
)
def test_quality_labels(hours, expected):
    rolling = _average([_reading(h, pm25=10.0) for h in hours])

    assert rolling.data_quality == expected
    assert rolling.expected_samples == 3


def test_good_band():
    assert DataProcessor.classify_quality(7, 10) == QUALITY_GOOD
    assert DataProcessor.classify_quality(9, 10) == QUALITY_EXCELLENT
    assert DataProcessor.classify_quality(5, 10) == QUALITY_FAIR
    assert DataProcessor.classify_quality(4, 10) == QUALITY_LIMITED


def test_short_span_is_limited_regardless_of_count():
    rolling = DataProcessor.rolling_average(
        1,
        [_reading(11, 40, pm25=1.0), _reading(11, 50, pm25=1.0), _reading(12, pm25=1.0)],
        NOW,
        WINDOW,
        INTERVAL,
    )

    assert rolling.sample_count == 3
    assert rolling.data_quality == QUALITY_LIMITED


def test_nearest_station_within_radius():
    location = Location(id=1, name="L", latitude=13.75, longitude=100.5)
    stations = [
        WaqiStationSummary(uid=1, lat=13.80, lon=100.5),
        WaqiStationSummary(uid=2, lat=13.76, lon=100.51),
    ]

    assert DataProcessor.nearest_station(location, stations, 0.05).uid == 2
    assert DataProcessor.nearest_station(location, stations, 0.001) is None
    assert DataProcessor.nearest_station(location, [], 0.05) is None
