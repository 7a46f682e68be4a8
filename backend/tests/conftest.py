from datetime import datetime, timezone
from typing import Any, Dict, List, Set, Tuple

import httpx
import pytest

from airhealth.cache_manager import CacheManager
from airhealth.models import Location
from airhealth.settings import load_settings


# The end-to-end location: one WAQI station sits right on it.
SCENARIO_LOCATION = Location(id=1, name="L", district="Test", latitude=13.75, longitude=100.50)


class FakeProviders:
    """In-memory WAQI / Google / OpenWeather answering through httpx.MockTransport."""

    def __init__(self):
        self.stations: List[Dict[str, Any]] = [
            {"uid": 100, "lat": 13.75, "lon": 100.50, "aqi": "101", "station": {"name": "Station S"}},
        ]
        # uid -> iaqi index scores
        self.feeds: Dict[int, Dict[str, float]] = {100: {"pm25": 101}}
        # code -> (value, units)
        self.google: Dict[str, Tuple[float, str]] = {"o3": (45, "PARTS_PER_BILLION")}
        self.openweather: Dict[str, float] = {"pm2_5": 20.0, "o3": 60.0, "co": 1500.0}
        self.calls: Dict[str, int] = {"bounds": 0, "feed": 0, "google": 0, "openweather": 0}
        self.fail: Set[str] = set()
        self.requests: List[httpx.Request] = []

    def _kind(self, path: str) -> str:
        if path.startswith("/v2/map/bounds"):
            return "bounds"
        if path.startswith("/feed/@"):
            return "feed"
        if path.endswith("currentConditions:lookup"):
            return "google"
        if path.endswith("/air_pollution"):
            return "openweather"
        return "unknown"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        kind = self._kind(request.url.path)
        if kind == "unknown":
            return httpx.Response(404, json={"error": "not found"})
        self.calls[kind] += 1
        if kind in self.fail:
            return httpx.Response(500, json={"error": "boom"})

        if kind == "bounds":
            return httpx.Response(200, json={"status": "ok", "data": self.stations})

        if kind == "feed":
            uid = int(request.url.path.strip("/").split("@")[1])
            iaqi = self.feeds.get(uid)
            if iaqi is None:
                return httpx.Response(200, json={"status": "error", "data": "Unknown station"})
            return httpx.Response(200, json={
                "status": "ok",
                "data": {
                    "idx": uid,
                    "aqi": max(iaqi.values()) if iaqi else "-",
                    "iaqi": {code: {"v": v} for code, v in iaqi.items()},
                    "city": {"geo": [13.75, 100.5], "name": "Station S"},
                    "time": {"iso": "2026-03-01T12:00:00+07:00"},
                },
            })

        if kind == "google":
            return httpx.Response(200, json={
                "dateTime": "2026-03-01T05:00:00Z",
                "regionCode": "th",
                "pollutants": [
                    {"code": code, "concentration": {"value": value, "units": units}}
                    for code, (value, units) in self.google.items()
                ],
            })

        return httpx.Response(200, json={
            "coord": {"lon": 100.5, "lat": 13.75},
            "list": [{"main": {"aqi": 2}, "components": self.openweather, "dt": 1772341200}],
        })

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "airhealth.db")


@pytest.fixture
async def cache(db_path) -> CacheManager:
    manager = CacheManager(db_path)
    await manager.initialize()
    return manager


@pytest.fixture
def settings(db_path):
    return load_settings(
        waqi_token="test-token",
        google_api_key="test-key",
        openweather_api_key="test-ow-key",
        supplement_provider="google",
        database_path=db_path,
        coverage_bbox=(13.5, 100.3, 14.0, 100.9),
        grid_size=3,
        primary_match_radius_deg=0.05,
        supplement_pollutants=["pm25", "pm10", "o3", "no2"],
        supplement_cap_per_cycle=50,
        primary_daily_ceiling=20000,
        supplement_daily_ceiling=950,
        batch_size=5,
        batch_delay_seconds=0.0,
        http_max_retries=2,
        http_retry_base_delay=0.0,
        cycle_deadline_seconds=55.0,
        rolling_window_hours=3,
        expected_interval_minutes=60,
        aqhi_policy="thai_health_department",
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
