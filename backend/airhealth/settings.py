"""Configuration helpers for the Air Health collection pipeline.

We keep these settings in a dedicated module so the HTTP trigger, the CLI
trigger and the collection cycle share the same source of truth. Settings are
loaded once and passed explicitly into the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import List, Optional, Tuple

from .health_index import POLICIES


PROVIDER_WAQI = "waqi"
PROVIDER_GOOGLE = "google"
PROVIDER_OPENWEATHER = "openweather"

SUPPLEMENT_PROVIDERS = (PROVIDER_GOOGLE, PROVIDER_OPENWEATHER)


class ConfigurationError(Exception):
    """Raised when settings required for a cycle are missing or invalid."""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"Missing or invalid configuration: {', '.join(self.missing)}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_csv(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return list(default)
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


def _env_bbox(name: str, default: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
    """Parse "lat_min,lon_min,lat_max,lon_max"."""
    parts = _env_csv(name, [])
    if len(parts) != 4:
        return default
    try:
        lat_min, lon_min, lat_max, lon_max = (float(p) for p in parts)
    except ValueError:
        return default
    return (lat_min, lon_min, lat_max, lon_max)


@dataclass(frozen=True)
class AirHealthSettings:
    # Credentials
    waqi_token: Optional[str]
    google_api_key: Optional[str]
    openweather_api_key: Optional[str]

    # Provider endpoints
    waqi_base_url: str
    google_base_url: str
    openweather_base_url: str

    # Coverage and grid sharing
    coverage_bbox: Tuple[float, float, float, float]  # lat_min, lon_min, lat_max, lon_max
    grid_size: int
    primary_match_radius_deg: float
    supplement_provider: str
    supplement_pollutants: List[str]
    supplement_cap_per_cycle: int

    # Daily call budgets (UTC calendar day)
    primary_daily_ceiling: int
    supplement_daily_ceiling: int

    # Batch fetching
    batch_size: int
    batch_delay_seconds: float
    http_timeout_seconds: float
    http_max_retries: int
    http_retry_base_delay: float
    cycle_deadline_seconds: float

    # Aggregation
    rolling_window_hours: int
    expected_interval_minutes: int
    aqhi_policy: str

    # Retention
    reading_retention_days: int
    quota_retention_days: int

    # Storage
    database_path: Optional[str]
    sqlite_busy_timeout_ms: int

    def required_credentials(self) -> List[str]:
        """Return the env variable names that are missing for a collection cycle."""
        missing: List[str] = []
        if not self.waqi_token:
            missing.append("WAQI_API_TOKEN")
        if self.supplement_provider == PROVIDER_GOOGLE and not self.google_api_key:
            missing.append("GOOGLE_AIR_QUALITY_API_KEY")
        if self.supplement_provider == PROVIDER_OPENWEATHER and not self.openweather_api_key:
            missing.append("OPENWEATHER_API_KEY")
        if self.supplement_provider not in SUPPLEMENT_PROVIDERS:
            missing.append("AIRHEALTH_SUPPLEMENT_PROVIDER")
        return missing

    def validate(self):
        missing = self.required_credentials()
        if self.aqhi_policy not in POLICIES:
            missing.append(f"AIRHEALTH_AQHI_POLICY ({self.aqhi_policy!r} is not a known policy)")
        if missing:
            raise ConfigurationError(missing)

    def daily_ceiling(self, provider: str) -> int:
        if provider == PROVIDER_WAQI:
            return self.primary_daily_ceiling
        return self.supplement_daily_ceiling


def load_settings(**overrides) -> AirHealthSettings:
    """Load settings from environment variables.

    Keyword overrides win over the environment (used by tests and the CLI).
    """
    values = dict(
        waqi_token=os.getenv("WAQI_API_TOKEN") or None,
        google_api_key=os.getenv("GOOGLE_AIR_QUALITY_API_KEY") or None,
        openweather_api_key=os.getenv("OPENWEATHER_API_KEY") or None,
        waqi_base_url=os.getenv("AIRHEALTH_WAQI_BASE_URL", "https://api.waqi.info"),
        google_base_url=os.getenv("AIRHEALTH_GOOGLE_BASE_URL", "https://airquality.googleapis.com/v1"),
        openweather_base_url=os.getenv("AIRHEALTH_OPENWEATHER_BASE_URL", "https://api.openweathermap.org/data/2.5"),
        coverage_bbox=_env_bbox("AIRHEALTH_COVERAGE_BBOX", (13.5, 100.3, 14.0, 100.9)),  # Bangkok
        grid_size=_env_int("AIRHEALTH_GRID_SIZE", 3),
        primary_match_radius_deg=_env_float("AIRHEALTH_PRIMARY_MATCH_RADIUS_DEG", 0.05),
        supplement_provider=os.getenv("AIRHEALTH_SUPPLEMENT_PROVIDER", PROVIDER_GOOGLE),
        supplement_pollutants=_env_csv("AIRHEALTH_SUPPLEMENT_POLLUTANTS", ["pm25", "pm10", "o3", "no2"]),
        supplement_cap_per_cycle=_env_int("AIRHEALTH_SUPPLEMENT_CAP_PER_CYCLE", 50),
        primary_daily_ceiling=_env_int("AIRHEALTH_PRIMARY_DAILY_CEILING", 20000),
        supplement_daily_ceiling=_env_int("AIRHEALTH_SUPPLEMENT_DAILY_CEILING", 950),  # buffer under 1000
        batch_size=_env_int("AIRHEALTH_BATCH_SIZE", 5),
        batch_delay_seconds=_env_float("AIRHEALTH_BATCH_DELAY_SECONDS", 0.2),
        http_timeout_seconds=_env_float("AIRHEALTH_HTTP_TIMEOUT_SECONDS", 10.0),
        http_max_retries=_env_int("AIRHEALTH_HTTP_MAX_RETRIES", 3),
        http_retry_base_delay=_env_float("AIRHEALTH_HTTP_RETRY_BASE_DELAY", 1.0),
        cycle_deadline_seconds=_env_float("AIRHEALTH_CYCLE_DEADLINE_SECONDS", 55.0),  # serverless limit is 60s
        rolling_window_hours=_env_int("AIRHEALTH_ROLLING_WINDOW_HOURS", 3),
        expected_interval_minutes=_env_int("AIRHEALTH_EXPECTED_INTERVAL_MINUTES", 60),
        aqhi_policy=os.getenv("AIRHEALTH_AQHI_POLICY", "thai_health_department"),
        reading_retention_days=_env_int("AIRHEALTH_READING_RETENTION_DAYS", 7),
        quota_retention_days=_env_int("AIRHEALTH_QUOTA_RETENTION_DAYS", 30),
        database_path=os.getenv("DATABASE_PATH") or None,
        sqlite_busy_timeout_ms=_env_int("AIRHEALTH_SQLITE_BUSY_TIMEOUT_MS", 30000),
    )
    values.update(overrides)
    return AirHealthSettings(**values)
