"""Data models for the Air Health pipeline."""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


# Canonical pollutant keys, in storage column order.
POLLUTANT_KEYS = ("pm25", "pm10", "o3", "no2", "so2", "co")

# Inputs the health index is computed from.
INDEX_POLLUTANTS = ("pm25", "pm10", "o3", "no2")

PollutantMap = Dict[str, Optional[float]]


def empty_pollutant_map() -> PollutantMap:
    return {key: None for key in POLLUTANT_KEYS}


class Location(BaseModel):
    """Monitoring point from the static catalogue."""
    id: int
    name: str
    district: Optional[str] = None
    latitude: float
    longitude: float
    population: Optional[int] = None
    # Pins a primary-provider station instead of nearest-station matching.
    station_uid: Optional[int] = None


class RawReading(BaseModel):
    """One provider observation for one location, in canonical units."""
    location_id: int
    provider: str
    timestamp: datetime
    observed_at: Optional[datetime] = None
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    o3: Optional[float] = None
    no2: Optional[float] = None
    so2: Optional[float] = None
    co: Optional[float] = None
    native_units: bool = False

    def pollutants(self) -> PollutantMap:
        return {key: getattr(self, key) for key in POLLUTANT_KEYS}

    def has_any_value(self) -> bool:
        return any(v is not None for v in self.pollutants().values())


class PollutantAverage(BaseModel):
    value: Optional[float] = None
    sample_count: int = 0


class RollingAverage(BaseModel):
    """Trailing-window average for one location."""
    location_id: int
    window_start: datetime
    window_end: datetime
    pollutants: Dict[str, PollutantAverage]
    sample_count: int
    expected_samples: int
    oldest_sample: Optional[datetime] = None
    newest_sample: Optional[datetime] = None
    data_quality: str

    def value(self, pollutant: str) -> Optional[float]:
        average = self.pollutants.get(pollutant)
        return average.value if average else None


class HealthIndexRecord(BaseModel):
    """Health index for one location and one hourly cycle."""
    location_id: int
    hour_timestamp: datetime
    pm25_3h_avg: Optional[float] = None
    pm10_3h_avg: Optional[float] = None
    o3_3h_avg: Optional[float] = None
    no2_3h_avg: Optional[float] = None
    aqhi: Optional[float] = None
    aqhi_category: Optional[str] = None
    data_quality: str
    collection_status: str
    policy: str
    computed_at: Optional[datetime] = None


class QuotaUsage(BaseModel):
    provider: str
    date: str
    used: int
    ceiling: int
    remaining: int


class PollutantInfo(BaseModel):
    """Information about a pollutant type."""
    code: str
    name: str
    unit: str = "μg/m³"


class LocationIndex(BaseModel):
    """Latest index joined with its location, for the dashboard read path."""
    location: Location
    record: Optional[HealthIndexRecord] = None


class HistoryResponse(BaseModel):
    location_id: int
    hours: int
    records: List[HealthIndexRecord] = Field(default_factory=list)
