"""Location catalogue and rolling aggregation of raw readings."""
import math
from datetime import datetime, timedelta
from statistics import mean
from typing import Dict, Iterable, List, Optional, Sequence

from .models import INDEX_POLLUTANTS, Location, PollutantAverage, RawReading, RollingAverage
from .payloads import WaqiStationSummary


# Bangkok community monitoring points (district in English)
LOCATIONS = [
    Location(id=1, name="มัสยยิดบ้านตึกดิน", district="Phra Nakhon", latitude=13.758108, longitude=100.500366, population=265),
    Location(id=2, name="หลังศูนย์จันทร์ฉิมไพบูลย์", district="Thonburi", latitude=13.720943, longitude=100.481581, population=612),
    Location(id=3, name="ปลายซอยศักดิ์เจริญ", district="Bangkok Yai", latitude=13.733446, longitude=100.463527, population=261),
    Location(id=4, name="ซอยท่าดินแดง 14 และ 16", district="Khlong San", latitude=13.735493, longitude=100.504763, population=2147),
    Location(id=5, name="วัดไชยทิศ", district="Bangkok Noi", latitude=13.768083, longitude=100.463323, population=1615),
    Location(id=6, name="รักเจริญ", district="Nong Khaem", latitude=13.716707, longitude=100.355342, population=596),
    Location(id=7, name="หมู่ 7 ราษฎร์บูรณะ", district="Rat Burana", latitude=13.66671, longitude=100.515025, population=1390),
    Location(id=8, name="ชุมชนสวัสดี", district="Din Daeng", latitude=13.772018, longitude=100.558131, population=840),
    Location(id=9, name="สาหร่ายทองคำ", district="Phra Khanong", latitude=13.701217, longitude=100.612882, population=482),
    Location(id=10, name="นันทวันเซ็นต์ 2", district="Nong Chok", latitude=13.845409, longitude=100.88052, population=None),
    Location(id=11, name="ซอยพระเจน", district="Pathum Wan", latitude=13.731048, longitude=100.546676, population=5007),
    Location(id=12, name="มัสยิดมหานาค", district="Pom Prap", latitude=13.752959, longitude=100.515871, population=924),
    Location(id=13, name="ชุมชนสะพานหัน", district="Samphanthawong", latitude=13.74281, longitude=100.502217, population=297),
    Location(id=14, name="บ้านมั่นคงฟ้าใหม่", district="Bang Phlat", latitude=13.79493179, longitude=100.5014054, population=299),
    Location(id=15, name="บ่อฝรั่งริมน้ำ", district="Chatuchak", latitude=13.82163586, longitude=100.5425091, population=1035),
]

# Canonical pollutant codes
POLLUTANTS = {
    "pm25": {"name": "Fine particulate matter PM2.5", "unit": "μg/m³"},
    "pm10": {"name": "Particulate matter PM10", "unit": "μg/m³"},
    "o3": {"name": "Ozone", "unit": "μg/m³"},
    "no2": {"name": "Nitrogen dioxide", "unit": "μg/m³"},
    "so2": {"name": "Sulphur dioxide", "unit": "μg/m³"},
    "co": {"name": "Carbon monoxide", "unit": "mg/m³"},
}

QUALITY_EXCELLENT = "EXCELLENT"
QUALITY_GOOD = "GOOD"
QUALITY_FAIR = "FAIR"
QUALITY_LIMITED = "LIMITED"
QUALITY_NO_DATA = "NO_DATA"

# (minimum completeness ratio, label), checked in order
QUALITY_THRESHOLDS = [
    (0.9, QUALITY_EXCELLENT),
    (0.7, QUALITY_GOOD),
    (0.5, QUALITY_FAIR),
]


def floor_to_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


class DataProcessor:
    """Aggregates raw readings into per-location rolling averages."""

    @staticmethod
    def nearest_station(
        location: Location,
        stations: Sequence[WaqiStationSummary],
        max_distance_deg: float,
    ) -> Optional[WaqiStationSummary]:
        """Closest station within ``max_distance_deg`` (Euclidean in lat/lon)."""
        best: Optional[WaqiStationSummary] = None
        best_dist = math.inf
        for station in stations:
            dist = math.hypot(location.latitude - station.lat, location.longitude - station.lon)
            if dist < best_dist:
                best, best_dist = station, dist
        if best is None or best_dist > max_distance_deg:
            return None
        return best

    @staticmethod
    def expected_samples(window: timedelta, interval: timedelta) -> int:
        if interval <= timedelta(0):
            return 1
        return max(1, int(window / interval))

    @staticmethod
    def classify_quality(
        sample_count: int,
        expected: int,
        oldest: Optional[datetime] = None,
        newest: Optional[datetime] = None,
        interval: Optional[timedelta] = None,
    ) -> str:
        """Label how complete a window is.

        A window whose samples span less than one interval is LIMITED even
        when the count alone would rate it higher. A single expected sample
        has no span to check.
        """
        if sample_count <= 0:
            return QUALITY_NO_DATA
        if (
            expected > 1
            and interval is not None
            and oldest is not None
            and newest is not None
            and newest - oldest < interval
        ):
            return QUALITY_LIMITED

        ratio = sample_count / expected if expected > 0 else 1.0
        for minimum, label in QUALITY_THRESHOLDS:
            if ratio >= minimum:
                return label
        return QUALITY_LIMITED

    @staticmethod
    def rolling_average(
        location_id: int,
        readings: Iterable[RawReading],
        now: datetime,
        window: timedelta,
        interval: timedelta,
        pollutants: Sequence[str] = INDEX_POLLUTANTS,
    ) -> RollingAverage:
        """Average non-null values per pollutant over ``[now - window, now]``.

        Readings from several providers at the same timestamp are one sample;
        a pollutant with no valid value in the window averages to ``None``.
        """
        window_start = now - window
        values: Dict[str, List[float]] = {p: [] for p in pollutants}
        sample_times = set()

        for reading in readings:
            if reading.location_id != location_id:
                continue
            if reading.timestamp < window_start or reading.timestamp > now:
                continue

            found = False
            for pollutant in pollutants:
                value = getattr(reading, pollutant, None)
                if value is None or not math.isfinite(value):
                    continue
                values[pollutant].append(value)
                found = True
            if found:
                sample_times.add(reading.timestamp)

        averages = {
            p: PollutantAverage(
                value=round(mean(vals), 2) if vals else None,
                sample_count=len(vals),
            )
            for p, vals in values.items()
        }

        expected = DataProcessor.expected_samples(window, interval)
        oldest = min(sample_times) if sample_times else None
        newest = max(sample_times) if sample_times else None

        return RollingAverage(
            location_id=location_id,
            window_start=window_start,
            window_end=now,
            pollutants=averages,
            sample_count=len(sample_times),
            expected_samples=expected,
            oldest_sample=oldest,
            newest_sample=newest,
            data_quality=DataProcessor.classify_quality(
                len(sample_times), expected, oldest, newest, interval
            ),
        )
