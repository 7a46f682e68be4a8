"""Air Quality Health Index (AQHI) from rolling pollutant averages.

Excess-risk model of the Thai Health Department:

    %ER_p  = 100 * (exp(beta_p * C_p) - 1)
    AQHI   = (10 / 105.19) * sum(%ER_p)

- C_p are 3-hour averages in µg/m³; a missing pollutant contributes 0.
- The result is rounded to one decimal and never reported below 1.0.
- Coefficients and category bands are grouped into named policies so the
  published variants can be swapped without code changes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Literal, Optional, Tuple

from .data_processor import QUALITY_NO_DATA
from .models import INDEX_POLLUTANTS, HealthIndexRecord, RollingAverage


AqhiCategory = Literal["LOW", "MODERATE", "HIGH", "VERY_HIGH"]

SCALING_CONSTANT = 105.19
INDEX_FLOOR = 1.0


@dataclass(frozen=True)
class AqhiPolicy:
    name: str
    coefficients: Dict[str, float]
    # (upper bound, category) checked in order; values above the last bound are VERY_HIGH
    thresholds: Tuple[Tuple[float, AqhiCategory], ...]
    inclusive_bounds: bool = False

    def categorize(self, index: float) -> AqhiCategory:
        for bound, category in self.thresholds:
            if index < bound or (self.inclusive_bounds and index == bound):
                return category
        return "VERY_HIGH"


_STANDARD_THRESHOLDS: Tuple[Tuple[float, AqhiCategory], ...] = (
    (4.0, "LOW"),
    (7.0, "MODERATE"),
    (10.0, "HIGH"),
)

_THAI_COEFFICIENTS = {
    "pm25": 0.0012,
    "pm10": 0.0012,
    "o3": 0.0010,
    "no2": 0.0052,
    "so2": 0.0,
}

POLICIES: Dict[str, AqhiPolicy] = {
    "thai_health_department": AqhiPolicy(
        name="thai_health_department",
        coefficients=_THAI_COEFFICIENTS,
        thresholds=_STANDARD_THRESHOLDS,
    ),
    "community_hourly": AqhiPolicy(
        name="community_hourly",
        coefficients={"pm25": 0.0022, "pm10": 0.0009, "o3": 0.0010, "no2": 0.003},
        thresholds=_STANDARD_THRESHOLDS,
    ),
    "thai_health_department_strict": AqhiPolicy(
        name="thai_health_department_strict",
        coefficients=_THAI_COEFFICIENTS,
        thresholds=((3.0, "LOW"), (6.0, "MODERATE"), (10.0, "HIGH")),
        inclusive_bounds=True,
    ),
}

DEFAULT_POLICY = "thai_health_department"


def get_policy(name: Optional[str] = None) -> AqhiPolicy:
    name = name or DEFAULT_POLICY
    if name not in POLICIES:
        raise ValueError(f"Unknown AQHI policy: {name}")
    return POLICIES[name]


def excess_risk(value: Optional[float], beta: float) -> float:
    """Percent excess risk for one pollutant; unavailable values contribute 0."""
    if value is None or not math.isfinite(value):
        return 0.0
    return 100.0 * (math.exp(beta * value) - 1.0)


def calculate_aqhi(averages: Dict[str, Optional[float]], policy: AqhiPolicy) -> float:
    """Index for a set of averages.

    Unavailable averages contribute no risk, so an empty input yields the floor.
    """
    total = sum(excess_risk(averages.get(p), beta) for p, beta in policy.coefficients.items())
    index = round((10.0 / SCALING_CONSTANT) * total, 1)
    return max(index, INDEX_FLOOR)


def categorize(index: Optional[float], policy: AqhiPolicy) -> Optional[AqhiCategory]:
    if index is None:
        return None
    return policy.categorize(index)


def compute_record(
    location_id: int,
    hour_timestamp: datetime,
    rolling: RollingAverage,
    policy: AqhiPolicy,
    collection_status: str,
    computed_at: Optional[datetime] = None,
) -> HealthIndexRecord:
    averages = {p: rolling.value(p) for p in INDEX_POLLUTANTS}
    index = calculate_aqhi(averages, policy)
    has_input = any(averages.get(p) is not None for p in policy.coefficients)

    return HealthIndexRecord(
        location_id=location_id,
        hour_timestamp=hour_timestamp,
        pm25_3h_avg=averages["pm25"],
        pm10_3h_avg=averages["pm10"],
        o3_3h_avg=averages["o3"],
        no2_3h_avg=averages["no2"],
        aqhi=index,
        aqhi_category=categorize(index, policy),
        data_quality=rolling.data_quality if has_input else QUALITY_NO_DATA,
        collection_status=collection_status,
        policy=policy.name,
        computed_at=computed_at or datetime.now(timezone.utc),
    )
