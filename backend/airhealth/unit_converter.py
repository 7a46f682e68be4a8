"""Unit normalization into canonical concentrations.

Canonical units are µg/m³ for every pollutant except CO, which is kept in
mg/m³ so readings from every provider share one scale.

Conversion factors are fixed molar constants at 25°C / 1 atm:
- O3:  1 ppb = 2.00 µg/m³
- NO2: 1 ppb = 1.88 µg/m³
- SO2: 1 ppb = 2.62 µg/m³
- CO:  1 ppm = 1.15 mg/m³

Index-based providers (WAQI) are inverted through the US EPA breakpoint
tables. An index outside every published range yields ``None``; we never
extrapolate.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .models import POLLUTANT_KEYS, PollutantMap, empty_pollutant_map
from .payloads import GoogleConditions, OpenWeatherPollution, WaqiFeed

logger = logging.getLogger(__name__)


UNIT_AQI = "aqi"
UNIT_PPB = "ppb"
UNIT_PPM = "ppm"
UNIT_UGM3 = "ugm3"
UNIT_MGM3 = "mgm3"

PPB_TO_UGM3: Dict[str, float] = {
    "o3": 2.0,
    "no2": 1.88,
    "so2": 2.62,
}

CO_PPM_TO_MGM3 = 1.15

# [AQI_low, AQI_high, conc_low, conc_high]
Breakpoint = Tuple[float, float, float, float]

EPA_AQI_BREAKPOINTS: Dict[str, List[Breakpoint]] = {
    # PM2.5 (24-hour, µg/m³), 2024 revision
    "pm25": [
        (0, 50, 0.0, 9.0),
        (51, 100, 9.1, 35.4),
        (101, 150, 35.5, 55.4),
        (151, 200, 55.5, 125.4),
        (201, 300, 125.5, 225.4),
        (301, 500, 225.5, 325.4),
        (501, 999, 325.5, 500.4),
    ],
    # PM10 (24-hour, µg/m³)
    "pm10": [
        (0, 50, 0, 54),
        (51, 100, 55, 154),
        (101, 150, 155, 254),
        (151, 200, 255, 354),
        (201, 300, 355, 424),
        (301, 500, 425, 604),
        (501, 999, 605, 1004),
    ],
    # O3 (8-hour, ppm)
    "o3": [
        (0, 50, 0.000, 0.054),
        (51, 100, 0.055, 0.070),
        (101, 150, 0.071, 0.085),
        (151, 200, 0.086, 0.105),
        (201, 300, 0.106, 0.200),
    ],
    # NO2 (1-hour, ppb)
    "no2": [
        (0, 50, 0, 53),
        (51, 100, 54, 100),
        (101, 150, 101, 360),
        (151, 200, 361, 649),
        (201, 300, 650, 1249),
        (301, 500, 1250, 2049),
    ],
    # SO2 (1-hour, ppb)
    "so2": [
        (0, 50, 0, 35),
        (51, 100, 36, 75),
        (101, 150, 76, 185),
        (151, 200, 186, 304),
        (201, 300, 305, 604),
        (301, 500, 605, 1004),
    ],
    # CO (8-hour, ppm)
    "co": [
        (0, 50, 0.0, 4.4),
        (51, 100, 4.5, 9.4),
        (101, 150, 9.5, 12.4),
        (151, 200, 12.5, 15.4),
        (201, 300, 15.5, 30.4),
        (301, 500, 30.5, 50.4),
    ],
}

# Native unit of each breakpoint table's concentration column.
BREAKPOINT_UNITS: Dict[str, str] = {
    "pm25": UNIT_UGM3,
    "pm10": UNIT_UGM3,
    "o3": UNIT_PPM,
    "no2": UNIT_PPB,
    "so2": UNIT_PPB,
    "co": UNIT_PPM,
}

# Provider pollutant codes → canonical keys.
POLLUTANT_ALIASES: Dict[str, str] = {
    "pm25": "pm25",
    "pm2.5": "pm25",
    "pm2_5": "pm25",
    "pm10": "pm10",
    "o3": "o3",
    "no2": "no2",
    "so2": "so2",
    "co": "co",
}

# Google Air Quality unit enum → our unit tags.
GOOGLE_UNITS: Dict[str, str] = {
    "PARTS_PER_BILLION": UNIT_PPB,
    "MICROGRAMS_PER_CUBIC_METER": UNIT_UGM3,
}


def canonical_pollutant(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    return POLLUTANT_ALIASES.get(code.strip().lower())


def ppb_to_ugm3(value: Optional[float], pollutant: str) -> Optional[float]:
    """Convert ppb to µg/m³ for O3/NO2/SO2."""
    factor = PPB_TO_UGM3.get(pollutant)
    if value is None or factor is None:
        return None
    return value * factor


def ugm3_to_ppb(value: Optional[float], pollutant: str) -> Optional[float]:
    """Inverse of :func:`ppb_to_ugm3`."""
    factor = PPB_TO_UGM3.get(pollutant)
    if value is None or factor is None:
        return None
    return value / factor


def co_ugm3_to_mgm3(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return value / 1000.0


def _to_canonical(concentration: float, pollutant: str, unit: str) -> Optional[float]:
    if pollutant == "co":
        if unit == UNIT_MGM3:
            return concentration
        if unit == UNIT_UGM3:
            return co_ugm3_to_mgm3(concentration)
        if unit == UNIT_PPM:
            return concentration * CO_PPM_TO_MGM3
        if unit == UNIT_PPB:
            return concentration / 1000.0 * CO_PPM_TO_MGM3
        return None

    if unit == UNIT_UGM3:
        return concentration
    if unit == UNIT_PPB:
        return ppb_to_ugm3(concentration, pollutant)
    if unit == UNIT_PPM:
        return ppb_to_ugm3(concentration * 1000.0, pollutant)
    return None


def aqi_to_concentration(aqi: Optional[float], pollutant: str) -> Optional[float]:
    """Invert a US EPA index score to a canonical concentration.

    Returns ``None`` if the pollutant has no table or the index falls outside
    every published range (the tables have gaps such as 50 < AQI < 51).
    """
    if aqi is None or isinstance(aqi, bool) or not isinstance(aqi, (int, float)) or aqi < 0:
        return None

    breakpoints = EPA_AQI_BREAKPOINTS.get(pollutant)
    if not breakpoints:
        return None

    selected: Optional[Breakpoint] = None
    for breakpoint in breakpoints:
        aqi_lo, aqi_hi, _, _ = breakpoint
        if aqi_lo <= aqi <= aqi_hi:
            selected = breakpoint
            break

    if selected is None:
        return None

    aqi_lo, aqi_hi, conc_lo, conc_hi = selected
    concentration = (aqi - aqi_lo) / (aqi_hi - aqi_lo) * (conc_hi - conc_lo) + conc_lo

    converted = _to_canonical(concentration, pollutant, BREAKPOINT_UNITS[pollutant])
    if converted is None:
        return None
    return round(converted, 2)


def normalize_value(value: Optional[float], pollutant: Optional[str], unit: Optional[str]) -> Optional[float]:
    """Convert one provider value into canonical units.

    Unknown pollutants or units are treated as absent data, not errors.
    """
    key = canonical_pollutant(pollutant)
    if key is None or value is None or unit is None:
        return None
    if value < 0:
        return None
    if unit == UNIT_AQI:
        return aqi_to_concentration(value, key)
    return _to_canonical(value, key, unit)


def normalize_waqi_feed(feed: WaqiFeed) -> PollutantMap:
    """WAQI ``iaqi`` entries are index scores; weather keys are ignored."""
    values = empty_pollutant_map()
    for code, score in feed.iaqi.items():
        key = canonical_pollutant(code)
        if key is None:
            continue
        values[key] = normalize_value(score, key, UNIT_AQI)
    return values


def normalize_google_conditions(conditions: GoogleConditions) -> PollutantMap:
    values = empty_pollutant_map()
    for pollutant in conditions.pollutants:
        key = canonical_pollutant(pollutant.code)
        if key is None:
            continue
        unit = GOOGLE_UNITS.get(pollutant.units or "")
        converted = normalize_value(pollutant.value, key, unit)
        if converted is not None:
            values[key] = round(converted, 2)
    return values


def normalize_openweather(pollution: OpenWeatherPollution) -> PollutantMap:
    """OpenWeather reports every component, CO included, in µg/m³."""
    values = empty_pollutant_map()
    for code, concentration in pollution.components.items():
        key = canonical_pollutant(code)
        if key is None:
            continue
        values[key] = normalize_value(concentration, key, UNIT_UGM3)
    return values


def normalize_payload(payload) -> PollutantMap:
    if isinstance(payload, WaqiFeed):
        return normalize_waqi_feed(payload)
    if isinstance(payload, GoogleConditions):
        return normalize_google_conditions(payload)
    if isinstance(payload, OpenWeatherPollution):
        return normalize_openweather(payload)
    logger.warning("[normalize] unsupported payload type %s", type(payload).__name__)
    return empty_pollutant_map()


def present_pollutants(values: PollutantMap) -> List[str]:
    return [key for key in POLLUTANT_KEYS if values.get(key) is not None]
