"""Provider payload variants.

Each upstream provider answers in its own shape (nested optional fields, mixed
string/number encodings). Every shape gets an explicit model tagged with its
provider and a parser that returns ``None`` on anything unexpected, so call
sites never dig through raw dictionaries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from dateutil import parser as date_parser
from pydantic import BaseModel, Field, ValidationError, field_validator


def _as_float(value: Any) -> Optional[float]:
    # WAQI reports "-" for stations that are temporarily offline.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None


class WaqiStationSummary(BaseModel):
    """One entry of the WAQI map/bounds listing."""
    provider: Literal["waqi"] = "waqi"
    uid: int
    lat: float
    lon: float
    aqi: Optional[float] = None
    name: Optional[str] = None

    @field_validator("aqi", mode="before")
    @classmethod
    def _coerce_aqi(cls, value: Any) -> Optional[float]:
        return _as_float(value)


class WaqiFeed(BaseModel):
    """Detailed WAQI station feed; ``iaqi`` values are US EPA index scores."""
    provider: Literal["waqi"] = "waqi"
    uid: int
    aqi: Optional[float] = None
    iaqi: Dict[str, float] = Field(default_factory=dict)
    geo: Optional[List[float]] = None
    observed_at: Optional[datetime] = None

    @field_validator("aqi", mode="before")
    @classmethod
    def _coerce_aqi(cls, value: Any) -> Optional[float]:
        return _as_float(value)

    @field_validator("iaqi", mode="before")
    @classmethod
    def _keep_numeric(cls, value: Any) -> Dict[str, float]:
        if not isinstance(value, dict):
            return {}
        out: Dict[str, float] = {}
        for code, entry in value.items():
            number = _as_float(entry.get("v")) if isinstance(entry, dict) else None
            if number is not None:
                out[str(code).lower()] = number
        return out


class GooglePollutant(BaseModel):
    code: str
    value: Optional[float] = None
    units: Optional[str] = None


class GoogleConditions(BaseModel):
    """Google Air Quality currentConditions:lookup response."""
    provider: Literal["google"] = "google"
    pollutants: List[GooglePollutant] = Field(default_factory=list)
    observed_at: Optional[datetime] = None


class OpenWeatherPollution(BaseModel):
    """OpenWeather air_pollution response; components are µg/m³."""
    provider: Literal["openweather"] = "openweather"
    components: Dict[str, float] = Field(default_factory=dict)
    observed_at: Optional[datetime] = None

    @field_validator("components", mode="before")
    @classmethod
    def _keep_numeric(cls, value: Any) -> Dict[str, float]:
        if not isinstance(value, dict):
            return {}
        out: Dict[str, float] = {}
        for code, raw in value.items():
            number = _as_float(raw)
            if number is not None:
                out[str(code).lower()] = number
        return out


ProviderPayload = Union[WaqiFeed, GoogleConditions, OpenWeatherPollution]


def parse_waqi_bounds(payload: Any) -> Optional[List[WaqiStationSummary]]:
    """Parse a map/bounds response; malformed entries are dropped."""
    if not isinstance(payload, dict) or payload.get("status") != "ok":
        return None
    data = payload.get("data")
    if not isinstance(data, list):
        return None

    stations: List[WaqiStationSummary] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        station = item.get("station") if isinstance(item.get("station"), dict) else {}
        try:
            stations.append(
                WaqiStationSummary(
                    uid=item.get("uid"),
                    lat=item.get("lat"),
                    lon=item.get("lon"),
                    aqi=item.get("aqi"),
                    name=station.get("name"),
                )
            )
        except ValidationError:
            continue
    return stations


def parse_waqi_feed(payload: Any) -> Optional[WaqiFeed]:
    if not isinstance(payload, dict) or payload.get("status") != "ok":
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None

    city = data.get("city") if isinstance(data.get("city"), dict) else {}
    time_info = data.get("time") if isinstance(data.get("time"), dict) else {}
    try:
        return WaqiFeed(
            uid=data.get("idx"),
            aqi=data.get("aqi"),
            iaqi=data.get("iaqi") or {},
            geo=city.get("geo"),
            observed_at=_as_datetime(time_info.get("iso")),
        )
    except ValidationError:
        return None


def parse_google_conditions(payload: Any) -> Optional[GoogleConditions]:
    if not isinstance(payload, dict):
        return None
    raw_pollutants = payload.get("pollutants")
    if not isinstance(raw_pollutants, list):
        return None

    pollutants: List[GooglePollutant] = []
    for item in raw_pollutants:
        if not isinstance(item, dict) or not isinstance(item.get("code"), str):
            continue
        concentration = item.get("concentration") if isinstance(item.get("concentration"), dict) else {}
        pollutants.append(
            GooglePollutant(
                code=item["code"].lower(),
                value=_as_float(concentration.get("value")),
                units=concentration.get("units") if isinstance(concentration.get("units"), str) else None,
            )
        )
    return GoogleConditions(pollutants=pollutants, observed_at=_as_datetime(payload.get("dateTime")))


def parse_openweather(payload: Any) -> Optional[OpenWeatherPollution]:
    if not isinstance(payload, dict):
        return None
    entries = payload.get("list")
    if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
        return None

    first = entries[0]
    components = first.get("components")
    if not isinstance(components, dict):
        return None

    observed_at = None
    dt = _as_float(first.get("dt"))
    if dt is not None:
        try:
            observed_at = datetime.fromtimestamp(dt, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            observed_at = None
    return OpenWeatherPollution(components=components, observed_at=observed_at)


def parse_payload(provider: str, payload: Any) -> Optional[ProviderPayload]:
    """Dispatch to the parser for ``provider``; unknown providers fail closed."""
    if provider == "waqi":
        return parse_waqi_feed(payload)
    if provider == "google":
        return parse_google_conditions(payload)
    if provider == "openweather":
        return parse_openweather(payload)
    return None
