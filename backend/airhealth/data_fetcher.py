"""HTTP clients for the upstream air quality providers.

- WAQI (primary): station listing by bounding box, detailed feed per station.
- Google Air Quality (secondary): current conditions for one lat/lon point.
- OpenWeather (secondary alternative): air pollution for one lat/lon point.

Retry logic follows the same rules for every provider:
- 429 (rate limit): wait and retry
- 500/502/503/504 and timeouts: exponential backoff
- anything else non-2xx: fail immediately
"""
import httpx
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .payloads import (
    GoogleConditions,
    OpenWeatherPollution,
    WaqiFeed,
    WaqiStationSummary,
    parse_google_conditions,
    parse_openweather,
    parse_waqi_bounds,
    parse_waqi_feed,
)

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails after retries or returns an unusable payload."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class ProviderFetcher:
    """Shared request/retry plumbing for one provider."""

    provider = "provider"

    def __init__(
        self,
        *,
        base_url: str,
        max_retries: int = 3,
        timeout: float = 10.0,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    async def _make_request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an HTTP request with retries; returns decoded JSON."""
        base_delay = self.retry_base_delay
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.request(method, url, params=params, json=json)

                    if response.status_code == 429:
                        last_error = "rate limited (429)"
                        wait_time = min(base_delay * (2 ** attempt) * 2, 60.0)
                        logger.warning("[%s] Rate limit (429), waiting %.1fs before retry...", self.provider, wait_time)
                        await asyncio.sleep(wait_time)
                        continue

                    if response.status_code in (500, 502, 503, 504):
                        last_error = f"server error {response.status_code}"
                        wait_time = min(base_delay * (2 ** attempt), 30.0)
                        logger.warning(
                            "[%s] Server error %d, waiting %.1fs (attempt %d/%d)...",
                            self.provider, response.status_code, wait_time, attempt + 1, self.max_retries,
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    if response.status_code >= 400:
                        raise ProviderError(
                            self.provider,
                            f"HTTP {response.status_code} for {url}",
                            status_code=response.status_code,
                        )

                    try:
                        return response.json()
                    except ValueError:
                        raise ProviderError(self.provider, f"malformed JSON from {url}")

            except httpx.TimeoutException:
                last_error = "timeout"
                wait_time = min(base_delay * (2 ** attempt), 30.0)
                logger.warning(
                    "[%s] Request timeout, waiting %.1fs (attempt %d/%d)...",
                    self.provider, wait_time, attempt + 1, self.max_retries,
                )
                await asyncio.sleep(wait_time)

            except httpx.HTTPError as e:
                last_error = str(e)
                if attempt == self.max_retries - 1:
                    break
                await asyncio.sleep(min(base_delay * (2 ** attempt), 30.0))

        raise ProviderError(self.provider, f"failed after {self.max_retries} attempts: {last_error}")


class WaqiDataFetcher(ProviderFetcher):
    """World Air Quality Index project API (index-based values)."""

    provider = "waqi"

    def __init__(self, *, token: str, base_url: str = "https://api.waqi.info", **kwargs):
        super().__init__(base_url=base_url, **kwargs)
        self.token = token

    async def fetch_stations_in_bounds(
        self,
        lat_min: float,
        lon_min: float,
        lat_max: float,
        lon_max: float,
    ) -> List[WaqiStationSummary]:
        url = f"{self.base_url}/v2/map/bounds/"
        params = {
            "latlng": f"{lat_min},{lon_min},{lat_max},{lon_max}",
            "networks": "all",
            "token": self.token,
        }
        data = await self._make_request("GET", url, params=params)
        stations = parse_waqi_bounds(data)
        if stations is None:
            status = data.get("status") if isinstance(data, dict) else None
            raise ProviderError(self.provider, f"unexpected bounds response (status={status})")
        return stations

    async def fetch_station_feed(self, uid: int) -> Optional[WaqiFeed]:
        """Detailed feed for one station; ``None`` when the payload is unusable."""
        url = f"{self.base_url}/feed/@{uid}/"
        data = await self._make_request("GET", url, params={"token": self.token})
        feed = parse_waqi_feed(data)
        if feed is None:
            logger.info("[waqi] station %s returned no usable feed", uid)
        return feed


class GoogleAirQualityFetcher(ProviderFetcher):
    """Google Air Quality API; concentrations in ppb or µg/m³ per pollutant."""

    provider = "google"

    def __init__(self, *, api_key: str, base_url: str = "https://airquality.googleapis.com/v1", **kwargs):
        super().__init__(base_url=base_url, **kwargs)
        self.api_key = api_key

    async def fetch_point(self, lat: float, lon: float) -> Optional[GoogleConditions]:
        url = f"{self.base_url}/currentConditions:lookup"
        body = {
            "location": {"latitude": lat, "longitude": lon},
            "extraComputations": ["POLLUTANT_CONCENTRATION"],
            "languageCode": "en",
        }
        data = await self._make_request("POST", url, params={"key": self.api_key}, json=body)
        return parse_google_conditions(data)


class OpenWeatherFetcher(ProviderFetcher):
    """OpenWeather air pollution API; components in µg/m³."""

    provider = "openweather"

    def __init__(self, *, api_key: str, base_url: str = "https://api.openweathermap.org/data/2.5", **kwargs):
        super().__init__(base_url=base_url, **kwargs)
        self.api_key = api_key

    async def fetch_point(self, lat: float, lon: float) -> Optional[OpenWeatherPollution]:
        url = f"{self.base_url}/air_pollution"
        data = await self._make_request("GET", url, params={"lat": lat, "lon": lon, "appid": self.api_key})
        return parse_openweather(data)
