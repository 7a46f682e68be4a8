"""API routes for the Air Health service.

The read path is served from the local store only; the single write path is
``POST /api/collect``, which runs one collection cycle synchronously.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, Query, Request

from .cache_manager import CacheManager
from .data_processor import POLLUTANTS
from .models import HistoryResponse, LocationIndex, PollutantInfo, QuotaUsage
from .refresh_jobs import RefreshCoordinator
from .settings import PROVIDER_WAQI, AirHealthSettings

router = APIRouter(prefix="/api")


def _cache(request: Request) -> CacheManager:
    return request.app.state.cache


def _coordinator(request: Request) -> RefreshCoordinator:
    return request.app.state.coordinator


def _settings(request: Request) -> AirHealthSettings:
    return request.app.state.settings


@router.get("/locations")
async def get_locations(request: Request):
    """Get the monitoring location catalogue."""
    locations = await _cache(request).get_locations()
    return {"locations": [loc.model_dump() for loc in locations]}


@router.get("/pollutants")
async def get_pollutants() -> List[PollutantInfo]:
    """Get list of available pollutants in canonical units."""
    return [
        PollutantInfo(code=code, name=info["name"], unit=info["unit"])
        for code, info in POLLUTANTS.items()
    ]


@router.get("/aqhi/latest")
async def get_latest_aqhi(request: Request) -> List[LocationIndex]:
    """Latest health index per location; locations never computed carry no record."""
    cache = _cache(request)
    locations = await cache.get_locations()
    latest = await cache.get_latest_health_index()
    return [LocationIndex(location=loc, record=latest.get(loc.id)) for loc in locations]


@router.get("/aqhi/history/{location_id}")
async def get_aqhi_history(
    request: Request,
    location_id: int,
    hours: int = Query(24, ge=1, le=168, description="How many hours back"),
) -> HistoryResponse:
    cache = _cache(request)
    known = {loc.id for loc in await cache.get_locations()}
    if location_id not in known:
        raise HTTPException(status_code=404, detail=f"Unknown location: {location_id}")

    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    records = await cache.get_health_index_history(location_id, since)
    return HistoryResponse(location_id=location_id, hours=hours, records=records)


@router.get("/quota")
async def get_quota(request: Request) -> List[QuotaUsage]:
    """Today's call usage per provider."""
    coordinator = _coordinator(request)
    settings = _settings(request)
    return [
        await coordinator.quota.current_usage(provider)
        for provider in (PROVIDER_WAQI, settings.supplement_provider)
    ]


@router.get("/refresh/status")
async def get_refresh_status(request: Request) -> Dict[str, Any]:
    """Get collection cycle status."""
    settings = _settings(request)
    status = await _coordinator(request).status()
    return {
        "settings": {
            "supplement_provider": settings.supplement_provider,
            "grid_size": settings.grid_size,
            "supplement_cap_per_cycle": settings.supplement_cap_per_cycle,
            "rolling_window_hours": settings.rolling_window_hours,
            "aqhi_policy": settings.aqhi_policy,
            "missing_credentials": settings.required_credentials(),
        },
        **status,
        "rows": await _cache(request).count_rows(),
    }


@router.post("/collect")
async def trigger_collection(request: Request) -> Dict[str, Any]:
    """Run one collection cycle (runs synchronously).

    Failures are reported in the body (``ok: false``) rather than as an
    HTTP error, so schedulers can log the per-stage stats.
    """
    result = await _coordinator(request).run_cycle()
    return result.to_dict()
