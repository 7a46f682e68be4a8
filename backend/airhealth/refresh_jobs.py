"""Hourly collection cycle.

One cycle walks through the pipeline stages in order:

    IDLE -> FETCH_PRIMARY -> FETCH_SUPPLEMENT -> PERSIST_RAW -> AGGREGATE
         -> COMPUTE_INDEX -> PERSIST_INDEX -> IDLE

Any fatal error moves the cycle to CYCLE_FAILED. Per-target provider failures
never abort a cycle; they are counted and reported in the result.

Cycles are triggered externally (HTTP endpoint, CLI script or cron) and are
serialised inside a process. Re-running a cycle for the same hour upserts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

import aiosqlite
import httpx

from .batch_fetcher import batch_fetch
from .cache_manager import CacheManager, OutOfOrderReadingError, retention_cutoff
from .data_fetcher import (
    GoogleAirQualityFetcher,
    OpenWeatherFetcher,
    ProviderError,
    WaqiDataFetcher,
)
from .data_processor import LOCATIONS, DataProcessor, floor_to_hour
from .grid_matcher import (
    SUPPLEMENT_NOT_NEEDED,
    SupplementMatcher,
    SupplementNeed,
    SupplementOutcome,
    detect_gaps,
)
from .health_index import compute_record, get_policy
from .models import INDEX_POLLUTANTS, Location, PollutantMap, RawReading
from .payloads import WaqiFeed, WaqiStationSummary
from .quota_manager import QuotaExhaustedError, QuotaManager
from .settings import (
    PROVIDER_GOOGLE,
    PROVIDER_WAQI,
    AirHealthSettings,
    ConfigurationError,
)
from .unit_converter import normalize_waqi_feed

logger = logging.getLogger(__name__)

JOB_COLLECTION_CYCLE = "collection_cycle"

STATUS_COLLECTED = "collected"
STATUS_SUPPLEMENTED = "supplemented"
STATUS_NO_DATA = "no_data"
STATUS_FAILED = "failed"


class CycleState(str, Enum):
    IDLE = "IDLE"
    FETCH_PRIMARY = "FETCH_PRIMARY"
    FETCH_SUPPLEMENT = "FETCH_SUPPLEMENT"
    PERSIST_RAW = "PERSIST_RAW"
    AGGREGATE = "AGGREGATE"
    COMPUTE_INDEX = "COMPUTE_INDEX"
    PERSIST_INDEX = "PERSIST_INDEX"
    CYCLE_FAILED = "CYCLE_FAILED"


@dataclass
class CycleResult:
    ok: bool
    status: str  # ok / degraded / failed
    state: CycleState
    hour: datetime
    started_at: datetime
    finished_at: datetime
    stats: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "state": self.state.value,
            "hour": self.hour.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            **self.stats,
            "errors": self.errors[:20],  # cap payload
            "error_count": len(self.errors),
        }


@dataclass
class _PendingReading:
    location_id: int
    provider: str
    values: PollutantMap
    observed_at: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RefreshCoordinator:
    def __init__(
        self,
        *,
        cache: CacheManager,
        settings: AirHealthSettings,
        locations: Optional[Sequence[Location]] = None,
        quota: Optional[QuotaManager] = None,
        processor: Optional[DataProcessor] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cache = cache
        self.settings = settings
        self.locations: List[Location] = list(locations if locations is not None else LOCATIONS)
        self.processor = processor or DataProcessor()
        self.quota = quota or QuotaManager(
            cache=cache,
            ceilings={
                provider: settings.daily_ceiling(provider)
                for provider in (PROVIDER_WAQI, settings.supplement_provider)
            },
        )
        self.transport = transport
        self.state = CycleState.IDLE
        self.last_result: Optional[CycleResult] = None

        # Lazy-initialized to avoid event loop issues
        self._run_lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        """Get or create lock in current event loop."""
        if self._run_lock is None:
            self._run_lock = asyncio.Lock()
        return self._run_lock

    async def initialize(self):
        await self.cache.initialize()
        await self.cache.cache_locations(self.locations)

    def _fetcher_kwargs(self) -> Dict[str, Any]:
        return {
            "max_retries": self.settings.http_max_retries,
            "timeout": self.settings.http_timeout_seconds,
            "retry_base_delay": self.settings.http_retry_base_delay,
            "transport": self.transport,
        }

    def _build_primary(self) -> WaqiDataFetcher:
        return WaqiDataFetcher(
            token=self.settings.waqi_token,
            base_url=self.settings.waqi_base_url,
            **self._fetcher_kwargs(),
        )

    def _build_supplement(self):
        if self.settings.supplement_provider == PROVIDER_GOOGLE:
            return GoogleAirQualityFetcher(
                api_key=self.settings.google_api_key,
                base_url=self.settings.google_base_url,
                **self._fetcher_kwargs(),
            )
        return OpenWeatherFetcher(
            api_key=self.settings.openweather_api_key,
            base_url=self.settings.openweather_base_url,
            **self._fetcher_kwargs(),
        )

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """Run one collection cycle, serialised with any other running cycle."""
        async with self._get_lock():
            started_at = _now()
            now = now or started_at
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            hour = floor_to_hour(now)
            errors: List[str] = []
            stats: Dict[str, Any] = {}

            try:
                self.settings.validate()
                await self._collect(hour, stats, errors)
                self.state = CycleState.IDLE
            except ConfigurationError as e:
                logger.error("[cycle] %s", e)
                errors.append(str(e))
                self.state = CycleState.CYCLE_FAILED
            except (aiosqlite.Error, OSError) as e:
                logger.error("[cycle] store failure during %s: %s", self.state.value, e)
                errors.append(f"{self.state.value}: {e}")
                self.state = CycleState.CYCLE_FAILED
            except BaseException:
                # cancelled or unexpected: propagate, but leave the coordinator reusable
                self.state = CycleState.IDLE
                raise

            final_state = self.state
            stats["quota"] = await self._quota_snapshot(errors)
            finished_at = _now()

            if final_state == CycleState.CYCLE_FAILED:
                status = "failed"
            elif errors:
                status = "degraded"
            else:
                status = "ok"

            result = CycleResult(
                ok=status != "failed",
                status=status,
                state=final_state,
                hour=hour,
                started_at=started_at,
                finished_at=finished_at,
                stats=stats,
                errors=errors,
            )
            self.last_result = result
            self.state = CycleState.IDLE
            await self._record_job_state(result)

            logger.info(
                "[cycle] %s finished: status=%s readings=%s indexes=%s errors=%d in %.1fs",
                hour.isoformat(), status, stats.get("readings_written", 0),
                stats.get("indexes_written", 0), len(errors),
                (finished_at - started_at).total_seconds(),
            )
            return result

    async def _collect(self, hour: datetime, stats: Dict[str, Any], errors: List[str]):
        deadline = time.monotonic() + self.settings.cycle_deadline_seconds
        locations = self.locations
        stats["locations"] = len(locations)

        pending: List[_PendingReading] = []
        failed_locations: Set[int] = set()
        supplemented: Set[int] = set()

        try:
            self.state = CycleState.FETCH_PRIMARY
            primary = await self._fetch_primary(locations, stats, errors, pending, failed_locations, deadline)

            self.state = CycleState.FETCH_SUPPLEMENT
            outcome = await self._fetch_supplement(hour, locations, primary, stats, deadline, supplemented)
            for location_id, values in outcome.supplements.items():
                pending.append(
                    _PendingReading(
                        location_id=location_id,
                        provider=self.settings.supplement_provider,
                        values=values,
                        observed_at=outcome.observed_at.get(location_id),
                    )
                )
                supplemented.add(location_id)
            failed_locations.update(outcome.failed_locations - supplemented - set(primary))
            if outcome.fetch is not None:
                errors.extend(outcome.fetch.errors)

        except asyncio.CancelledError:
            logger.warning("[cycle] cancelled during %s, persisting %d readings", self.state.value, len(pending))
            await asyncio.shield(self._persist_raw(hour, pending, stats, errors))
            raise

        self.state = CycleState.PERSIST_RAW
        await self._persist_raw(hour, pending, stats, errors)

        collection_status: Dict[int, str] = {}
        for location in locations:
            if location.id in supplemented:
                collection_status[location.id] = STATUS_SUPPLEMENTED
            elif location.id in primary:
                collection_status[location.id] = STATUS_COLLECTED
            elif location.id in failed_locations:
                collection_status[location.id] = STATUS_FAILED
            else:
                collection_status[location.id] = STATUS_NO_DATA
        stats["collection_status"] = {
            status: sum(1 for s in collection_status.values() if s == status)
            for status in (STATUS_COLLECTED, STATUS_SUPPLEMENTED, STATUS_NO_DATA, STATUS_FAILED)
        }

        await self._compute_indexes(hour, locations, collection_status, stats, errors)
        await self._prune(hour)

    async def _fetch_primary(
        self,
        locations: Sequence[Location],
        stats: Dict[str, Any],
        errors: List[str],
        pending: List[_PendingReading],
        failed_locations: Set[int],
        deadline: float,
    ) -> Dict[int, PollutantMap]:
        """Fetch the primary provider; returns normalized values per location id."""
        fetcher = self._build_primary()
        stations: List[WaqiStationSummary] = []
        bounds_failed = False

        try:
            await self.quota.reserve_or_raise(PROVIDER_WAQI)
            stations = await fetcher.fetch_stations_in_bounds(*self.settings.coverage_bbox)
        except QuotaExhaustedError as e:
            logger.warning("[waqi] %s", e)
            stats["primary_quota_exhausted"] = True
        except ProviderError as e:
            logger.error("[waqi] station listing failed: %s", e)
            errors.append(f"bounds: {e}")
            bounds_failed = True
        stats["stations_found"] = len(stations)

        station_for: Dict[int, int] = {}
        for location in locations:
            if location.station_uid is not None:
                station_for[location.id] = location.station_uid
                continue
            nearest = self.processor.nearest_station(
                location, stations, self.settings.primary_match_radius_deg
            )
            if nearest is not None:
                station_for[location.id] = nearest.uid
            elif bounds_failed:
                failed_locations.add(location.id)
        stats["locations_matched"] = len(station_for)

        uids = sorted(set(station_for.values()))
        feeds: Dict[int, WaqiFeed] = {}
        failed_uids: Set[int] = set()

        async def fetch_station(uid: int) -> Optional[WaqiFeed]:
            await self.quota.reserve_or_raise(PROVIDER_WAQI)
            try:
                feed = await fetcher.fetch_station_feed(uid)
            except ProviderError:
                failed_uids.add(uid)
                raise
            if feed is None:
                failed_uids.add(uid)
                return None
            feeds[uid] = feed
            # Kept as soon as it arrives so a cancelled cycle can still persist it.
            for location_id, station_uid in station_for.items():
                if station_uid == uid:
                    values = normalize_waqi_feed(feed)
                    if any(v is not None for v in values.values()):
                        pending.append(
                            _PendingReading(location_id, PROVIDER_WAQI, values, feed.observed_at)
                        )
            return feed

        fetched = await batch_fetch(
            uids,
            fetch_station,
            batch_size=self.settings.batch_size,
            delay_seconds=self.settings.batch_delay_seconds,
            deadline=deadline,
            label="waqi-feeds",
        )
        stats["primary"] = fetched.summary()
        errors.extend(fetched.errors)

        primary: Dict[int, PollutantMap] = {}
        for reading in pending:
            if reading.provider == PROVIDER_WAQI:
                primary[reading.location_id] = reading.values
        for location_id, uid in station_for.items():
            if uid in failed_uids and location_id not in primary:
                failed_locations.add(location_id)
        return primary

    async def _fetch_supplement(
        self,
        hour: datetime,
        locations: Sequence[Location],
        primary: Dict[int, PollutantMap],
        stats: Dict[str, Any],
        deadline: float,
        supplemented: Set[int],
    ) -> SupplementOutcome:
        provider = self.settings.supplement_provider
        interval = timedelta(minutes=self.settings.expected_interval_minutes)

        needs: List[SupplementNeed] = []
        for location in locations:
            existing = await self.cache.get_latest_reading(location.id, provider)
            if existing is not None and existing.timestamp == hour:
                # Already supplemented for this hour by an earlier run.
                supplemented.add(location.id)
                continue

            latest = None
            if location.id in primary:
                latest = RawReading(
                    location_id=location.id,
                    provider=PROVIDER_WAQI,
                    timestamp=hour,
                    **primary[location.id],
                )
            missing = detect_gaps(latest, hour, interval, self.settings.supplement_pollutants)
            if missing:
                needs.append(SupplementNeed(location=location, missing=missing))

        if not needs:
            stats["supplement"] = {"status": SUPPLEMENT_NOT_NEEDED}
            return SupplementOutcome(status=SUPPLEMENT_NOT_NEEDED)

        fetcher = self._build_supplement()
        matcher = SupplementMatcher(
            provider=provider,
            fetch_point=fetcher.fetch_point,
            quota=self.quota,
            bbox=self.settings.coverage_bbox,
            grid_size=self.settings.grid_size,
            per_cycle_cap=self.settings.supplement_cap_per_cycle,
            batch_size=self.settings.batch_size,
            batch_delay_seconds=self.settings.batch_delay_seconds,
        )
        outcome = await matcher.collect(needs, deadline=deadline)
        stats["supplement"] = outcome.summary()
        return outcome

    async def _persist_raw(
        self,
        hour: datetime,
        pending: Sequence[_PendingReading],
        stats: Dict[str, Any],
        errors: List[str],
    ):
        written = 0
        rejected = 0
        try:
            for reading in pending:
                try:
                    await self.cache.upsert_readings(
                        reading.location_id,
                        hour,
                        reading.values,
                        reading.provider,
                        observed_at=reading.observed_at,
                        native_units=True,
                    )
                    written += 1
                except OutOfOrderReadingError as e:
                    logger.warning("[cycle] %s", e)
                    errors.append(str(e))
                    rejected += 1
        finally:
            stats["readings_written"] = written
            stats["readings_rejected"] = rejected

    async def _compute_indexes(
        self,
        hour: datetime,
        locations: Sequence[Location],
        collection_status: Dict[int, str],
        stats: Dict[str, Any],
        errors: List[str],
    ):
        policy = get_policy(self.settings.aqhi_policy)
        window = timedelta(hours=self.settings.rolling_window_hours)
        interval = timedelta(minutes=self.settings.expected_interval_minutes)

        written = 0
        for location in locations:
            try:
                self.state = CycleState.AGGREGATE
                readings = await self.cache.query_readings(location.id, hour - window, hour)
                rolling = self.processor.rolling_average(
                    location.id, readings, hour, window, interval, INDEX_POLLUTANTS
                )

                self.state = CycleState.COMPUTE_INDEX
                record = compute_record(
                    location.id, hour, rolling, policy, collection_status[location.id]
                )

                self.state = CycleState.PERSIST_INDEX
                await self.cache.upsert_health_index(record)
                written += 1
            except (aiosqlite.Error, OSError) as e:
                logger.error("[cycle] index for location %s failed: %s", location.id, e)
                errors.append(f"index {location.id}: {e}")
        stats["indexes_written"] = written

    async def _prune(self, hour: datetime):
        """Best-effort retention cleanup; failures are logged and do not affect the cycle."""
        try:
            deleted = await self.cache.prune_readings(
                retention_cutoff(hour, self.settings.reading_retention_days)
            )
            if deleted:
                logger.info("[cycle] pruned %d raw readings", deleted)
            await self.quota.prune(self.settings.quota_retention_days)
        except (aiosqlite.Error, OSError) as e:
            logger.warning("[cycle] retention cleanup failed: %s", e)

    async def _quota_snapshot(self, errors: List[str]) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {}
        for provider in (PROVIDER_WAQI, self.settings.supplement_provider):
            try:
                usage = await self.quota.current_usage(provider)
            except (aiosqlite.Error, OSError) as e:
                errors.append(f"quota {provider}: {e}")
                continue
            snapshot[provider] = usage.model_dump()
        return snapshot

    async def _record_job_state(self, result: CycleResult):
        try:
            await self.cache.upsert_job_state(
                job_name=JOB_COLLECTION_CYCLE,
                last_run_at=result.started_at,
                last_success_at=result.finished_at if result.ok else None,
                last_error="; ".join(result.errors)[:1000] or None,
            )
        except (aiosqlite.Error, OSError) as e:
            logger.error("[cycle] could not record job state: %s", e)

    async def status(self) -> Dict[str, Any]:
        state = await self.cache.get_job_state(JOB_COLLECTION_CYCLE)
        return {
            "state": self.state.value,
            "running": self._get_lock().locked(),
            "job": state,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
