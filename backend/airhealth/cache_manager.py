"""SQLite store for locations, raw readings, health index records and quotas."""
import aiosqlite
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .models import POLLUTANT_KEYS, HealthIndexRecord, Location, PollutantMap, RawReading

logger = logging.getLogger(__name__)


def to_db_timestamp(value: datetime) -> str:
    """Store timestamps as naive UTC text so lexical order matches time order."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%d %H:%M:%S")


def from_db_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OutOfOrderReadingError(Exception):
    """Raised when a reading is older than the newest stored one for its location."""

    def __init__(self, location_id: int, provider: str, timestamp: datetime, latest: datetime):
        self.location_id = location_id
        self.provider = provider
        self.timestamp = timestamp
        self.latest = latest
        super().__init__(
            f"Reading for location {location_id} ({provider}) at {timestamp} is older than stored {latest}"
        )


class CacheManager:
    """Manages persistence of the pipeline's data in SQLite."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None, busy_timeout_ms: Optional[int] = None):
        # Make the default path independent from the current working directory.
        backend_dir = Path(__file__).resolve().parents[1]  # .../backend
        if db_path is None:
            db_path = backend_dir / "data" / "airhealth.db"

        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        if busy_timeout_ms is None:
            try:
                busy_timeout_ms = int(os.getenv("AIRHEALTH_SQLITE_BUSY_TIMEOUT_MS", "5000"))
            except ValueError:
                busy_timeout_ms = 5000
        self.busy_timeout_ms = busy_timeout_ms

    async def _configure_connection(self, db: aiosqlite.Connection):
        """Apply connection-level SQLite settings."""
        await db.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        await db.execute("PRAGMA foreign_keys = ON")

    async def initialize(self):
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)

            # DB-wide pragmas (persisted in the database)
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute("PRAGMA synchronous = NORMAL")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS locations (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    district TEXT,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    population INTEGER,
                    station_uid INTEGER,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS raw_readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    location_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    timestamp TIMESTAMP NOT NULL,
                    observed_at TIMESTAMP,
                    pm25 REAL,
                    pm10 REAL,
                    o3 REAL,
                    no2 REAL,
                    so2 REAL,
                    co REAL,
                    native_units INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (location_id, provider, timestamp),
                    FOREIGN KEY (location_id) REFERENCES locations (id)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS health_index (
                    location_id INTEGER NOT NULL,
                    hour_timestamp TIMESTAMP NOT NULL,
                    pm25_3h_avg REAL,
                    pm10_3h_avg REAL,
                    o3_3h_avg REAL,
                    no2_3h_avg REAL,
                    aqhi REAL,
                    aqhi_category TEXT,
                    data_quality TEXT NOT NULL,
                    collection_status TEXT NOT NULL,
                    policy TEXT NOT NULL,
                    computed_at TIMESTAMP,
                    PRIMARY KEY (location_id, hour_timestamp),
                    FOREIGN KEY (location_id) REFERENCES locations (id)
                )
            """)

            # One row per provider per UTC day.
            await db.execute("""
                CREATE TABLE IF NOT EXISTS api_quota (
                    provider TEXT NOT NULL,
                    date TEXT NOT NULL,
                    calls_used INTEGER NOT NULL DEFAULT 0,
                    ceiling INTEGER NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (provider, date)
                )
            """)

            # Job-level state (collection cycles)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS job_state (
                    job_name TEXT PRIMARY KEY,
                    last_run_at TIMESTAMP,
                    last_success_at TIMESTAMP,
                    last_error TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_readings_location_time
                ON raw_readings(location_id, timestamp)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_health_index_time
                ON health_index(hour_timestamp)
            """)

            await db.commit()

    async def cache_locations(self, locations: List[Location]):
        """Upsert the static location catalogue."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            await db.executemany(
                """
                INSERT INTO locations (id, name, district, latitude, longitude, population, station_uid, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    district = excluded.district,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    population = excluded.population,
                    station_uid = excluded.station_uid,
                    updated_at = CURRENT_TIMESTAMP
                """,
                [
                    (loc.id, loc.name, loc.district, loc.latitude, loc.longitude, loc.population, loc.station_uid)
                    for loc in locations
                ],
            )
            await db.commit()

    async def get_locations(self) -> List[Location]:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                "SELECT id, name, district, latitude, longitude, population, station_uid FROM locations ORDER BY id"
            )
            rows = await cursor.fetchall()
            return [
                Location(
                    id=row[0],
                    name=row[1],
                    district=row[2],
                    latitude=row[3],
                    longitude=row[4],
                    population=row[5],
                    station_uid=row[6],
                )
                for row in rows
            ]

    async def upsert_readings(
        self,
        location_id: int,
        timestamp: datetime,
        pollutants: PollutantMap,
        provider: str,
        *,
        observed_at: Optional[datetime] = None,
        native_units: bool = False,
    ):
        """Insert or replace one reading keyed by (location, provider, timestamp).

        Timestamps are monotonic per location across providers: a reading older
        than the newest stored one for the location is rejected. Re-writing the
        newest timestamp (any provider) is allowed. The check and the write
        share one write transaction.
        """
        ts = to_db_timestamp(timestamp)
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT MAX(timestamp) FROM raw_readings WHERE location_id = ?",
                (location_id,),
            )
            row = await cursor.fetchone()
            latest = row[0] if row else None
            if latest is not None and ts < latest:
                await db.rollback()
                raise OutOfOrderReadingError(location_id, provider, timestamp, from_db_timestamp(latest))

            await db.execute(
                """
                INSERT INTO raw_readings
                    (location_id, provider, timestamp, observed_at, pm25, pm10, o3, no2, so2, co, native_units)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(location_id, provider, timestamp) DO UPDATE SET
                    observed_at = excluded.observed_at,
                    pm25 = excluded.pm25,
                    pm10 = excluded.pm10,
                    o3 = excluded.o3,
                    no2 = excluded.no2,
                    so2 = excluded.so2,
                    co = excluded.co,
                    native_units = excluded.native_units,
                    created_at = CURRENT_TIMESTAMP
                """,
                (
                    location_id,
                    provider,
                    ts,
                    to_db_timestamp(observed_at) if observed_at else None,
                    *(pollutants.get(key) for key in POLLUTANT_KEYS),
                    1 if native_units else 0,
                ),
            )
            await db.commit()

    @staticmethod
    def _row_to_reading(row) -> RawReading:
        return RawReading(
            location_id=row[0],
            provider=row[1],
            timestamp=from_db_timestamp(row[2]),
            observed_at=from_db_timestamp(row[3]),
            pm25=row[4],
            pm10=row[5],
            o3=row[6],
            no2=row[7],
            so2=row[8],
            co=row[9],
            native_units=bool(row[10]),
        )

    async def query_readings(
        self,
        location_id: int,
        since: datetime,
        until: Optional[datetime] = None,
        provider: Optional[str] = None,
    ) -> List[RawReading]:
        """Readings for a location with ``since <= timestamp [<= until]``, oldest first."""
        query = """
            SELECT location_id, provider, timestamp, observed_at, pm25, pm10, o3, no2, so2, co, native_units
            FROM raw_readings
            WHERE location_id = ? AND timestamp >= ?
        """
        params: List[Any] = [location_id, to_db_timestamp(since)]
        if until is not None:
            query += " AND timestamp <= ?"
            params.append(to_db_timestamp(until))
        if provider is not None:
            query += " AND provider = ?"
            params.append(provider)
        query += " ORDER BY timestamp, provider"

        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [self._row_to_reading(row) for row in rows]

    async def get_latest_reading(self, location_id: int, provider: str) -> Optional[RawReading]:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                """
                SELECT location_id, provider, timestamp, observed_at, pm25, pm10, o3, no2, so2, co, native_units
                FROM raw_readings
                WHERE location_id = ? AND provider = ?
                ORDER BY timestamp DESC
                LIMIT 1
                """,
                (location_id, provider),
            )
            row = await cursor.fetchone()
            return self._row_to_reading(row) if row else None

    async def upsert_health_index(self, record: HealthIndexRecord):
        """Insert/update the record for (location, hour); the later write wins."""
        computed_at = record.computed_at or datetime.now(timezone.utc)
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            await db.execute(
                """
                INSERT INTO health_index (
                    location_id, hour_timestamp,
                    pm25_3h_avg, pm10_3h_avg, o3_3h_avg, no2_3h_avg,
                    aqhi, aqhi_category, data_quality, collection_status, policy, computed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(location_id, hour_timestamp) DO UPDATE SET
                    pm25_3h_avg = excluded.pm25_3h_avg,
                    pm10_3h_avg = excluded.pm10_3h_avg,
                    o3_3h_avg = excluded.o3_3h_avg,
                    no2_3h_avg = excluded.no2_3h_avg,
                    aqhi = excluded.aqhi,
                    aqhi_category = excluded.aqhi_category,
                    data_quality = excluded.data_quality,
                    collection_status = excluded.collection_status,
                    policy = excluded.policy,
                    computed_at = excluded.computed_at
                """,
                (
                    record.location_id,
                    to_db_timestamp(record.hour_timestamp),
                    record.pm25_3h_avg,
                    record.pm10_3h_avg,
                    record.o3_3h_avg,
                    record.no2_3h_avg,
                    record.aqhi,
                    record.aqhi_category,
                    record.data_quality,
                    record.collection_status,
                    record.policy,
                    to_db_timestamp(computed_at),
                ),
            )
            await db.commit()

    _INDEX_COLUMNS = """
        location_id, hour_timestamp, pm25_3h_avg, pm10_3h_avg, o3_3h_avg, no2_3h_avg,
        aqhi, aqhi_category, data_quality, collection_status, policy, computed_at
    """

    @staticmethod
    def _row_to_index(row) -> HealthIndexRecord:
        return HealthIndexRecord(
            location_id=row[0],
            hour_timestamp=from_db_timestamp(row[1]),
            pm25_3h_avg=row[2],
            pm10_3h_avg=row[3],
            o3_3h_avg=row[4],
            no2_3h_avg=row[5],
            aqhi=row[6],
            aqhi_category=row[7],
            data_quality=row[8],
            collection_status=row[9],
            policy=row[10],
            computed_at=from_db_timestamp(row[11]),
        )

    async def get_health_index(self, location_id: int, hour_timestamp: datetime) -> Optional[HealthIndexRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                f"SELECT {self._INDEX_COLUMNS} FROM health_index WHERE location_id = ? AND hour_timestamp = ?",
                (location_id, to_db_timestamp(hour_timestamp)),
            )
            row = await cursor.fetchone()
            return self._row_to_index(row) if row else None

    async def get_latest_health_index(self) -> Dict[int, HealthIndexRecord]:
        """Latest record per location."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                f"""
                SELECT {self._INDEX_COLUMNS}
                FROM health_index h
                WHERE hour_timestamp = (
                    SELECT MAX(hour_timestamp) FROM health_index WHERE location_id = h.location_id
                )
                ORDER BY location_id
                """
            )
            rows = await cursor.fetchall()
            return {row[0]: self._row_to_index(row) for row in rows}

    async def get_health_index_history(
        self,
        location_id: int,
        since: datetime,
    ) -> List[HealthIndexRecord]:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                f"""
                SELECT {self._INDEX_COLUMNS}
                FROM health_index
                WHERE location_id = ? AND hour_timestamp >= ?
                ORDER BY hour_timestamp DESC
                """,
                (location_id, to_db_timestamp(since)),
            )
            rows = await cursor.fetchall()
            return [self._row_to_index(row) for row in rows]

    async def get_quota(self, provider: str, date: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                "SELECT calls_used, ceiling FROM api_quota WHERE provider = ? AND date = ?",
                (provider, date),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return {"provider": provider, "date": date, "calls_used": row[0], "ceiling": row[1]}

    async def increment_quota_if_under_limit(self, provider: str, date: str, ceiling: int) -> bool:
        """Atomically count one call if today's usage is below ``ceiling``.

        A single conditional upsert, so overlapping cycles can never both take
        the last remaining call.
        """
        if ceiling <= 0:
            return False
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                """
                INSERT INTO api_quota (provider, date, calls_used, ceiling, updated_at)
                VALUES (?, ?, 1, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(provider, date) DO UPDATE SET
                    calls_used = api_quota.calls_used + 1,
                    ceiling = excluded.ceiling,
                    updated_at = CURRENT_TIMESTAMP
                WHERE api_quota.calls_used < excluded.ceiling
                """,
                (provider, date, ceiling),
            )
            changed = cursor.rowcount
            await db.commit()
            return changed > 0

    async def prune_quota(self, before_date: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute("DELETE FROM api_quota WHERE date < ?", (before_date,))
            deleted = cursor.rowcount
            await db.commit()
            return deleted

    async def prune_readings(self, before: datetime) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                "DELETE FROM raw_readings WHERE timestamp < ?",
                (to_db_timestamp(before),),
            )
            deleted = cursor.rowcount
            await db.commit()
            return deleted

    async def get_job_state(self, job_name: str) -> Optional[Dict[str, Any]]:
        """Get job-level last run/success state."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            cursor = await db.execute(
                "SELECT last_run_at, last_success_at, last_error FROM job_state WHERE job_name = ?",
                (job_name,),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return {"last_run_at": row[0], "last_success_at": row[1], "last_error": row[2]}

    async def upsert_job_state(
        self,
        *,
        job_name: str,
        last_run_at: datetime,
        last_success_at: Optional[datetime],
        last_error: Optional[str],
    ):
        """Insert/update job-level state."""
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            await db.execute(
                """
                INSERT INTO job_state (job_name, last_run_at, last_success_at, last_error)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(job_name) DO UPDATE SET
                    last_run_at = excluded.last_run_at,
                    last_success_at = COALESCE(excluded.last_success_at, job_state.last_success_at),
                    last_error = excluded.last_error
                """,
                (
                    job_name,
                    to_db_timestamp(last_run_at),
                    to_db_timestamp(last_success_at) if last_success_at else None,
                    last_error,
                ),
            )
            await db.commit()

    async def count_rows(self) -> Dict[str, int]:
        """Row counts per table, for the status endpoint."""
        counts: Dict[str, int] = {}
        async with aiosqlite.connect(self.db_path) as db:
            await self._configure_connection(db)
            for table in ("locations", "raw_readings", "health_index", "api_quota"):
                cursor = await db.execute(f"SELECT COUNT(*) FROM {table}")
                row = await cursor.fetchone()
                counts[table] = row[0] if row else 0
        return counts


def retention_cutoff(now: datetime, days: int) -> datetime:
    return now - timedelta(days=days)
