#!/usr/bin/env python3
"""
Run one Air Health collection cycle from the command line (cron entry point).

Usage:
    python run_cycle.py
    python run_cycle.py --db-path /tmp/airhealth.db --policy community_hourly --json

Exits with status 1 when the cycle fails, so schedulers can alert on it.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from airhealth.cache_manager import CacheManager
from airhealth.refresh_jobs import RefreshCoordinator
from airhealth.settings import load_settings


async def main() -> int:
    parser = argparse.ArgumentParser(description='Run one AQHI collection cycle')
    parser.add_argument('--db-path', type=str, default=None,
                        help='Path to the SQLite store (default: DATABASE_PATH or backend/data/airhealth.db)')
    parser.add_argument('--policy', type=str, default=None,
                        help='AQHI policy name (default: AIRHEALTH_AQHI_POLICY or thai_health_department)')
    parser.add_argument('--supplement-provider', type=str, default=None,
                        help='Secondary provider: google or openweather')
    parser.add_argument('--json', action='store_true',
                        help='Print the full cycle result as JSON')
    parser.add_argument('-v', '--verbose', action='store_true')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )

    overrides = {}
    if args.db_path:
        overrides['database_path'] = args.db_path
    if args.policy:
        overrides['aqhi_policy'] = args.policy
    if args.supplement_provider:
        overrides['supplement_provider'] = args.supplement_provider
    settings = load_settings(**overrides)

    cache = CacheManager(settings.database_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    coordinator = RefreshCoordinator(cache=cache, settings=settings)
    await coordinator.initialize()

    result = await coordinator.run_cycle()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str))
    else:
        print(f"Cycle {result.hour.isoformat()}: {result.status} ({result.state.value})")
        print(f"  readings written: {result.stats.get('readings_written', 0)}")
        print(f"  indexes written:  {result.stats.get('indexes_written', 0)}")
        for err in result.errors[:20]:
            print(f"  error: {err}")

    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
