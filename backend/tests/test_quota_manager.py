import asyncio
from datetime import date

import aiosqlite
import pytest

from airhealth.quota_manager import QuotaExhaustedError, QuotaManager


class _Clock:
    def __init__(self, day: date):
        self.day = day

    def __call__(self) -> date:
        return self.day


async def test_ceiling_is_never_exceeded(cache):
    quota = QuotaManager(cache=cache, ceilings={"google": 5}, today=_Clock(date(2026, 3, 1)))

    decisions = [await quota.check_and_reserve("google") for _ in range(8)]

    assert [d.permitted for d in decisions] == [True] * 5 + [False] * 3
    assert decisions[-1].reason == "exhausted"
    usage = await quota.current_usage("google")
    assert (usage.used, usage.ceiling, usage.remaining) == (5, 5, 0)


async def test_usage_is_monotonic(cache):
    quota = QuotaManager(cache=cache, ceilings={"google": 5}, today=_Clock(date(2026, 3, 1)))

    seen = []
    for _ in range(7):
        await quota.check_and_reserve("google")
        seen.append((await quota.current_usage("google")).used)

    assert seen == sorted(seen)
    assert max(seen) == 5


async def test_concurrent_reservations_respect_ceiling(cache):
    quota = QuotaManager(cache=cache, ceilings={"google": 5}, today=_Clock(date(2026, 3, 1)))

    decisions = await asyncio.gather(*(quota.check_and_reserve("google") for _ in range(12)))

    assert sum(d.permitted for d in decisions) == 5
    assert (await quota.current_usage("google")).used == 5


async def test_counters_reset_on_new_utc_day(cache):
    clock = _Clock(date(2026, 3, 1))
    quota = QuotaManager(cache=cache, ceilings={"google": 2}, today=clock)
    for _ in range(3):
        await quota.check_and_reserve("google")

    clock.day = date(2026, 3, 2)

    assert (await quota.check_and_reserve("google")).permitted
    assert (await quota.current_usage("google")).used == 1


async def test_providers_are_counted_separately(cache):
    quota = QuotaManager(cache=cache, ceilings={"google": 1, "waqi": 3}, today=_Clock(date(2026, 3, 1)))

    assert (await quota.check_and_reserve("google")).permitted
    assert not (await quota.check_and_reserve("google")).permitted
    assert (await quota.check_and_reserve("waqi")).permitted


async def test_unknown_provider_has_no_budget(cache):
    quota = QuotaManager(cache=cache, ceilings={}, today=_Clock(date(2026, 3, 1)))

    with pytest.raises(QuotaExhaustedError):
        await quota.reserve_or_raise("openweather")


class _BrokenStore:
    async def increment_quota_if_under_limit(self, provider, date, ceiling):
        raise aiosqlite.OperationalError("database is locked")


async def test_store_failure_denies_the_call():
    quota = QuotaManager(cache=_BrokenStore(), ceilings={"google": 950})

    decision = await quota.check_and_reserve("google")

    assert not decision.permitted
    assert decision.reason == "store_unavailable"


async def test_prune_removes_old_days(cache):
    clock = _Clock(date(2026, 1, 1))
    quota = QuotaManager(cache=cache, ceilings={"google": 10}, today=clock)
    await quota.check_and_reserve("google")

    clock.day = date(2026, 3, 1)
    await quota.check_and_reserve("google")

    assert await quota.prune(30) == 1
    assert await cache.get_quota("google", "2026-01-01") is None
    assert (await cache.get_quota("google", "2026-03-01"))["calls_used"] == 1
