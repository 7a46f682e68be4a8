"""Per-provider daily call budget.

Counters live in the store (one row per provider per UTC day) and are only
ever advanced by a single conditional upsert, so overlapping cycles cannot
overspend. Any storage failure denies the call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import aiosqlite

from .cache_manager import CacheManager
from .models import QuotaUsage

logger = logging.getLogger(__name__)


class QuotaExhaustedError(Exception):
    """Raised by fetch functions when the provider's daily budget is spent."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Daily call budget exhausted for {provider}")


@dataclass(frozen=True)
class QuotaDecision:
    provider: str
    date: str
    permitted: bool
    reason: Optional[str] = None


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaManager:
    def __init__(
        self,
        *,
        cache: CacheManager,
        ceilings: Dict[str, int],
        today: Callable[[], date] = _utc_today,
    ):
        self.cache = cache
        self.ceilings = dict(ceilings)
        self._today = today

    def ceiling(self, provider: str) -> int:
        return int(self.ceilings.get(provider, 0))

    async def check_and_reserve(self, provider: str) -> QuotaDecision:
        """Count one call against today's budget if any is left."""
        day = self._today().isoformat()
        try:
            permitted = await self.cache.increment_quota_if_under_limit(provider, day, self.ceiling(provider))
        except (aiosqlite.Error, OSError) as e:
            logger.error("[quota] counter store unavailable for %s, denying call: %s", provider, e)
            return QuotaDecision(provider=provider, date=day, permitted=False, reason="store_unavailable")

        if not permitted:
            return QuotaDecision(provider=provider, date=day, permitted=False, reason="exhausted")
        return QuotaDecision(provider=provider, date=day, permitted=True)

    async def reserve_or_raise(self, provider: str):
        decision = await self.check_and_reserve(provider)
        if not decision.permitted:
            raise QuotaExhaustedError(provider)

    async def current_usage(self, provider: str) -> QuotaUsage:
        day = self._today().isoformat()
        ceiling = self.ceiling(provider)
        row = await self.cache.get_quota(provider, day)
        used = int(row["calls_used"]) if row else 0
        return QuotaUsage(
            provider=provider,
            date=day,
            used=used,
            ceiling=ceiling,
            remaining=max(0, ceiling - used),
        )

    async def prune(self, retention_days: int) -> int:
        cutoff = (self._today() - timedelta(days=retention_days)).isoformat()
        deleted = await self.cache.prune_quota(cutoff)
        if deleted:
            logger.info("[quota] pruned %d counter rows older than %s", deleted, cutoff)
        return deleted
