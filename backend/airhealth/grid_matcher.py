"""Spatial supplement matching on a coarse fetch grid.

The secondary provider is priced per point, so locations that miss
pollutants are snapped to the nearest center of an N×N grid laid over the
coverage bounding box. Every distinct cell is fetched at most once per cycle
and its values are shared by every location mapped to it; the call count is
bounded by the number of cells, never by the number of locations.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from .batch_fetcher import BatchFetchResult, batch_fetch
from .models import Location, PollutantMap, RawReading
from .quota_manager import QuotaManager
from .unit_converter import normalize_payload

logger = logging.getLogger(__name__)

BoundingBox = Tuple[float, float, float, float]  # lat_min, lon_min, lat_max, lon_max

SUPPLEMENT_NOT_NEEDED = "not_needed"
SUPPLEMENT_COLLECTED = "collected"
SUPPLEMENT_PARTIAL = "partial"
SUPPLEMENT_QUOTA_EXHAUSTED = "quota_exhausted"
SUPPLEMENT_FAILED = "failed"


@dataclass(frozen=True)
class GridPoint:
    cell_id: int
    row: int
    col: int
    lat: float
    lon: float

    def __str__(self) -> str:
        return f"cell {self.cell_id} ({self.lat},{self.lon})"


@dataclass(frozen=True)
class SupplementNeed:
    location: Location
    missing: FrozenSet[str]


@dataclass
class SupplementPlan:
    cells: List[GridPoint]
    assignments: Dict[int, List[SupplementNeed]]  # cell_id -> needs
    dropped_cells: int = 0


@dataclass
class SupplementOutcome:
    status: str
    supplements: Dict[int, PollutantMap] = field(default_factory=dict)
    observed_at: Dict[int, Optional[datetime]] = field(default_factory=dict)
    failed_locations: Set[int] = field(default_factory=set)
    locations_needing: int = 0
    cells_needed: int = 0
    calls_planned: int = 0
    fetch: Optional[BatchFetchResult] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "locations_needing": self.locations_needing,
            "locations_supplemented": len(self.supplements),
            "cells_needed": self.cells_needed,
            "calls_planned": self.calls_planned,
            **(self.fetch.summary() if self.fetch else {}),
        }


def build_grid(bbox: BoundingBox, n: int) -> List[GridPoint]:
    """Partition ``bbox`` into n×n cells; ids are row-major from the south-west."""
    lat_min, lon_min, lat_max, lon_max = bbox
    n = max(1, int(n))
    lat_step = (lat_max - lat_min) / n
    lon_step = (lon_max - lon_min) / n

    grid: List[GridPoint] = []
    for row in range(n):
        for col in range(n):
            grid.append(
                GridPoint(
                    cell_id=row * n + col,
                    row=row,
                    col=col,
                    lat=round(lat_min + (row + 0.5) * lat_step, 3),
                    lon=round(lon_min + (col + 0.5) * lon_step, 3),
                )
            )
    return grid


def assign_cell(lat: float, lon: float, grid: Sequence[GridPoint]) -> GridPoint:
    """Nearest cell center in lat/lon space; exact ties go to the lowest cell id."""
    if not grid:
        raise ValueError("grid is empty")

    nearest = None
    best = math.inf
    for point in sorted(grid, key=lambda p: p.cell_id):
        dist = math.hypot(lat - point.lat, lon - point.lon)
        if dist < best:
            best = dist
            nearest = point
    return nearest


def detect_gaps(
    latest_primary: Optional[RawReading],
    now: datetime,
    window: timedelta,
    tracked: Iterable[str],
) -> FrozenSet[str]:
    """Tracked pollutants that are missing from, or stale in, the primary reading."""
    tracked = frozenset(tracked)
    if latest_primary is None or not latest_primary.has_any_value():
        return tracked
    if latest_primary.timestamp < now - window:
        return tracked
    values = latest_primary.pollutants()
    return frozenset(p for p in tracked if values.get(p) is None)


def plan_supplements(
    needs: Sequence[SupplementNeed],
    grid: Sequence[GridPoint],
    max_cells: int,
) -> SupplementPlan:
    assignments: Dict[int, List[SupplementNeed]] = {}
    cells_by_id: Dict[int, GridPoint] = {}
    for need in needs:
        if not need.missing:
            continue
        cell = assign_cell(need.location.latitude, need.location.longitude, grid)
        cells_by_id[cell.cell_id] = cell
        assignments.setdefault(cell.cell_id, []).append(need)

    # Busiest cells first so a tight budget helps the most locations.
    ordered = sorted(cells_by_id.values(), key=lambda c: (-len(assignments[c.cell_id]), c.cell_id))
    limit = max(0, int(max_cells))
    kept = ordered[:limit]
    return SupplementPlan(
        cells=kept,
        assignments={c.cell_id: assignments[c.cell_id] for c in kept},
        dropped_cells=len(ordered) - len(kept),
    )


class SupplementMatcher:
    """Fills primary-provider gaps from the secondary provider's grid cells."""

    def __init__(
        self,
        *,
        provider: str,
        fetch_point: Callable[[float, float], Awaitable[Any]],
        quota: QuotaManager,
        bbox: BoundingBox,
        grid_size: int,
        per_cycle_cap: int,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.2,
    ):
        self.provider = provider
        self.fetch_point = fetch_point
        self.quota = quota
        self.grid = build_grid(bbox, grid_size)
        self.per_cycle_cap = per_cycle_cap
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds

    async def _fetch_cell(self, cell: GridPoint, failed_cells: Set[int]):
        await self.quota.reserve_or_raise(self.provider)
        try:
            payload = await self.fetch_point(cell.lat, cell.lon)
        except Exception:
            failed_cells.add(cell.cell_id)
            raise
        if payload is None:
            failed_cells.add(cell.cell_id)
        return payload

    async def collect(
        self,
        needs: Sequence[SupplementNeed],
        *,
        deadline: Optional[float] = None,
    ) -> SupplementOutcome:
        needy = [n for n in needs if n.missing]
        if not needy:
            return SupplementOutcome(status=SUPPLEMENT_NOT_NEEDED)

        usage = await self.quota.current_usage(self.provider)
        budget = min(self.per_cycle_cap, usage.remaining)
        plan = plan_supplements(needy, self.grid, max_cells=budget)
        cells_needed = len(plan.cells) + plan.dropped_cells
        cells = plan.cells

        outcome = SupplementOutcome(
            status=SUPPLEMENT_COLLECTED,
            locations_needing=len(needy),
            cells_needed=cells_needed,
            calls_planned=len(cells),
        )
        logger.info(
            "[supplement] %d locations need data -> %d cells, %d calls planned (remaining quota %d)",
            len(needy), cells_needed, len(cells), usage.remaining,
        )

        if not cells:
            outcome.status = SUPPLEMENT_QUOTA_EXHAUSTED
            return outcome

        failed_cells: Set[int] = set()
        fetched = await batch_fetch(
            cells,
            lambda cell: self._fetch_cell(cell, failed_cells),
            batch_size=self.batch_size,
            delay_seconds=self.batch_delay_seconds,
            deadline=deadline,
            label=f"{self.provider}-grid",
        )
        outcome.fetch = fetched

        for cell, payload in fetched.results:
            values = normalize_payload(payload)
            observed_at = getattr(payload, "observed_at", None)
            for need in plan.assignments[cell.cell_id]:
                filled = {p: values.get(p) for p in need.missing if values.get(p) is not None}
                if not filled:
                    continue
                outcome.supplements[need.location.id] = filled
                outcome.observed_at[need.location.id] = observed_at

        for cell_id in failed_cells:
            outcome.failed_locations.update(need.location.id for need in plan.assignments[cell_id])

        if plan.dropped_cells or fetched.quota_denied:
            outcome.status = SUPPLEMENT_QUOTA_EXHAUSTED if not fetched.results else SUPPLEMENT_PARTIAL
        elif fetched.failed or fetched.skipped:
            outcome.status = SUPPLEMENT_FAILED if not fetched.results else SUPPLEMENT_PARTIAL
        return outcome
