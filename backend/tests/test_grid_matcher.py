from datetime import date, timedelta

from airhealth.data_fetcher import ProviderError
from airhealth.grid_matcher import (
    SUPPLEMENT_COLLECTED,
    SUPPLEMENT_FAILED,
    SUPPLEMENT_NOT_NEEDED,
    SUPPLEMENT_PARTIAL,
    SUPPLEMENT_QUOTA_EXHAUSTED,
    GridPoint,
    SupplementMatcher,
    SupplementNeed,
    assign_cell,
    build_grid,
    detect_gaps,
    plan_supplements,
)
from airhealth.models import Location, RawReading
from airhealth.payloads import GoogleConditions, GooglePollutant
from airhealth.quota_manager import QuotaManager

from conftest import utc

BBOX = (13.5, 100.3, 14.0, 100.9)


def _spread_locations(count):
    """Deterministic points covering the whole bounding box."""
    return [
        Location(
            id=i + 1,
            name=f"P{i + 1}",
            latitude=13.51 + (i % 10) * 0.05,
            longitude=100.31 + (i // 10) * 0.12,
        )
        for i in range(count)
    ]


def _ozone_conditions():
    return GoogleConditions(pollutants=[GooglePollutant(code="o3", value=45, units="PARTS_PER_BILLION")])


class _FakePointFetcher:
    def __init__(self, fail_at=None):
        self.calls = []
        self.fail_at = fail_at or set()

    async def __call__(self, lat, lon):
        self.calls.append((lat, lon))
        if (lat, lon) in self.fail_at:
            raise ProviderError("google", "server error 503")
        return _ozone_conditions()


def _matcher(cache, fetch_point, ceiling=950, cap=50):
    quota = QuotaManager(cache=cache, ceilings={"google": ceiling}, today=lambda: date(2026, 3, 1))
    return SupplementMatcher(
        provider="google",
        fetch_point=fetch_point,
        quota=quota,
        bbox=BBOX,
        grid_size=3,
        per_cycle_cap=cap,
        batch_size=5,
        batch_delay_seconds=0,
    )


def test_build_grid_cell_centers():
    grid = build_grid(BBOX, 3)

    assert len(grid) == 9
    assert [g.cell_id for g in grid] == list(range(9))
    assert (grid[0].lat, grid[0].lon) == (13.583, 100.4)
    assert (grid[4].lat, grid[4].lon) == (13.75, 100.6)
    assert (grid[8].row, grid[8].col) == (2, 2)


def test_assignment_is_deterministic():
    grid = build_grid(BBOX, 3)
    points = [(loc.latitude, loc.longitude) for loc in _spread_locations(50)]

    first = [assign_cell(lat, lon, grid).cell_id for lat, lon in points]
    second = [assign_cell(lat, lon, list(reversed(grid))).cell_id for lat, lon in points]

    assert first == second


def test_exact_tie_goes_to_lowest_cell_id():
    grid = [GridPoint(cell_id=1, row=0, col=1, lat=0.0, lon=2.0), GridPoint(cell_id=0, row=0, col=0, lat=0.0, lon=0.0)]

    assert assign_cell(0.0, 1.0, grid).cell_id == 0


def test_detect_gaps():
    now = utc(2026, 3, 1, 12)
    tracked = ["pm25", "pm10", "o3", "no2"]
    fresh = RawReading(location_id=1, provider="waqi", timestamp=now, pm25=35.5, no2=20.0)
    stale = RawReading(location_id=1, provider="waqi", timestamp=now - timedelta(hours=5), pm25=35.5)
    empty = RawReading(location_id=1, provider="waqi", timestamp=now)

    assert detect_gaps(None, now, timedelta(hours=1), tracked) == frozenset(tracked)
    assert detect_gaps(fresh, now, timedelta(hours=1), tracked) == {"pm10", "o3"}
    assert detect_gaps(stale, now, timedelta(hours=1), tracked) == frozenset(tracked)
    assert not empty.has_any_value()
    assert detect_gaps(empty, now, timedelta(hours=1), tracked) == frozenset(tracked)


def test_plan_deduplicates_and_caps_cells():
    grid = build_grid(BBOX, 3)
    needs = [SupplementNeed(location=loc, missing=frozenset({"o3"})) for loc in _spread_locations(50)]

    plan = plan_supplements(needs, grid, max_cells=50)
    capped = plan_supplements(needs, grid, max_cells=2)

    assert len(plan.cells) <= 9
    assert sum(len(v) for v in plan.assignments.values()) == 50
    assert len(capped.cells) == 2
    assert capped.dropped_cells == len(plan.cells) - 2
    sizes = [len(plan.assignments[c.cell_id]) for c in plan.cells]
    assert sizes == sorted(sizes, reverse=True)


async def test_fifty_locations_cost_at_most_nine_calls(cache):
    fetcher = _FakePointFetcher()
    matcher = _matcher(cache, fetcher)
    needs = [SupplementNeed(location=loc, missing=frozenset({"o3"})) for loc in _spread_locations(50)]

    outcome = await matcher.collect(needs)

    assert len(fetcher.calls) <= 9
    assert len(set(fetcher.calls)) == len(fetcher.calls)
    assert outcome.status == SUPPLEMENT_COLLECTED
    assert len(outcome.supplements) == 50
    assert all(values == {"o3": 90.0} for values in outcome.supplements.values())
    assert (await matcher.quota.current_usage("google")).used == len(fetcher.calls)


async def test_only_missing_pollutants_are_broadcast(cache):
    matcher = _matcher(cache, _FakePointFetcher())
    loc = Location(id=1, name="L", latitude=13.75, longitude=100.5)

    outcome = await matcher.collect([SupplementNeed(location=loc, missing=frozenset({"pm25", "o3"}))])

    # the fake only reports ozone
    assert outcome.supplements == {1: {"o3": 90.0}}


async def test_nothing_needed_spends_nothing(cache):
    fetcher = _FakePointFetcher()
    matcher = _matcher(cache, fetcher)
    loc = Location(id=1, name="L", latitude=13.75, longitude=100.5)

    outcome = await matcher.collect([SupplementNeed(location=loc, missing=frozenset())])

    assert outcome.status == SUPPLEMENT_NOT_NEEDED
    assert fetcher.calls == []


async def test_remaining_quota_bounds_calls(cache):
    fetcher = _FakePointFetcher()
    matcher = _matcher(cache, fetcher, ceiling=2)
    needs = [SupplementNeed(location=loc, missing=frozenset({"o3"})) for loc in _spread_locations(50)]

    outcome = await matcher.collect(needs)

    assert len(fetcher.calls) == 2
    assert outcome.calls_planned == 2
    assert outcome.cells_needed > 2
    assert outcome.status == SUPPLEMENT_PARTIAL
    assert 0 < len(outcome.supplements) < 50


async def test_exhausted_quota_makes_no_calls(cache):
    fetcher = _FakePointFetcher()
    matcher = _matcher(cache, fetcher, ceiling=0)
    loc = Location(id=1, name="L", latitude=13.75, longitude=100.5)

    outcome = await matcher.collect([SupplementNeed(location=loc, missing=frozenset({"o3"}))])

    assert fetcher.calls == []
    assert outcome.status == SUPPLEMENT_QUOTA_EXHAUSTED
    assert outcome.supplements == {}


async def test_failed_cell_leaves_its_locations_empty(cache):
    grid = build_grid(BBOX, 3)
    center = grid[4]
    fetcher = _FakePointFetcher(fail_at={(center.lat, center.lon)})
    matcher = _matcher(cache, fetcher)
    in_failed_cell = Location(id=1, name="A", latitude=13.75, longitude=100.6)
    elsewhere = Location(id=2, name="B", latitude=13.55, longitude=100.35)

    outcome = await matcher.collect([
        SupplementNeed(location=in_failed_cell, missing=frozenset({"o3"})),
        SupplementNeed(location=elsewhere, missing=frozenset({"o3"})),
    ])

    assert outcome.status == SUPPLEMENT_PARTIAL
    assert set(outcome.supplements) == {2}
    assert outcome.failed_locations == {1}


async def test_all_cells_failing(cache):
    grid = build_grid(BBOX, 3)
    fetcher = _FakePointFetcher(fail_at={(g.lat, g.lon) for g in grid})
    matcher = _matcher(cache, fetcher)
    loc = Location(id=1, name="L", latitude=13.75, longitude=100.5)

    outcome = await matcher.collect([SupplementNeed(location=loc, missing=frozenset({"o3"}))])

    assert outcome.status == SUPPLEMENT_FAILED
    assert outcome.failed_locations == {1}
