from __future__ import annotations

import math

import pytest

from capacity_engine.common.errors import InvalidParameterError, PeriodOutOfRangeError, UnknownTeamError
from capacity_engine.scheduling.capacity_grid import CapacityGrid
from capacity_engine.scheduling.models import GridWorkItem, Team, TeamDemand


def _grid() -> CapacityGrid:
    teams = [
        Team(id="backend", name="Backend", capacity_by_period=(10.0, 10.0, 10.0, 10.0)),
        Team(id="frontend", name="Frontend", capacity_by_period=(5.0, 5.0)),
    ]
    return CapacityGrid(teams, horizon=4)


def test_allocate_is_copy_on_write() -> None:
    grid = _grid()
    after = grid.allocate("backend", 1, 4.0)

    assert grid.get_slot("backend", 1).allocated == 0.0
    assert after.get_slot("backend", 1).allocated == 4.0
    assert after.get_slot("backend", 1).remaining == 6.0
    assert after.get_utilization("backend", 1) == pytest.approx(0.4)


def test_short_capacity_is_padded_with_zero() -> None:
    grid = _grid()

    assert grid.get_slot("frontend", 3).total == 0.0
    assert grid.get_utilization("frontend", 3) == 0.0
    assert math.isinf(grid.allocate("frontend", 3, 1.0).get_utilization("frontend", 3))


def test_deallocate_floors_at_zero() -> None:
    grid = _grid().allocate("backend", 0, 3.0).deallocate("backend", 0, 5.0)
    assert grid.get_slot("backend", 0).allocated == 0.0


def test_allocate_then_deallocate_restores_fractional_amount() -> None:
    grid = _grid().allocate("backend", 2, 0.1).allocate("backend", 2, 0.2).deallocate("backend", 2, 0.2)

    assert grid.get_slot("backend", 2).allocated == pytest.approx(0.1)
    assert grid.get_slot("backend", 2).remaining == pytest.approx(9.9)


def test_negative_allocation_rejected() -> None:
    grid = _grid()

    with pytest.raises(InvalidParameterError, match="must be >= 0"):
        grid.allocate("backend", 0, -1.0)
    assert grid.get_slot("backend", 0).allocated == 0.0


def test_misuse_raises() -> None:
    grid = _grid()

    with pytest.raises(UnknownTeamError):
        grid.allocate("design", 0, 1.0)
    with pytest.raises(PeriodOutOfRangeError):
        grid.allocate("backend", 4, 1.0)
    with pytest.raises(PeriodOutOfRangeError):
        grid.get_slot("backend", -1)
    with pytest.raises(KeyError):
        grid.schedule_item(GridWorkItem(id="x", name="x", duration=1, team_demands=(TeamDemand("design", 1.0),)), 0)


def test_schedule_item_clips_to_horizon() -> None:
    item = GridWorkItem(id="a", name="A", duration=3, team_demands=(TeamDemand("backend", 2.0),))
    grid = _grid().schedule_item(item, 2)

    assert grid.get_slot("backend", 2).allocated == 2.0
    assert grid.get_slot("backend", 3).allocated == 2.0
    assert grid.get_slot("backend", 1).allocated == 0.0


def test_find_feasible_window_skips_congested_periods() -> None:
    first = GridWorkItem(id="a", name="A", duration=2, team_demands=(TeamDemand("backend", 6.0),))
    second = GridWorkItem(id="b", name="B", duration=2, team_demands=(TeamDemand("backend", 7.0),))

    grid = _grid().schedule_item(first, 0)

    assert grid.find_feasible_window(second) == 2
    assert grid.find_feasible_window(second, earliest_start=3) is None
    assert _grid().find_feasible_window(second) == 0


def test_find_feasible_window_none_when_longer_than_horizon() -> None:
    item = GridWorkItem(id="a", name="A", duration=5, team_demands=(TeamDemand("backend", 1.0),))
    assert _grid().find_feasible_window(item) is None


def test_contention_sorted_by_utilization() -> None:
    grid = _grid().allocate("backend", 0, 2.0).allocate("frontend", 0, 4.0)

    contention = grid.get_contention(0)

    assert [c.team_id for c in contention] == ["frontend", "backend"]
    assert contention[0].utilization == pytest.approx(0.8)
    assert grid.team_ids == ("backend", "frontend")
    assert grid.horizon == 4
