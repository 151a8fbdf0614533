from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from capacity_engine.adapters.json_snapshot import build_snapshot, load_schedule, load_snapshot
from capacity_engine.planning.models import EmploymentType, InitiativeStatus, PlanningMode

SNAPSHOT = {
    "periods": [
        {"id": "q1", "label": "2025-Q1", "start_date": "2025-01-01", "end_date": "2025-03-31"},
        {"id": "m4", "label": "Apr", "start_date": "2025-04-01", "end_date": "2025-04-30", "type": "MONTH"},
    ],
    "scenarios": [
        {
            "id": "sc1",
            "name": "Baseline",
            "period_ids": ["q1", "m4"],
            "planning_mode": "TOKEN",
            "assumptions": {"buffer_percentage": 10},
            "priority_rankings": [{"initiative_id": "i1", "rank": 1}],
        }
    ],
    "initiatives": [
        {
            "id": "i1",
            "title": "Checkout",
            "status": "IN_EXECUTION",
            "scope_items": [
                {
                    "id": "s1",
                    "name": "API",
                    "skill_demand": {"backend": 120},
                    "period_distributions": [{"period_id": "q1", "distribution": 1}],
                    "estimate_p50": 100,
                }
            ],
        }
    ],
    "employees": [
        {
            "id": "alice",
            "name": "Alice",
            "employment_type": "CONTRACTOR",
            "skills": [{"name": "backend", "proficiency": 4}],
            "capacity_calendar": [{"period_id": "q1", "hours_available": 300}],
        }
    ],
    "allocations": [
        {
            "id": "a1",
            "scenario_id": "sc1",
            "employee_id": "alice",
            "initiative_id": "i1",
            "percentage": 50,
            "start_date": "2025-03-01",
            "end_date": "2025-04-15",
        },
        {
            "id": "a2",
            "scenario_id": "sc1",
            "employee_id": "alice",
            "start_date": "2025-01-01",
            "end_date": "2025-03-31",
            "periods": [{"period_id": "q1", "overlap_ratio": 1.5}],
        },
    ],
    "skill_pools": [{"id": "pool-be", "name": "Backend", "is_active": False}],
    "token_calibrations": [{"skill_pool_id": "pool-be", "token_per_hour": 2.5, "effective_date": "2025-01-01"}],
    "status_log": [
        {"initiative_id": "i1", "to_status": "RESOURCING", "transitioned_at": "2025-01-05T00:00:00Z"},
        {
            "initiative_id": "i1",
            "from_status": "RESOURCING",
            "to_status": "IN_EXECUTION",
            "transitioned_at": "2025-02-01T12:00:00",
        },
    ],
}


def test_build_snapshot_parses_every_section() -> None:
    store, log = build_snapshot(SNAPSHOT)

    scenario = store.get_scenario("sc1")
    assert scenario is not None
    assert scenario.planning_mode == PlanningMode.TOKEN
    assert scenario.assumptions.buffer_percentage == 10.0
    assert store.periods["m4"].days == 30

    [item] = store.get_scope_items(["i1"])
    assert store.initiatives["i1"].status == InitiativeStatus.IN_EXECUTION
    assert item.estimate_p50 == 100.0
    assert item.estimate_p90 is None
    assert item.distribution_for("q1") == 1.0

    alice = store.employees["alice"]
    assert alice.employment_type == EmploymentType.CONTRACTOR
    assert alice.capacity_calendar[0].hours_available == 300.0

    assert store.skill_pools[0].is_active is False
    assert store.calibrations[0].effective_date == date(2025, 1, 1)

    [first, second] = log.get_transitions(initiative_ids=["i1"])
    assert first.transitioned_at == datetime(2025, 1, 5, tzinfo=timezone.utc)
    assert second.from_status == InitiativeStatus.RESOURCING
    assert second.transitioned_at.tzinfo is not None


def test_allocation_overlap_computed_from_scenario_periods() -> None:
    store, _ = build_snapshot(SNAPSHOT)
    a1, a2 = store.get_allocations("sc1")

    assert a1.initiative_id == "i1"
    # March 1..31 of a 90-day quarter, and April 1..15 of a 30-day month
    assert a1.overlap_for("q1") == pytest.approx(31 / 90)
    assert a1.overlap_for("m4") == pytest.approx(0.5)
    # explicit periods are kept but clamped
    assert a2.initiative_id is None
    assert a2.overlap_for("q1") == 1.0
    assert a2.overlap_for("m4") == 0.0


def test_allocation_for_unknown_scenario_gets_no_periods() -> None:
    store, _ = build_snapshot(
        {
            "allocations": [
                {"id": "x", "scenario_id": "ghost", "employee_id": "e", "start_date": "2025-01-01", "end_date": "2025-02-01"}
            ]
        }
    )
    [a] = store.get_allocations("ghost")
    assert a.periods == ()
    assert a.percentage == 100.0


def test_load_snapshot_and_schedule_from_disk(tmp_path: Path) -> None:
    snap = tmp_path / "snapshot.json"
    snap.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    sched = tmp_path / "schedule.json"
    sched.write_text(
        json.dumps(
            {
                "id": "plan",
                "horizon": 3,
                "teams": [{"id": "core", "capacity_by_period": [10, 10, 10]}],
                "items": [
                    {"id": "a", "start_period": 0, "duration": 2},
                    {
                        "id": "b",
                        "name": "Billing",
                        "start_period": 2,
                        "duration": 1,
                        "dependencies": ["a"],
                        "team_allocations": [{"team_id": "core", "period_index": 2, "tokens": 4}],
                    },
                ],
            }
        ),
        encoding="utf-8",
    )

    store, _ = load_snapshot(snap)
    schedule = load_schedule(sched)

    assert "sc1" in store.scenarios
    assert schedule.name == "plan"
    assert schedule.teams[0].name == "core"
    assert schedule.teams[0].capacity_by_period == (10.0, 10.0, 10.0)
    a, b = schedule.items
    assert a.end_period == 2
    assert b.dependencies == ("a",)
    assert b.team_allocations[0].tokens == 4.0
