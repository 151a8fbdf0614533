from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import numpy as np
import pytest

from capacity_engine.adapters.memory import InMemoryAuditSink, InMemoryPlanningStore, InMemoryStatusLog
from capacity_engine.common.errors import InvalidParameterError, NotFoundError
from capacity_engine.forecasting.models import ForecastMode
from capacity_engine.forecasting.scope_based import PeriodCapacity, walk_periods
from capacity_engine.forecasting.service import ForecastingService
from capacity_engine.integration.event_bus import InMemoryEventBus
from capacity_engine.integration.events import ForecastRunCompleted
from capacity_engine.planning.gap_calculator import GapCalculator
from capacity_engine.planning.models import (
    Allocation,
    AllocationPeriod,
    CapacityCalendarEntry,
    Employee,
    EmployeeSkill,
    Initiative,
    InitiativeStatus,
    Period,
    PeriodDistribution,
    Scenario,
    ScopeItem,
)
from capacity_engine.planning.ports import ForecastRunRecord

NOW = datetime(2025, 1, 15, tzinfo=timezone.utc)


def _scope_item(
    sid: str,
    p50: float | None,
    p90: float | None,
    demand: dict[str, float] | None = None,
    initiative_id: str = "i1",
) -> ScopeItem:
    return ScopeItem(
        id=sid,
        initiative_id=initiative_id,
        name=sid,
        skill_demand=demand if demand is not None else {"backend": 500.0},
        period_distributions=(PeriodDistribution("q1", 1.0),),
        estimate_p50=p50,
        estimate_p90=p90,
    )


def _store(*scope_items: ScopeItem, period_ids: tuple[str, ...] = ("q1", "q2")) -> InMemoryPlanningStore:
    store = InMemoryPlanningStore()
    store.add_period(Period("q1", "2025-Q1", date(2025, 1, 1), date(2025, 3, 31)))
    store.add_period(Period("q2", "2025-Q2", date(2025, 4, 1), date(2025, 6, 30)))
    store.add_scenario(Scenario(id="sc1", name="Baseline", period_ids=period_ids))
    store.add_initiative(Initiative(id="i1", title="Checkout", status=InitiativeStatus.IN_EXECUTION, scope_items=scope_items))
    store.add_employee(
        Employee(
            id="alice",
            name="Alice",
            skills=(EmployeeSkill("backend", 5),),
            capacity_calendar=(CapacityCalendarEntry("q1", 200.0), CapacityCalendarEntry("q2", 400.0)),
        )
    )
    store.add_allocation(
        Allocation(
            id="a1",
            scenario_id="sc1",
            employee_id="alice",
            percentage=100.0,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 6, 30),
            initiative_id="i1",
            periods=(AllocationPeriod("q1", 1.0), AllocationPeriod("q2", 1.0)),
        )
    )
    return store


def _service(store: InMemoryPlanningStore, **kwargs: Any) -> ForecastingService:
    return ForecastingService(
        store=store,
        status_log=InMemoryStatusLog(),
        calculator=GapCalculator(store=store),
        clock=lambda: NOW,
        rng=np.random.default_rng(5),
        **kwargs,
    )


def test_deterministic_effort_spills_into_second_period() -> None:
    audit = InMemoryAuditSink()
    service = _service(_store(_scope_item("s1", 500.0, 500.0)), audit_sink=audit)

    result = service.run_scope_based_forecast("sc1", ["i1"], simulation_count=200)

    [f] = result.initiative_forecasts
    assert [p.cumulative_probability for p in f.completion_cdf] == [0.0, 1.0]
    assert [p.period_label for p in f.completion_cdf] == ["2025-Q1", "2025-Q2"]
    assert [p.value for p in f.percentiles] == [1.0, 1.0, 1.0, 1.0]
    assert [p.level for p in f.percentiles] == [50.0, 75.0, 85.0, 95.0]
    assert f.has_estimates
    assert f.scope_item_count == 1
    assert result.warnings == ()
    assert result.mode == ForecastMode.SCOPE_BASED

    record = audit.records[result.run_id]
    assert record.mode == "SCOPE_BASED"
    assert record.simulation_count == 200
    assert record.input_snapshot == {"initiative_count": 1, "scope_item_count": 1, "period_count": 2}
    assert record.data_quality == {
        "score": 70,
        "confidence": service.confidence_for(70),
        "issues": ["Only 0 historical completions (need 10 for empirical forecasting)"],
    }


def test_missing_p90_sampled_at_p50() -> None:
    service = _service(_store(_scope_item("s1", 150.0, None)))

    result = service.run_scope_based_forecast("sc1", ["i1"], simulation_count=50, confidence_levels=[50])

    [f] = result.initiative_forecasts
    assert [p.cumulative_probability for p in f.completion_cdf] == [1.0, 1.0]
    assert not f.has_estimates
    assert result.warnings == ('Initiative "Checkout": 1 of 1 scope items missing P50/P90 estimates',)


def test_never_completing_initiative_lands_past_horizon() -> None:
    service = _service(_store(_scope_item("s1", 5000.0, 5000.0)))

    [f] = service.run_scope_based_forecast("sc1", ["i1"], simulation_count=20).initiative_forecasts

    assert [p.cumulative_probability for p in f.completion_cdf] == [0.0, 0.0]
    assert f.percentiles[0].value == 2.0


def test_items_without_usable_demand_are_skipped() -> None:
    service = _service(
        _store(
            _scope_item("no-p50", None, 100.0),
            _scope_item("zero-p50", 0.0, 10.0),
            _scope_item("no-skills", 100.0, 200.0, demand={}),
        )
    )

    [f] = service.run_scope_based_forecast("sc1", ["i1"], simulation_count=10).initiative_forecasts

    assert f.completion_cdf[0].cumulative_probability == 1.0
    assert f.has_estimates


def test_warnings_for_unknown_and_empty_inputs() -> None:
    store = _store(_scope_item("s1", 10.0, 20.0), period_ids=())
    store.add_initiative(Initiative(id="i2", title="Search", status=InitiativeStatus.RESOURCING))
    service = _service(store)

    result = service.run_scope_based_forecast("sc1", ["i1", "i2", "ghost"], simulation_count=5)

    assert result.warnings == (
        "Initiative ghost not found",
        "No periods found in scenario",
        'Initiative "Search": no scope items defined',
    )
    assert all(f.completion_cdf == () for f in result.initiative_forecasts)


def test_invalid_inputs_fail_fast() -> None:
    service = _service(_store(_scope_item("s1", 10.0, 20.0)))

    with pytest.raises(InvalidParameterError):
        service.run_scope_based_forecast("sc1", ["i1"], simulation_count=0)
    with pytest.raises(NotFoundError):
        service.run_scope_based_forecast("missing", ["i1"])


class _FailingAuditSink:
    def record_forecast_run(self, record: ForecastRunRecord) -> str:
        raise OSError("disk full")


def test_audit_failure_does_not_abort_forecast() -> None:
    bus = InMemoryEventBus()
    events: list[ForecastRunCompleted] = []
    bus.subscribe(ForecastRunCompleted, events.append)
    service = _service(_store(_scope_item("s1", 500.0, 500.0)), audit_sink=_FailingAuditSink(), bus=bus)

    result = service.run_scope_based_forecast("sc1", ["i1"], simulation_count=10)

    assert result.run_id is None
    assert len(result.initiative_forecasts) == 1
    assert [(e.mode, e.scenario_id) for e in events] == [("SCOPE_BASED", "sc1")]


def test_walk_periods_carries_unmet_demand() -> None:
    periods = [
        PeriodCapacity("p1", "P1", {"be": 100.0, "fe": 50.0}),
        PeriodCapacity("p2", "P2", {"be": 100.0}),
        PeriodCapacity("p3", "P3", {"fe": 100.0}),
    ]

    assert walk_periods({}, periods) == 0
    assert walk_periods({"p1": {"be": 150.0}}, periods) == 1
    assert walk_periods({"p1": {"be": 50.0, "fe": 80.0}}, periods) == 2
    assert walk_periods({"p1": {"be": 100.0005}}, periods) == 0
    assert walk_periods({"p1": {"ux": 1.0}}, periods) == 3
