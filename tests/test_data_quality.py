from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from capacity_engine.adapters.memory import InMemoryPlanningStore, InMemoryStatusLog
from capacity_engine.config import EngineSettings
from capacity_engine.forecasting.service import ForecastingService
from capacity_engine.planning.gap_calculator import GapCalculator
from capacity_engine.planning.models import (
    Allocation,
    Initiative,
    InitiativeStatus,
    PeriodDistribution,
    Scenario,
    ScopeItem,
    StatusTransition,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def _item(sid: str, initiative_id: str, estimated: bool, distributed: bool) -> ScopeItem:
    return ScopeItem(
        id=sid,
        initiative_id=initiative_id,
        name=sid,
        skill_demand={"backend": 10.0},
        period_distributions=(PeriodDistribution("q1", 1.0),) if distributed else (),
        estimate_p50=10.0 if estimated else None,
        estimate_p90=20.0 if estimated else None,
    )


def _service(
    items_a: tuple[ScopeItem, ...],
    completions: int,
    items_b: tuple[ScopeItem, ...] = (),
    settings: EngineSettings | None = None,
) -> ForecastingService:
    store = InMemoryPlanningStore()
    store.add_scenario(Scenario(id="sc1", name="Baseline", period_ids=()))
    store.add_initiative(Initiative(id="a", title="A", status=InitiativeStatus.IN_EXECUTION, scope_items=items_a))
    store.add_initiative(Initiative(id="b", title="B", status=InitiativeStatus.SCOPING, scope_items=items_b))
    log = InMemoryStatusLog(
        transitions=[
            StatusTransition(f"done{i}", InitiativeStatus.COMPLETE, datetime(2025, 1, 1 + i, tzinfo=timezone.utc))
            for i in range(completions)
        ]
    )
    kwargs = {"settings": settings} if settings is not None else {}
    return ForecastingService(
        store=store,
        status_log=log,
        calculator=GapCalculator(store=store),
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.parametrize(
    ("estimated", "distributed", "completions", "score", "confidence"),
    [
        ((True, False), (True, False), 10, 65, "moderate"),
        ((True, False), (True, True), 10, 80, "good"),
        ((True, False), (False, False), 4, 32, "moderate"),
        ((True, False), (False, False), 3, 29, "low"),
    ],
)
def test_score_and_confidence(
    estimated: tuple[bool, bool],
    distributed: tuple[bool, bool],
    completions: int,
    score: int,
    confidence: str,
) -> None:
    items = (
        _item("s1", "a", estimated[0], distributed[0]),
        _item("s2", "a", estimated[1], distributed[1]),
    )

    result = _service(items, completions).assess_data_quality(initiative_ids=["a"])

    assert result.score == score
    assert result.confidence == confidence


def test_details_and_issues() -> None:
    items = (_item("s1", "a", True, False), _item("s2", "a", False, False))

    result = _service(items, 3).assess_data_quality(initiative_ids=["a"])

    d = result.details
    assert (d.total_scope_items, d.scope_items_with_estimates, d.scope_items_with_distributions) == (2, 1, 0)
    assert d.estimate_coverage == 0.5
    assert d.distribution_coverage == 0.0
    assert d.historical_completions == 3
    assert not d.mode_b_viable
    assert result.issues == (
        "1 of 2 scope items missing P50/P90 estimates",
        "2 of 2 scope items missing period distributions",
        "Only 3 historical completions (need 10 for empirical forecasting)",
    )


def test_no_scope_items() -> None:
    result = _service((), 10).assess_data_quality(initiative_ids=["a"])

    assert result.details.total_scope_items == 0
    assert result.details.mode_b_viable
    assert result.score == 30
    assert result.issues == ("No scope items found",)


def test_scope_item_source_selection() -> None:
    service = _service((_item("s1", "a", True, True),), 0, items_b=(_item("s2", "b", False, False),))
    store = service.store
    assert isinstance(store, InMemoryPlanningStore)

    # no allocations in the scenario: fall back to every scope item
    assert service.assess_data_quality(scenario_id="sc1").details.total_scope_items == 2
    assert service.assess_data_quality().details.total_scope_items == 2
    # unknown scenario is not an error
    assert service.assess_data_quality(scenario_id="ghost").details.total_scope_items == 2

    store.add_allocation(
        Allocation(
            id="x1",
            scenario_id="sc1",
            employee_id="alice",
            percentage=50.0,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 3, 31),
            initiative_id="a",
        )
    )
    by_scenario = service.assess_data_quality(scenario_id="sc1")
    assert by_scenario.details.total_scope_items == 1
    assert by_scenario.details.scope_items_with_estimates == 1

    # explicit initiative ids win over the scenario
    explicit = service.assess_data_quality(scenario_id="sc1", initiative_ids=["b"])
    assert explicit.details.scope_items_with_estimates == 0


def test_completions_counted_per_initiative() -> None:
    service = _service((_item("s1", "a", True, True),), 0)
    log = service.status_log
    assert isinstance(log, InMemoryStatusLog)
    for day in (1, 2, 3):
        log.log_transition(StatusTransition("same", InitiativeStatus.COMPLETE, datetime(2025, 2, day, tzinfo=timezone.utc)))

    assert service.assess_data_quality().details.historical_completions == 1


def test_thresholds_come_from_settings() -> None:
    settings = EngineSettings.model_validate(
        {"data_quality": {"min_historical_completions": 2, "good_threshold": 60.0}}
    )
    service = _service((_item("s1", "a", True, False),), 2, settings=settings)

    result = service.assess_data_quality(initiative_ids=["a"])

    assert result.details.mode_b_viable
    assert result.score == 70
    assert result.confidence == "good"
    assert service.confidence_for(59.9) == "moderate"
