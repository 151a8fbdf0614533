from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol, Sequence, runtime_checkable

from capacity_engine.scheduling.models import ScheduleScenario


logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 0.85


@dataclass(frozen=True)
class ConstraintViolation:
    constraint_id: str
    message: str
    affected_item_ids: tuple[str, ...] = ()
    affected_team_ids: tuple[str, ...] = ()
    affected_periods: tuple[int, ...] = ()
    severity: Literal["error"] = "error"


@dataclass(frozen=True)
class ConstraintWarning:
    constraint_id: str
    message: str
    metric: str
    threshold: float
    actual: float
    affected_team_ids: tuple[str, ...] = ()
    affected_periods: tuple[int, ...] = ()
    severity: Literal["warning"] = "warning"


@dataclass(frozen=True)
class UtilizationCell:
    team_id: str
    period_index: int
    allocated: float
    available: float
    utilization: float


@dataclass(frozen=True)
class ConstraintEvaluatorResult:
    violations: list[ConstraintViolation] = field(default_factory=list)
    warnings: list[ConstraintWarning] = field(default_factory=list)
    utilization_grid: list[UtilizationCell] | None = None


@dataclass(frozen=True)
class ValidationResult:
    feasible: bool
    violations: list[ConstraintViolation]
    warnings: list[ConstraintWarning]
    utilization_map: list[UtilizationCell]


@runtime_checkable
class ConstraintEvaluator(Protocol):
    """Anything with an id, a name and an ``evaluate`` method is a rule."""

    id: str
    name: str

    def evaluate(self, scenario: ScheduleScenario) -> ConstraintEvaluatorResult:
        ...


@dataclass(frozen=True)
class CapacityConstraint:
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD
    id: str = "capacity"
    name: str = "Capacity Constraint"

    def evaluate(self, scenario: ScheduleScenario) -> ConstraintEvaluatorResult:
        violations: list[ConstraintViolation] = []
        warnings: list[ConstraintWarning] = []
        grid: list[UtilizationCell] = []

        for team in scenario.teams:
            allocated = [0.0] * scenario.horizon
            for item in scenario.items:
                for alloc in item.team_allocations:
                    if alloc.team_id == team.id and 0 <= alloc.period_index < scenario.horizon:
                        allocated[alloc.period_index] += alloc.tokens

            for p in range(scenario.horizon):
                available = float(team.capacity_by_period[p]) if p < len(team.capacity_by_period) else 0.0
                used = allocated[p]
                if available > 0:
                    utilization = used / available
                else:
                    utilization = float("inf") if used > 0 else 0.0

                grid.append(
                    UtilizationCell(
                        team_id=team.id,
                        period_index=p,
                        allocated=used,
                        available=available,
                        utilization=utilization,
                    )
                )

                if used > available:
                    contributors = tuple(
                        item.id
                        for item in scenario.items
                        if any(
                            a.team_id == team.id and a.period_index == p and a.tokens > 0
                            for a in item.team_allocations
                        )
                    )
                    violations.append(
                        ConstraintViolation(
                            constraint_id=self.id,
                            message=(
                                f'Team "{team.name}" is over-allocated in period {p}: '
                                f"{used:g} tokens allocated but only {available:g} available"
                            ),
                            affected_item_ids=contributors,
                            affected_team_ids=(team.id,),
                            affected_periods=(p,),
                        )
                    )
                elif utilization >= self.warning_threshold:
                    warnings.append(
                        ConstraintWarning(
                            constraint_id=self.id,
                            message=f'Team "{team.name}" utilization in period {p} is {utilization * 100:.1f}%',
                            metric="utilization",
                            threshold=self.warning_threshold,
                            actual=utilization,
                            affected_team_ids=(team.id,),
                            affected_periods=(p,),
                        )
                    )

        return ConstraintEvaluatorResult(violations=violations, warnings=warnings, utilization_grid=grid)


@dataclass(frozen=True)
class DependencyConstraint:
    id: str = "dependency"
    name: str = "Dependency Constraint"

    def evaluate(self, scenario: ScheduleScenario) -> ConstraintEvaluatorResult:
        violations: list[ConstraintViolation] = []
        by_id = {item.id: item for item in scenario.items}

        for item in scenario.items:
            for dep_id in item.dependencies:
                dep = by_id.get(dep_id)
                if dep is None:
                    continue
                if item.start_period < dep.end_period:
                    violations.append(
                        ConstraintViolation(
                            constraint_id=self.id,
                            message=(
                                f'Item "{item.name}" starts at period {item.start_period} but dependency '
                                f'"{dep.name}" does not complete until period {dep.end_period}'
                            ),
                            affected_item_ids=(item.id, dep.id),
                            affected_periods=(item.start_period,),
                        )
                    )

        return ConstraintEvaluatorResult(violations=violations)


@dataclass(frozen=True)
class TemporalFitConstraint:
    id: str = "temporal-fit"
    name: str = "Temporal Fit Constraint"

    def evaluate(self, scenario: ScheduleScenario) -> ConstraintEvaluatorResult:
        violations: list[ConstraintViolation] = []
        for item in scenario.items:
            end = item.end_period
            if end > scenario.horizon:
                violations.append(
                    ConstraintViolation(
                        constraint_id=self.id,
                        message=(
                            f'Item "{item.name}" extends to period {end} which exceeds '
                            f"the planning horizon of {scenario.horizon}"
                        ),
                        affected_item_ids=(item.id,),
                        affected_periods=tuple(range(scenario.horizon, end)),
                    )
                )
        return ConstraintEvaluatorResult(violations=violations)


class ConstraintRegistry:
    """Ordered collection of evaluators; built-ins first unless disabled."""

    def __init__(self, defaults: bool = True, warning_threshold: float = DEFAULT_WARNING_THRESHOLD) -> None:
        self._evaluators: list[ConstraintEvaluator] = []
        if defaults:
            self._evaluators.extend(
                [
                    CapacityConstraint(warning_threshold=warning_threshold),
                    DependencyConstraint(),
                    TemporalFitConstraint(),
                ]
            )

    def register(self, evaluator: ConstraintEvaluator) -> None:
        self._evaluators.append(evaluator)

    def evaluators(self) -> list[ConstraintEvaluator]:
        return list(self._evaluators)


class ConstraintValidator:
    def __init__(self, registry: ConstraintRegistry | None = None) -> None:
        self._registry = registry if registry is not None else ConstraintRegistry()

    def validate(self, scenario: ScheduleScenario) -> ValidationResult:
        violations: list[ConstraintViolation] = []
        warnings: list[ConstraintWarning] = []
        utilization_map: list[UtilizationCell] = []

        for evaluator in self._registry.evaluators():
            result = evaluator.evaluate(scenario)
            violations.extend(result.violations)
            warnings.extend(result.warnings)
            grid = getattr(result, "utilization_grid", None)
            if grid is not None:
                utilization_map = list(grid)

        logger.debug(
            "Validated scenario %s: %d violations, %d warnings",
            scenario.id,
            len(violations),
            len(warnings),
        )
        return ValidationResult(
            feasible=not violations,
            violations=violations,
            warnings=warnings,
            utilization_map=utilization_map,
        )


def create_constraint_validator(warning_threshold: float = DEFAULT_WARNING_THRESHOLD) -> ConstraintValidator:
    return ConstraintValidator(ConstraintRegistry(warning_threshold=warning_threshold))


def validate_schedule(
    scenario: ScheduleScenario,
    extra_rules: Sequence[ConstraintEvaluator] = (),
) -> ValidationResult:
    registry = ConstraintRegistry()
    for rule in extra_rules:
        registry.register(rule)
    return ConstraintValidator(registry).validate(scenario)
