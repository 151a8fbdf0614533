from __future__ import annotations


class CapacityEngineError(Exception):
    """Base type for all errors raised by the engine."""


class InvalidParameterError(CapacityEngineError, ValueError):
    """Caller supplied a parameter the engine cannot work with."""


class NotFoundError(CapacityEngineError, LookupError):
    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        if resource_id is not None:
            message = f"{resource} with id '{resource_id}' not found"
        else:
            message = f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class WorkflowError(CapacityEngineError):
    """Operation is not available in the scenario's current mode or state."""

    def __init__(self, message: str, current_state: str | None = None) -> None:
        super().__init__(message)
        self.current_state = current_state


class SchedulingError(CapacityEngineError):
    pass


class UnknownTeamError(SchedulingError, KeyError):
    def __init__(self, team_id: str) -> None:
        super().__init__(f"Unknown team: {team_id}")
        self.team_id = team_id

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message.
        return str(self.args[0])


class PeriodOutOfRangeError(SchedulingError, IndexError):
    def __init__(self, period: int, horizon: int) -> None:
        super().__init__(f"Period {period} out of range [0, {horizon})")
        self.period = period
        self.horizon = horizon
