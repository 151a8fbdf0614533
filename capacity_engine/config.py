from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path)).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    """Read TOML into a dict, supporting Python 3.10+.

    Uses tomllib when available, falls back to tomli.
    """
    data = path.read_bytes()
    try:
        import tomllib  # type: ignore[attr-defined]

        return tomllib.loads(data.decode("utf-8"))
    except ModuleNotFoundError:
        import tomli  # type: ignore[import-not-found]

        return tomli.loads(data.decode("utf-8"))


class SimulationSettings(BaseModel):
    simulation_count: int = Field(default=1000, ge=1)
    confidence_levels: tuple[float, ...] = Field(default=(50.0, 75.0, 85.0, 95.0))
    rng_seed: int | None = Field(default=None, description="Fix for reproducible runs.")

    @field_validator("confidence_levels")
    @classmethod
    def _levels_in_range(cls, v: tuple[float, ...]) -> tuple[float, ...]:
        for level in v:
            if not 0.0 <= level <= 100.0:
                raise ValueError("confidence levels must be within [0, 100]")
        return v


class CacheSettings(BaseModel):
    enabled: bool = Field(default=True)
    calculation_ttl_seconds: int = Field(default=300, ge=1)


class ConstraintSettings(BaseModel):
    utilization_warning_threshold: float = Field(default=0.85, gt=0.0, le=1.0)


class DataQualitySettings(BaseModel):
    min_historical_completions: int = Field(
        default=10,
        ge=1,
        description="Below this, empirical forecasts are flagged low-confidence.",
    )
    estimate_weight: float = Field(default=40.0)
    distribution_weight: float = Field(default=30.0)
    history_weight: float = Field(default=30.0)
    good_threshold: float = Field(default=80.0)
    moderate_threshold: float = Field(default=30.0)


class AuditSettings(BaseModel):
    sqlite_path: str = Field(default="", description="Empty keeps audit records in memory.")

    def resolved_path(self) -> Path | None:
        return _expand(self.sqlite_path) if self.sqlite_path else None


class EngineSettings(BaseModel):
    simulation: SimulationSettings = Field(default_factory=SimulationSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    constraints: ConstraintSettings = Field(default_factory=ConstraintSettings)
    data_quality: DataQualitySettings = Field(default_factory=DataQualitySettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    log_level: str = Field(default="INFO")
    log_dir: str = Field(default="", description="Also write engine.log here when set.")

    @classmethod
    def load(cls, path: Path) -> "EngineSettings":
        raw = _read_toml(path)
        return cls.model_validate(raw)
