from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from capacity_engine.config import EngineSettings


def test_defaults() -> None:
    s = EngineSettings()

    assert s.simulation.simulation_count == 1000
    assert s.simulation.confidence_levels == (50.0, 75.0, 85.0, 95.0)
    assert s.simulation.rng_seed is None
    assert s.cache.enabled
    assert s.cache.calculation_ttl_seconds == 300
    assert s.constraints.utilization_warning_threshold == 0.85
    assert s.data_quality.min_historical_completions == 10
    assert s.audit.resolved_path() is None


def test_load_partial_toml(tmp_path: Path) -> None:
    cfg = tmp_path / "engine.toml"
    db = tmp_path / "runs.db"
    cfg.write_text(
        "\n".join(
            [
                'log_level = "DEBUG"',
                "[simulation]",
                "simulation_count = 250",
                "rng_seed = 7",
                "[audit]",
                f'sqlite_path = "{db.as_posix()}"',
            ]
        ),
        encoding="utf-8",
    )

    s = EngineSettings.load(cfg)

    assert s.log_level == "DEBUG"
    assert s.simulation.simulation_count == 250
    assert s.simulation.rng_seed == 7
    assert s.simulation.confidence_levels == (50.0, 75.0, 85.0, 95.0)
    assert s.audit.resolved_path() == db.resolve()


def test_shipped_example_config_matches_defaults() -> None:
    example = Path(__file__).resolve().parents[1] / "capacity_engine" / "engine_config.example.toml"
    assert EngineSettings.load(example) == EngineSettings()


def test_invalid_values_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineSettings.model_validate({"simulation": {"confidence_levels": [50, 120]}})
    with pytest.raises(ValidationError):
        EngineSettings.model_validate({"simulation": {"simulation_count": 0}})
    with pytest.raises(ValidationError):
        EngineSettings.model_validate({"constraints": {"utilization_warning_threshold": 1.5}})
