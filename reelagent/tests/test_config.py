from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from reelagent.src.core.config import EngineConfig, ExecutorConfig, PlannerConfig
from reelagent.src.core.errors import ConfigurationError
from reelagent.src.core.types import RiskLevel


def test_defaults() -> None:
    config = EngineConfig()

    assert config.executor.step_timeout_ms == 30_000
    assert config.executor.max_retries == 0
    assert config.executor.stop_on_error is True
    assert config.executor.parallel_execution is False
    assert config.executor.max_tool_calls is None
    assert config.planner.max_steps == 20
    assert config.planner.approval_required_risks == (RiskLevel.HIGH, RiskLevel.CRITICAL)
    assert config.orchestrator.max_iterations == 3


def test_from_mapping_parses_nested_sections() -> None:
    config = EngineConfig.from_mapping(
        {
            "executor": {"max_retries": 2, "max_tool_calls": 10, "parallel_execution": True},
            "planner": {"approval_required_risks": "critical"},
        }
    )

    assert config.executor.max_retries == 2
    assert config.executor.max_tool_calls == 10
    assert config.planner.approval_required_risks == (RiskLevel.CRITICAL,)


def test_invalid_values_raise_configuration_error() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        EngineConfig.from_mapping({"executor": {"max_retries": -1}})

    assert excinfo.value.invalid_field == "executor.max_retries"
    assert excinfo.value.message.startswith("Invalid configuration: executor.max_retries")

    with pytest.raises(ConfigurationError):
        EngineConfig.from_mapping({"executor": {"unknown_knob": True}})


def test_configs_are_frozen() -> None:
    config = ExecutorConfig()

    with pytest.raises(ValidationError):
        config.max_retries = 5  # type: ignore[misc]
    with pytest.raises(ValidationError):
        PlannerConfig(approval_required_risks=["apocalyptic"])


def test_load_from_json_file(tmp_path: Path) -> None:
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({"orchestrator": {"max_iterations": 5}}), encoding="utf-8")

    assert EngineConfig.load(path).orchestrator.max_iterations == 5

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        EngineConfig.load(path)
    with pytest.raises(ConfigurationError):
        EngineConfig.load(tmp_path / "missing.json")
