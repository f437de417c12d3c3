"""Engine configuration models.

Configuration is validated with Pydantic so malformed settings fail before a
session starts.  Validation problems surface as
:class:`~reelagent.src.core.errors.ConfigurationError`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError
from .types import RiskLevel


class ExecutorConfig(BaseModel):
    """Knobs for :class:`~reelagent.src.core.scheduler.Executor`."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    step_timeout_ms: int = Field(default=30_000, gt=0)
    max_retries: int = Field(default=0, ge=0)
    stop_on_error: bool = True
    parallel_execution: bool = False
    max_tool_calls: int | None = Field(default=None, ge=0)
    doom_loop_threshold: int = Field(default=3, ge=2)


class PlannerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout_ms: int = Field(default=60_000, gt=0)
    max_steps: int = Field(default=20, gt=0)
    approval_required_risks: Tuple[RiskLevel, ...] = (RiskLevel.HIGH, RiskLevel.CRITICAL)
    approval_timeout_ms: int = Field(default=300_000, gt=0)

    @field_validator("approval_required_risks", mode="before")
    @classmethod
    def _parse_risks(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return tuple(RiskLevel.parse(item) for item in value)


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_iterations: int = Field(default=3, gt=0)


class EngineConfig(BaseModel):
    """Top-level configuration bundle."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    planner: PlannerConfig = Field(default_factory=PlannerConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ())) or None
            message = first.get("msg", str(exc))
            raise ConfigurationError(f"Invalid configuration: {location or '<root>'}: {message}", location) from exc

    @classmethod
    def load(cls, path: Path) -> "EngineConfig":
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Failed to read configuration {path}: {exc}") from exc
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Configuration in {path} must be an object")
        return cls.from_mapping(data)


__all__ = ["EngineConfig", "ExecutorConfig", "OrchestratorConfig", "PlannerConfig"]
