"""Session manifest schema and helpers.

The orchestrator writes a manifest for every session so downstream tooling
can replay and analyse what the agent planned and executed.  The schema is
expressed with Pydantic so manifests are self-describing, versioned, and easy
to validate in tests and from the CLI.
"""

from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Sequence

from pydantic import BaseModel, Field, field_validator

from .types import RiskLevel


MANIFEST_SCHEMA_VERSION = "1.0.0"


class ManifestPlanStep(BaseModel):
    id: str
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration: float = 0.0
    depends_on: Sequence[str] = Field(default_factory=list)


class ManifestPlan(BaseModel):
    """Serialised representation of :class:`~reelagent.src.core.types.Plan`."""

    id: str
    goal: str
    steps: Sequence[ManifestPlanStep]
    estimated_total_duration: float = 0.0
    requires_approval: bool = False
    rollback_strategy: str = ""


class ManifestToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    duration: float = 0.0
    side_effects: Sequence[str] = Field(default_factory=list)
    undoable: bool = False


class ManifestStepRecord(BaseModel):
    """Serialised representation of a step execution record."""

    step_id: str
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: ManifestToolResult
    start_time: float
    end_time: float
    retry_count: int = 0
    retries_exhausted: bool = False


class ManifestExecution(BaseModel):
    success: bool
    completed_steps: Sequence[ManifestStepRecord] = Field(default_factory=list)
    failed_steps: Sequence[ManifestStepRecord] = Field(default_factory=list)
    total_duration: float = 0.0
    aborted: bool = False
    tool_calls_used: int = 0


class ManifestGuidance(BaseModel):
    reason: str
    suggested_action: str
    failure_signature: str


class ManifestIteration(BaseModel):
    index: int
    plan: ManifestPlan | None = None
    result: ManifestExecution | None = None
    error: Dict[str, Any] | None = None
    guidance: ManifestGuidance | None = None


class ExecutionManifest(BaseModel):
    """Versioned manifest describing one editing session."""

    schema_version: str = Field(default=MANIFEST_SCHEMA_VERSION)
    run_id: str
    created_at: str
    intent: str
    success: bool
    iterations: Sequence[ManifestIteration] = Field(default_factory=list)
    error: Dict[str, Any] | None = None
    guidance: ManifestGuidance | None = None

    @field_validator("created_at")
    @classmethod
    def _validate_created_at(cls, value: str) -> str:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValueError("created_at must be ISO-8601 formatted") from exc
        if parsed.tzinfo is None:
            raise ValueError("created_at must include timezone information")
        return value

    @classmethod
    def build(
        cls,
        *,
        run_id: str,
        intent: str,
        success: bool,
        iterations: Iterable[Any],
        error: Mapping[str, Any] | None = None,
        guidance: Any = None,
    ) -> "ExecutionManifest":
        """Construct a manifest from runtime dataclasses."""

        def _normalise(item: Any) -> Any:
            if isinstance(item, BaseModel):
                return item.model_dump()
            if is_dataclass(item) and not isinstance(item, type):
                return asdict(item)
            return item

        return cls(
            run_id=run_id,
            created_at=datetime.now(timezone.utc).isoformat(),
            intent=intent,
            success=success,
            iterations=[_normalise(iteration) for iteration in iterations],
            error=dict(error) if error is not None else None,
            guidance=_normalise(guidance) if guidance is not None else None,
        )

    def write(self, path: Path) -> None:
        """Persist the manifest to disk in canonical JSON form."""

        path.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )

    @classmethod
    def write_schema(cls, path: Path) -> None:
        """Write the JSON schema for the manifest to disk."""

        path.write_text(json.dumps(load_manifest_schema(), indent=2), encoding="utf-8")


def load_manifest_schema() -> Dict[str, Any]:
    return ExecutionManifest.model_json_schema()


__all__ = [
    "MANIFEST_SCHEMA_VERSION",
    "ExecutionManifest",
    "ManifestExecution",
    "ManifestGuidance",
    "ManifestIteration",
    "ManifestPlan",
    "ManifestPlanStep",
    "ManifestStepRecord",
    "ManifestToolResult",
    "load_manifest_schema",
]
