"""Shared type definitions for the agent runtime.

Plans travel over the wire as JSON objects with camelCase keys; the
dataclasses below expose snake_case attributes and convert with
``from_dict``/``to_dict``.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


UID = str


class RiskLevel(str, Enum):
    """Ordered risk classification of a plan step."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def parse(cls, value: "RiskLevel | str") -> "RiskLevel":
        if isinstance(value, RiskLevel):
            return value
        return cls(str(value).strip().lower())

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)
RISK_LEVELS = tuple(level.value for level in _RISK_ORDER)


@dataclass(frozen=True)
class PlanStep:
    """Single tool invocation inside a plan."""

    id: UID
    tool: str
    args: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration: float = 0.0
    depends_on: Tuple[UID, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlanStep":
        return cls(
            id=str(data["id"]),
            tool=str(data["tool"]),
            args=copy.deepcopy(dict(data.get("args") or {})),
            description=str(data.get("description", "")),
            risk_level=RiskLevel.parse(data.get("riskLevel", RiskLevel.LOW)),
            estimated_duration=float(data.get("estimatedDuration", 0) or 0),
            depends_on=tuple(str(dep) for dep in data.get("dependsOn") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "tool": self.tool,
            "args": copy.deepcopy(dict(self.args)),
            "description": self.description,
            "riskLevel": self.risk_level.value,
            "estimatedDuration": self.estimated_duration,
        }
        if self.depends_on:
            payload["dependsOn"] = list(self.depends_on)
        return payload


@dataclass(frozen=True)
class Plan:
    """Validated, immutable set of steps produced by one planning cycle."""

    goal: str
    steps: Tuple[PlanStep, ...]
    estimated_total_duration: float = 0.0
    requires_approval: bool = False
    rollback_strategy: str = ""
    id: UID = field(default_factory=lambda: f"plan-{uuid.uuid4().hex[:12]}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Plan":
        kwargs: Dict[str, Any] = {}
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(
            goal=str(data["goal"]),
            steps=tuple(PlanStep.from_dict(step) for step in data.get("steps", [])),
            estimated_total_duration=float(data.get("estimatedTotalDuration", 0) or 0),
            requires_approval=bool(data.get("requiresApproval", False)),
            rollback_strategy=str(data.get("rollbackStrategy", "")),
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "steps": [step.to_dict() for step in self.steps],
            "estimatedTotalDuration": self.estimated_total_duration,
            "requiresApproval": self.requires_approval,
            "rollbackStrategy": self.rollback_strategy,
        }

    def step(self, step_id: UID) -> Optional[PlanStep]:
        for candidate in self.steps:
            if candidate.id == step_id:
                return candidate
        return None

    @property
    def max_risk(self) -> RiskLevel:
        if not self.steps:
            return RiskLevel.LOW
        return max(step.risk_level for step in self.steps)


@dataclass(frozen=True)
class ToolExecutionResult:
    """Outcome reported by the tool executor for one invocation."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0
    side_effects: Tuple[str, ...] = ()
    undoable: bool = False

    @classmethod
    def coerce(cls, value: Any) -> "ToolExecutionResult":
        """Accept results returned either as instances or wire mappings."""

        if isinstance(value, ToolExecutionResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                success=bool(value.get("success", False)),
                data=value.get("data"),
                error=value.get("error"),
                duration=float(value.get("duration", 0) or 0),
                side_effects=tuple(value.get("sideEffects", value.get("side_effects")) or ()),
                undoable=bool(value.get("undoable", False)),
            )
        raise TypeError(f"Unsupported tool result: {value!r}")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "duration": self.duration}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        if self.side_effects:
            payload["sideEffects"] = list(self.side_effects)
        if self.undoable:
            payload["undoable"] = True
        return payload


@dataclass(frozen=True)
class StepExecutionRecord:
    """Record of one attempted step.  Times are epoch milliseconds."""

    step_id: UID
    tool: str
    args: Mapping[str, Any]
    result: ToolExecutionResult
    start_time: float
    end_time: float
    retry_count: int = 0
    retries_exhausted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "tool": self.tool,
            "args": copy.deepcopy(dict(self.args)),
            "result": self.result.to_dict(),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "retryCount": self.retry_count,
            "retriesExhausted": self.retries_exhausted,
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Summary of one execution run."""

    success: bool
    completed_steps: Tuple[StepExecutionRecord, ...] = ()
    failed_steps: Tuple[StepExecutionRecord, ...] = ()
    total_duration: float = 0.0
    aborted: bool = False
    tool_calls_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "completedSteps": [record.to_dict() for record in self.completed_steps],
            "failedSteps": [record.to_dict() for record in self.failed_steps],
            "totalDuration": self.total_duration,
            "aborted": self.aborted,
            "toolCallsUsed": self.tool_calls_used,
        }


@dataclass(frozen=True)
class EditingContext:
    """Snapshot of the editing session that tools act upon."""

    project_id: Optional[str] = None
    sequence_id: Optional[str] = None
    track_ids: Tuple[str, ...] = ()
    asset_ids: Tuple[str, ...] = ()
    clip_ids: Tuple[str, ...] = ()
    selected_clip_ids: Tuple[str, ...] = ()
    playhead: float = 0.0
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "EditingContext":
        data = data or {}

        def _ids(*keys: str) -> Tuple[str, ...]:
            for key in keys:
                values = data.get(key)
                if values:
                    return tuple(
                        str(item.get("id")) if isinstance(item, Mapping) else str(item)
                        for item in values
                    )
            return ()

        known = {
            "projectId", "sequenceId", "trackIds", "tracks", "assetIds", "assets",
            "clipIds", "clips", "selectedClipIds", "playhead",
        }
        return cls(
            project_id=data.get("projectId"),
            sequence_id=data.get("sequenceId"),
            track_ids=_ids("trackIds", "tracks"),
            asset_ids=_ids("assetIds", "assets"),
            clip_ids=_ids("clipIds", "clips"),
            selected_clip_ids=_ids("selectedClipIds"),
            playhead=float(data.get("playhead", 0) or 0),
            extra={key: value for key, value in data.items() if key not in known},
        )

    def known_ids(self, key: str) -> Tuple[str, ...]:
        """Return the ids present in the session for an argument key."""

        if key in {"trackId", "trackIds"}:
            return self.track_ids
        if key in {"assetId", "assetIds"}:
            return self.asset_ids
        if key in {"clipId", "clipIds"}:
            return self.clip_ids
        if key in {"sequenceId", "sequenceIds"}:
            return (self.sequence_id,) if self.sequence_id else ()
        return ()


@dataclass(frozen=True)
class ValidationResult:
    """Verdict returned by argument and plan validation."""

    valid: bool
    errors: Tuple[str, ...] = ()
    plan: Optional[Plan] = None
    stage: Optional[str] = None


class ProgressKind(str, Enum):
    STARTED = "started"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ProgressEvent:
    """Side-channel notification emitted by the executor."""

    kind: ProgressKind
    total_steps: int
    completed: int = 0
    step_id: Optional[UID] = None
    tool: Optional[str] = None
    record: Optional[StepExecutionRecord] = None
    error: Optional[str] = None


__all__ = [
    "EditingContext",
    "ExecutionResult",
    "Plan",
    "PlanStep",
    "ProgressEvent",
    "ProgressKind",
    "RISK_LEVELS",
    "RiskLevel",
    "StepExecutionRecord",
    "ToolExecutionResult",
    "UID",
    "ValidationResult",
]
