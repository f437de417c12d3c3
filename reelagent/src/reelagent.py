"""High level entrypoints that compose the agent subsystems."""
from __future__ import annotations

from reelagent.src.core.config import EngineConfig
from reelagent.src.core.errors import AgentError
from reelagent.src.core.orchestrator import Orchestrator
from reelagent.src.core.planner import Planner
from reelagent.src.core.scheduler import Executor
from reelagent.src.core.tools import ToolRegistry, ToolSpec
from reelagent.src.core.types import ExecutionResult, Plan, PlanStep
from reelagent.src.core.validator import PlanValidator
from reelagent.src.governance.gatekeeper import Gatekeeper

__all__ = (
    "AgentError",
    "EngineConfig",
    "ExecutionResult",
    "Executor",
    "Gatekeeper",
    "Orchestrator",
    "Plan",
    "PlanStep",
    "PlanValidator",
    "Planner",
    "ToolRegistry",
    "ToolSpec",
)
