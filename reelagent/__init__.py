"""Convenience exports for the reelagent package.

To keep import-time side effects minimal we lazily proxy attributes from
``reelagent.src.reelagent``.
"""

from __future__ import annotations

import importlib
from typing import Any

importlib.import_module("reelagent.src")

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


def __getattr__(name: str) -> Any:
    if name in __all__:
        from reelagent.src import reelagent as _api

        return getattr(_api, name)
    raise AttributeError(name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
