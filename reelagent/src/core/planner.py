from __future__ import annotations

import asyncio
import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Union

from .config import PlannerConfig
from .errors import AgentError, PlanGenerationError, PlanningTimeoutError
from .telemetry import Telemetry
from .tools import ToolCatalog
from .types import EditingContext, Plan
from .validator import PlanValidator


PlanProducer = Callable[[Dict[str, Any]], Union[str, Mapping[str, Any], Awaitable[Union[str, Mapping[str, Any]]]]]


@dataclass
class Planner:
    """Asks a plan producer (LLM or playbook) for a plan and validates it.

    The producer receives a JSON-compatible payload with the user intent,
    the editing context, the tool listing and feedback from earlier
    iterations.  It returns the plan as a JSON string or mapping.
    """

    producer: PlanProducer
    catalog: ToolCatalog
    config: PlannerConfig = field(default_factory=PlannerConfig)
    telemetry: Telemetry = field(default_factory=Telemetry)

    async def plan(
        self,
        intent: str,
        context: EditingContext | None = None,
        *,
        feedback: Iterable[Mapping[str, Any]] | None = None,
    ) -> Plan:
        context = context or EditingContext()
        payload: Dict[str, Any] = {
            "intent": intent,
            "context": _context_payload(context),
            "tools": [spec.to_dict() for spec in self.catalog.list_tools()],
            "maxSteps": self.config.max_steps,
        }
        feedback_list: List[Dict[str, Any]] = [json.loads(json.dumps(item, default=str)) for item in feedback or []]
        if feedback_list:
            payload["feedback"] = feedback_list
        self.telemetry.emit("planner.plan_requested", intent=intent, feedback=len(feedback_list))

        try:
            raw = await asyncio.wait_for(self._call(payload), timeout=self.config.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            self.telemetry.emit("planner.plan_rejected", reason="timeout")
            raise PlanningTimeoutError(self.config.timeout_ms) from exc
        except AgentError:
            raise
        except Exception as exc:
            raise PlanGenerationError("Plan producer failed", str(exc)) from exc

        data = _parse_plan_payload(raw)
        validator = PlanValidator(self.catalog, max_steps=self.config.max_steps)
        try:
            plan = validator.validate(data, context)
        except AgentError as exc:
            self.telemetry.emit("planner.plan_rejected", reason=exc.code, errors=exc.to_record())
            raise
        self.telemetry.emit("planner.plan_accepted", plan_id=plan.id, steps=len(plan.steps))
        return plan

    async def _call(self, payload: Dict[str, Any]) -> Any:
        outcome = self.producer(payload)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome


def _context_payload(context: EditingContext) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "projectId": context.project_id,
        "sequenceId": context.sequence_id,
        "trackIds": list(context.track_ids),
        "assetIds": list(context.asset_ids),
        "clipIds": list(context.clip_ids),
        "selectedClipIds": list(context.selected_clip_ids),
        "playhead": context.playhead,
    }
    payload.update(context.extra)
    return payload


def _parse_plan_payload(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, str):
        if not raw.strip():
            raise PlanGenerationError("Plan producer returned an empty response", "empty")
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PlanGenerationError("Plan producer returned invalid JSON", str(exc)) from exc
    if isinstance(raw, Mapping) and isinstance(raw.get("plan"), Mapping):
        raw = raw["plan"]
    if not isinstance(raw, Mapping):
        raise PlanGenerationError("Plan producer returned a non-object plan", type(raw).__name__)
    return raw


__all__ = ["PlanProducer", "Planner"]
