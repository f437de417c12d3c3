"""Validation of candidate plans before they reach the executor.

Checks run in three stages: plan shape, per-step checks (structure,
arguments, context binding, step references) and the dependency graph.
Messages accumulate inside a stage; the first stage that produces any
message ends validation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from numbers import Real
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import PlanValidationError, StepBudgetExceededError
from .references import as_reference, collect_references, normalize_for_validation
from .tools import ToolCatalog
from .types import RISK_LEVELS, EditingContext, Plan, ValidationResult


STAGE_STRUCTURE = "structure"
STAGE_STEP_BUDGET = "step_budget"
STAGE_STEPS = "steps"
STAGE_DEPENDENCIES = "dependencies"

_STAGE_MESSAGES = {
    STAGE_STRUCTURE: "Plan structure validation failed",
    STAGE_STEPS: "Step validation failed",
    STAGE_DEPENDENCIES: "Dependency validation failed",
}

DEFAULT_MAX_STEPS = 20

_PLACEHOLDER_WORDS = {
    "placeholder", "unknown", "tbd", "todo", "none", "null", "undefined",
    "example", "sample", "id", "xxx", "your_id", "dummy",
}
_PLACEHOLDER_PATTERNS = (
    re.compile(r"_from_[a-z_]+$", re.I),
    re.compile(r"placeholder", re.I),
    re.compile(r"^(video|audio|track|v|a)[_\-\s]?\d+$", re.I),
    re.compile(r"^<.*>$"),
    re.compile(r"^\{.*\}$"),
)
_CROSS_CHECKED_KEYS = ("trackId", "assetId", "sequenceId", "clipId")


def is_placeholder_id(value: str) -> bool:
    text = value.strip()
    if not text:
        return True
    if text.lower() in _PLACEHOLDER_WORDS:
        return True
    return any(pattern.search(text) for pattern in _PLACEHOLDER_PATTERNS)


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _id_arguments(args: Any) -> Iterator[Tuple[str, str]]:
    """Yield ``(key, literal)`` for every id-like argument, skipping references."""

    if not isinstance(args, Mapping) or as_reference(args) is not None:
        return
    for key, value in args.items():
        key = str(key)
        if key.endswith("Id") and isinstance(value, str):
            yield key, value
        elif key.endswith("Ids") and isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, str):
                    yield key[:-1], item
        elif isinstance(value, Mapping):
            yield from _id_arguments(value)
        elif isinstance(value, (list, tuple)):
            for item in value:
                yield from _id_arguments(item)


@dataclass
class PlanValidator:
    """Accepts or rejects candidate plans against a tool catalog."""

    catalog: ToolCatalog
    max_steps: int = DEFAULT_MAX_STEPS

    def check(
        self,
        candidate: Plan | Mapping[str, Any],
        context: EditingContext | Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        data = candidate.to_dict() if isinstance(candidate, Plan) else candidate
        if not isinstance(context, EditingContext):
            context = EditingContext.from_dict(context)

        errors = self._check_structure(data)
        if errors:
            return ValidationResult(valid=False, errors=tuple(errors), stage=STAGE_STRUCTURE)

        steps = data["steps"]
        if len(steps) > self.max_steps:
            return ValidationResult(
                valid=False,
                errors=(f"Plan has {len(steps)} steps, maximum is {self.max_steps}",),
                stage=STAGE_STEP_BUDGET,
            )

        errors = self._check_steps(steps, context)
        if errors:
            return ValidationResult(valid=False, errors=tuple(errors), stage=STAGE_STEPS)

        errors = self._check_dependencies(steps)
        if errors:
            return ValidationResult(valid=False, errors=tuple(errors), stage=STAGE_DEPENDENCIES)

        return ValidationResult(valid=True, plan=Plan.from_dict(data))

    def validate(
        self,
        candidate: Plan | Mapping[str, Any],
        context: EditingContext | Mapping[str, Any] | None = None,
    ) -> Plan:
        """Return the immutable plan or raise with every collected message.

        Every rejection is a ``PlanValidationError``; an over-long plan raises
        the ``StepBudgetExceededError`` subclass.
        """

        result = self.check(candidate, context)
        if result.valid and result.plan is not None:
            return result.plan
        if result.stage == STAGE_STEP_BUDGET:
            raise StepBudgetExceededError(self.max_steps, len(candidate_steps(candidate)))
        raise PlanValidationError(_STAGE_MESSAGES.get(result.stage or "", "Plan validation failed"), result.errors)

    def _check_structure(self, data: Any) -> List[str]:
        if not isinstance(data, Mapping):
            return ["Plan must be an object"]
        errors: List[str] = []
        if not isinstance(data.get("goal"), str) or not data.get("goal", "").strip():
            errors.append("Missing or invalid goal")
        if not isinstance(data.get("steps"), list):
            errors.append("Missing or invalid steps array")
        if not isinstance(data.get("requiresApproval"), bool):
            errors.append("Missing or invalid requiresApproval")
        if not isinstance(data.get("rollbackStrategy"), str):
            errors.append("Missing or invalid rollbackStrategy")
        total = data.get("estimatedTotalDuration")
        if total is not None and not _is_number(total):
            errors.append("Invalid estimatedTotalDuration")
        return errors

    def _check_steps(self, steps: Sequence[Any], context: EditingContext) -> List[str]:
        errors: List[str] = []
        plan_ids: Set[str] = {
            step["id"] for step in steps if isinstance(step, Mapping) and isinstance(step.get("id"), str)
        }
        seen: Set[str] = set()
        for index, step in enumerate(steps):
            if not isinstance(step, Mapping):
                errors.append(f"Step {index}: must be an object")
                continue
            step_id = step.get("id")
            label = f"Step {index}"
            if not isinstance(step_id, str) or not step_id.strip():
                errors.append(f"{label}: missing or invalid id")
                step_id = None
            elif step_id in seen:
                errors.append(f"{label}: duplicate id '{step_id}'")
            else:
                seen.add(step_id)
                label = f"Step '{step_id}'"

            tool = step.get("tool")
            tool_known = False
            if not isinstance(tool, str) or not tool.strip():
                errors.append(f"{label}: missing or invalid tool")
            elif not self.catalog.has_tool(tool):
                errors.append(f"{label}: unknown tool '{tool}'")
            else:
                tool_known = True

            args = step.get("args", {})
            if not isinstance(args, Mapping):
                errors.append(f"{label}: args must be an object")
                args = None
            if not isinstance(step.get("description"), str):
                errors.append(f"{label}: missing description")
            if step.get("riskLevel") not in RISK_LEVELS:
                errors.append(f"{label}: invalid riskLevel '{step.get('riskLevel')}'")
            if not _is_number(step.get("estimatedDuration")):
                errors.append(f"{label}: missing estimatedDuration")
            depends_on = step.get("dependsOn", [])
            if depends_on is None:
                depends_on = []
            if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
                errors.append(f"{label}: dependsOn must be a list of step ids")
                depends_on = []

            if args is None:
                continue
            if tool_known:
                errors.extend(self._check_arguments(label, tool, args))
            errors.extend(self._check_context_binding(label, args, context))
            errors.extend(self._check_references(label, step_id, args, depends_on, plan_ids))
        return errors

    def _check_arguments(self, label: str, tool: str, args: Mapping[str, Any]) -> List[str]:
        definition = self.catalog.get_definition(tool)
        schema = definition.input_schema if definition is not None else {}
        normalized = normalize_for_validation(args, schema)
        verdict = self.catalog.validate_args(tool, normalized)
        if verdict.valid:
            return []
        return [f"{label}: invalid arguments for '{tool}': {'; '.join(verdict.errors) or 'no details'}"]

    def _check_context_binding(self, label: str, args: Mapping[str, Any], context: EditingContext) -> List[str]:
        errors: List[str] = []
        for key, value in _id_arguments(args):
            known = context.known_ids(key)
            if value in known:
                continue
            if is_placeholder_id(value):
                errors.append(
                    f"{label}: {key} '{value}' looks like a placeholder; copy the exact id from the editing context"
                )
                continue
            if key in _CROSS_CHECKED_KEYS and known:
                errors.append(f"{label}: {key} '{value}' does not exist in the current editing context")
        return errors

    def _check_references(
        self,
        label: str,
        step_id: Optional[str],
        args: Mapping[str, Any],
        depends_on: Sequence[str],
        plan_ids: Set[str],
    ) -> List[str]:
        errors: List[str] = []
        for source_path, reference in collect_references(args):
            target = reference.from_step
            where = f"{label}: reference at {source_path}"
            if step_id is not None and target == step_id:
                errors.append(f"{where} cannot read from its own step")
                continue
            if target not in plan_ids:
                errors.append(f"{where} targets unknown step '{target}'")
                continue
            if target not in depends_on:
                errors.append(f"{where} reads from '{target}' which is not listed in dependsOn")
            if not reference.reads_output_contract:
                errors.append(f"{where} must read from the 'data' output (got '{reference.path}')")
        return errors

    def _check_dependencies(self, steps: Sequence[Mapping[str, Any]]) -> List[str]:
        errors: List[str] = []
        graph: Dict[str, List[str]] = {}
        for step in steps:
            graph[step["id"]] = list(step.get("dependsOn") or [])

        for step_id, deps in graph.items():
            for dep in deps:
                if dep == step_id:
                    errors.append(f"Step '{step_id}' depends on itself")
                elif dep not in graph:
                    errors.append(f"Step '{step_id}' depends on unknown step '{dep}'")
        if errors:
            return errors

        visited: Set[str] = set()
        on_stack: Set[str] = set()

        def _visit(node: str) -> Optional[str]:
            if node in on_stack:
                return node
            if node in visited:
                return None
            visited.add(node)
            on_stack.add(node)
            for dep in graph[node]:
                found = _visit(dep)
                if found is not None:
                    return found
            on_stack.discard(node)
            return None

        for step_id in graph:
            cycle_node = _visit(step_id)
            if cycle_node is not None:
                errors.append(f"Circular dependency detected involving step '{cycle_node}'")
                break
        return errors


def candidate_steps(candidate: Plan | Mapping[str, Any]) -> Sequence[Any]:
    if isinstance(candidate, Plan):
        return candidate.steps
    steps = candidate.get("steps") if isinstance(candidate, Mapping) else None
    return steps if isinstance(steps, list) else []


__all__ = [
    "DEFAULT_MAX_STEPS",
    "PlanValidator",
    "STAGE_DEPENDENCIES",
    "STAGE_STEPS",
    "STAGE_STEP_BUDGET",
    "STAGE_STRUCTURE",
    "is_placeholder_id",
]
