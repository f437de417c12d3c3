from __future__ import annotations

import copy
from typing import Any, Dict

import pytest

from reelagent.src.core.errors import PlanValidationError, StepBudgetExceededError
from reelagent.src.core.tools import ToolRegistry, ToolSpec
from reelagent.src.core.types import EditingContext, Plan, RiskLevel
from reelagent.src.core.validator import PlanValidator, is_placeholder_id


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="insert_clip",
            description="Insert an asset on a track",
            risk_level=RiskLevel.MEDIUM,
            input_schema={
                "type": "object",
                "properties": {
                    "sequenceId": {"type": "string"},
                    "trackId": {"type": "string"},
                    "assetId": {"type": "string"},
                    "timelineStart": {"type": "number"},
                },
                "required": ["sequenceId", "trackId", "assetId", "timelineStart"],
            },
        )
    )
    registry.register(
        ToolSpec(
            name="split_clip",
            description="Split a clip",
            input_schema={
                "type": "object",
                "properties": {"clipId": {"type": "string"}, "position": {"type": "number"}},
                "required": ["clipId", "position"],
            },
        )
    )
    registry.register(
        ToolSpec(
            name="import_asset",
            description="Import media into the project",
            input_schema={
                "type": "object",
                "properties": {"uri": {"type": "string"}},
                "required": ["uri"],
            },
        )
    )
    return registry


def _step(step_id: str, tool: str, args: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    step = {
        "id": step_id,
        "tool": tool,
        "args": args,
        "description": f"run {tool}",
        "riskLevel": "low",
        "estimatedDuration": 100,
    }
    step.update(extra)
    return step


def _plan(*steps: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "goal": "Edit the timeline",
        "steps": list(steps),
        "estimatedTotalDuration": 100 * len(steps),
        "requiresApproval": False,
        "rollbackStrategy": "Undo",
    }


CONTEXT = EditingContext(
    sequence_id="seq_active",
    track_ids=("01TRACKREAL",),
    asset_ids=("01ASSETREAL",),
    clip_ids=("clip-1",),
)


def test_valid_plan_is_accepted_and_frozen() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(_step("s1", "split_clip", {"clipId": "clip-1", "position": 5}))

    plan = validator.validate(candidate, CONTEXT)

    assert isinstance(plan, Plan)
    assert plan.steps[0].risk_level is RiskLevel.LOW
    with pytest.raises(Exception):
        plan.goal = "changed"  # type: ignore[misc]


def test_structure_errors_accumulate_and_fail_fast() -> None:
    validator = PlanValidator(_registry())

    result = validator.check({"goal": "", "steps": "nope", "requiresApproval": "yes"})

    assert not result.valid
    assert result.stage == "structure"
    assert result.errors == (
        "Missing or invalid goal",
        "Missing or invalid steps array",
        "Missing or invalid requiresApproval",
        "Missing or invalid rollbackStrategy",
    )


def test_step_count_limit_raises_budget_error() -> None:
    validator = PlanValidator(_registry(), max_steps=2)
    candidate = _plan(*[_step(f"s{i}", "import_asset", {"uri": "file:///a.mp4"}) for i in range(3)])

    assert validator.check(candidate).stage == "step_budget"
    with pytest.raises(StepBudgetExceededError) as excinfo:
        validator.validate(candidate)
    assert excinfo.value.attempted_steps == 3
    assert isinstance(excinfo.value, PlanValidationError)
    assert excinfo.value.validation_errors == ["Plan has 3 steps, maximum is 2"]
    assert excinfo.value.to_record()["code"] == "STEP_BUDGET_EXCEEDED"


def test_step_errors_are_all_reported() -> None:
    validator = PlanValidator(_registry())
    bad = _step("s1", "explode_timeline", {})
    duplicate = _step("s1", "split_clip", {"clipId": "clip-1", "position": 1})
    broken = {"tool": "split_clip", "args": {}, "riskLevel": "extreme"}

    with pytest.raises(PlanValidationError) as excinfo:
        validator.validate(_plan(bad, duplicate, broken), CONTEXT)

    errors = excinfo.value.validation_errors
    assert "Step 's1': unknown tool 'explode_timeline'" in errors
    assert "Step 1: duplicate id 's1'" in errors
    assert "Step 2: missing or invalid id" in errors
    assert "Step 2: missing description" in errors
    assert "Step 2: invalid riskLevel 'extreme'" in errors
    assert "Step 2: missing estimatedDuration" in errors
    assert excinfo.value.message.startswith("Step validation failed: ")


def test_arguments_are_checked_against_tool_schema() -> None:
    validator = PlanValidator(_registry())

    result = validator.check(_plan(_step("s1", "split_clip", {"clipId": "clip-1"})), CONTEXT)

    assert not result.valid
    assert result.errors[0].startswith("Step 's1': invalid arguments for 'split_clip'")
    assert "'position' is a required property" in result.errors[0]


def test_placeholder_ids_are_rejected() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step(
            "s1",
            "insert_clip",
            {
                "sequenceId": "seq_active",
                "trackId": "video_1",
                "assetId": "asset_id_from_catalog",
                "timelineStart": 0,
            },
        )
    )

    result = validator.check(candidate, CONTEXT)

    assert not result.valid
    assert any("trackId 'video_1' looks like a placeholder" in error for error in result.errors)
    assert any("assetId 'asset_id_from_catalog' looks like a placeholder" in error for error in result.errors)


def test_ids_missing_from_context_are_rejected() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step(
            "s1",
            "insert_clip",
            {"sequenceId": "seq_active", "trackId": "01TRACKUNKNOWN", "assetId": "01ASSETREAL", "timelineStart": 0},
        )
    )

    result = validator.check(candidate, CONTEXT)

    assert result.errors == (
        "Step 's1': trackId '01TRACKUNKNOWN' does not exist in the current editing context",
    )


def test_known_id_checks_are_skipped_without_context() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step(
            "s1",
            "insert_clip",
            {"sequenceId": "seq_1", "trackId": "01TRACKUNKNOWN", "assetId": "01ASSET", "timelineStart": 0},
        )
    )

    assert validator.check(candidate).valid


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("asset_id_from_catalog", True),
        ("placeholder", True),
        ("UNKNOWN", True),
        ("video_1", True),
        ("<clip id>", True),
        ("01TRACKREAL", False),
        ("clip-1", False),
    ],
)
def test_placeholder_heuristic(value: str, expected: bool) -> None:
    assert is_placeholder_id(value) is expected


def _reference_plan(**first_step_extra: Any) -> Dict[str, Any]:
    return _plan(
        _step("s1", "import_asset", {"uri": "file:///concert.mp4"}),
        _step(
            "s2",
            "insert_clip",
            {
                "sequenceId": "seq_active",
                "trackId": "01TRACKREAL",
                "assetId": {"fromStep": "s1", "path": "data.assetId"},
                "timelineStart": 0,
            },
            **first_step_extra,
        ),
    )


def test_reference_without_depends_on_is_rejected_then_accepted() -> None:
    validator = PlanValidator(_registry())

    rejected = validator.check(_reference_plan(), CONTEXT)
    accepted = validator.check(_reference_plan(dependsOn=["s1"]), CONTEXT)

    assert rejected.errors == (
        "Step 's2': reference at $.assetId reads from 's1' which is not listed in dependsOn",
    )
    assert accepted.valid


def test_reference_must_read_from_data_output() -> None:
    validator = PlanValidator(_registry())
    candidate = _reference_plan(dependsOn=["s1"])
    candidate["steps"][1]["args"]["assetId"] = {"fromStep": "s1", "path": "assetId"}

    result = validator.check(candidate, CONTEXT)

    assert result.errors == ("Step 's2': reference at $.assetId must read from the 'data' output (got 'assetId')",)


def test_reference_to_unknown_or_own_step_is_rejected() -> None:
    validator = PlanValidator(_registry())
    candidate = _reference_plan(dependsOn=["s1"])
    unknown = copy.deepcopy(candidate)
    unknown["steps"][1]["args"]["assetId"] = {"fromStep": "ghost", "path": "data.assetId"}
    own = copy.deepcopy(candidate)
    own["steps"][1]["args"]["assetId"] = {"fromStep": "s2", "path": "data.assetId"}

    assert validator.check(unknown, CONTEXT).errors == ("Step 's2': reference at $.assetId targets unknown step 'ghost'",)
    assert validator.check(own, CONTEXT).errors == ("Step 's2': reference at $.assetId cannot read from its own step",)


def test_unknown_and_self_dependencies_are_rejected() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step("s1", "import_asset", {"uri": "a"}, dependsOn=["s1"]),
        _step("s2", "import_asset", {"uri": "b"}, dependsOn=["missing"]),
    )

    result = validator.check(candidate)

    assert result.stage == "dependencies"
    assert result.errors == (
        "Step 's1' depends on itself",
        "Step 's2' depends on unknown step 'missing'",
    )


def test_cycles_are_reported_with_a_step_in_the_cycle() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step("a", "import_asset", {"uri": "a"}, dependsOn=["c"]),
        _step("b", "import_asset", {"uri": "b"}, dependsOn=["a"]),
        _step("c", "import_asset", {"uri": "c"}, dependsOn=["b"]),
    )

    with pytest.raises(PlanValidationError) as excinfo:
        validator.validate(candidate)

    assert excinfo.value.validation_errors == ["Circular dependency detected involving step 'a'"]
    assert excinfo.value.message.startswith("Dependency validation failed")


def test_step_stage_errors_suppress_dependency_stage() -> None:
    validator = PlanValidator(_registry())
    candidate = _plan(
        _step("a", "unknown_tool", {}, dependsOn=["b"]),
        _step("b", "import_asset", {"uri": "b"}, dependsOn=["a"]),
    )

    result = validator.check(candidate)

    assert result.stage == "steps"
    assert result.errors == ("Step 'a': unknown tool 'unknown_tool'",)


def test_validator_accepts_plan_instances() -> None:
    validator = PlanValidator(_registry())
    plan = Plan.from_dict(_plan(_step("s1", "import_asset", {"uri": "x"})))

    assert validator.validate(plan).steps[0].tool == "import_asset"
