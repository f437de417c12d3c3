from __future__ import annotations

import asyncio
from typing import Any, Dict

import pytest
from jsonschema.exceptions import SchemaError

from reelagent.src.core.tools import ToolRegistry, ToolSpec, describe_tool
from reelagent.src.core.types import RiskLevel, ToolExecutionResult


SPLIT_SCHEMA = {
    "type": "object",
    "properties": {"clipId": {"type": "string"}, "position": {"type": "number", "minimum": 0}},
    "required": ["clipId", "position"],
    "additionalProperties": False,
}


def test_spec_round_trips_wire_format() -> None:
    spec = ToolSpec.from_dict(
        {
            "name": "split_clip",
            "description": "Split a clip at a position",
            "riskLevel": "MEDIUM",
            "category": "editing",
            "inputSchema": SPLIT_SCHEMA,
            "parallelizable": False,
            "supportsUndo": True,
        }
    )

    assert spec.risk_level is RiskLevel.MEDIUM
    assert spec.required_args == ("clipId", "position")
    payload = spec.to_dict()
    assert payload["riskLevel"] == "medium"
    assert payload["supportsUndo"] is True
    assert payload["requiredArgs"] == ["clipId", "position"]
    assert ToolSpec.from_dict(payload) == spec


def test_invalid_input_schema_is_rejected() -> None:
    with pytest.raises(SchemaError):
        ToolSpec.from_dict({"name": "broken", "inputSchema": {"type": "banana"}})


def test_validate_args_reports_schema_errors_with_location() -> None:
    registry = ToolRegistry()
    registry.register(ToolSpec(name="split_clip", description="Split", input_schema=SPLIT_SCHEMA))

    assert registry.validate_args("split_clip", {"clipId": "c1", "position": 2}).valid
    result = registry.validate_args("split_clip", {"clipId": "c1", "position": -1, "ripple": True})
    assert not result.valid
    assert "<root>: Additional properties are not allowed ('ripple' was unexpected)" in result.errors
    assert "position: -1 is less than the minimum of 0" in result.errors
    assert registry.validate_args("merge_clips", {}).errors == ("unknown tool 'merge_clips'",)


def test_registry_lists_and_filters_by_risk() -> None:
    registry = ToolRegistry.from_catalog(
        [
            {"name": "get_timeline", "description": "Read the timeline"},
            {"name": "delete_track", "description": "Delete a track", "riskLevel": "critical"},
            {"name": "trim_clip", "description": "Trim", "riskLevel": "medium"},
        ]
    )

    assert [spec.name for spec in registry.list_tools()] == ["delete_track", "get_timeline", "trim_clip"]
    assert [spec.name for spec in registry.tools_up_to_risk("medium")] == ["get_timeline", "trim_clip"]
    assert registry.has_tool("trim_clip")
    assert registry.get_definition("missing") is None


def test_execute_normalises_handler_outputs() -> None:
    registry = ToolRegistry()
    registry.register(ToolSpec(name="bare", description="bare"), lambda args, ctx: {"clipId": "c1"})
    registry.register(
        ToolSpec(name="wire", description="wire"),
        lambda args, ctx: {"success": False, "error": "Clip not found", "duration": 7},
    )

    async def typed(args: Dict[str, Any], ctx: Any) -> ToolExecutionResult:
        return ToolExecutionResult(success=True, data=ctx, undoable=True)

    registry.register(ToolSpec(name="typed", description="typed"), typed)

    bare = asyncio.run(registry.execute("bare", {}))
    wire = asyncio.run(registry.execute("wire", {}))
    typed_result = asyncio.run(registry.execute("typed", {}, context="session"))
    missing = asyncio.run(registry.execute("ghost", {}))

    assert bare.success and bare.data == {"clipId": "c1"}
    assert bare.duration >= 0
    assert not wire.success and wire.error == "Clip not found" and wire.duration == 7
    assert typed_result.data == "session" and typed_result.undoable
    assert missing == ToolExecutionResult(success=False, error="Tool not found: ghost")


def test_describe_tool_fallback_and_register_tool() -> None:
    class RippleDelete:
        """Delete a clip and close the gap."""

        name = "ripple_delete"
        risk_level = "high"
        supports_undo = True

        async def run(self, args: Dict[str, Any], ctx: Any) -> ToolExecutionResult:
            return ToolExecutionResult(success=True, data={"deleted": args["clipId"]})

    spec = describe_tool(RippleDelete())
    assert spec.description == "Delete a clip and close the gap."
    assert spec.risk_level is RiskLevel.HIGH
    assert spec.supports_undo

    registry = ToolRegistry()
    registry.register_tool(RippleDelete(), name="ripple_delete_v2")
    result = asyncio.run(registry.execute("ripple_delete_v2", {"clipId": "c9"}))
    assert result.data == {"deleted": "c9"}


def test_describe_tool_requires_tool_spec_from_describe() -> None:
    class BadTool:
        def describe(self) -> dict:
            return {"name": "bad"}

    with pytest.raises(TypeError):
        describe_tool(BadTool())
