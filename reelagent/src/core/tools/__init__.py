from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Protocol, Sequence, Tuple, Union

from jsonschema import Draft202012Validator

from ..types import RiskLevel, ToolExecutionResult, ValidationResult


ToolHandler = Callable[[Dict[str, Any], Any], Union[Any, Awaitable[Any]]]


def _copy_mapping(mapping: Mapping[str, Any] | None) -> dict[str, Any]:
    return dict(mapping or {})


@dataclass(frozen=True)
class ToolSpec:
    """Structured description of an editing tool for planning and validation."""

    name: str
    description: str
    risk_level: RiskLevel = RiskLevel.LOW
    category: str = "general"
    input_schema: Mapping[str, Any] = field(default_factory=dict)
    output_schema: Mapping[str, Any] = field(default_factory=dict)
    parallelizable: bool = True
    supports_undo: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def required_args(self) -> Tuple[str, ...]:
        return tuple(str(name) for name in self.input_schema.get("required", ()))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolSpec":
        return _normalise_spec(
            cls(
                name=data["name"],
                description=data.get("description", ""),
                risk_level=RiskLevel.parse(data.get("riskLevel", data.get("risk_level", "low"))),
                category=str(data.get("category", "general")),
                input_schema=data.get("inputSchema", data.get("input_schema")) or {},
                output_schema=data.get("outputSchema", data.get("output_schema")) or {},
                parallelizable=bool(data.get("parallelizable", True)),
                supports_undo=bool(data.get("supportsUndo", data.get("supports_undo", False))),
                metadata=data.get("metadata") or {},
            )
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "riskLevel": self.risk_level.value,
            "category": self.category,
            "inputSchema": _copy_mapping(self.input_schema),
            "outputSchema": _copy_mapping(self.output_schema),
            "parallelizable": self.parallelizable,
            "supportsUndo": self.supports_undo,
            "requiredArgs": list(self.required_args),
            "metadata": _copy_mapping(self.metadata),
        }


class ToolCatalog(Protocol):
    """Read side of the tool layer used by the planner and validator."""

    def has_tool(self, name: str) -> bool: ...

    def get_definition(self, name: str) -> ToolSpec | None: ...

    def validate_args(self, name: str, args: Mapping[str, Any]) -> ValidationResult: ...

    def list_tools(self) -> Sequence[ToolSpec]: ...


class ToolExecutor(Protocol):
    """Performs the actual editing operation behind a tool name."""

    async def execute(self, name: str, args: Mapping[str, Any], context: Any) -> ToolExecutionResult | Mapping[str, Any]: ...


def _normalise_spec(spec: ToolSpec) -> ToolSpec:
    input_schema = _copy_mapping(spec.input_schema)
    if input_schema:
        Draft202012Validator.check_schema(input_schema)
    return replace(
        spec,
        name=str(spec.name),
        description=str(spec.description).strip() or str(spec.name),
        risk_level=RiskLevel.parse(spec.risk_level),
        input_schema=input_schema,
        output_schema=_copy_mapping(spec.output_schema),
        metadata=_copy_mapping(spec.metadata),
    )


def describe_tool(tool: Any, *, override_name: str | None = None) -> ToolSpec:
    """Return a :class:`ToolSpec` for ``tool``.

    Tools may implement a ``describe`` method that returns a :class:`ToolSpec`.
    If absent, a conservative specification is synthesised from the tool's
    ``name``, docstring, ``risk_level`` and ``input_schema`` attributes.
    """

    if hasattr(tool, "describe"):
        spec = tool.describe()
        if not isinstance(spec, ToolSpec):
            raise TypeError("tool.describe() must return a ToolSpec instance")
    else:
        name = getattr(tool, "name", tool.__class__.__name__)
        spec = ToolSpec(
            name=name,
            description=(getattr(tool, "__doc__", "") or str(name)).strip() or str(name),
            risk_level=RiskLevel.parse(getattr(tool, "risk_level", RiskLevel.LOW)),
            input_schema=getattr(tool, "input_schema", {}) or {},
            parallelizable=bool(getattr(tool, "parallelizable", True)),
            supports_undo=bool(getattr(tool, "supports_undo", False)),
        )

    spec = _normalise_spec(spec)
    if override_name:
        spec = replace(spec, name=str(override_name))
    return spec


def _format_schema_error(error: Any) -> str:
    location = "/".join(str(part) for part in error.path) or "<root>"
    return f"{location}: {error.message}"


@dataclass
class ToolRegistry:
    """In-process tool catalog and executor.

    Handlers receive ``(args, context)`` and may be plain functions or
    coroutines.  They return a :class:`ToolExecutionResult`, a wire mapping
    with a ``success`` key, or bare data which is treated as success.
    """

    _specs: Dict[str, ToolSpec] = field(default_factory=dict)
    _handlers: Dict[str, ToolHandler] = field(default_factory=dict)
    _validators: Dict[str, Draft202012Validator] = field(default_factory=dict, repr=False)

    def register(self, spec: ToolSpec, handler: ToolHandler | None = None) -> ToolSpec:
        spec = _normalise_spec(spec)
        self._specs[spec.name] = spec
        if spec.input_schema:
            self._validators[spec.name] = Draft202012Validator(spec.input_schema)
        else:
            self._validators.pop(spec.name, None)
        if handler is not None:
            self._handlers[spec.name] = handler
        return spec

    def register_tool(self, tool: Any, *, name: str | None = None) -> ToolSpec:
        """Register an object exposing ``run(args, context)``."""

        spec = self.register(describe_tool(tool, override_name=name))
        self._handlers[spec.name] = tool.run
        return spec

    @classmethod
    def from_catalog(cls, entries: Sequence[Mapping[str, Any]]) -> "ToolRegistry":
        registry = cls()
        for entry in entries:
            registry.register(ToolSpec.from_dict(entry))
        return registry

    def has_tool(self, name: str) -> bool:
        return name in self._specs

    def get_definition(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def list_tools(self) -> List[ToolSpec]:
        return [self._specs[name] for name in sorted(self._specs)]

    def tools_up_to_risk(self, max_risk: RiskLevel | str) -> List[ToolSpec]:
        ceiling = RiskLevel.parse(max_risk)
        return [spec for spec in self.list_tools() if spec.risk_level <= ceiling]

    def validate_args(self, name: str, args: Mapping[str, Any]) -> ValidationResult:
        if name not in self._specs:
            return ValidationResult(valid=False, errors=(f"unknown tool '{name}'",))
        validator = self._validators.get(name)
        if validator is None:
            return ValidationResult(valid=True)
        errors = sorted(validator.iter_errors(dict(args)), key=lambda err: list(err.path))
        return ValidationResult(
            valid=not errors,
            errors=tuple(_format_schema_error(error) for error in errors),
        )

    async def execute(self, name: str, args: Mapping[str, Any], context: Any = None) -> ToolExecutionResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolExecutionResult(success=False, error=f"Tool not found: {name}")
        started = time.perf_counter()
        outcome = handler(dict(args), context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        elapsed_ms = (time.perf_counter() - started) * 1000
        if isinstance(outcome, ToolExecutionResult):
            result = outcome
        elif isinstance(outcome, Mapping) and "success" in outcome:
            result = ToolExecutionResult.coerce(outcome)
        else:
            result = ToolExecutionResult(success=True, data=outcome)
        if not result.duration:
            result = replace(result, duration=elapsed_ms)
        return result


__all__ = [
    "ToolCatalog",
    "ToolExecutor",
    "ToolHandler",
    "ToolRegistry",
    "ToolSpec",
    "describe_tool",
]
