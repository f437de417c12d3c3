"""Cross-step value references embedded in step arguments.

A step may take part of its input from an earlier step's output by using a
reference object in place of a literal::

    {"assetId": {"fromStep": "import", "path": "data.assetId"}}

Deterministic playbooks emit the same structure with ``$``-prefixed keys
(``$fromStep``/``$path``/``$default``); both spellings are accepted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .types import ToolExecutionResult


_KEY_SETS = (
    ("fromStep", "path", "default"),
    ("$fromStep", "$path", "$default"),
)
_PATH_TOKEN = re.compile(r"([^.\[\]]+)|\[(\d+)\]")

PathSegment = Union[str, int]


@dataclass(frozen=True)
class StepReference:
    """Placeholder resolved from a prior step's result at run time."""

    from_step: str
    path: str
    default: Any = None
    has_default: bool = False

    @property
    def reads_output_contract(self) -> bool:
        return self.path == "data" or self.path.startswith(("data.", "data["))

    def placeholder(self) -> str:
        return f"ref:{self.from_step}.{self.path}"


@dataclass(frozen=True)
class PathLookup:
    """Found/not-found outcome of reading a nested value."""

    found: bool
    value: Any = None
    reason: Optional[str] = None

    @classmethod
    def hit(cls, value: Any) -> "PathLookup":
        return cls(found=True, value=value)

    @classmethod
    def miss(cls, reason: str) -> "PathLookup":
        return cls(found=False, reason=reason)


@dataclass(frozen=True)
class ResolutionFailure:
    path: str
    reason: str


@dataclass(frozen=True)
class Resolution:
    """Arguments with every reference replaced by a concrete value."""

    args: Dict[str, Any]
    failures: Tuple[ResolutionFailure, ...] = ()
    required_steps: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


ReferenceLookup = Callable[[StepReference], PathLookup]


def as_reference(value: Any) -> Optional[StepReference]:
    """Return a :class:`StepReference` if ``value`` has the reference shape."""

    if not isinstance(value, Mapping):
        return None
    for step_key, path_key, default_key in _KEY_SETS:
        from_step = value.get(step_key)
        path = value.get(path_key)
        if isinstance(from_step, str) and from_step and isinstance(path, str):
            return StepReference(
                from_step=from_step,
                path=path,
                default=value.get(default_key),
                has_default=default_key in value,
            )
    return None


def _child(source_path: str, key: PathSegment) -> str:
    if isinstance(key, int):
        return f"{source_path}[{key}]"
    return f"{source_path}.{key}"


def collect_references(args: Any) -> List[Tuple[str, StepReference]]:
    """Return ``(source_path, reference)`` pairs in document order."""

    found: List[Tuple[str, StepReference]] = []

    def _walk(value: Any, source_path: str) -> None:
        reference = as_reference(value)
        if reference is not None:
            found.append((source_path, reference))
            return
        if isinstance(value, Mapping):
            for key, item in value.items():
                _walk(item, _child(source_path, str(key)))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                _walk(item, _child(source_path, index))

    _walk(args, "$")
    return found


def resolve_references(args: Mapping[str, Any], lookup: ReferenceLookup) -> Resolution:
    """Rebuild ``args`` replacing references with values returned by ``lookup``.

    A lookup miss falls back to the reference's declared default.  Misses
    without a default are collected as failures and leave ``None`` in place;
    the walk always completes.
    """

    failures: List[ResolutionFailure] = []
    required: List[str] = []

    def _walk(value: Any, source_path: str) -> Any:
        reference = as_reference(value)
        if reference is not None:
            outcome = lookup(reference)
            if outcome.found:
                if reference.from_step not in required:
                    required.append(reference.from_step)
                return outcome.value
            if reference.has_default:
                return reference.default
            failures.append(
                ResolutionFailure(
                    path=source_path,
                    reason=outcome.reason or f"{reference.from_step}.{reference.path} not found",
                )
            )
            return None
        if isinstance(value, Mapping):
            return {key: _walk(item, _child(source_path, str(key))) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [_walk(item, _child(source_path, index)) for index, item in enumerate(value)]
        return value

    rebuilt = _walk(dict(args), "$")
    return Resolution(args=rebuilt, failures=tuple(failures), required_steps=tuple(required))


def _schema_type(schema: Any) -> Optional[str]:
    if not isinstance(schema, Mapping):
        return None
    declared = schema.get("type")
    if isinstance(declared, str):
        return declared
    if isinstance(declared, Sequence):
        for item in declared:
            if item != "null":
                return str(item)
    for combinator in ("anyOf", "oneOf", "allOf"):
        options = schema.get(combinator)
        if isinstance(options, Sequence):
            for option in options:
                option_type = _schema_type(option)
                if option_type and option_type != "null":
                    return option_type
    return None


def _property_schema(schema: Any, key: str) -> Any:
    if not isinstance(schema, Mapping):
        return None
    properties = schema.get("properties")
    if isinstance(properties, Mapping) and key in properties:
        return properties[key]
    extra = schema.get("additionalProperties")
    return extra if isinstance(extra, Mapping) else None


def _item_schema(schema: Any, index: int) -> Any:
    if not isinstance(schema, Mapping):
        return None
    prefix = schema.get("prefixItems")
    if isinstance(prefix, Sequence) and index < len(prefix):
        return prefix[index]
    items = schema.get("items")
    return items if isinstance(items, Mapping) else None


def _placeholder_for(reference: StepReference, schema: Any) -> Any:
    schema_type = _schema_type(schema)
    if schema_type == "string":
        return reference.placeholder()
    if schema_type in {"number", "integer"}:
        return 0
    if schema_type == "boolean":
        return False
    return None


def normalize_for_validation(args: Mapping[str, Any], json_schema: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Swap references for placeholders of the type the schema expects there."""

    def _walk(value: Any, schema: Any) -> Any:
        reference = as_reference(value)
        if reference is not None:
            return _placeholder_for(reference, schema)
        if isinstance(value, Mapping):
            return {key: _walk(item, _property_schema(schema, str(key))) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [_walk(item, _item_schema(schema, index)) for index, item in enumerate(value)]
        return value

    return _walk(dict(args), json_schema or {})


def parse_path(path: str) -> List[PathSegment]:
    """Split ``a.b[0].c`` into ``["a", "b", 0, "c"]``."""

    segments: List[PathSegment] = []
    position = 0
    text = path.strip()
    while position < len(text):
        if text[position] == ".":
            position += 1
            continue
        match = _PATH_TOKEN.match(text, position)
        if match is None:
            raise ValueError(f"Malformed path '{path}' at offset {position}")
        name, index = match.groups()
        segments.append(int(index) if index is not None else name)
        position = match.end()
    return segments


def get_at_path(source: Any, path: str) -> PathLookup:
    try:
        segments = parse_path(path)
    except ValueError as exc:
        return PathLookup.miss(str(exc))
    current = source
    walked = ""
    for segment in segments:
        if isinstance(segment, int):
            walked = f"{walked}[{segment}]"
            if isinstance(current, (list, tuple)) and -len(current) <= segment < len(current):
                current = current[segment]
                continue
            return PathLookup.miss(f"index out of range at '{walked}'")
        walked = f"{walked}.{segment}" if walked else segment
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
            continue
        return PathLookup.miss(f"missing key at '{walked}'")
    return PathLookup.hit(current)


def lookup_from_results(results: Mapping[str, ToolExecutionResult]) -> ReferenceLookup:
    """Build a lookup reading references out of recorded step results."""

    def _lookup(reference: StepReference) -> PathLookup:
        result = results.get(reference.from_step)
        if result is None:
            return PathLookup.miss(f"step '{reference.from_step}' has no recorded output")
        if not result.success:
            return PathLookup.miss(f"step '{reference.from_step}' failed")
        outcome = get_at_path({"data": result.data}, reference.path)
        if outcome.found:
            return outcome
        return PathLookup.miss(f"step '{reference.from_step}': {outcome.reason}")

    return _lookup


__all__ = [
    "PathLookup",
    "Resolution",
    "ResolutionFailure",
    "StepReference",
    "as_reference",
    "collect_references",
    "get_at_path",
    "lookup_from_results",
    "normalize_for_validation",
    "parse_path",
    "resolve_references",
]
