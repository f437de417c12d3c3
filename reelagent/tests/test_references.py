from __future__ import annotations

from reelagent.src.core.references import (
    PathLookup,
    StepReference,
    as_reference,
    collect_references,
    get_at_path,
    lookup_from_results,
    normalize_for_validation,
    resolve_references,
)
from reelagent.src.core.types import ToolExecutionResult


def test_collect_walks_nested_args_in_document_order() -> None:
    args = {
        "clipId": {"fromStep": "s1", "path": "data.clipId"},
        "style": {"fallbackClipId": {"fromStep": "s2", "path": "data.ids[0]"}},
        "clips": ["literal", {"$fromStep": "s3", "$path": "data.clip"}],
    }

    found = collect_references(args)

    assert [path for path, _ in found] == ["$.clipId", "$.style.fallbackClipId", "$.clips[1]"]
    assert [ref.from_step for _, ref in found] == ["s1", "s2", "s3"]


def test_incomplete_reference_shapes_are_plain_values() -> None:
    assert as_reference({"fromStep": "", "path": "data.x"}) is None
    assert as_reference({"fromStep": "s1"}) is None
    assert as_reference({"fromStep": "s1", "path": 3}) is None
    assert collect_references({"a": {"path": "data.x"}}) == []


def test_reference_default_is_tracked_even_when_none() -> None:
    ref = as_reference({"fromStep": "s1", "path": "data.x", "default": None})

    assert ref is not None
    assert ref.has_default is True
    assert as_reference({"fromStep": "s1", "path": "data.x"}).has_default is False


def test_get_at_path_reads_dot_and_bracket_notation() -> None:
    source = {"data": {"clips": [{"id": "c1"}, {"id": "c2"}]}}

    assert get_at_path(source, "data.clips[1].id") == PathLookup.hit("c2")
    missing = get_at_path(source, "data.clips[5].id")
    assert missing.found is False
    assert "index out of range" in (missing.reason or "")
    assert get_at_path(source, "data.tracks").found is False
    assert get_at_path(source, "data..[").found is False


def test_resolve_replaces_references_and_reports_required_steps() -> None:
    results = {"s1": ToolExecutionResult(success=True, data={"assetId": "a1"})}

    resolution = resolve_references(
        {"assetId": {"fromStep": "s1", "path": "data.assetId"}, "timelineStart": 0},
        lookup_from_results(results),
    )

    assert resolution.ok
    assert resolution.args == {"assetId": "a1", "timelineStart": 0}
    assert resolution.required_steps == ("s1",)


def test_resolve_collects_failures_without_aborting() -> None:
    results = {"s1": ToolExecutionResult(success=True, data={"assetId": "a1"})}
    args = {
        "missing": {"fromStep": "s1", "path": "data.nothing"},
        "fallback": {"fromStep": "s9", "path": "data.x", "default": 5},
        "ok": {"fromStep": "s1", "path": "data.assetId"},
    }

    resolution = resolve_references(args, lookup_from_results(results))

    assert not resolution.ok
    assert [failure.path for failure in resolution.failures] == ["$.missing"]
    assert resolution.args["fallback"] == 5
    assert resolution.args["ok"] == "a1"
    assert resolution.required_steps == ("s1",)


def test_resolve_does_not_mutate_input() -> None:
    args = {"nested": [{"fromStep": "s1", "path": "data.v"}]}

    resolve_references(args, lambda ref: PathLookup.hit(1))

    assert args == {"nested": [{"fromStep": "s1", "path": "data.v"}]}


def test_normalize_uses_schema_type_at_reference_location() -> None:
    schema = {
        "type": "object",
        "properties": {
            "clipId": {"type": "string"},
            "position": {"type": "number"},
            "ripple": {"type": "boolean"},
            "meta": {"type": "object"},
            "clipIds": {"type": "array", "items": {"type": "string"}},
        },
    }
    ref = {"fromStep": "s1", "path": "data.value"}

    normalized = normalize_for_validation(
        {"clipId": ref, "position": ref, "ripple": ref, "meta": ref, "clipIds": [ref]},
        schema,
    )

    assert normalized == {
        "clipId": "ref:s1.data.value",
        "position": 0,
        "ripple": False,
        "meta": None,
        "clipIds": ["ref:s1.data.value"],
    }


def test_lookup_misses_for_failed_steps() -> None:
    lookup = lookup_from_results({"s1": ToolExecutionResult(success=False, error="boom")})

    outcome = lookup(StepReference(from_step="s1", path="data.x"))

    assert outcome.found is False
    assert "failed" in (outcome.reason or "")
