from __future__ import annotations

from typing import Sequence

import pytest

from reelagent.src.core.failures import (
    NotFoundKind,
    classify_not_found,
    detect_immediate_terminal_failure,
    detect_repeated_terminal_failure,
    failure_messages,
    is_precondition_failure,
    is_transient,
    mutated_state,
    normalize_failure,
)
from reelagent.src.core.types import EditingContext, ExecutionResult, StepExecutionRecord, ToolExecutionResult


def _record(tool: str, error: str | None = None, **result_fields) -> StepExecutionRecord:
    return StepExecutionRecord(
        step_id=f"step-{tool}",
        tool=tool,
        args={},
        result=ToolExecutionResult(success=error is None, error=error, **result_fields),
        start_time=0,
        end_time=1,
    )


def _result(
    failed: Sequence[StepExecutionRecord] = (),
    completed: Sequence[StepExecutionRecord] = (),
) -> ExecutionResult:
    return ExecutionResult(success=not failed, completed_steps=tuple(completed), failed_steps=tuple(failed))


def test_normalize_failure_masks_quoted_values_and_numbers() -> None:
    assert normalize_failure("Clip 'c12' not found  at 3.5 seconds") == "clip <value> not found at <num> seconds"
    assert normalize_failure("") == "unknown failure"
    assert normalize_failure(None) == "unknown failure"


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Request timeout", True),
        ("Operation timed out after 30s", True),
        ("Temporary failure in name resolution", True),
        ("Please try again later", True),
        ("429 Too Many Requests", True),
        ("ECONNRESET", True),
        ("HTTP 429", True),
        ("status 429 from provider", True),
        ('error: "timeout"', True),
        ('Upstream said "connection reset by peer"', True),
        ("Service Unavailable", True),
        ("Clip not found on timeline", False),
        ("Invalid clip range", False),
        ("", False),
        (None, False),
    ],
)
def test_transient_classification(message: str | None, expected: bool) -> None:
    assert is_transient(message) is expected


def test_precondition_and_not_found_classification() -> None:
    assert is_precondition_failure("PRECONDITION_FAILED: revision mismatch")
    assert is_precondition_failure("Stale context for sequence")
    assert not is_precondition_failure("Clip not found")

    assert classify_not_found("Clip not found").kind is NotFoundKind.CLIP
    assert classify_not_found("Track 'v9' was not found").kind is NotFoundKind.TRACK
    assert classify_not_found("unknown sequence seq_2").kind is NotFoundKind.SEQUENCE
    assert classify_not_found("File not found: /media/a.mov").kind is NotFoundKind.ASSET
    assert classify_not_found("Invalid clip range") is None


def test_mutated_state_detects_side_effects_and_write_tools() -> None:
    assert not mutated_state(_result(completed=[_record("get_timeline")]))
    assert mutated_state(_result(completed=[_record("get_timeline", side_effects=("timeline",))]))
    assert mutated_state(_result(completed=[_record("insert_clip")]))


def test_immediate_failure_for_preconditions() -> None:
    guidance = detect_immediate_terminal_failure(_result([_record("split_clip", "PRECONDITION_FAILED: rev 4")]))

    assert guidance is not None
    assert guidance.failure_signature == "precondition:precondition_failed: rev <num>"
    assert "Refresh timeline context" in guidance.suggested_action


def test_immediate_failure_for_missing_track() -> None:
    guidance = detect_immediate_terminal_failure(_result([_record("insert_clip", "Track 'v9' not found")]))

    assert guidance is not None
    assert guidance.reason == "Repeated retries were stopped because the target track does not exist."
    assert guidance.failure_signature == "precondition:track <value> not found"


def test_immediate_failure_for_empty_timeline() -> None:
    failed = _result([_record("split_clip", "Invalid clip range")])

    guidance = detect_immediate_terminal_failure(failed, EditingContext())
    populated = detect_immediate_terminal_failure(failed, EditingContext(clip_ids=("clip-1",)))

    assert guidance is not None
    assert guidance.failure_signature == "precondition:no_timeline_clips"
    assert guidance.to_dict()["failureSignature"] == "precondition:no_timeline_clips"
    assert populated is None


def test_immediate_failure_ignores_runs_that_changed_the_project() -> None:
    result = _result([_record("insert_clip", "Track 'v9' not found")], completed=[_record("add_track")])

    assert detect_immediate_terminal_failure(result) is None
    assert detect_immediate_terminal_failure(_result()) is None


def test_repeated_failure_matches_normalised_signature() -> None:
    previous = _result([_record("Split_Clip", "Clip not found for id 'a1'")])
    current = _result([_record("split_clip", "Clip not found for id 'b7'")])

    guidance = detect_repeated_terminal_failure(previous, current)

    assert guidance is not None
    assert guidance.failure_signature == "split_clip:clip not found for id <value>"
    assert guidance.reason == "Repeated retries were stopped because the target clip could not be resolved."


def test_repeated_failure_generic_guidance() -> None:
    previous = _result([_record("set_volume", "Invalid gain")])

    guidance = detect_repeated_terminal_failure(previous, previous)

    assert guidance is not None
    assert guidance.reason == "Repeated retries were stopped after the same terminal failure from 'set_volume'."


def test_repeated_failure_ignores_transient_and_different_errors() -> None:
    transient = _result([_record("split_clip", "Request timeout")])
    first = _result([_record("split_clip", "Invalid clip range")])
    second = _result([_record("split_clip", "Clip not found")])

    assert detect_repeated_terminal_failure(transient, transient) is None
    assert detect_repeated_terminal_failure(first, second) is None


def test_failure_messages_summarise_failed_steps() -> None:
    messages = list(failure_messages(_result([_record("trim_clip", "Invalid clip range")])))

    assert messages == ["step-trim_clip (trim_clip): Invalid clip range"]
