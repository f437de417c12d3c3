"""Failure classification heuristics.

These helpers decide whether a failed tool call is worth retrying verbatim
and whether an iteration loop keeps hitting the same deterministic failure.
Everything here is a pure function over error messages and execution
results.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Sequence

from .types import EditingContext, ExecutionResult


_TRANSIENT_PATTERNS = (
    re.compile(r"timeout|timed out|deadline exceeded", re.I),
    re.compile(r"temporary|temporarily|transient", re.I),
    re.compile(r"try again", re.I),
    re.compile(r"rate limit|too many requests|\b429\b", re.I),
    re.compile(r"network|connection|econn|enet|eai_again|socket", re.I),
    re.compile(r"service unavailable|unavailable|server busy|busy", re.I),
)

_CLIP_NOT_FOUND = (
    re.compile(r"clip not found", re.I),
    re.compile(r"could not be found on the timeline", re.I),
    re.compile(r"no clips? (on|in) (the )?timeline", re.I),
    re.compile(r"timeline is empty", re.I),
)
_TRACK_NOT_FOUND = (re.compile(r"track[^\n]*not found", re.I), re.compile(r"unknown track", re.I))
_SEQUENCE_NOT_FOUND = (re.compile(r"sequence[^\n]*not found", re.I), re.compile(r"unknown sequence", re.I))
_ASSET_NOT_FOUND = (re.compile(r"asset[^\n]*not found", re.I), re.compile(r"file not found", re.I))
_PRECONDITION = (
    re.compile(r"precondition_failed", re.I),
    re.compile(r"preflight", re.I),
    re.compile(r"rev_conflict", re.I),
    re.compile(r"stale context", re.I),
    re.compile(r"placeholder", re.I),
    re.compile(r"alias", re.I),
)

CLIP_EDIT_TOOLS = frozenset({"split_clip", "trim_clip", "move_clip", "delete_clip", "delete_clips_in_range"})
READ_ONLY_PREFIXES = ("get_", "list_", "find_", "search_", "analyze_", "inspect_", "query_", "read_")

_QUOTED = re.compile(r"[\"'`][^\"'`]+[\"'`]")
_NUMBER = re.compile(r"\b\d+(?:\.\d+)?\b")
_SPACE = re.compile(r"\s+")


class NotFoundKind(str, Enum):
    CLIP = "clip"
    TRACK = "track"
    SEQUENCE = "sequence"
    ASSET = "asset"


@dataclass(frozen=True)
class NotFoundFailure:
    kind: NotFoundKind
    reason: str
    suggested_action: str


@dataclass(frozen=True)
class TerminalFailureGuidance:
    """Why an iteration loop should stop instead of retrying."""

    reason: str
    suggested_action: str
    failure_signature: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "reason": self.reason,
            "suggestedAction": self.suggested_action,
            "failureSignature": self.failure_signature,
        }


_NOT_FOUND_TABLE = (
    (
        NotFoundKind.CLIP,
        _CLIP_NOT_FOUND,
        "Repeated retries were stopped because the target clip could not be resolved.",
        "Select the target clip on the timeline or insert media first, then retry.",
    ),
    (
        NotFoundKind.TRACK,
        _TRACK_NOT_FOUND,
        "Repeated retries were stopped because the target track does not exist.",
        "Choose an existing track (or create one) and retry the request.",
    ),
    (
        NotFoundKind.SEQUENCE,
        _SEQUENCE_NOT_FOUND,
        "Repeated retries were stopped because the target sequence does not exist.",
        "Open the correct sequence before retrying this edit request.",
    ),
    (
        NotFoundKind.ASSET,
        _ASSET_NOT_FOUND,
        "Repeated retries were stopped because the referenced asset is missing.",
        "Import or relink the missing asset before retrying the operation.",
    ),
)


def _matches(message: Optional[str], patterns: Sequence[Pattern[str]]) -> bool:
    if not message or not message.strip():
        return False
    return any(pattern.search(message) for pattern in patterns)


def normalize_failure(message: Optional[str]) -> str:
    """Canonical form used to compare failures across attempts."""

    if not message or not message.strip():
        return "unknown failure"
    text = _QUOTED.sub("<value>", message.lower())
    text = _NUMBER.sub("<num>", text)
    return _SPACE.sub(" ", text).strip()


def is_transient(message: Optional[str]) -> bool:
    return _matches(message, _TRANSIENT_PATTERNS)


def is_precondition_failure(message: Optional[str]) -> bool:
    return _matches(message, _PRECONDITION)


def classify_not_found(message: Optional[str]) -> Optional[NotFoundFailure]:
    for kind, patterns, reason, action in _NOT_FOUND_TABLE:
        if _matches(message, patterns):
            return NotFoundFailure(kind=kind, reason=reason, suggested_action=action)
    return None


def is_read_only_tool(name: str) -> bool:
    return name.strip().lower().startswith(READ_ONLY_PREFIXES)


def is_clip_edit_tool(name: str) -> bool:
    return name.strip().lower() in CLIP_EDIT_TOOLS


def mutated_state(result: ExecutionResult) -> bool:
    """True once any completed step changed the project."""

    for record in result.completed_steps:
        if record.result.side_effects or record.result.undoable:
            return True
        if not is_read_only_tool(record.tool):
            return True
    return False


@dataclass(frozen=True)
class _Signature:
    tool: str
    normalized: str

    @property
    def key(self) -> str:
        return f"{self.tool.lower()}:{self.normalized}"


def _describe(signature: _Signature) -> str:
    not_found = classify_not_found(signature.normalized)
    if not_found is not None:
        return not_found.reason
    return f"Repeated retries were stopped after the same terminal failure from '{signature.tool}'."


def _suggest(signature: _Signature) -> str:
    not_found = classify_not_found(signature.normalized)
    if not_found is not None:
        return not_found.suggested_action
    return "Provide additional targeting details (clip/track/sequence) before retrying."


def _terminal_signatures(result: ExecutionResult) -> List[_Signature]:
    signatures: List[_Signature] = []
    seen = set()
    for record in result.failed_steps:
        if is_transient(record.result.error):
            continue
        signature = _Signature(record.tool, normalize_failure(record.result.error))
        if signature.key not in seen:
            seen.add(signature.key)
            signatures.append(signature)
    return signatures


def detect_immediate_terminal_failure(
    result: ExecutionResult,
    context: EditingContext | None = None,
) -> Optional[TerminalFailureGuidance]:
    """Spot failures that no retry of the same plan can fix."""

    if not result.failed_steps or mutated_state(result):
        return None

    for record in result.failed_steps:
        if is_precondition_failure(record.result.error):
            return TerminalFailureGuidance(
                reason="Execution stopped because plan arguments no longer match the current timeline state.",
                suggested_action="Refresh timeline context, re-run analysis tools, and retry with exact current IDs.",
                failure_signature=f"precondition:{normalize_failure(record.result.error)}",
            )

    for record in result.failed_steps:
        error = record.result.error
        if is_transient(error):
            continue
        not_found = classify_not_found(error)
        if not_found is None or not_found.kind is NotFoundKind.CLIP:
            continue
        signature = _Signature(record.tool, normalize_failure(error))
        return TerminalFailureGuidance(
            reason=_describe(signature),
            suggested_action=_suggest(signature),
            failure_signature=f"precondition:{signature.normalized}",
        )

    clip_count = len(context.clip_ids) if context is not None else 0
    clip_targeted = any(
        not is_transient(record.result.error)
        and (is_clip_edit_tool(record.tool) or _matches(record.result.error, _CLIP_NOT_FOUND))
        for record in result.failed_steps
    )
    if clip_count == 0 and clip_targeted:
        return TerminalFailureGuidance(
            reason="No clips are available on the timeline for clip-edit operations",
            suggested_action="Add a video clip to the timeline (or select an existing clip) before retrying this command.",
            failure_signature="precondition:no_timeline_clips",
        )
    return None


def detect_repeated_terminal_failure(
    previous: ExecutionResult,
    current: ExecutionResult,
) -> Optional[TerminalFailureGuidance]:
    """Return guidance when two consecutive runs hit the same terminal failure."""

    if mutated_state(previous) or mutated_state(current):
        return None
    baseline = {signature.key for signature in _terminal_signatures(previous)}
    if not baseline:
        return None
    for candidate in _terminal_signatures(current):
        if candidate.key in baseline:
            return TerminalFailureGuidance(
                reason=_describe(candidate),
                suggested_action=_suggest(candidate),
                failure_signature=candidate.key,
            )
    return None


def failure_messages(result: ExecutionResult) -> Iterable[str]:
    for record in result.failed_steps:
        yield f"{record.step_id} ({record.tool}): {record.result.error or 'unknown failure'}"


__all__ = [
    "CLIP_EDIT_TOOLS",
    "NotFoundFailure",
    "NotFoundKind",
    "READ_ONLY_PREFIXES",
    "TerminalFailureGuidance",
    "classify_not_found",
    "detect_immediate_terminal_failure",
    "detect_repeated_terminal_failure",
    "failure_messages",
    "is_clip_edit_tool",
    "is_precondition_failure",
    "is_read_only_tool",
    "is_transient",
    "mutated_state",
    "normalize_failure",
]
