"""Structured telemetry for planner, executor and orchestrator events.

Every component takes a :class:`Telemetry` and emits flat, JSON-safe events
named ``<component>.<what_happened>``. A session binds its run id (and the
executor its plan id) so sinks can group events without extra plumbing.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Protocol, Sequence

from .errors import AgentError


class TelemetrySink(Protocol):
    def write(self, event: Dict[str, Any]) -> None:
        """Persist or forward a telemetry event."""


@dataclass(frozen=True)
class Telemetry:
    """Fans events out to sinks; ``context`` is merged into every event."""

    sinks: Sequence[TelemetrySink] = ()
    context: Mapping[str, Any] = field(default_factory=dict)

    def emit(self, event: str, **payload: Any) -> None:
        if not self.sinks:
            return
        record: Dict[str, Any] = {"event": event, "time": time.time() * 1000, **self.context, **payload}
        for sink in self.sinks:
            try:
                sink.write(dict(record))
            except Exception:
                continue

    def emit_failure(self, event: str, error: BaseException, **payload: Any) -> None:
        """Emit ``event`` describing ``error`` with its code, phase and recoverability."""

        if isinstance(error, AgentError):
            details: Dict[str, Any] = {
                "code": error.code,
                "phase": error.phase.value,
                "recoverable": error.recoverable,
                "error": error.message,
            }
        else:
            details = {"code": type(error).__name__, "error": str(error)}
        details.update(payload)
        self.emit(event, **details)

    def bind(self, **context: Any) -> "Telemetry":
        return Telemetry(sinks=self.sinks, context={**self.context, **context})


@dataclass
class InMemorySink:
    events: List[Dict[str, Any]] = field(default_factory=list)

    def write(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [entry for entry in self.events if entry["event"] == event]


@dataclass
class JsonLinesSink:
    """Appends one JSON object per event; non-JSON values are written as strings."""

    path: Path
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    def write(self, event: Dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")


__all__ = ["InMemorySink", "JsonLinesSink", "Telemetry", "TelemetrySink"]
