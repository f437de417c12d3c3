from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Mapping


def call_signature(tool: str, args: Mapping[str, Any]) -> str:
    """Canonical text for a tool call; key order does not matter."""

    return json.dumps({"tool": tool, "args": args}, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class DoomLoopDetector:
    """Tracks the most recent calls and flags identical repetition.

    :meth:`check` records the call being made and returns ``True`` when it
    would be the ``threshold``-th consecutive identical call.
    """

    threshold: int = 3
    _history: Deque[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.threshold < 2:
            raise ValueError("threshold must be at least 2")
        self._history = deque(maxlen=self.threshold)

    def check(self, tool: str, args: Mapping[str, Any]) -> bool:
        self._history.append(call_signature(tool, args))
        if len(self._history) < self.threshold:
            return False
        first = self._history[0]
        return all(entry == first for entry in self._history)

    def reset(self) -> None:
        self._history.clear()


__all__ = ["DoomLoopDetector", "call_signature"]
