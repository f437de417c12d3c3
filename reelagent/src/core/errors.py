"""Error taxonomy shared by the planner, validator, executor and orchestrator.

Every error raised by the agent loop derives from :class:`AgentError` and
carries a stable ``code``, the loop ``phase`` it was raised in, whether the
failure is ``recoverable`` and a millisecond ``timestamp``.  Errors serialise
to flat records through :meth:`AgentError.to_record` so they can be written
straight into telemetry or run manifests.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from .types import ExecutionResult


class AgentPhase(str, Enum):
    """Phases of the agent loop."""

    IDLE = "idle"
    THINKING = "thinking"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    OBSERVING = "observing"


def _now_ms() -> int:
    return int(time.time() * 1000)


class AgentError(Exception):
    """Root of the taxonomy."""

    code: str = "AGENT_ERROR"
    phase: AgentPhase = AgentPhase.IDLE
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        phase: AgentPhase | str | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if phase is not None:
            self.phase = AgentPhase(phase)
        if recoverable is not None:
            self.recoverable = bool(recoverable)
        self.timestamp = _now_ms()
        self.partial_result: Optional["ExecutionResult"] = None

    def details(self) -> Dict[str, Any]:
        """Kind specific fields merged into :meth:`to_record`."""

        return {}

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "phase": self.phase.value,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp,
        }
        record.update(self.details())
        if self.partial_result is not None:
            record["partial_result"] = self.partial_result.to_dict()
        return record


class ConfigurationError(AgentError):
    code = "CONFIG_ERROR"

    def __init__(self, message: str, invalid_field: str | None = None) -> None:
        super().__init__(message)
        self.invalid_field = invalid_field

    def details(self) -> Dict[str, Any]:
        return {"invalid_field": self.invalid_field}


class SessionActiveError(AgentError):
    code = "SESSION_ACTIVE"

    def __init__(self, message: str = "A session is already active") -> None:
        super().__init__(message)


class SessionAbortedError(AgentError):
    code = "SESSION_ABORTED"

    def __init__(self, reason: str | None = None, phase: AgentPhase | str = AgentPhase.EXECUTING) -> None:
        message = f"Session aborted: {reason}" if reason else "Session aborted"
        super().__init__(message, phase=phase)
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"reason": self.reason}


class _TimeoutMixin:
    timeout_ms: int

    def details(self) -> Dict[str, Any]:
        return {"timeout_ms": self.timeout_ms}


class ThinkingTimeoutError(_TimeoutMixin, AgentError):
    code = "THINKING_TIMEOUT"
    phase = AgentPhase.THINKING
    recoverable = True

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Understanding timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class UnderstandingError(AgentError):
    code = "UNDERSTANDING_FAILED"
    phase = AgentPhase.THINKING
    recoverable = True

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.extra = details

    def details(self) -> Dict[str, Any]:
        return {"details": self.extra}


class PlanningTimeoutError(_TimeoutMixin, AgentError):
    code = "PLANNING_TIMEOUT"
    phase = AgentPhase.PLANNING
    recoverable = True

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Planning timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class PlanGenerationError(AgentError):
    code = "PLAN_GENERATION_FAILED"
    phase = AgentPhase.PLANNING
    recoverable = True

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"reason": self.reason}


class PlanValidationError(AgentError):
    code = "PLAN_VALIDATION_FAILED"
    phase = AgentPhase.PLANNING
    recoverable = True

    def __init__(self, message: str, validation_errors: Iterable[str] = ()) -> None:
        errors = [str(error) for error in validation_errors]
        summary = ", ".join(errors) if errors else "no details"
        super().__init__(f"{message}: {summary}")
        self.validation_errors: List[str] = errors

    def details(self) -> Dict[str, Any]:
        return {"validation_errors": list(self.validation_errors)}


class ToolNotFoundError(AgentError):
    code = "TOOL_NOT_FOUND"
    phase = AgentPhase.PLANNING

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name

    def details(self) -> Dict[str, Any]:
        return {"tool_name": self.tool_name}


class ApprovalRejectedError(AgentError):
    code = "APPROVAL_REJECTED"
    phase = AgentPhase.AWAITING_APPROVAL

    def __init__(self, plan_id: str, reason: str | None = None) -> None:
        message = f"Plan {plan_id} was rejected"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.plan_id = plan_id
        self.reason = reason

    def details(self) -> Dict[str, Any]:
        return {"plan_id": self.plan_id, "reason": self.reason}


class ApprovalTimeoutError(_TimeoutMixin, AgentError):
    code = "APPROVAL_TIMEOUT"
    phase = AgentPhase.AWAITING_APPROVAL

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Approval timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ExecutionTimeoutError(AgentError):
    code = "EXECUTION_TIMEOUT"
    phase = AgentPhase.EXECUTING
    recoverable = True

    def __init__(self, timeout_ms: int, tool_name: str | None = None, step_id: str | None = None) -> None:
        if tool_name:
            message = f"Tool {tool_name} timed out after {timeout_ms}ms"
        else:
            message = f"Execution timed out after {timeout_ms}ms"
        super().__init__(message)
        self.timeout_ms = timeout_ms
        self.tool_name = tool_name
        self.step_id = step_id

    def details(self) -> Dict[str, Any]:
        return {"timeout_ms": self.timeout_ms, "tool_name": self.tool_name, "step_id": self.step_id}


class ToolExecutionError(AgentError):
    code = "TOOL_EXECUTION_FAILED"
    phase = AgentPhase.EXECUTING

    def __init__(
        self,
        step_id: str,
        tool_error: str,
        *,
        tool_name: str | None = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(f"Tool execution failed at step {step_id}: {tool_error}", recoverable=recoverable)
        self.step_id = step_id
        self.tool_error = tool_error
        self.tool_name = tool_name

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id, "tool_error": self.tool_error, "tool_name": self.tool_name}


class InvalidArgumentsError(AgentError):
    code = "INVALID_ARGUMENTS"
    phase = AgentPhase.EXECUTING
    recoverable = True

    def __init__(self, tool_name: str, errors: Sequence[str]) -> None:
        super().__init__(f"Invalid arguments for {tool_name}: {', '.join(errors) or 'no details'}")
        self.tool_name = tool_name
        self.errors = list(errors)

    def details(self) -> Dict[str, Any]:
        return {"tool_name": self.tool_name, "errors": list(self.errors)}


class DependencyError(AgentError):
    code = "DEPENDENCY_NOT_SATISFIED"
    phase = AgentPhase.EXECUTING

    def __init__(self, step_id: str, missing_dependencies: Sequence[str], message: str | None = None) -> None:
        missing = list(missing_dependencies)
        if message is None:
            message = f"Step {step_id} has unsatisfied dependencies: {', '.join(missing)}"
        super().__init__(message)
        self.step_id = step_id
        self.missing_dependencies = missing

    def details(self) -> Dict[str, Any]:
        return {"step_id": self.step_id, "missing_dependencies": list(self.missing_dependencies)}


class StepBudgetExceededError(PlanValidationError):
    """A plan rejected for its length; the step-count message is its only validation error."""

    code = "STEP_BUDGET_EXCEEDED"

    def __init__(self, max_steps: int, attempted_steps: int) -> None:
        super().__init__(
            "Plan exceeds step budget",
            [f"Plan has {attempted_steps} steps, maximum is {max_steps}"],
        )
        self.max_steps = max_steps
        self.attempted_steps = attempted_steps

    def details(self) -> Dict[str, Any]:
        record = super().details()
        record.update(max_steps=self.max_steps, attempted_steps=self.attempted_steps)
        return record


class ToolBudgetExceededError(AgentError):
    code = "TOOL_BUDGET_EXCEEDED"
    phase = AgentPhase.EXECUTING
    recoverable = True

    def __init__(
        self,
        max_tool_calls: int,
        used_tool_calls: int,
        step_id: str | None = None,
        tool_name: str | None = None,
    ) -> None:
        location = ""
        if step_id:
            location = f" at step {step_id}"
            if tool_name:
                location += f" ({tool_name})"
        super().__init__(
            f"Tool call budget exceeded{location}: used {used_tool_calls}, allowed {max_tool_calls}"
        )
        self.max_tool_calls = max_tool_calls
        self.used_tool_calls = used_tool_calls
        self.step_id = step_id
        self.tool_name = tool_name

    def details(self) -> Dict[str, Any]:
        return {
            "max_tool_calls": self.max_tool_calls,
            "used_tool_calls": self.used_tool_calls,
            "step_id": self.step_id,
            "tool_name": self.tool_name,
        }


class DoomLoopError(AgentError):
    code = "DOOM_LOOP_DETECTED"
    phase = AgentPhase.EXECUTING

    def __init__(self, tool: str, consecutive_calls: int) -> None:
        super().__init__(
            f"Doom loop detected: {tool} called {consecutive_calls} times with identical arguments"
        )
        self.tool = tool
        self.consecutive_calls = consecutive_calls

    def details(self) -> Dict[str, Any]:
        return {"tool": self.tool, "consecutive_calls": self.consecutive_calls}


class ObservationTimeoutError(_TimeoutMixin, AgentError):
    code = "OBSERVATION_TIMEOUT"
    phase = AgentPhase.OBSERVING
    recoverable = True

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Observation timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ObservationError(AgentError):
    code = "OBSERVATION_FAILED"
    phase = AgentPhase.OBSERVING
    recoverable = True


class MaxIterationsError(AgentError):
    code = "MAX_ITERATIONS_EXCEEDED"
    phase = AgentPhase.OBSERVING

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Maximum iterations ({max_iterations}) exceeded")
        self.max_iterations = max_iterations

    def details(self) -> Dict[str, Any]:
        return {"max_iterations": self.max_iterations}


class LLMError(AgentError):
    code = "LLM_ERROR"
    phase = AgentPhase.THINKING
    recoverable = True

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        *,
        phase: AgentPhase | str | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message, phase=phase, recoverable=recoverable)
        self.provider = provider
        self.status_code = status_code

    def details(self) -> Dict[str, Any]:
        return {"provider": self.provider, "status_code": self.status_code}


class RateLimitError(LLMError):
    def __init__(self, provider: str, retry_after_ms: int | None = None, *, phase: AgentPhase | str | None = None) -> None:
        message = f"Rate limited by {provider}"
        if retry_after_ms is not None:
            message = f"{message}, retry after {retry_after_ms}ms"
        super().__init__(message, provider, 429, phase=phase, recoverable=True)
        self.retry_after_ms = retry_after_ms

    def details(self) -> Dict[str, Any]:
        record = super().details()
        record["retry_after_ms"] = self.retry_after_ms
        return record


class AuthenticationError(LLMError):
    def __init__(self, provider: str, *, phase: AgentPhase | str | None = None) -> None:
        super().__init__(f"Authentication failed for {provider}", provider, 401, phase=phase, recoverable=False)


class ContextError(AgentError):
    code = "CONTEXT_ERROR"

    def __init__(self, message: str, missing_fields: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing_fields = list(missing_fields)

    def details(self) -> Dict[str, Any]:
        return {"missing_fields": list(self.missing_fields)}


class UnhandledAgentError(AgentError):
    """Box for exceptions raised outside the taxonomy."""

    code = "UNHANDLED_ERROR"
    recoverable = True

    def __init__(self, message: str, phase: AgentPhase | str, original_name: str | None = None) -> None:
        super().__init__(message, phase=phase)
        self.original_name = original_name

    def details(self) -> Dict[str, Any]:
        return {"original_name": self.original_name}


def is_agent_error(error: BaseException | None) -> bool:
    return isinstance(error, AgentError)


def classify_recoverable(error: BaseException | None) -> bool:
    """Return the error's own flag, ``False`` for anything outside the taxonomy."""

    if isinstance(error, AgentError):
        return error.recoverable
    return False


def wrap_error(error: BaseException, phase: AgentPhase | str) -> AgentError:
    """Box ``error`` into the taxonomy; taxonomy errors are returned unchanged."""

    if isinstance(error, AgentError):
        return error
    phase = AgentPhase(phase)
    text = str(error) or type(error).__name__
    wrapped = UnhandledAgentError(f"[{phase.value}] {text}", phase, type(error).__name__)
    wrapped.__cause__ = error
    return wrapped


def timeout_for(phase: AgentPhase | str, timeout_ms: int) -> AgentError:
    """Return the dedicated timeout error for ``phase``."""

    phase = AgentPhase(phase)
    if phase is AgentPhase.THINKING:
        return ThinkingTimeoutError(timeout_ms)
    if phase is AgentPhase.PLANNING:
        return PlanningTimeoutError(timeout_ms)
    if phase is AgentPhase.AWAITING_APPROVAL:
        return ApprovalTimeoutError(timeout_ms)
    if phase is AgentPhase.OBSERVING:
        return ObservationTimeoutError(timeout_ms)
    return ExecutionTimeoutError(timeout_ms)


def attach_partial_result(error: AgentError, result: "ExecutionResult") -> AgentError:
    error.partial_result = result
    return error


def get_partial_result(error: BaseException | None) -> Optional["ExecutionResult"]:
    if isinstance(error, AgentError):
        return error.partial_result
    return None


__all__ = [
    "AgentError",
    "AgentPhase",
    "ApprovalRejectedError",
    "ApprovalTimeoutError",
    "AuthenticationError",
    "ConfigurationError",
    "ContextError",
    "DependencyError",
    "DoomLoopError",
    "ExecutionTimeoutError",
    "InvalidArgumentsError",
    "LLMError",
    "MaxIterationsError",
    "ObservationError",
    "ObservationTimeoutError",
    "PlanGenerationError",
    "PlanValidationError",
    "PlanningTimeoutError",
    "RateLimitError",
    "SessionAbortedError",
    "SessionActiveError",
    "StepBudgetExceededError",
    "ThinkingTimeoutError",
    "ToolBudgetExceededError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "UnderstandingError",
    "UnhandledAgentError",
    "attach_partial_result",
    "classify_recoverable",
    "get_partial_result",
    "is_agent_error",
    "timeout_for",
    "wrap_error",
]
