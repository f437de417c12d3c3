"""Execution scheduler for validated plans.

The :class:`Executor` runs a plan's steps in dependency order and enforces
the per-step timeout, bounded retries of transient failures, the tool-call
budget and doom-loop detection.  Every error raised during a run carries the
partial :class:`ExecutionResult` accumulated so far.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .config import ExecutorConfig
from .doom_loop import DoomLoopDetector
from .errors import (
    AgentError,
    AgentPhase,
    DependencyError,
    DoomLoopError,
    ExecutionTimeoutError,
    SessionAbortedError,
    SessionActiveError,
    ToolBudgetExceededError,
    ToolExecutionError,
    attach_partial_result,
    wrap_error,
)
from .failures import is_transient
from .references import lookup_from_results, resolve_references
from .telemetry import Telemetry
from .tools import ToolCatalog, ToolExecutor
from .types import (
    ExecutionResult,
    Plan,
    PlanStep,
    ProgressEvent,
    ProgressKind,
    StepExecutionRecord,
    ToolExecutionResult,
)


ProgressObserver = Callable[[ProgressEvent], Any]


def _now_ms() -> float:
    return time.time() * 1000


class CancellationToken:
    """Shared abort signal for one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def execution_order(steps: Sequence[PlanStep]) -> List[PlanStep]:
    """Topologically order ``steps`` with Kahn's algorithm.

    Steps that become ready at the same time keep their authored order.
    """

    by_id = {step.id: step for step in steps}
    for step in steps:
        missing = [dep for dep in step.depends_on if dep not in by_id]
        if missing:
            raise DependencyError(
                step.id,
                missing,
                f"Step {step.id} depends on unknown steps: {', '.join(missing)}",
            )

    in_degree: Dict[str, int] = {}
    dependants: Dict[str, List[PlanStep]] = {step.id: [] for step in steps}
    for step in steps:
        deps = list(dict.fromkeys(step.depends_on))
        in_degree[step.id] = len(deps)
        for dep in deps:
            dependants[dep].append(step)

    queue = deque(step for step in steps if in_degree[step.id] == 0)
    order: List[PlanStep] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for child in dependants[current.id]:
            in_degree[child.id] -= 1
            if in_degree[child.id] == 0:
                queue.append(child)

    if len(order) < len(steps):
        placed = {step.id for step in order}
        stuck = next(step for step in steps if step.id not in placed)
        raise DependencyError(
            stuck.id,
            [dep for dep in stuck.depends_on if dep not in placed],
            f"Circular dependency detected involving step '{stuck.id}'",
        )
    return order


@dataclass
class _RunState:
    total: int
    started: float = field(default_factory=time.perf_counter)
    completed: List[StepExecutionRecord] = field(default_factory=list)
    failed: List[StepExecutionRecord] = field(default_factory=list)
    outputs: Dict[str, ToolExecutionResult] = field(default_factory=dict)
    completed_ids: Set[str] = field(default_factory=set)
    failed_ids: Set[str] = field(default_factory=set)
    tool_calls: int = 0

    def snapshot(self, *, aborted: bool = False) -> ExecutionResult:
        return ExecutionResult(
            success=not self.failed and not aborted,
            completed_steps=tuple(self.completed),
            failed_steps=tuple(self.failed),
            total_duration=(time.perf_counter() - self.started) * 1000,
            aborted=aborted,
            tool_calls_used=self.tool_calls,
        )


@dataclass
class _Outcome:
    record: Optional[StepExecutionRecord] = None
    error: Optional[AgentError] = None


class Executor:
    """Runs validated plans against a tool executor."""

    def __init__(
        self,
        tools: ToolExecutor,
        config: ExecutorConfig | None = None,
        telemetry: Telemetry | None = None,
        *,
        catalog: ToolCatalog | None = None,
    ) -> None:
        self.tools = tools
        self.config = config or ExecutorConfig()
        self.telemetry = telemetry or Telemetry()
        self.catalog = catalog
        self._token: CancellationToken | None = None

    @property
    def running(self) -> bool:
        return self._token is not None

    def abort(self, reason: str | None = None) -> None:
        if self._token is not None:
            self._token.cancel(reason or "aborted by caller")

    async def execute(
        self,
        plan: Plan,
        context: Any = None,
        on_progress: ProgressObserver | None = None,
        *,
        max_tool_calls: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        if self._token is not None:
            raise SessionActiveError("Executor is already running a plan")
        token = cancel_token or CancellationToken()
        self._token = token
        budget = max_tool_calls if max_tool_calls is not None else self.config.max_tool_calls
        detector = DoomLoopDetector(self.config.doom_loop_threshold)
        state = _RunState(total=len(plan.steps))
        telemetry = self.telemetry.bind(plan_id=plan.id)

        telemetry.emit("executor.run_started", steps=len(plan.steps), max_tool_calls=budget)
        await self._notify(on_progress, ProgressEvent(kind=ProgressKind.STARTED, total_steps=state.total))
        try:
            order = execution_order(plan.steps)
            index = {step.id: position for position, step in enumerate(plan.steps)}
            for wave in self._waves(order, index):
                if token.cancelled:
                    raise SessionAbortedError(token.reason)
                for step in wave:
                    telemetry.emit("executor.step_started", step_id=step.id, tool=step.tool)
                    await self._notify(
                        on_progress,
                        ProgressEvent(
                            kind=ProgressKind.STEP_STARTED,
                            total_steps=state.total,
                            completed=len(state.completed),
                            step_id=step.id,
                            tool=step.tool,
                        ),
                    )
                if len(wave) == 1:
                    outcomes = [await self._run_step(wave[0], state, detector, budget, context, token, telemetry)]
                else:
                    outcomes = list(
                        await asyncio.gather(
                            *(
                                self._run_step(step, state, detector, budget, context, token, telemetry)
                                for step in wave
                            )
                        )
                    )
                for outcome in outcomes:
                    if outcome.record is not None:
                        await self._flush(outcome, state, on_progress, telemetry)
                for outcome in outcomes:
                    if outcome.error is not None:
                        raise outcome.error
                if state.failed and self.config.stop_on_error:
                    break
        except SessionAbortedError as exc:
            partial = state.snapshot(aborted=True)
            attach_partial_result(exc, partial)
            telemetry.emit("executor.run_aborted", reason=exc.reason, completed=len(partial.completed_steps))
            await self._notify(
                on_progress,
                ProgressEvent(
                    kind=ProgressKind.ABORTED,
                    total_steps=state.total,
                    completed=len(partial.completed_steps),
                    error=exc.message,
                ),
            )
            raise
        except AgentError as exc:
            attach_partial_result(exc, state.snapshot())
            telemetry.emit_failure("executor.run_failed", exc)
            raise
        except Exception as exc:
            wrapped = wrap_error(exc, AgentPhase.EXECUTING)
            attach_partial_result(wrapped, state.snapshot())
            telemetry.emit_failure("executor.run_failed", wrapped)
            raise wrapped from exc
        finally:
            self._token = None

        result = state.snapshot()
        telemetry.emit(
            "executor.run_completed",
            success=result.success,
            completed=len(result.completed_steps),
            failed=len(result.failed_steps),
            tool_calls_used=result.tool_calls_used,
            duration_ms=result.total_duration,
        )
        await self._notify(
            on_progress,
            ProgressEvent(kind=ProgressKind.COMPLETED, total_steps=state.total, completed=len(result.completed_steps)),
        )
        return result

    def _waves(self, order: Sequence[PlanStep], index: Dict[str, int]) -> List[List[PlanStep]]:
        if not self.config.parallel_execution:
            return [[step] for step in order]
        waves: List[List[PlanStep]] = []
        scheduled: Set[str] = set()
        pending = list(order)
        while pending:
            wave: List[PlanStep] = []
            for step in pending:
                if any(dep not in scheduled for dep in step.depends_on):
                    continue
                if not self._parallelizable(step):
                    if not wave:
                        wave.append(step)
                    break
                wave.append(step)
            wave.sort(key=lambda step: index[step.id])
            waves.append(wave)
            scheduled.update(step.id for step in wave)
            pending = [step for step in pending if step.id not in scheduled]
        return waves

    def _parallelizable(self, step: PlanStep) -> bool:
        if self.catalog is None:
            return True
        spec = self.catalog.get_definition(step.tool)
        return spec is None or spec.parallelizable

    async def _run_step(
        self,
        step: PlanStep,
        state: _RunState,
        detector: DoomLoopDetector,
        budget: int | None,
        context: Any,
        token: CancellationToken,
        telemetry: Telemetry,
    ) -> _Outcome:
        start = _now_ms()

        def _failed(
            args: Any,
            error: str,
            retries: int = 0,
            exhausted: bool = False,
            result: ToolExecutionResult | None = None,
        ) -> StepExecutionRecord:
            return StepExecutionRecord(
                step_id=step.id,
                tool=step.tool,
                args=args,
                result=result or ToolExecutionResult(success=False, error=error),
                start_time=start,
                end_time=_now_ms(),
                retry_count=retries,
                retries_exhausted=exhausted,
            )

        missing = [dep for dep in step.depends_on if dep not in state.completed_ids]
        if missing:
            if all(dep in state.failed_ids for dep in missing):
                return _Outcome(_failed(dict(step.args), f"Skipped: dependency {', '.join(missing)} failed"))
            return _Outcome(error=DependencyError(step.id, missing))

        resolution = resolve_references(step.args, lookup_from_results(state.outputs))
        if not resolution.ok:
            details = "; ".join(f"{failure.path}: {failure.reason}" for failure in resolution.failures)
            return _Outcome(_failed(dict(step.args), f"Unresolved step references: {details}"))
        args = resolution.args

        if detector.check(step.tool, args):
            return _Outcome(error=DoomLoopError(step.tool, detector.threshold))

        retries = 0
        last: ToolExecutionResult | None = None
        while True:
            if token.cancelled:
                return _Outcome(_failed(args, "Execution aborted", retries), SessionAbortedError(token.reason))
            if budget is not None and state.tool_calls >= budget:
                error = ToolBudgetExceededError(budget, state.tool_calls, step.id, step.tool)
                record = _failed(args, error.message, retries, result=last) if last is not None else None
                return _Outcome(record, error)
            state.tool_calls += 1
            try:
                result = await self._invoke(step, args, context, token)
            except SessionAbortedError as exc:
                return _Outcome(_failed(args, "Execution aborted", retries), exc)
            except AgentError as exc:
                return _Outcome(_failed(args, exc.message, retries), exc)
            except Exception as exc:
                error = ToolExecutionError(step.id, str(exc) or type(exc).__name__, tool_name=step.tool)
                return _Outcome(_failed(args, error.tool_error, retries), error)

            if result.success:
                return _Outcome(
                    StepExecutionRecord(
                        step_id=step.id,
                        tool=step.tool,
                        args=args,
                        result=result,
                        start_time=start,
                        end_time=_now_ms(),
                        retry_count=retries,
                    )
                )
            last = result
            transient = is_transient(result.error)
            if transient and retries < self.config.max_retries and not token.cancelled:
                retries += 1
                telemetry.emit(
                    "executor.step_retry",
                    step_id=step.id,
                    tool=step.tool,
                    attempt=retries,
                    error=result.error,
                )
                continue
            return _Outcome(_failed(args, result.error or "unknown failure", retries, transient, result))

    async def _invoke(
        self,
        step: PlanStep,
        args: Dict[str, Any],
        context: Any,
        token: CancellationToken,
    ) -> ToolExecutionResult:
        call = asyncio.ensure_future(self.tools.execute(step.tool, args, context))
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled},
                timeout=self.config.step_timeout_ms / 1000,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
        if call in done:
            return ToolExecutionResult.coerce(call.result())
        call.cancel()
        call.add_done_callback(_discard)
        if token.cancelled:
            raise SessionAbortedError(token.reason)
        raise ExecutionTimeoutError(self.config.step_timeout_ms, step.tool, step.id)

    async def _flush(
        self,
        outcome: _Outcome,
        state: _RunState,
        on_progress: ProgressObserver | None,
        telemetry: Telemetry,
    ) -> None:
        record = outcome.record
        assert record is not None
        if record.result.success:
            state.completed.append(record)
            state.completed_ids.add(record.step_id)
            state.outputs[record.step_id] = record.result
            telemetry.emit(
                "executor.step_completed",
                step_id=record.step_id,
                tool=record.tool,
                retry_count=record.retry_count,
                duration_ms=record.end_time - record.start_time,
            )
            kind = ProgressKind.STEP_COMPLETED
        else:
            state.failed.append(record)
            state.failed_ids.add(record.step_id)
            telemetry.emit(
                "executor.step_failed",
                step_id=record.step_id,
                tool=record.tool,
                retry_count=record.retry_count,
                error=record.result.error,
            )
            kind = ProgressKind.STEP_FAILED
        await self._notify(
            on_progress,
            ProgressEvent(
                kind=kind,
                total_steps=state.total,
                completed=len(state.completed),
                step_id=record.step_id,
                tool=record.tool,
                record=record,
                error=record.result.error,
            ),
        )

    async def _notify(self, observer: ProgressObserver | None, event: ProgressEvent) -> None:
        if observer is None:
            return
        try:
            outcome = observer(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            self.telemetry.emit("executor.progress_observer_failed", kind=event.kind.value, error=str(exc))


def _discard(task: "asyncio.Future[Any]") -> None:
    if not task.cancelled():
        task.exception()


__all__ = ["CancellationToken", "Executor", "ProgressObserver", "execution_order"]
