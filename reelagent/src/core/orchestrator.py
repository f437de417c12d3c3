"""Iteration control for an editing session.

One session turns a user intent into plans and executions until a plan
runs cleanly, a terminal failure is recognised, or the iteration budget is
spent.  Failed iterations feed their errors back to the planner.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import OrchestratorConfig
from .errors import (
    AgentError,
    AgentPhase,
    MaxIterationsError,
    SessionAbortedError,
    SessionActiveError,
    wrap_error,
)
from .failures import (
    TerminalFailureGuidance,
    detect_immediate_terminal_failure,
    detect_repeated_terminal_failure,
    failure_messages,
)
from .manifest import ExecutionManifest
from .planner import Planner
from .scheduler import CancellationToken, Executor, ProgressObserver
from .telemetry import Telemetry
from .types import EditingContext, ExecutionResult, Plan
from ..governance.gatekeeper import Gatekeeper


@dataclass
class IterationRecord:
    """What happened in one plan/execute cycle."""

    index: int
    plan: Optional[Plan] = None
    result: Optional[ExecutionResult] = None
    error: Optional[Dict[str, Any]] = None
    guidance: Optional[TerminalFailureGuidance] = None


@dataclass
class SessionReport:
    run_id: str
    intent: str
    success: bool
    iterations: List[IterationRecord] = field(default_factory=list)
    guidance: Optional[TerminalFailureGuidance] = None
    manifest_path: Optional[Path] = None

    @property
    def final_result(self) -> Optional[ExecutionResult]:
        for iteration in reversed(self.iterations):
            if iteration.result is not None:
                return iteration.result
        return None


@dataclass
class Orchestrator:
    planner: Planner
    executor: Executor
    gatekeeper: Gatekeeper | None = None
    config: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    telemetry: Telemetry = field(default_factory=Telemetry)
    working_dir: Path | None = None

    _token: CancellationToken | None = field(init=False, default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._token is not None

    def abort(self, reason: str | None = None) -> None:
        if self._token is not None:
            self._token.cancel(reason or "aborted by user")

    async def run(
        self,
        intent: str,
        context: EditingContext | None = None,
        on_progress: ProgressObserver | None = None,
    ) -> SessionReport:
        if self._token is not None:
            raise SessionActiveError()
        token = CancellationToken()
        self._token = token
        run_id = uuid.uuid4().hex
        context = context or EditingContext()
        iterations: List[IterationRecord] = []
        self.telemetry.emit("orchestrator.run_started", run_id=run_id, intent=intent)

        try:
            report = await self._iterate(run_id, intent, context, on_progress, token, iterations)
        except AgentError as exc:
            self._finish(run_id, intent, iterations, error=exc)
            self.telemetry.emit_failure("orchestrator.run_failed", exc, run_id=run_id)
            raise
        except Exception as exc:
            wrapped = wrap_error(exc, AgentPhase.IDLE)
            self._finish(run_id, intent, iterations, error=wrapped)
            self.telemetry.emit_failure("orchestrator.run_failed", wrapped, run_id=run_id)
            raise wrapped from exc
        finally:
            self._token = None

        report.manifest_path = self._finish(run_id, intent, iterations, success=report.success, guidance=report.guidance)
        self.telemetry.emit(
            "orchestrator.run_completed",
            run_id=run_id,
            success=report.success,
            iterations=len(iterations),
            guidance=report.guidance.failure_signature if report.guidance else None,
        )
        return report

    async def _iterate(
        self,
        run_id: str,
        intent: str,
        context: EditingContext,
        on_progress: ProgressObserver | None,
        token: CancellationToken,
        iterations: List[IterationRecord],
    ) -> SessionReport:
        feedback: List[Dict[str, Any]] = []
        previous: ExecutionResult | None = None

        for index in range(1, self.config.max_iterations + 1):
            if token.cancelled:
                raise SessionAbortedError(token.reason, phase=AgentPhase.PLANNING)
            iteration = IterationRecord(index=index)
            iterations.append(iteration)
            self.telemetry.emit("orchestrator.iteration_started", run_id=run_id, iteration=index)

            try:
                plan = await self.planner.plan(intent, context, feedback=feedback)
            except AgentError as exc:
                iteration.error = exc.to_record()
                if not exc.recoverable:
                    raise
                feedback.append({"iteration": index, "error": exc.to_record()})
                self.telemetry.emit_failure("orchestrator.iteration_failed", exc, run_id=run_id, iteration=index)
                continue
            iteration.plan = plan

            if self.gatekeeper is not None:
                await self.gatekeeper.review(plan)
            if token.cancelled:
                raise SessionAbortedError(token.reason, phase=AgentPhase.AWAITING_APPROVAL)

            try:
                result = await self.executor.execute(plan, context, on_progress, cancel_token=token)
            except AgentError as exc:
                iteration.error = exc.to_record()
                iteration.result = exc.partial_result
                if isinstance(exc, SessionAbortedError) or not exc.recoverable:
                    raise
                feedback.append({"iteration": index, "error": exc.to_record()})
                self.telemetry.emit_failure("orchestrator.iteration_failed", exc, run_id=run_id, iteration=index)
                previous = exc.partial_result
                continue
            iteration.result = result

            if result.success:
                self.telemetry.emit("orchestrator.iteration_completed", run_id=run_id, iteration=index, success=True)
                return SessionReport(run_id=run_id, intent=intent, success=True, iterations=iterations)

            guidance = detect_immediate_terminal_failure(result, context)
            if guidance is None and previous is not None:
                guidance = detect_repeated_terminal_failure(previous, result)
            if guidance is not None:
                iteration.guidance = guidance
                self.telemetry.emit(
                    "orchestrator.terminal_failure",
                    run_id=run_id,
                    iteration=index,
                    signature=guidance.failure_signature,
                )
                return SessionReport(
                    run_id=run_id,
                    intent=intent,
                    success=False,
                    iterations=iterations,
                    guidance=guidance,
                )

            feedback.append({"iteration": index, "failures": list(failure_messages(result))})
            self.telemetry.emit("orchestrator.iteration_completed", run_id=run_id, iteration=index, success=False)
            previous = result

        raise MaxIterationsError(self.config.max_iterations)

    def _finish(
        self,
        run_id: str,
        intent: str,
        iterations: List[IterationRecord],
        *,
        success: bool = False,
        error: AgentError | None = None,
        guidance: TerminalFailureGuidance | None = None,
    ) -> Path | None:
        if self.working_dir is None:
            return None
        manifest = ExecutionManifest.build(
            run_id=run_id,
            intent=intent,
            success=success,
            iterations=iterations,
            error=error.to_record() if error is not None else None,
            guidance=guidance,
        )
        run_dir = self.working_dir / f"run_{run_id}"
        run_dir.mkdir(parents=True, exist_ok=True)
        path = run_dir / "manifest.json"
        manifest.write(path)
        self.telemetry.emit("orchestrator.manifest_written", run_id=run_id, path=str(path))
        return path


__all__ = ["IterationRecord", "Orchestrator", "SessionReport"]
