from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Tuple, Union

from ..core.errors import ApprovalRejectedError, ApprovalTimeoutError
from ..core.telemetry import Telemetry
from ..core.types import Plan, PlanStep, RiskLevel


Decision = Union[bool, Mapping[str, Any]]
Approver = Callable[[Plan], Union[Decision, Awaitable[Decision]]]


@dataclass(slots=True)
class Gatekeeper:
    """Approval gate placed between planning and execution.

    A plan needs approval when it sets ``requires_approval`` or when any step
    carries a risk level listed in ``required_risks``.  The ``approver``
    returns either a bool or a mapping with ``approved`` and an optional
    ``reason``; it may be a coroutine function.
    """

    approver: Approver | None = None
    required_risks: Tuple[RiskLevel, ...] = (RiskLevel.HIGH, RiskLevel.CRITICAL)
    timeout_ms: int = 300_000
    telemetry: Telemetry = field(default_factory=Telemetry)

    def risky_steps(self, plan: Plan) -> List[PlanStep]:
        risks = {RiskLevel.parse(level) for level in self.required_risks}
        return [step for step in plan.steps if step.risk_level in risks]

    def requires_approval(self, plan: Plan) -> bool:
        return plan.requires_approval or bool(self.risky_steps(plan))

    async def review(self, plan: Plan) -> bool:
        """Return ``True`` when approval was granted, ``False`` when none was needed."""

        if not self.requires_approval(plan):
            return False
        risky = [step.id for step in self.risky_steps(plan)]
        self.telemetry.emit("governance.approval_requested", plan_id=plan.id, risky_steps=risky)
        if self.approver is None:
            self.telemetry.emit("governance.approval_rejected", plan_id=plan.id, reason="no approver")
            raise ApprovalRejectedError(plan.id, "no approver configured")

        try:
            decision = await asyncio.wait_for(self._ask(plan), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            self.telemetry.emit("governance.approval_timeout", plan_id=plan.id, timeout_ms=self.timeout_ms)
            raise ApprovalTimeoutError(self.timeout_ms) from exc

        approved, reason = _parse_decision(decision)
        if not approved:
            self.telemetry.emit("governance.approval_rejected", plan_id=plan.id, reason=reason)
            raise ApprovalRejectedError(plan.id, reason)
        self.telemetry.emit("governance.approval_granted", plan_id=plan.id)
        return True

    async def _ask(self, plan: Plan) -> Decision:
        assert self.approver is not None
        outcome = self.approver(plan)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome


def _parse_decision(decision: Decision) -> Tuple[bool, str | None]:
    if isinstance(decision, Mapping):
        reason = decision.get("reason")
        return bool(decision.get("approved", False)), str(reason) if reason else None
    return bool(decision), None


__all__ = ["Approver", "Gatekeeper"]
