"""Ordered, halting rollback execution with post-rollback verification."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta

from rolloutgate.errors import TrafficShiftError
from rolloutgate.health import HealthCollector, PushHealthCollector, evaluate_criteria
from rolloutgate.logging import get_logger
from rolloutgate.models import RollbackPlan, RollbackResult, RollbackStep
from rolloutgate.traffic import TrafficControl

logger = get_logger(__name__)

RollbackAction = Callable[[RollbackStep, str], Awaitable[None]]
StepCallback = Callable[[int], None]


class RollbackManager:
    """Run a rollback plan's steps strictly in order.

    The first failing step halts the sequence: later steps are never run
    out of order and nothing is retried. Success is only reported after the
    traffic router confirms 0% on the new version and a fresh health sample
    satisfies the plan's verification criteria.
    """

    def __init__(
        self,
        *,
        traffic: TrafficControl,
        health: HealthCollector,
        actions: Mapping[str, RollbackAction] | None = None,
        verify_attempts: int = 3,
        verify_interval_seconds: float = 1.0,
        verify_window: timedelta = timedelta(minutes=1),
    ) -> None:
        self.traffic = traffic
        self.health = health
        self.verify_attempts = max(1, verify_attempts)
        self.verify_interval_seconds = max(0.0, verify_interval_seconds)
        self.verify_window = verify_window
        self._actions: dict[str, RollbackAction] = {"shift_traffic": self._shift_traffic}
        if actions:
            self._actions.update(actions)

    def register_action(self, name: str, action: RollbackAction) -> None:
        self._actions[name] = action

    async def execute_rollback(
        self,
        plan: RollbackPlan,
        *,
        target: str,
        start_at: int = 0,
        on_step: StepCallback | None = None,
    ) -> RollbackResult:
        """Execute ``plan`` from step ``start_at`` and verify the result.

        Args:
            plan: Ordered undo sequence.
            target: Rollout target the plan undoes.
            start_at: Number of steps already completed (resumed rollbacks).
            on_step: Called with the completed-step count after each step.

        Returns:
            RollbackResult; ``success`` is False on any step or verification failure.
        """
        completed = max(0, min(start_at, len(plan.steps)))
        for position in range(completed, len(plan.steps)):
            step = plan.steps[position]
            action = self._actions.get(step.action)
            if action is None:
                error = f"unknown rollback action {step.action!r}"
                return self._halt(target, completed, step, error)
            try:
                await action(step, target)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                return self._halt(target, completed, step, str(exc) or type(exc).__name__)
            completed = position + 1
            logger.info(
                "rollback_step_completed",
                target=target,
                step=step.name,
                action=step.action,
                completed=completed,
            )
            if on_step is not None:
                on_step(completed)

        verified, detail = await self.verify(plan, target=target)
        if not verified:
            logger.error("rollback_verification_failed", target=target, detail=detail)
        return RollbackResult(
            success=verified,
            steps_completed=completed,
            verified=verified,
            error=None if verified else detail,
            detail=detail,
        )

    async def verify(self, plan: RollbackPlan, *, target: str) -> tuple[bool, str]:
        """Confirm traffic is fully back on the prior version and healthy."""
        try:
            fraction = await self.traffic.current_fraction(target)
        except TrafficShiftError as exc:
            return False, f"cannot confirm traffic state: {exc.reason}"
        if fraction != 0.0:
            return False, f"{fraction:g}% of traffic still on the new version"

        if isinstance(self.health, PushHealthCollector):
            # Samples buffered before the revert describe the new version.
            self.health.discard(target)

        last_reason = "no post-rollback health sample"
        for attempt in range(self.verify_attempts):
            sample = await self.health.sample(target, self.verify_window)
            if sample is not None:
                verdict = evaluate_criteria(plan.verification, [sample])
                if verdict.outcome == "pass":
                    return True, "traffic reverted to prior version; post-rollback health verified"
                if verdict.outcome == "violated":
                    return False, f"post-rollback health check failed: {verdict.rationale()}"
                last_reason = verdict.rationale()
            if attempt < self.verify_attempts - 1:
                await asyncio.sleep(self.verify_interval_seconds)
        return False, last_reason

    async def _shift_traffic(self, step: RollbackStep, target: str) -> None:
        fraction = float(step.params.get("fraction", 0.0))
        await self.traffic.shift(step.target_ref or target, fraction)

    def _halt(
        self, target: str, completed: int, step: RollbackStep, error: str
    ) -> RollbackResult:
        logger.error(
            "rollback_step_failed",
            target=target,
            step=step.name,
            action=step.action,
            completed=completed,
            error=error,
        )
        return RollbackResult(
            success=False,
            steps_completed=completed,
            failed_step=step.name,
            error=error,
            verified=False,
            detail=f"step '{step.name}' failed: {error}",
        )
