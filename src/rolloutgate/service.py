"""Rollout service: assessment, planning, and controller task supervision.

The service is the single entry point the HTTP API and CLI use. It never
mutates rollout state itself; each accepted rollout gets a RolloutController
task and the registry archives the state once that task reaches a terminal
status.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from rolloutgate.abort import AbortSwitch
from rolloutgate.approvals import InMemoryApprovalGate
from rolloutgate.config import Settings
from rolloutgate.controller import RolloutController
from rolloutgate.errors import AssessmentUnavailable, RolloutNotFound
from rolloutgate.health import HealthCollector, PushHealthCollector
from rolloutgate.logging import get_logger
from rolloutgate.metrics import MetricsRegistry, get_metrics
from rolloutgate.models import (
    ApprovalDecision,
    ApprovalDecisionRequest,
    HealthSample,
    RolloutCreateRequest,
    RolloutPlan,
    RolloutState,
    default_rollback_plan,
)
from rolloutgate.registry import RolloutRegistry
from rolloutgate.risk import RiskAssessor
from rolloutgate.rollback import RollbackManager
from rolloutgate.strategy import plan_for_strategy, select_strategy
from rolloutgate.traffic import TrafficControl
from rolloutgate.webhooks import WebhookNotifier

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RolloutService:
    """Start, supervise, and steer rollouts."""

    def __init__(
        self,
        *,
        registry: RolloutRegistry,
        assessor: RiskAssessor,
        traffic: TrafficControl,
        health: HealthCollector,
        approvals: InMemoryApprovalGate,
        settings: Settings | None = None,
        rollback_manager: RollbackManager | None = None,
        abort_switch: AbortSwitch | None = None,
        notifier: WebhookNotifier | None = None,
        sample_sink: PushHealthCollector | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.registry = registry
        self.assessor = assessor
        self.traffic = traffic
        self.health = health
        self.approvals = approvals
        self.settings = settings or Settings()
        self.rollback_manager = rollback_manager or RollbackManager(
            traffic=traffic,
            health=health,
            verify_interval_seconds=self.settings.poll_interval_seconds,
        )
        self.abort_switch = abort_switch
        self.notifier = notifier
        self.sample_sink = sample_sink
        self.metrics = metrics or get_metrics()
        self.clock = clock
        self._controllers: dict[str, RolloutController] = {}
        self._tasks: dict[str, asyncio.Task[RolloutState]] = {}

    def preview(self, risk_score: float, target: str = "preview") -> RolloutPlan:
        """Return the plan a score would produce without accepting it."""
        return select_strategy(
            risk_score,
            target=target,
            rollback_plan=default_rollback_plan(target),
            created_at=self.clock(),
        )

    async def start_rollout(self, request: RolloutCreateRequest) -> RolloutState:
        """Assess the change, build its plan, and launch a controller.

        Raises:
            AssessmentUnavailable: The assessor produced no score; nothing is created.
            InvalidRiskScore: The score is outside [0, 100].
            TargetBusy: The target already has an active rollout.
        """
        try:
            assessment = await self.assessor.assess(request.change, request.environment)
        except AssessmentUnavailable as exc:
            logger.warning(
                "risk_assessment_unavailable",
                target=request.target,
                change_id=request.change.change_id,
                error=str(exc),
            )
            raise

        rollback_plan = request.rollback_plan or default_rollback_plan(request.target)
        if request.strategy is not None:
            plan = plan_for_strategy(
                request.strategy,
                risk_score=assessment.score,
                target=request.target,
                rollback_plan=rollback_plan,
                created_at=self.clock(),
            )
        else:
            plan = select_strategy(
                assessment.score,
                target=request.target,
                rollback_plan=rollback_plan,
                created_at=self.clock(),
            )
        rollout_id = self.registry.accept(plan, assessment=assessment)
        self._launch(self.registry.live_state(rollout_id))
        return self.registry.get(rollout_id)

    async def resume(self) -> list[str]:
        """Relaunch controllers for every non-terminal rollout in the registry."""
        resumed: list[str] = []
        for state in self.registry.active_states():
            if state.rollout_id in self._tasks:
                continue
            self._launch(state)
            resumed.append(state.rollout_id)
        if resumed:
            logger.info("rollouts_resumed", count=len(resumed), rollout_ids=resumed)
        return resumed

    def get(self, rollout_id: str) -> RolloutState:
        return self.registry.get(rollout_id)

    async def abort(self, rollout_id: str, reason: str) -> RolloutState:
        """Ask a rollout to abort; terminal rollouts are returned unchanged.

        A rollout with no controller in this process is flagged on the shared
        abort switch so whichever process runs it picks the abort up.
        """
        state = self.registry.get(rollout_id)
        if state.terminal:
            return state
        controller = self._controllers.get(rollout_id)
        if controller is not None:
            controller.request_abort(reason)
        elif self.abort_switch is not None:
            await self.abort_switch.abort_rollout(rollout_id, reason)
        else:
            raise RolloutNotFound(rollout_id)
        logger.info("rollout_abort_requested", rollout_id=rollout_id, reason=reason)
        return state

    def decide_approval(
        self, rollout_id: str, request: ApprovalDecisionRequest
    ) -> ApprovalDecision:
        """Resolve a pending approval for one phase.

        Raises:
            RolloutNotFound: Unknown rollout.
            ApprovalNotPending: The phase is not awaiting approval.
        """
        self.registry.get(rollout_id)
        if request.approved:
            decision = self.approvals.grant(
                rollout_id, request.phase_index, request.approver, request.comment
            )
        else:
            decision = self.approvals.deny(
                rollout_id, request.phase_index, request.approver, request.comment
            )
        logger.info(
            "approval_decided",
            rollout_id=rollout_id,
            phase_index=request.phase_index,
            approved=decision.approved,
            approver=decision.approver,
        )
        return decision

    def ingest_sample(self, sample: HealthSample) -> str | None:
        """Route a pushed health sample; return the active rollout it feeds, if any.

        Samples for a target with no active rollout describe the old version
        and are dropped rather than buffered for a later rollout.
        """
        rollout_id = self.registry.active_rollout_for(sample.target)
        if rollout_id is None:
            logger.debug("health_sample_dropped", target=sample.target)
            return None
        if self.sample_sink is not None:
            self.sample_sink.push(sample)
        elif rollout_id is not None and rollout_id in self._controllers:
            self._controllers[rollout_id].submit_sample(sample)
        return rollout_id

    async def wait(self, rollout_id: str, timeout: float | None = None) -> RolloutState:
        """Wait for a running rollout to finish and return its final state."""
        task = self._tasks.get(rollout_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.registry.get(rollout_id)

    def running(self) -> list[str]:
        return sorted(self._tasks)

    async def shutdown(self) -> None:
        """Stop every controller task without marking rollouts terminal."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._controllers.clear()
        logger.info("rollout_service_stopped", stopped=len(tasks))

    def _launch(self, state: RolloutState) -> None:
        controller = self._controller_for(state)
        self._controllers[state.rollout_id] = controller
        task = asyncio.create_task(self._drive(controller), name=f"rollout:{state.rollout_id}")
        self._tasks[state.rollout_id] = task

    def _controller_for(self, state: RolloutState) -> RolloutController:
        return RolloutController(
            state=state,
            registry=self.registry,
            traffic=self.traffic,
            health=self.health,
            approvals=self.approvals,
            rollback_manager=self.rollback_manager,
            settings=self.settings,
            abort_switch=self.abort_switch,
            notifier=self.notifier,
            metrics=self.metrics,
            clock=self.clock,
        )

    async def _drive(self, controller: RolloutController) -> RolloutState:
        """Run a controller to completion, relaunching it if it crashes.

        A crash means the controller could not even contain its own failure,
        usually because checkpointing failed. The live state is handed to a
        fresh controller a bounded number of times; after that the rollout is
        left non-terminal for ``resume`` or a restart to pick up.
        """
        rollout_id = controller.rollout_id
        restarts = 0
        try:
            while True:
                try:
                    await controller.run()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(
                        "rollout_task_crashed", rollout_id=rollout_id, restarts=restarts
                    )
                    if restarts >= self.settings.controller_max_restarts:
                        logger.error(
                            "rollout_controller_abandoned",
                            rollout_id=rollout_id,
                            restarts=restarts,
                        )
                        return self.registry.live_state(rollout_id)
                    restarts += 1
                    await asyncio.sleep(self.settings.poll_interval_seconds)
                    controller = self._relaunch(controller)
                    continue
                self.approvals.cancel(rollout_id)
                if self.abort_switch is not None:
                    await self.abort_switch.clear_rollout(rollout_id)
                return self.registry.archive(rollout_id)
        finally:
            if self._tasks.get(rollout_id) is asyncio.current_task():
                self._tasks.pop(rollout_id, None)
                self._controllers.pop(rollout_id, None)

    def _relaunch(self, crashed: RolloutController) -> RolloutController:
        controller = self._controller_for(self.registry.live_state(crashed.rollout_id))
        if crashed.abort_reason is not None:
            controller.request_abort(crashed.abort_reason)
        self._controllers[crashed.rollout_id] = controller
        logger.warning("rollout_controller_relaunched", rollout_id=crashed.rollout_id)
        return controller
