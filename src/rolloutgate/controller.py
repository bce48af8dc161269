"""Rollout controller: the per-rollout state machine.

States and transitions::

    pending -> in_phase(i) -> in_phase(i+1) | awaiting_approval(i) | rolling_back
                            | succeeded | failed
    awaiting_approval(i) -> in_phase(i+1) | succeeded | rolling_back | failed
    rolling_back -> rolled_back | rollback_failed

One controller task owns one RolloutState. Sample ingestion, criteria
evaluation, traffic shifts and the decision log are all driven from that
task, so the state has a single writer. Every transition is checkpointed
through the registry before the next external action.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from rolloutgate.abort import AbortSwitch
from rolloutgate.approvals import ApprovalGate
from rolloutgate.config import Settings
from rolloutgate.errors import InsufficientData, RollbackFailed, TrafficShiftError
from rolloutgate.health import (
    CriteriaVerdict,
    HealthCollector,
    PushHealthCollector,
    evaluate_criteria,
    evaluate_sample,
)
from rolloutgate.logging import bind_rollout_context, get_logger
from rolloutgate.metrics import MetricsRegistry, get_metrics
from rolloutgate.models import ApprovalDecision, Criteria, HealthSample, RolloutState
from rolloutgate.registry import RolloutRegistry
from rolloutgate.rollback import RollbackManager
from rolloutgate.traffic import TrafficControl
from rolloutgate.webhooks import WebhookNotifier

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RolloutController:
    """Drive one rollout from its current state to a terminal status."""

    def __init__(
        self,
        *,
        state: RolloutState,
        registry: RolloutRegistry,
        traffic: TrafficControl,
        health: HealthCollector,
        approvals: ApprovalGate,
        rollback_manager: RollbackManager,
        settings: Settings | None = None,
        abort_switch: AbortSwitch | None = None,
        notifier: WebhookNotifier | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.state = state
        self.registry = registry
        self.traffic = traffic
        self.health = health
        self.approvals = approvals
        self.rollback_manager = rollback_manager
        self.settings = settings or Settings()
        self.abort_switch = abort_switch
        self.notifier = notifier
        self.metrics = metrics or get_metrics()
        self.clock = clock
        self._abort_event = asyncio.Event()
        self._abort_reason: str | None = None
        self._wakeup = asyncio.Event()
        self._inbox: asyncio.Queue[HealthSample] = asyncio.Queue()
        self._phase_ready = False
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def rollout_id(self) -> str:
        return self.state.rollout_id

    @property
    def poll_interval(self) -> float:
        return self.settings.poll_interval_seconds

    @property
    def abort_reason(self) -> str | None:
        return self._abort_reason

    def request_abort(self, reason: str) -> None:
        """Abort from any non-terminal state before the next evaluation tick."""
        if self._abort_reason is None:
            self._abort_reason = reason
        self._abort_event.set()
        self._wakeup.set()

    def submit_sample(self, sample: HealthSample) -> None:
        """Hand a pushed health sample to the controller task."""
        self._inbox.put_nowait(sample)
        self._wakeup.set()

    async def run(self) -> RolloutState:
        """Run until the rollout reaches a terminal status.

        Cancellation stops the task without touching the persisted state,
        so a restarted service resumes from the last checkpoint.
        """
        bind_rollout_context(self.rollout_id, self.state.target)
        logger.info("rollout_controller_started", status=self.state.status)
        while not self.state.terminal:
            try:
                await self._step()
            except asyncio.CancelledError:
                logger.info(
                    "rollout_controller_stopped",
                    status=self.state.status,
                    phase_index=self.state.phase_index,
                )
                raise
            except Exception as exc:
                logger.exception("rollout_controller_error", status=self.state.status)
                self._contain_failure(exc)
        logger.info("rollout_controller_finished", status=self.state.status)
        return self.state

    async def _step(self) -> None:
        status = self.state.status
        if status == "pending":
            await self._start()
        elif status == "in_phase":
            if not self._phase_ready:
                await self._enter_phase()
            else:
                await self._monitor_phase()
        elif status == "awaiting_approval":
            await self._await_approval()
        elif status == "rolling_back":
            await self._roll_back()

    async def _start(self) -> None:
        reason = await self._abort_requested()
        if reason is not None:
            self._finish(
                "failed",
                "aborted",
                f"aborted before any traffic shift: {reason}",
                details={"reason": reason},
            )
            return
        self.state.status = "in_phase"
        self.state.phase_index = 0
        self._record("started", "rollout started", details={"phase_index": 0})

    async def _enter_phase(self) -> None:
        state = self.state
        phase = state.current_phase
        resumed = state.phase_started_at is not None
        ok, attempts, error = await self._shift_with_retries(phase.traffic_fraction)
        if not ok:
            if self._abort_reason is not None:
                reason = self._abort_reason
                self._begin_rollback("aborted", f"operator abort: {reason}", {"reason": reason})
                return
            self._begin_rollback(
                "traffic_shift_failed",
                f"traffic shift to {phase.traffic_fraction:g}% failed after "
                f"{attempts} attempt(s): {error}",
                {"fraction": phase.traffic_fraction, "attempts": attempts, "error": error},
            )
            return
        # Anything buffered so far was measured at the previous traffic split.
        self._discard_stale_samples()
        now = self.clock()
        state.phase_started_at = now
        state.last_sample_at = None
        state.window = []
        self._phase_ready = True
        self._record(
            "phase_resumed" if resumed else "phase_entered",
            f"traffic shifted to {phase.traffic_fraction:g}% for phase {phase.index}; "
            f"min dwell {phase.min_dwell.total_seconds():g}s",
            details={
                "fraction": phase.traffic_fraction,
                "shifted_at": now.isoformat(),
                "attempts": attempts,
                "min_dwell_seconds": phase.min_dwell.total_seconds(),
                "criteria": phase.advance_criteria.name,
            },
            timestamp=now,
        )
        logger.info(
            "rollout_phase_entered",
            phase_index=phase.index,
            fraction=phase.traffic_fraction,
            resumed=resumed,
        )

    async def _shift_with_retries(self, fraction: float) -> tuple[bool, int, str | None]:
        attempts = self.settings.shift_max_retries + 1
        last_error: str | None = None
        for attempt in range(attempts):
            try:
                await self.traffic.shift(self.state.target, fraction)
                return True, attempt + 1, None
            except asyncio.CancelledError:
                raise
            except TrafficShiftError as exc:
                last_error = exc.reason
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
            logger.warning(
                "traffic_shift_failed",
                fraction=fraction,
                attempt=attempt + 1,
                attempts=attempts,
                error=last_error,
            )
            if attempt < attempts - 1:
                if self._abort_event.is_set():
                    return False, attempt + 1, last_error
                self.metrics.traffic_shift_retries_total.inc(self.state.target)
                backoff = self.settings.shift_retry_backoff_seconds * (2**attempt)
                await self._wait(backoff)
        return False, attempts, last_error

    async def _monitor_phase(self) -> None:
        """One evaluation tick of the current phase."""
        self._wakeup.clear()
        state = self.state
        phase = state.current_phase

        reason = await self._abort_requested()
        if reason is not None:
            self._begin_rollback("aborted", f"operator abort: {reason}", {"reason": reason})
            return

        fresh = await self._collect_samples()
        now = self.clock()
        if self._rollback_on_violation(phase.advance_criteria, fresh):
            return

        verdict = evaluate_criteria(phase.advance_criteria, state.window)
        assert state.phase_started_at is not None
        elapsed = (now - state.phase_started_at).total_seconds()
        dwell = phase.min_dwell.total_seconds()
        has_evidence = phase.advance_criteria.is_empty or bool(state.window)
        if elapsed >= dwell and verdict.outcome == "pass" and has_evidence:
            self._phase_passed(verdict, elapsed)
            return

        if self._insufficient_data(verdict, now, elapsed):
            return

        ceiling = self.settings.phase_max_seconds
        if ceiling > 0 and elapsed > ceiling:
            self._begin_rollback(
                "phase_timeout",
                f"phase {phase.index} exceeded the {ceiling:g}s ceiling without passing "
                f"({verdict.rationale()})",
                verdict.to_payload(),
            )
            return

        await self._wait(self.poll_interval)

    def _insufficient_data(self, verdict: CriteriaVerdict, now: datetime, elapsed: float) -> bool:
        phase = self.state.current_phase
        if phase.advance_criteria.is_empty:
            return False
        assert self.state.phase_started_at is not None
        limit = max(2 * phase.min_dwell.total_seconds(), 2 * self.poll_interval)
        reference = self.state.last_sample_at or self.state.phase_started_at
        reference = max(reference, self.state.phase_started_at)
        silence = (now - reference).total_seconds()
        if silence > limit:
            error = InsufficientData(
                f"no health samples for {silence:.1f}s (limit {limit:g}s = 2 x min dwell)"
            )
            self._begin_rollback(
                "insufficient_data",
                f"insufficient data: {error}",
                {"silence_seconds": silence, "limit_seconds": limit},
            )
            return True
        if verdict.outcome == "unknown" and elapsed > limit:
            error = InsufficientData(
                f"{verdict.rationale()} after {elapsed:.1f}s (limit {limit:g}s = 2 x min dwell)"
            )
            self._begin_rollback(
                "insufficient_data", f"insufficient data: {error}", verdict.to_payload()
            )
            return True
        return False

    async def _collect_samples(self, *, retain: bool = True) -> list[HealthSample]:
        """Gather samples that arrived since the last tick.

        With ``retain`` unset the samples are returned for violation checks
        but the phase window is left as it is.
        """
        fresh: list[HealthSample] = []
        while not self._inbox.empty():
            fresh.append(self._inbox.get_nowait())
        try:
            if isinstance(self.health, PushHealthCollector):
                fresh.extend(self.health.drain(self.state.target))
            else:
                sample = await self.health.sample(
                    self.state.target, timedelta(seconds=self.poll_interval)
                )
                if sample is not None:
                    fresh.append(sample)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Gaps are tolerated; the insufficient-data rule bounds them.
            logger.warning("health_collector_failed", error=str(exc))
        if retain:
            for sample in fresh:
                self._ingest(sample)
        return fresh

    def _ingest(self, sample: HealthSample) -> None:
        window = self.state.window
        window.append(sample)
        overflow = len(window) - self.settings.max_window_samples
        if overflow > 0:
            del window[:overflow]
        self.state.last_sample_at = self.clock()

    def _discard_stale_samples(self) -> None:
        dropped = 0
        while not self._inbox.empty():
            self._inbox.get_nowait()
            dropped += 1
        if isinstance(self.health, PushHealthCollector):
            dropped += self.health.discard(self.state.target)
        if dropped:
            logger.info(
                "stale_samples_discarded",
                phase_index=self.state.phase_index,
                count=dropped,
            )

    def _rollback_on_violation(
        self, criteria: Criteria, samples: list[HealthSample], suffix: str = ""
    ) -> bool:
        """Roll back on the first sample that breaks any threshold by itself."""
        for sample in samples:
            verdict = evaluate_sample(criteria, sample)
            if verdict.outcome != "violated":
                continue
            details = {**verdict.to_payload(), "sample_timestamp": sample.timestamp.isoformat()}
            self._begin_rollback("criteria_violated", f"{verdict.rationale()}{suffix}", details)
            return True
        return False

    def _phase_passed(self, verdict: CriteriaVerdict, elapsed: float) -> None:
        state = self.state
        phase = state.current_phase
        self.metrics.phase_duration_seconds.observe(elapsed, state.plan.strategy)
        details = {**verdict.to_payload(), "elapsed_seconds": elapsed}
        if phase.requires_approval:
            state.status = "awaiting_approval"
            self._record(
                "approval_requested",
                f"{verdict.rationale()} after {elapsed:.1f}s; awaiting approval",
                details=details,
            )
            if self.notifier is not None:
                self._spawn(
                    self.notifier.notify_awaiting_approval(
                        rollout_id=self.rollout_id,
                        target=state.target,
                        phase_index=phase.index,
                    )
                )
            return
        self._advance(f"{verdict.rationale()} after {elapsed:.1f}s", details)

    def _advance(self, rationale: str, details: dict[str, Any]) -> None:
        state = self.state
        if state.phase_index >= len(state.plan.phases) - 1:
            self._finish("succeeded", "succeeded", f"{rationale}; final phase complete", details)
            return
        previous = state.phase_index
        state.phase_index = previous + 1
        state.status = "in_phase"
        self._phase_ready = False
        state.phase_started_at = None
        self._record(
            "advance",
            f"{rationale}; advancing from phase {previous} to phase {state.phase_index}",
            details={**details, "from_phase": previous},
        )

    async def _await_approval(self) -> None:
        state = self.state
        phase_index = state.phase_index
        approval = asyncio.ensure_future(
            self.approvals.await_approval(self.rollout_id, phase_index)
        )
        try:
            while True:
                self._wakeup.clear()
                reason = await self._abort_requested()
                if reason is not None:
                    self._begin_rollback("aborted", f"operator abort: {reason}", {"reason": reason})
                    return
                # The window that earned the approval request stays frozen.
                fresh = await self._collect_samples(retain=False)
                criteria = state.current_phase.advance_criteria
                if self._rollback_on_violation(criteria, fresh, " while awaiting approval"):
                    return
                if approval.done():
                    self._apply_approval(approval.result())
                    return
                await self._wait(self.poll_interval, approval)
        finally:
            if not approval.done():
                approval.cancel()

    def _apply_approval(self, decision: ApprovalDecision) -> None:
        actor = decision.approver or "unknown approver"
        comment = f" ({decision.comment})" if decision.comment else ""
        details = decision.model_dump(mode="json")
        if decision.approved:
            self._advance(f"approval granted by {actor}{comment}", details)
            return
        if self.settings.deny_policy == "halt":
            self._finish(
                "failed",
                "approval_denied",
                f"approval denied by {actor}{comment}; halted in place at "
                f"{self.state.current_phase.traffic_fraction:g}% per deny policy",
                details,
            )
            return
        self._begin_rollback("approval_denied", f"approval denied by {actor}{comment}", details)

    def _begin_rollback(self, decision: str, rationale: str, details: dict[str, Any]) -> None:
        self.state.status = "rolling_back"
        self.state.abort_reason = rationale
        self._phase_ready = False
        self._record(decision, rationale, details=details)
        logger.warning("rollout_rolling_back", decision=decision, rationale=rationale)

    async def _roll_back(self) -> None:
        state = self.state
        result = await self.rollback_manager.execute_rollback(
            state.plan.rollback_plan,
            target=state.target,
            start_at=state.rollback_steps_completed,
            on_step=self._rollback_step_completed,
        )
        details = result.model_dump(mode="json")
        if result.success:
            self.metrics.rollbacks_total.inc("rolled_back")
            self._finish("rolled_back", "rolled_back", result.detail, details)
            return
        self.metrics.rollbacks_total.inc("rollback_failed")
        logger.error(
            "rollback_failed_manual_intervention_required",
            failed_step=result.failed_step,
            error=result.error,
        )
        self._finish(
            "rollback_failed",
            "rollback_failed",
            f"{RollbackFailed(self.rollout_id, result.detail)}; manual intervention required",
            details,
        )

    def _rollback_step_completed(self, completed: int) -> None:
        step = self.state.plan.rollback_plan.steps[completed - 1]
        self.state.rollback_steps_completed = completed
        self._record(
            "rollback_step",
            f"rollback step {completed} '{step.name}' ({step.action}) completed",
            details={"step": step.name, "action": step.action, "target_ref": step.target_ref},
        )

    def _finish(
        self,
        status: str,
        decision: str,
        rationale: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        state = self.state
        state.status = status  # type: ignore[assignment]
        state.outcome = status
        self._record(decision, rationale, details=details)
        log = logger.error if status == "rollback_failed" else logger.info
        log("rollout_finished", status=status, rationale=rationale)
        if self.notifier is not None:
            self._spawn(
                self.notifier.notify_outcome(
                    rollout_id=self.rollout_id,
                    target=state.target,
                    status=status,
                    rationale=rationale,
                    phase_index=state.phase_index,
                )
            )

    def _contain_failure(self, exc: Exception) -> None:
        message = f"controller error: {exc}"
        status = self.state.status
        if status == "pending":
            self._finish("failed", "controller_error", message)
        elif status == "rolling_back":
            self.metrics.rollbacks_total.inc("rollback_failed")
            self._finish(
                "rollback_failed", "controller_error", f"rollback interrupted by {message}"
            )
        else:
            self._begin_rollback("controller_error", message, {"error": str(exc)})

    def _record(
        self,
        decision: str,
        rationale: str,
        *,
        details: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        self.state.record(
            decision, rationale, timestamp=timestamp or self.clock(), details=details
        )
        self.registry.checkpoint(self.state)

    async def _abort_requested(self) -> str | None:
        if self._abort_event.is_set():
            return self._abort_reason or "aborted"
        if self.abort_switch is None:
            return None
        reason = await self.abort_switch.abort_reason(self.rollout_id, self.state.target)
        if reason is not None:
            self.request_abort(reason)
        return reason

    async def _wait(self, timeout: float, *others: asyncio.Future[Any]) -> None:
        """Suspend until the timeout, a wakeup (abort or sample), or another future."""
        wakeup = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait(
                [wakeup, *others],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not wakeup.done():
                wakeup.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
