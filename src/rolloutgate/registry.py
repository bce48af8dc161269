"""Process-wide rollout registry with per-target mutual exclusion."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from threading import Lock

from rolloutgate.errors import RolloutNotFound, TargetBusy
from rolloutgate.logging import get_logger
from rolloutgate.metrics import MetricsRegistry, get_metrics
from rolloutgate.models import (
    RiskAssessment,
    RolloutFilter,
    RolloutPlan,
    RolloutState,
    RolloutSummary,
    validate_phases,
)
from rolloutgate.store import RolloutStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RolloutRegistry:
    """Owns rollout state lifecycles: creation on accept, archival on terminal.

    Controllers mutate the live state object they are handed and checkpoint
    it here; they never create or archive entries themselves. The registry
    lock only guards accept/archive bookkeeping and is never held while a
    rollout runs.
    """

    def __init__(
        self,
        store: RolloutStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.metrics = metrics or get_metrics()
        self._lock = Lock()
        self._active_by_target: dict[str, str] = {}
        self._live: dict[str, RolloutState] = {}
        self._bootstrap_from_store()

    def accept(self, plan: RolloutPlan, *, assessment: RiskAssessment | None = None) -> str:
        """Register a plan as a new pending rollout and return its id.

        Raises:
            InvalidPlan: If the phases are malformed.
            TargetBusy: If the target already has a non-terminal rollout.
        """
        validate_phases(plan.phases)
        now = self.clock()
        with self._lock:
            existing = self._active_by_target.get(plan.target)
            if existing is not None:
                raise TargetBusy(plan.target, existing)
            rollout_id = f"rollout-{uuid.uuid4()}"
            state = RolloutState(
                rollout_id=rollout_id,
                plan=plan,
                status="pending",
                started_at=now,
                last_transition_at=now,
            )
            state.record(
                "accepted",
                f"{plan.strategy} strategy selected for risk score {plan.risk_score:g} "
                f"({len(plan.phases)} phase(s))",
                timestamp=now,
                details={
                    "strategy": plan.strategy,
                    "risk_score": plan.risk_score,
                    "fractions": [phase.traffic_fraction for phase in plan.phases],
                    "factors": dict(assessment.factors) if assessment else {},
                },
            )
            self.store.insert_rollout(state, assessment)
            self._active_by_target[plan.target] = rollout_id
            self._live[rollout_id] = state
        self.metrics.rollouts_started_total.inc(plan.strategy)
        self.metrics.active_rollouts.inc()
        logger.info(
            "rollout_accepted",
            rollout_id=rollout_id,
            target=plan.target,
            strategy=plan.strategy,
            risk_score=plan.risk_score,
        )
        return rollout_id

    def get(self, rollout_id: str) -> RolloutState:
        """Return a snapshot of a rollout, live or archived."""
        with self._lock:
            live = self._live.get(rollout_id)
            if live is not None:
                return live.model_copy(deep=True)
        stored = self.store.get_state(rollout_id)
        if stored is None:
            raise RolloutNotFound(rollout_id)
        return stored

    def list(self, rollout_filter: RolloutFilter | None = None) -> list[RolloutSummary]:
        """Return summaries of every rollout matching the filter, oldest first."""
        rollout_filter = rollout_filter or RolloutFilter()
        with self._lock:
            live = {rollout_id: state.summary() for rollout_id, state in self._live.items()}
        summaries: list[RolloutSummary] = []
        for state in self.store.list_states(target=rollout_filter.target):
            summary = live.pop(state.rollout_id, None) or state.summary()
            if rollout_filter.matches(summary):
                summaries.append(summary)
        summaries.extend(summary for summary in live.values() if rollout_filter.matches(summary))
        return summaries

    def live_state(self, rollout_id: str) -> RolloutState:
        """Return the mutable state object handed to the rollout's controller."""
        with self._lock:
            state = self._live.get(rollout_id)
        if state is None:
            raise RolloutNotFound(rollout_id)
        return state

    def active_rollout_for(self, target: str) -> str | None:
        with self._lock:
            return self._active_by_target.get(target)

    def active_states(self) -> list[RolloutState]:
        """Return the live states of every non-terminal rollout."""
        with self._lock:
            return [state for state in self._live.values() if not state.terminal]

    def checkpoint(self, state: RolloutState) -> None:
        """Durably record a controller transition."""
        self.store.save_state(state)
        self.metrics.transitions_total.inc(state.status)

    def archive(self, rollout_id: str) -> RolloutState:
        """Freeze a terminal rollout into history and release its target."""
        with self._lock:
            state = self._live.get(rollout_id)
            if state is None:
                stored = self.store.get_state(rollout_id)
                if stored is None:
                    raise RolloutNotFound(rollout_id)
                return stored
            if not state.terminal:
                raise ValueError(f"rollout {rollout_id} is still {state.status}")
            state.archived = True
            self.store.save_state(state)
            self._live.pop(rollout_id, None)
            if self._active_by_target.get(state.target) == rollout_id:
                self._active_by_target.pop(state.target, None)
        self.metrics.active_rollouts.dec()
        logger.info(
            "rollout_archived",
            rollout_id=rollout_id,
            target=state.target,
            status=state.status,
        )
        return state

    def _bootstrap_from_store(self) -> None:
        for state in self.store.active_states():
            self._active_by_target[state.target] = state.rollout_id
            self._live[state.rollout_id] = state
        if self._live:
            self.metrics.active_rollouts.inc(amount=float(len(self._live)))
            logger.info("rollouts_recovered", count=len(self._live))
