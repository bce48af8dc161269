"""Pydantic models for RolloutGate.

This module defines the data structures used throughout RolloutGate for:
- Rollout plans, phases, and advance criteria
- Health samples and risk assessments supplied by collaborators
- Mutable rollout state and its append-only decision log
- Rollback plans and results
- HTTP request payloads

All models use Pydantic for validation and serialization.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rolloutgate.errors import InvalidPlan

RolloutStatus = Literal[
    "pending",
    "in_phase",
    "awaiting_approval",
    "rolling_back",
    "succeeded",
    "rolled_back",
    "failed",
    "rollback_failed",
]
StrategyName = Literal["direct", "blue_green", "canary", "staged"]

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {"succeeded", "rolled_back", "failed", "rollback_failed"}
)

HEALTH_FIELDS: frozenset[str] = frozenset(
    {
        "request_count",
        "error_rate",
        "latency_p95_ms",
        "cpu_utilization",
        "memory_utilization",
    }
)


def is_terminal(status: str) -> bool:
    """Return True when a rollout status can no longer change."""
    return status in TERMINAL_STATUSES


class Threshold(BaseModel):
    """A single threshold predicate over an aggregated health metric.

    Attributes:
        name: Human-readable predicate name used in decision rationales.
        metric: HealthSample field name, or ``business.<key>`` for business metrics.
        op: ``le`` (observed must be <= value) or ``ge`` (observed must be >= value).
        value: Threshold value.
        aggregate: How window samples are folded before comparison.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Predicate name")
    metric: str = Field(..., description="Health metric the predicate reads")
    op: Literal["le", "ge"] = Field(..., description="Comparison operator")
    value: float = Field(..., description="Threshold value")
    aggregate: Literal["mean", "max", "min", "p95"] = Field(
        default="mean", description="Window aggregation"
    )

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, value: str) -> str:
        """Ensure the metric names a known health field or a business metric."""
        if value in HEALTH_FIELDS:
            return value
        if value.startswith("business.") and len(value) > len("business."):
            return value
        raise ValueError(f"unknown health metric: {value}")

    def holds(self, observed: float) -> bool:
        if self.op == "le":
            return observed <= self.value
        return observed >= self.value

    def describe(self) -> str:
        symbol = "<=" if self.op == "le" else ">="
        return f"{self.aggregate}({self.metric}) {symbol} {self.value:g}"


class Criteria(BaseModel):
    """A named set of thresholds that must all hold to permit advancing."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="none", description="Criteria set name")
    thresholds: tuple[Threshold, ...] = Field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.thresholds


class Phase(BaseModel):
    """One step of a rollout: traffic fraction, minimum dwell, advance criteria."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Ordinal position in the plan")
    traffic_fraction: float = Field(
        ..., ge=0.0, le=100.0, description="Percent of traffic on the new version"
    )
    min_dwell: timedelta = Field(..., description="Minimum wall-clock time in phase")
    advance_criteria: Criteria = Field(default_factory=Criteria)
    requires_approval: bool = Field(
        default=False, description="Whether an external approval gates advancing"
    )

    @field_validator("min_dwell")
    @classmethod
    def validate_min_dwell(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("min_dwell must be non-negative")
        return value


class RollbackStep(BaseModel):
    """A named undo action applied to a target reference."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Step name")
    action: str = Field(..., description="Registered rollback action")
    target_ref: str = Field(..., description="What the action operates on")
    params: dict[str, Any] = Field(default_factory=dict)


class RollbackPlan(BaseModel):
    """Ordered undo sequence plus the post-rollback verification criteria."""

    model_config = ConfigDict(frozen=True)

    steps: tuple[RollbackStep, ...] = Field(default_factory=tuple)
    verification: Criteria = Field(default_factory=Criteria)


def default_rollback_plan(target: str) -> RollbackPlan:
    """Return the minimal rollback plan: revert all traffic to the prior version."""
    return RollbackPlan(
        steps=[
            RollbackStep(
                name="revert_traffic",
                action="shift_traffic",
                target_ref=target,
                params={"fraction": 0.0},
            )
        ],
        verification=Criteria(
            name="post_rollback_health",
            thresholds=[
                Threshold(
                    name="error_rate",
                    metric="error_rate",
                    op="le",
                    value=0.05,
                )
            ],
        ),
    )


def validate_phases(phases: Sequence[Phase]) -> None:
    """Raise InvalidPlan unless phases are ordinal, strictly increasing, and end at 100."""
    if not phases:
        raise InvalidPlan("rollout plan must contain at least one phase")
    previous: float | None = None
    for position, phase in enumerate(phases):
        if phase.index != position:
            raise InvalidPlan(
                f"phase index {phase.index} does not match position {position}"
            )
        if previous is not None and phase.traffic_fraction <= previous:
            raise InvalidPlan(
                "phase traffic fractions must be strictly increasing "
                f"({phase.traffic_fraction:g} after {previous:g})"
            )
        previous = phase.traffic_fraction
    if phases[-1].traffic_fraction != 100.0:
        raise InvalidPlan("final phase must route 100% of traffic")


class RolloutPlan(BaseModel):
    """Immutable plan for one rollout of a target."""

    model_config = ConfigDict(frozen=True)

    target: str = Field(..., min_length=1, max_length=256, description="Rollout target")
    strategy: StrategyName = Field(..., description="Selected rollout strategy")
    risk_score: float = Field(..., ge=0.0, le=100.0, description="Score the plan was built from")
    phases: tuple[Phase, ...] = Field(..., description="Ordered rollout phases")
    rollback_plan: RollbackPlan = Field(..., description="Undo sequence on abort")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def validate_shape(self) -> RolloutPlan:
        validate_phases(self.phases)
        return self


class RiskAssessment(BaseModel):
    """Risk score plus per-factor contributions."""

    score: float = Field(..., description="Risk score in [0, 100]")
    factors: dict[str, float] = Field(default_factory=dict)


class ChangeDescriptor(BaseModel):
    """Description of the change being rolled out, passed to the risk assessor."""

    change_id: str = Field(..., min_length=1, description="Change identifier")
    candidate_version: str = Field(..., description="Version being rolled out")
    baseline_version: str | None = Field(default=None, description="Current version")
    description: str = Field(default="", description="Free-form summary")
    attributes: dict[str, Any] = Field(default_factory=dict)


class HealthSample(BaseModel):
    """One health observation for a target's live traffic slice."""

    target: str = Field(..., description="Target the sample describes")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    request_count: int = Field(default=0, ge=0)
    error_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    latency_p95_ms: float | None = Field(default=None, ge=0.0)
    cpu_utilization: float | None = Field(default=None, ge=0.0)
    memory_utilization: float | None = Field(default=None, ge=0.0)
    business_metrics: dict[str, float] = Field(default_factory=dict)

    def metric(self, name: str) -> float | None:
        """Return a metric value by name, or None when the sample lacks it."""
        if name.startswith("business."):
            value = self.business_metrics.get(name[len("business."):])
        else:
            value = getattr(self, name, None)
        if value is None:
            return None
        number = float(value)
        if math.isnan(number):
            return None
        return number


class DecisionLogEntry(BaseModel):
    """Audit record of one controller decision."""

    sequence: int = Field(..., ge=0)
    timestamp: datetime
    decision: str = Field(..., description="Decision kind, e.g. advance or rollback")
    status: RolloutStatus = Field(..., description="Status after the decision")
    phase_index: int = Field(..., ge=0)
    rationale: str
    details: dict[str, Any] = Field(default_factory=dict)


class RolloutState(BaseModel):
    """Mutable lifecycle state of one rollout, written only by its controller."""

    rollout_id: str
    plan: RolloutPlan
    status: RolloutStatus = "pending"
    phase_index: int = Field(default=0, ge=0)
    phase_started_at: datetime | None = None
    last_sample_at: datetime | None = None
    window: list[HealthSample] = Field(default_factory=list)
    decision_log: list[DecisionLogEntry] = Field(default_factory=list)
    started_at: datetime
    last_transition_at: datetime
    rollback_steps_completed: int = Field(default=0, ge=0)
    abort_reason: str | None = None
    outcome: str | None = None
    archived: bool = False

    @property
    def target(self) -> str:
        return self.plan.target

    @property
    def current_phase(self) -> Phase:
        return self.plan.phases[self.phase_index]

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    def record(
        self,
        decision: str,
        rationale: str,
        *,
        timestamp: datetime,
        details: dict[str, Any] | None = None,
    ) -> DecisionLogEntry:
        """Append a decision-log entry reflecting the current status and phase.

        Timestamps never go backwards within one log, even if the clock does.
        """
        if self.decision_log and timestamp < self.decision_log[-1].timestamp:
            timestamp = self.decision_log[-1].timestamp
        entry = DecisionLogEntry(
            sequence=len(self.decision_log),
            timestamp=timestamp,
            decision=decision,
            status=self.status,
            phase_index=self.phase_index,
            rationale=rationale,
            details=details or {},
        )
        self.decision_log.append(entry)
        self.last_transition_at = timestamp
        return entry

    def summary(self) -> RolloutSummary:
        return RolloutSummary(
            rollout_id=self.rollout_id,
            target=self.target,
            strategy=self.plan.strategy,
            risk_score=self.plan.risk_score,
            status=self.status,
            phase_index=self.phase_index,
            phase_count=len(self.plan.phases),
            traffic_fraction=self.current_phase.traffic_fraction,
            started_at=self.started_at,
            last_transition_at=self.last_transition_at,
            outcome=self.outcome,
        )


class RolloutSummary(BaseModel):
    """Listing projection of a rollout."""

    rollout_id: str
    target: str
    strategy: StrategyName
    risk_score: float
    status: RolloutStatus
    phase_index: int
    phase_count: int
    traffic_fraction: float
    started_at: datetime
    last_transition_at: datetime
    outcome: str | None = None


class RolloutFilter(BaseModel):
    """Filter for registry listings."""

    target: str | None = None
    status: RolloutStatus | None = None
    active: bool | None = None

    def matches(self, summary: RolloutSummary) -> bool:
        if self.target is not None and summary.target != self.target:
            return False
        if self.status is not None and summary.status != self.status:
            return False
        if self.active is not None and self.active == is_terminal(summary.status):
            return False
        return True


class RollbackResult(BaseModel):
    """Outcome of executing a rollback plan."""

    success: bool
    steps_completed: int = Field(..., ge=0)
    failed_step: str | None = None
    error: str | None = None
    verified: bool = False
    detail: str = ""


class ApprovalDecision(BaseModel):
    """External approval verdict for one phase."""

    approved: bool
    approver: str | None = None
    comment: str | None = None
    decided_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RolloutCreateRequest(BaseModel):
    """Request to assess, plan, and start a rollout."""

    target: str = Field(..., min_length=1, max_length=256)
    change: ChangeDescriptor
    environment: dict[str, Any] = Field(default_factory=dict)
    rollback_plan: RollbackPlan | None = None
    strategy: StrategyName | None = Field(
        default=None, description="Explicit strategy override"
    )


class ApprovalDecisionRequest(BaseModel):
    """Approval or denial of a phase awaiting sign-off."""

    phase_index: int = Field(..., ge=0)
    approved: bool
    approver: str = Field(..., min_length=1, max_length=128)
    comment: str | None = Field(default=None, max_length=1024)


class AbortRequest(BaseModel):
    """Operator-initiated abort."""

    reason: str = Field(default="operator abort", min_length=1, max_length=1024)
