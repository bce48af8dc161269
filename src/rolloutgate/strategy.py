"""Risk-tiered rollout strategy selection.

Pure functions only: a risk score and the caller's target and rollback plan
go in, an immutable RolloutPlan comes out. No I/O, no clocks except the
plan's creation timestamp, which callers may pin.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

from rolloutgate.errors import InvalidRiskScore
from rolloutgate.models import (
    Criteria,
    Phase,
    RollbackPlan,
    RolloutPlan,
    StrategyName,
    Threshold,
)

DIRECT_MAX_SCORE = 20.0
CANARY_MAX_SCORE = 50.0

PROGRESSIVE_FRACTIONS: tuple[float, ...] = (5.0, 25.0, 50.0, 100.0)
PROGRESSIVE_DWELLS: tuple[timedelta, ...] = (
    timedelta(minutes=10),
    timedelta(minutes=30),
    timedelta(minutes=60),
    timedelta(minutes=120),
)
BLUE_GREEN_BAKE = timedelta(minutes=30)

MAX_ERROR_RATE = 0.02
MAX_LATENCY_P95_MS = 500.0
MAX_BUSINESS_DRIFT = 0.05

_HEALTH = Threshold(name="error_rate", metric="error_rate", op="le", value=MAX_ERROR_RATE)
_PERFORMANCE = Threshold(
    name="latency_p95",
    metric="latency_p95_ms",
    op="le",
    value=MAX_LATENCY_P95_MS,
    aggregate="p95",
)
_BUSINESS_FLOOR = Threshold(
    name="business_drift_floor",
    metric="business.conversion_delta",
    op="ge",
    value=-MAX_BUSINESS_DRIFT,
)
_BUSINESS_CEILING = Threshold(
    name="business_drift_ceiling",
    metric="business.conversion_delta",
    op="le",
    value=MAX_BUSINESS_DRIFT,
)

HEALTH_CRITERIA = Criteria(name="health", thresholds=[_HEALTH])
PERFORMANCE_CRITERIA = Criteria(name="health+performance", thresholds=[_HEALTH, _PERFORMANCE])
BUSINESS_CRITERIA = Criteria(
    name="health+performance+business",
    thresholds=[_HEALTH, _PERFORMANCE, _BUSINESS_FLOOR, _BUSINESS_CEILING],
)

# Criteria tighten as exposure grows.
PROGRESSIVE_CRITERIA: tuple[Criteria, ...] = (
    HEALTH_CRITERIA,
    PERFORMANCE_CRITERIA,
    BUSINESS_CRITERIA,
    BUSINESS_CRITERIA,
)


def validate_risk_score(risk_score: float) -> float:
    """Return the score as a float, or raise InvalidRiskScore."""
    if isinstance(risk_score, bool) or not isinstance(risk_score, (int, float)):
        raise InvalidRiskScore(risk_score)
    score = float(risk_score)
    if math.isnan(score) or score < 0.0 or score > 100.0:
        raise InvalidRiskScore(risk_score)
    return score


def strategy_for_score(risk_score: float) -> StrategyName:
    """Map a risk score to its strategy tier (upper bounds are inclusive)."""
    score = validate_risk_score(risk_score)
    if score <= DIRECT_MAX_SCORE:
        return "direct"
    if score <= CANARY_MAX_SCORE:
        return "canary"
    return "staged"


def build_phases(strategy: StrategyName) -> list[Phase]:
    """Return the phase list for a strategy."""
    if strategy == "direct":
        return [Phase(index=0, traffic_fraction=100.0, min_dwell=timedelta(0))]
    if strategy == "blue_green":
        return [
            Phase(
                index=0,
                traffic_fraction=100.0,
                min_dwell=BLUE_GREEN_BAKE,
                advance_criteria=PERFORMANCE_CRITERIA,
            )
        ]
    requires_approval = strategy == "staged"
    return [
        Phase(
            index=index,
            traffic_fraction=fraction,
            min_dwell=dwell,
            advance_criteria=criteria,
            requires_approval=requires_approval,
        )
        for index, (fraction, dwell, criteria) in enumerate(
            zip(PROGRESSIVE_FRACTIONS, PROGRESSIVE_DWELLS, PROGRESSIVE_CRITERIA, strict=True)
        )
    ]


def plan_for_strategy(
    strategy: StrategyName,
    *,
    risk_score: float,
    target: str,
    rollback_plan: RollbackPlan,
    created_at: datetime | None = None,
) -> RolloutPlan:
    """Build the plan for an explicitly chosen strategy."""
    return RolloutPlan(
        target=target,
        strategy=strategy,
        risk_score=validate_risk_score(risk_score),
        phases=build_phases(strategy),
        rollback_plan=rollback_plan,
        created_at=created_at or datetime.now(UTC),
    )


def select_strategy(
    risk_score: float,
    *,
    target: str,
    rollback_plan: RollbackPlan,
    created_at: datetime | None = None,
) -> RolloutPlan:
    """Select the strategy tier for a risk score and build its plan.

    Args:
        risk_score: Externally assessed score in [0, 100].
        target: Rollout target identifier.
        rollback_plan: Undo sequence supplied by the caller.
        created_at: Optional fixed creation timestamp.

    Returns:
        A validated, immutable RolloutPlan.

    Raises:
        InvalidRiskScore: If the score is outside [0, 100] or not a number.
    """
    strategy = strategy_for_score(risk_score)
    return plan_for_strategy(
        strategy,
        risk_score=risk_score,
        target=target,
        rollback_plan=rollback_plan,
        created_at=created_at,
    )
