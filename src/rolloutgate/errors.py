"""Error taxonomy for rollout planning, execution, and rollback."""

from __future__ import annotations


class RolloutGateError(Exception):
    """Base class for all RolloutGate errors."""

    status_code = 500


class InvalidRiskScore(RolloutGateError, ValueError):
    """Risk score is outside [0, 100]; no rollout is created."""

    status_code = 422

    def __init__(self, score: object) -> None:
        self.score = score
        super().__init__(f"Risk score must be within [0, 100], got {score!r}")


class InvalidPlan(RolloutGateError, ValueError):
    """Rollout plan violates phase ordering or shape rules."""

    status_code = 422


class TargetBusy(RolloutGateError):
    """Target already has a non-terminal rollout."""

    status_code = 409

    def __init__(self, target: str, active_rollout_id: str | None = None) -> None:
        self.target = target
        self.active_rollout_id = active_rollout_id
        message = f"Target {target!r} already has an active rollout"
        if active_rollout_id:
            message = f"{message} ({active_rollout_id})"
        super().__init__(message)


class RolloutNotFound(RolloutGateError):
    """No rollout is recorded under the given identifier."""

    status_code = 404

    def __init__(self, rollout_id: str) -> None:
        self.rollout_id = rollout_id
        super().__init__(f"Rollout {rollout_id!r} not found")


class TrafficShiftError(RolloutGateError):
    """Traffic control failed to apply a shift."""

    status_code = 502

    def __init__(self, target: str, fraction: float, reason: str) -> None:
        self.target = target
        self.fraction = fraction
        self.reason = reason
        super().__init__(f"Traffic shift of {target!r} to {fraction:g}% failed: {reason}")


class InsufficientData(RolloutGateError):
    """Health signals stopped arriving for longer than the phase allows."""


class RollbackFailed(RolloutGateError):
    """A rollback step or its verification failed; manual intervention required."""

    def __init__(self, rollout_id: str, detail: str) -> None:
        self.rollout_id = rollout_id
        self.detail = detail
        super().__init__(f"Rollback of {rollout_id!r} failed: {detail}")


class AssessmentUnavailable(RolloutGateError):
    """Risk assessor could not produce a score."""

    status_code = 503


class ApprovalNotPending(RolloutGateError):
    """Approval decision submitted for a phase that is not awaiting one."""

    status_code = 409

    def __init__(self, rollout_id: str, phase_index: int) -> None:
        self.rollout_id = rollout_id
        self.phase_index = phase_index
        super().__init__(
            f"Rollout {rollout_id!r} is not awaiting approval for phase {phase_index}"
        )
