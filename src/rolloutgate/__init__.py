"""RolloutGate: risk-gated progressive rollouts with automated rollback.

RolloutGate turns a change's risk score into a rollout plan, drives traffic
through the plan's phases while watching health signals, and rolls back on
its own when a phase goes bad.

Key features:
    - Strategy tiers (direct / canary / staged) chosen from the risk score
    - Phase dwell windows with continuously evaluated health criteria
    - Human approval gates for high-risk rollouts
    - Ordered, verified rollback with resumable progress
    - Durable registry with an append-only decision log
    - Prometheus metrics and webhook notifications

Example:
    >>> from rolloutgate.client import RolloutGateClient
    >>> async with RolloutGateClient("http://localhost:8000") as client:
    ...     rollout = await client.get_rollout("rollout-123")
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
