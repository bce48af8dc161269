"""Rollback manager tests."""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import ScriptedHealthCollector, unhealthy_sample

from rolloutgate.health import PushHealthCollector
from rolloutgate.models import (
    Criteria,
    HealthSample,
    RollbackPlan,
    RollbackStep,
    Threshold,
    default_rollback_plan,
)
from rolloutgate.rollback import RollbackManager
from rolloutgate.traffic import InMemoryTrafficRouter


class SilentHealth:
    async def sample(self, target: str, window: timedelta) -> HealthSample | None:
        return None


def _manager(router: InMemoryTrafficRouter, health=None) -> RollbackManager:
    return RollbackManager(
        traffic=router,
        health=health or ScriptedHealthCollector(router),
        verify_attempts=2,
        verify_interval_seconds=0.0,
    )


@pytest.mark.asyncio
async def test_default_plan_reverts_traffic_and_verifies() -> None:
    router = InMemoryTrafficRouter()
    await router.shift("svc", 25.0)
    completed: list[int] = []

    result = await _manager(router).execute_rollback(
        default_rollback_plan("svc"), target="svc", on_step=completed.append
    )

    assert result.success is True
    assert result.verified is True
    assert result.steps_completed == 1
    assert completed == [1]
    assert await router.current_fraction("svc") == 0.0


@pytest.mark.asyncio
async def test_steps_run_in_order_and_halt_on_first_failure() -> None:
    router = InMemoryTrafficRouter()
    await router.shift("svc", 25.0)
    calls: list[str] = []

    async def flush_cache(step: RollbackStep, target: str) -> None:
        calls.append(step.name)

    async def restore_config(step: RollbackStep, target: str) -> None:
        calls.append(step.name)
        raise RuntimeError("config store unreachable")

    manager = _manager(router)
    manager.register_action("flush_cache", flush_cache)
    manager.register_action("restore_config", restore_config)
    plan = RollbackPlan(
        steps=[
            RollbackStep(name="flush", action="flush_cache", target_ref="cache"),
            RollbackStep(name="config", action="restore_config", target_ref="cfg"),
            RollbackStep(name="revert", action="shift_traffic", target_ref="svc"),
        ]
    )

    result = await manager.execute_rollback(plan, target="svc")

    assert result.success is False
    assert calls == ["flush", "config"]
    assert result.steps_completed == 1
    assert result.failed_step == "config"
    assert "config store unreachable" in (result.error or "")
    assert await router.current_fraction("svc") == 25.0


@pytest.mark.asyncio
async def test_resumed_rollback_skips_completed_steps() -> None:
    router = InMemoryTrafficRouter()
    await router.shift("svc", 25.0)
    calls: list[str] = []

    async def record(step: RollbackStep, target: str) -> None:
        calls.append(step.name)

    manager = _manager(router)
    manager.register_action("record", record)
    plan = RollbackPlan(
        steps=[
            RollbackStep(name="first", action="record", target_ref="svc"),
            RollbackStep(name="revert", action="shift_traffic", target_ref="svc"),
        ]
    )

    result = await manager.execute_rollback(plan, target="svc", start_at=1)

    assert result.success is True
    assert calls == []
    assert result.steps_completed == 2


@pytest.mark.asyncio
async def test_unknown_action_fails_rollback() -> None:
    router = InMemoryTrafficRouter()
    plan = RollbackPlan(steps=[RollbackStep(name="x", action="teleport", target_ref="svc")])

    result = await _manager(router).execute_rollback(plan, target="svc")

    assert result.success is False
    assert "unknown rollback action" in (result.error or "")


@pytest.mark.asyncio
async def test_verification_requires_traffic_back_at_zero() -> None:
    router = InMemoryTrafficRouter()
    await router.shift("svc", 25.0)

    ok, detail = await _manager(router).verify(default_rollback_plan("svc"), target="svc")

    assert ok is False
    assert "25%" in detail


@pytest.mark.asyncio
async def test_verification_fails_without_health_evidence() -> None:
    router = InMemoryTrafficRouter()

    result = await _manager(router, SilentHealth()).execute_rollback(
        default_rollback_plan("svc"), target="svc"
    )

    assert result.success is False
    assert result.steps_completed == 1
    assert result.detail == "no post-rollback health sample"


@pytest.mark.asyncio
async def test_verification_fails_on_unhealthy_prior_version() -> None:
    router = InMemoryTrafficRouter()
    plan = RollbackPlan(
        steps=[RollbackStep(name="revert", action="shift_traffic", target_ref="svc")],
        verification=Criteria(
            name="strict",
            thresholds=[Threshold(name="error_rate", metric="error_rate", op="le", value=0.0)],
        ),
    )

    result = await _manager(router).execute_rollback(plan, target="svc")

    assert result.success is False
    assert "post-rollback health check failed" in result.detail


@pytest.mark.asyncio
async def test_verification_ignores_samples_pushed_before_the_revert() -> None:
    router = InMemoryTrafficRouter()
    await router.shift("svc", 25.0)
    collector = PushHealthCollector()
    collector.push(unhealthy_sample("svc"))

    result = await _manager(router, health=collector).execute_rollback(
        default_rollback_plan("svc"), target="svc"
    )

    assert result.success is False
    assert result.detail == "no post-rollback health sample"
    assert collector.pending("svc") == 0
