"""pytest fixtures for RolloutGate."""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# Importing rolloutgate.main builds a module-level app; keep it off disk.
os.environ.setdefault("ROLLOUTGATE_DB", ":memory:")

from rolloutgate.abort import AbortSwitch
from rolloutgate.approvals import InMemoryApprovalGate
from rolloutgate.config import Settings
from rolloutgate.controller import RolloutController
from rolloutgate.errors import TrafficShiftError
from rolloutgate.health import PushHealthCollector
from rolloutgate.main import create_app
from rolloutgate.metrics import MetricsRegistry
from rolloutgate.models import (
    Criteria,
    HealthSample,
    Phase,
    RollbackPlan,
    RolloutPlan,
    RolloutState,
    StrategyName,
    Threshold,
    default_rollback_plan,
)
from rolloutgate.registry import RolloutRegistry
from rolloutgate.risk import StaticRiskAssessor
from rolloutgate.rollback import RollbackManager
from rolloutgate.store import RolloutStore
from rolloutgate.traffic import InMemoryTrafficRouter

ADMIN_KEY = "test-admin-key"  # noqa: S105

ERROR_RATE_CRITERIA = Criteria(
    name="health",
    thresholds=[Threshold(name="error_rate", metric="error_rate", op="le", value=0.02)],
)


class FakeRedis:
    """Minimal async Redis stub for tests."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def exists(self, key: str) -> int:
        return 1 if key in self._data else 0

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def ping(self) -> bool:
        return True


class FailingTrafficRouter(InMemoryTrafficRouter):
    """Router whose shifts above 0% fail a fixed number of times."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def shift(self, target: str, fraction: float) -> None:
        if fraction > 0.0:
            self.attempts += 1
            if self.failures > 0:
                self.failures -= 1
                raise TrafficShiftError(target, fraction, "router unavailable")
        await super().shift(target, fraction)


def healthy_sample(target: str, **overrides: float) -> HealthSample:
    values: dict[str, float] = {
        "request_count": 100,
        "error_rate": 0.001,
        "latency_p95_ms": 120.0,
    }
    values.update(overrides)
    return HealthSample(target=target, **values)  # type: ignore[arg-type]


def unhealthy_sample(target: str) -> HealthSample:
    return healthy_sample(target, error_rate=0.5)


class ScriptedHealthCollector:
    """Health source keyed off the router: one script while traffic is on the
    new version, healthy samples once it is back at 0%."""

    def __init__(self, router: InMemoryTrafficRouter) -> None:
        self.router = router
        self.mode = "healthy"
        self.calls = 0

    async def sample(self, target: str, window: timedelta) -> HealthSample | None:
        self.calls += 1
        if await self.router.current_fraction(target) == 0.0:
            return healthy_sample(target)
        if self.mode == "silent":
            return None
        if self.mode == "unhealthy":
            return unhealthy_sample(target)
        return healthy_sample(target)


def make_phase(
    index: int,
    fraction: float,
    *,
    dwell: float = 0.05,
    criteria: Criteria | None = None,
    approval: bool = False,
) -> Phase:
    return Phase(
        index=index,
        traffic_fraction=fraction,
        min_dwell=timedelta(seconds=dwell),
        advance_criteria=ERROR_RATE_CRITERIA if criteria is None else criteria,
        requires_approval=approval,
    )


def make_plan(
    target: str,
    phases: list[Phase],
    *,
    strategy: StrategyName = "canary",
    rollback_plan: RollbackPlan | None = None,
) -> RolloutPlan:
    return RolloutPlan(
        target=target,
        strategy=strategy,
        risk_score=35.0,
        phases=phases,
        rollback_plan=rollback_plan or default_rollback_plan(target),
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class FakeClock:
    """Controller clock that only moves when a test advances it."""

    def __init__(self) -> None:
        self.now = datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ControllerHarness:
    """Wires a controller to in-memory collaborators with sub-second timings."""

    def __init__(self, tmp_path: Path, *, router: InMemoryTrafficRouter | None = None) -> None:
        self.store = RolloutStore(str(tmp_path / "rollouts.db"))
        self.metrics = MetricsRegistry()
        self.registry = RolloutRegistry(self.store, metrics=self.metrics)
        self.router = router or InMemoryTrafficRouter()
        self.health: ScriptedHealthCollector | PushHealthCollector = ScriptedHealthCollector(
            self.router
        )
        self.approvals = InMemoryApprovalGate()
        self.abort_switch: AbortSwitch | None = None
        self.clock: Callable[[], datetime] = lambda: datetime.now(UTC)
        self.settings = Settings(
            poll_interval_seconds=0.01,
            shift_max_retries=2,
            shift_retry_backoff_seconds=0.0,
        )
        self.rollback_manager = RollbackManager(
            traffic=self.router,
            health=self.health,
            verify_attempts=3,
            verify_interval_seconds=0.01,
        )

    def controller_for(self, state: RolloutState) -> RolloutController:
        return RolloutController(
            state=state,
            registry=self.registry,
            traffic=self.router,
            health=self.health,
            approvals=self.approvals,
            rollback_manager=self.rollback_manager,
            settings=self.settings,
            abort_switch=self.abort_switch,
            metrics=self.metrics,
            clock=self.clock,
        )

    def start(self, plan: RolloutPlan) -> RolloutController:
        rollout_id = self.registry.accept(plan)
        return self.controller_for(self.registry.live_state(rollout_id))

    async def run(self, plan: RolloutPlan, timeout: float = 5.0) -> RolloutState:
        controller = self.start(plan)
        return await asyncio.wait_for(controller.run(), timeout)


@pytest.fixture()
def harness(tmp_path: Path) -> ControllerHarness:
    return ControllerHarness(tmp_path)


@pytest.fixture()
def store(tmp_path: Path) -> RolloutStore:
    return RolloutStore(str(tmp_path / "rollouts.db"))


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def app_settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "api.db"),
        poll_interval_seconds=0.01,
        shift_retry_backoff_seconds=0.0,
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture()
def app(app_settings: Settings, fake_redis: FakeRedis) -> FastAPI:
    return create_app(
        settings=app_settings,
        traffic=InMemoryTrafficRouter(),
        health=PushHealthCollector(),
        assessor=StaticRiskAssessor(),
        abort_switch=AbortSwitch(fake_redis),  # type: ignore[arg-type]
    )


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    # Entering the client runs the lifespan and keeps one event loop alive
    # across requests, so controller tasks progress between calls.
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
async def async_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
