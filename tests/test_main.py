"""HTTP API tests."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from conftest import ADMIN_KEY, FakeRedis, ScriptedHealthCollector
from fastapi.testclient import TestClient
from httpx import AsyncClient

from rolloutgate.abort import AbortSwitch
from rolloutgate.config import Settings
from rolloutgate.main import create_app
from rolloutgate.risk import StaticRiskAssessor
from rolloutgate.traffic import InMemoryTrafficRouter

ADMIN_HEADERS = {"X-API-Key": ADMIN_KEY}


def _rollout_payload(target: str, risk_score: float | None = 10) -> dict[str, Any]:
    attributes: dict[str, Any] = {} if risk_score is None else {"risk_score": risk_score}
    return {
        "target": target,
        "change": {
            "change_id": f"chg-{target}",
            "candidate_version": "v2",
            "attributes": attributes,
        },
    }


def _poll(client: TestClient, rollout_id: str, done: Callable[[dict[str, Any]], bool]) -> dict:
    deadline = time.monotonic() + 5.0
    while True:
        rollout = client.get(f"/rollouts/{rollout_id}").json()["rollout"]
        if done(rollout):
            return rollout
        if time.monotonic() > deadline:
            raise AssertionError(f"rollout stuck in {rollout['status']}")
        time.sleep(0.01)


@pytest.fixture()
def router() -> InMemoryTrafficRouter:
    return InMemoryTrafficRouter()


@pytest.fixture()
def scripted_health(router: InMemoryTrafficRouter) -> ScriptedHealthCollector:
    return ScriptedHealthCollector(router)


@pytest.fixture()
def gated_client(
    app_settings: Settings,
    router: InMemoryTrafficRouter,
    scripted_health: ScriptedHealthCollector,
) -> Iterator[TestClient]:
    """API whose health source reports on the in-memory router."""
    app = create_app(
        settings=app_settings,
        traffic=router,
        health=scripted_health,
        assessor=StaticRiskAssessor(),
        abort_switch=AbortSwitch(FakeRedis()),  # type: ignore[arg-type]
    )
    with TestClient(app) as test_client:
        yield test_client


def test_health_reports_dependencies(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["redis"] is True
    assert payload["active_rollouts"] == 0


def test_metrics_endpoint_is_prometheus_text(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "rolloutgate_rollouts_started_total" in response.text


def test_preview_returns_plan_for_score(client: TestClient) -> None:
    response = client.get("/strategies/preview", params={"risk_score": 35})

    assert response.status_code == 200
    plan = response.json()["plan"]
    assert plan["strategy"] == "canary"
    assert [phase["traffic_fraction"] for phase in plan["phases"]] == [5.0, 25.0, 50.0, 100.0]


def test_preview_rejects_out_of_range_score(client: TestClient) -> None:
    response = client.get("/strategies/preview", params={"risk_score": 101})

    assert response.status_code == 422
    assert response.json()["error"] == "InvalidRiskScore"


def test_create_requires_admin_key(client: TestClient) -> None:
    missing = client.post("/rollouts", json=_rollout_payload("api"))
    wrong = client.post("/rollouts", json=_rollout_payload("api"), headers={"X-API-Key": "nope"})

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert client.get("/rollouts").json()["rollouts"] == []


def test_low_risk_rollout_succeeds(client: TestClient) -> None:
    response = client.post("/rollouts", json=_rollout_payload("api", 10), headers=ADMIN_HEADERS)

    assert response.status_code == 201
    rollout = response.json()["rollout"]
    assert rollout["plan"]["strategy"] == "direct"
    final = _poll(client, rollout["rollout_id"], lambda r: r["archived"])
    assert final["status"] == "succeeded"
    assert [entry["decision"] for entry in final["decision_log"]] == [
        "accepted",
        "started",
        "phase_entered",
        "succeeded",
    ]


def test_missing_score_is_service_unavailable(client: TestClient) -> None:
    response = client.post("/rollouts", json=_rollout_payload("api", None), headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["error"] == "AssessmentUnavailable"


def test_busy_target_conflicts(gated_client: TestClient) -> None:
    first = gated_client.post("/rollouts", json=_rollout_payload("api", 35), headers=ADMIN_HEADERS)
    second = gated_client.post("/rollouts", json=_rollout_payload("api", 5), headers=ADMIN_HEADERS)

    assert first.status_code == 201
    assert second.status_code == 409
    active = gated_client.get("/rollouts", params={"active": "true"}).json()["rollouts"]
    assert [summary["rollout_id"] for summary in active] == [first.json()["rollout"]["rollout_id"]]


def test_unknown_rollout_is_404(client: TestClient) -> None:
    response = client.get("/rollouts/rollout-missing")

    assert response.status_code == 404
    assert response.json()["error"] == "RolloutNotFound"


def test_abort_rolls_back_running_rollout(
    gated_client: TestClient, router: InMemoryTrafficRouter
) -> None:
    created = gated_client.post(
        "/rollouts", json=_rollout_payload("api", 35), headers=ADMIN_HEADERS
    )
    rollout_id = created.json()["rollout"]["rollout_id"]
    _poll(gated_client, rollout_id, lambda r: r["phase_started_at"] is not None)

    forbidden = gated_client.post(f"/rollouts/{rollout_id}/abort", json={"reason": "x"})
    response = gated_client.post(
        f"/rollouts/{rollout_id}/abort", json={"reason": "bad deploy"}, headers=ADMIN_HEADERS
    )

    assert forbidden.status_code == 403
    assert response.json() == {
        "status": "abort_requested",
        "rollout_id": rollout_id,
        "reason": "bad deploy",
    }
    final = _poll(gated_client, rollout_id, lambda r: r["archived"])
    assert final["status"] == "rolled_back"
    assert router.history("api") == [5.0, 0.0]

    again = gated_client.post(
        f"/rollouts/{rollout_id}/abort", json={"reason": "again"}, headers=ADMIN_HEADERS
    )
    assert again.json()["status"] == "already_terminal"


def test_staged_rollout_approval_flow(gated_client: TestClient) -> None:
    created = gated_client.post(
        "/rollouts", json=_rollout_payload("api", 75), headers=ADMIN_HEADERS
    )
    rollout_id = created.json()["rollout"]["rollout_id"]

    early = gated_client.post(
        f"/rollouts/{rollout_id}/approvals",
        json={"phase_index": 0, "approved": True, "approver": "ops"},
        headers=ADMIN_HEADERS,
    )
    assert early.status_code == 409
    assert gated_client.get("/approvals/pending").json()["pending"] == []

    denied_without_key = gated_client.post(
        f"/rollouts/{rollout_id}/approvals",
        json={"phase_index": 0, "approved": False, "approver": "ops"},
    )
    assert denied_without_key.status_code == 403


def test_pushed_violation_triggers_rollback(
    gated_client: TestClient, scripted_health: ScriptedHealthCollector
) -> None:
    scripted_health.mode = "silent"
    created = gated_client.post(
        "/rollouts", json=_rollout_payload("api", 35), headers=ADMIN_HEADERS
    )
    rollout_id = created.json()["rollout"]["rollout_id"]
    _poll(gated_client, rollout_id, lambda r: r["phase_started_at"] is not None)

    response = gated_client.post(
        "/targets/api/samples", json={"request_count": 50, "error_rate": 0.4}
    )

    assert response.status_code == 202
    assert response.json() == {"accepted": True, "target": "api", "rollout_id": rollout_id}
    final = _poll(gated_client, rollout_id, lambda r: r["archived"])
    assert final["status"] == "rolled_back"
    assert "criteria_violated" in [entry["decision"] for entry in final["decision_log"]]


def test_invalid_sample_is_rejected(client: TestClient) -> None:
    response = client.post("/targets/api/samples", json={"error_rate": 7})

    assert response.status_code == 422


def test_sample_for_idle_target_is_dropped(client: TestClient, app) -> None:
    response = client.post("/targets/idle/samples", json={"request_count": 5, "error_rate": 0.9})

    assert response.status_code == 202
    assert response.json() == {"accepted": False, "target": "idle", "rollout_id": None}
    assert app.state.service.sample_sink.pending("idle") == 0


def test_target_freeze_rolls_back_running_rollout(gated_client: TestClient) -> None:
    created = gated_client.post(
        "/rollouts", json=_rollout_payload("api", 35), headers=ADMIN_HEADERS
    )
    rollout_id = created.json()["rollout"]["rollout_id"]
    _poll(gated_client, rollout_id, lambda r: r["phase_started_at"] is not None)

    denied = gated_client.post("/targets/api/freeze", json={"reason": "change freeze"})
    frozen = gated_client.post(
        "/targets/api/freeze", json={"reason": "change freeze"}, headers=ADMIN_HEADERS
    )

    assert denied.status_code == 403
    assert frozen.json() == {"status": "frozen", "target": "api"}
    final = _poll(gated_client, rollout_id, lambda r: r["archived"])
    assert final["status"] == "rolled_back"
    assert any("change freeze" in entry["rationale"] for entry in final["decision_log"])
    unfrozen = gated_client.post("/targets/api/unfreeze", headers=ADMIN_HEADERS)
    assert unfrozen.json() == {"status": "unfrozen", "target": "api"}


def test_system_freeze_blocks_rollouts_until_lifted(gated_client: TestClient) -> None:
    frozen = gated_client.post(
        "/system/freeze", json={"reason": "incident 42"}, headers=ADMIN_HEADERS
    )
    assert frozen.json() == {"status": "frozen"}

    blocked = gated_client.post("/rollouts", json=_rollout_payload("api", 5), headers=ADMIN_HEADERS)
    blocked_final = _poll(
        gated_client, blocked.json()["rollout"]["rollout_id"], lambda r: r["archived"]
    )
    assert blocked_final["status"] == "failed"
    assert "incident 42" in blocked_final["decision_log"][-1]["rationale"]

    unfrozen = gated_client.post("/system/unfreeze", headers=ADMIN_HEADERS)
    assert unfrozen.json() == {"status": "unfrozen"}
    allowed = gated_client.post("/rollouts", json=_rollout_payload("api", 5), headers=ADMIN_HEADERS)
    allowed_final = _poll(
        gated_client, allowed.json()["rollout"]["rollout_id"], lambda r: r["archived"]
    )
    assert allowed_final["status"] == "succeeded"


def test_freeze_without_abort_switch_is_unavailable(app_settings: Settings) -> None:
    app = create_app(
        settings=app_settings,
        traffic=InMemoryTrafficRouter(),
        assessor=StaticRiskAssessor(),
        resume_on_startup=False,
    )
    with TestClient(app) as test_client:
        response = test_client.post("/system/freeze", headers=ADMIN_HEADERS)

    assert response.status_code == 503
    assert response.json()["message"] == "Abort switch unavailable"


@pytest.mark.asyncio
async def test_list_filters_by_target(async_client: AsyncClient) -> None:
    await async_client.post("/rollouts", json=_rollout_payload("a", 10), headers=ADMIN_HEADERS)
    await async_client.post("/rollouts", json=_rollout_payload("b", 10), headers=ADMIN_HEADERS)

    response = await async_client.get("/rollouts", params={"target": "b"})

    rollouts = response.json()["rollouts"]
    assert [summary["target"] for summary in rollouts] == ["b"]
