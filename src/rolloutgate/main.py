"""FastAPI entrypoint for RolloutGate.

This module provides the HTTP API for RolloutGate, a risk-gated progressive
delivery controller. A rollout's strategy is chosen from its risk score and
every phase advance is gated on health evidence, with an auditable decision
log and automatic rollback.

Key endpoints:
    - POST /rollouts: Assess a change, select a strategy, and start a rollout
    - GET /rollouts/{id}: Rollout state with its full decision log
    - POST /rollouts/{id}/abort: Abort a rollout and roll it back
    - POST /rollouts/{id}/approvals: Approve or deny a staged phase
    - POST /targets/{target}/samples: Push a health sample for a target
    - POST /targets/{target}/freeze, /unfreeze: Block or unblock rollouts of a target
    - POST /system/freeze, /system/unfreeze: Block or unblock every rollout
    - GET /strategies/preview: Show the plan a risk score would produce
    - GET /health: Health check with dependency status
    - GET /metrics: Prometheus metrics endpoint
"""

from __future__ import annotations

import inspect
import json
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from redis.asyncio import Redis

from rolloutgate import __version__
from rolloutgate.abort import AbortSwitch
from rolloutgate.approvals import InMemoryApprovalGate
from rolloutgate.config import Settings, load_settings
from rolloutgate.errors import RolloutGateError
from rolloutgate.health import HealthCollector, HTTPHealthCollector, PushHealthCollector
from rolloutgate.logging import configure_logging, get_logger
from rolloutgate.metrics import get_metrics
from rolloutgate.models import (
    AbortRequest,
    ApprovalDecisionRequest,
    HealthSample,
    RolloutCreateRequest,
    RolloutFilter,
    RolloutStatus,
)
from rolloutgate.registry import RolloutRegistry
from rolloutgate.risk import HTTPRiskAssessor, RiskAssessor, StaticRiskAssessor
from rolloutgate.service import RolloutService
from rolloutgate.store import RolloutStore
from rolloutgate.traffic import HTTPTrafficControl, InMemoryTrafficRouter, TrafficControl
from rolloutgate.webhooks import WebhookNotifier

logger = get_logger(__name__)

BODY_NONE = Body(default=None)

_RUNTIME_ADMIN_API_KEY = secrets.token_urlsafe(32)


def _get_admin_api_key(settings: Settings) -> str:
    """Return the admin API key for privileged endpoints."""
    if settings.admin_api_key:
        return settings.admin_api_key
    return _RUNTIME_ADMIN_API_KEY


def _authorize_admin_request(settings: Settings, x_api_key: str | None) -> None:
    if not x_api_key:
        raise HTTPException(status_code=403, detail="Missing admin credentials")
    if not secrets.compare_digest(x_api_key, _get_admin_api_key(settings)):
        raise HTTPException(status_code=403, detail="Invalid API key")


def _create_redis_client(redis_url: str) -> Redis:
    """Create Redis client with connection pooling."""
    return Redis.from_url(redis_url, decode_responses=True, max_connections=20)


async def _close_resource(resource: object) -> None:
    close = getattr(resource, "aclose", None) or getattr(resource, "close", None)
    if not callable(close):
        return
    result = close()
    if inspect.isawaitable(result):
        await result


def create_app(
    *,
    settings: Settings | None = None,
    store: RolloutStore | None = None,
    traffic: TrafficControl | None = None,
    health: HealthCollector | None = None,
    assessor: RiskAssessor | None = None,
    abort_switch: AbortSwitch | None = None,
    notifier: WebhookNotifier | None = None,
    resume_on_startup: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    store = store or RolloutStore(settings.db_path)
    traffic = traffic or (
        HTTPTrafficControl(settings.traffic_url)
        if settings.traffic_url
        else InMemoryTrafficRouter()
    )
    sample_sink: PushHealthCollector | None = None
    if health is None:
        if settings.health_url:
            health = HTTPHealthCollector(settings.health_url)
        else:
            sample_sink = PushHealthCollector()
            health = sample_sink
    elif isinstance(health, PushHealthCollector):
        sample_sink = health
    assessor = assessor or (
        HTTPRiskAssessor(settings.risk_url) if settings.risk_url else StaticRiskAssessor()
    )
    if abort_switch is None and settings.redis_url:
        abort_switch = AbortSwitch(_create_redis_client(settings.redis_url))
    notifier = notifier or WebhookNotifier(
        webhook_url=settings.webhook_url,
        secret=settings.webhook_secret,
    )

    registry = RolloutRegistry(store)
    approvals = InMemoryApprovalGate()
    service = RolloutService(
        registry=registry,
        assessor=assessor,
        traffic=traffic,
        health=health,
        approvals=approvals,
        settings=settings,
        abort_switch=abort_switch,
        notifier=notifier,
        sample_sink=sample_sink,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resumed: list[str] = []
        if resume_on_startup:
            resumed = await app.state.service.resume()
        logger.info("rolloutgate_started", version=app.version, resumed=len(resumed))
        yield
        await app.state.service.shutdown()
        app.state.store.close()
        for resource in (traffic, health, assessor):
            await _close_resource(resource)
        if abort_switch is not None:
            await _close_resource(abort_switch.redis)

    app = FastAPI(
        title="RolloutGate",
        version=__version__,
        description="Risk-gated progressive delivery controller",
        lifespan=lifespan,
    )

    # Store components in app state
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.service = service
    app.state.approvals = approvals
    app.state.abort_switch = abort_switch

    @app.exception_handler(RolloutGateError)
    async def rolloutgate_exception_handler(
        request: Request, exc: RolloutGateError
    ) -> JSONResponse:
        """Map domain errors onto their HTTP status codes."""
        return JSONResponse(
            {"error": type(exc).__name__, "message": str(exc)},
            status_code=exc.status_code,
        )

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Return health status and dependency reachability."""
        metrics = get_metrics()
        redis_ok: bool | None = None
        if app.state.abort_switch is not None:
            redis_ok = await app.state.abort_switch.health()
            metrics.health_status.set(1.0 if redis_ok else 0.0, "redis")
        status = "degraded" if redis_ok is False else "ok"
        return JSONResponse({
            "status": status,
            "version": app.version,
            "redis": redis_ok,
            "active_rollouts": len(app.state.registry.active_states()),
        })

    @app.get("/metrics")
    async def metrics_endpoint() -> PlainTextResponse:
        """Expose Prometheus metrics."""
        metrics = get_metrics()
        return PlainTextResponse(
            metrics.collect_all(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/strategies/preview")
    async def preview_strategy(risk_score: float, target: str = "preview") -> JSONResponse:
        """Show the plan a risk score would produce without starting a rollout."""
        plan = app.state.service.preview(risk_score, target=target)
        return JSONResponse({"plan": plan.model_dump(mode="json")})

    @app.post("/rollouts", status_code=201)
    async def create_rollout(
        request: RolloutCreateRequest,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Assess a change, select its strategy, and start the rollout (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        state = await app.state.service.start_rollout(request)
        return JSONResponse({"rollout": state.model_dump(mode="json")}, status_code=201)

    @app.get("/rollouts")
    async def list_rollouts(
        target: str | None = None,
        status: RolloutStatus | None = None,
        active: bool | None = None,
    ) -> JSONResponse:
        """List rollouts, oldest first."""
        summaries = app.state.registry.list(
            RolloutFilter(target=target, status=status, active=active)
        )
        return JSONResponse(
            {"rollouts": [summary.model_dump(mode="json") for summary in summaries]}
        )

    @app.get("/rollouts/{rollout_id}")
    async def get_rollout(rollout_id: str) -> JSONResponse:
        """Return a rollout with its full decision log."""
        state = app.state.service.get(rollout_id)
        return JSONResponse({"rollout": state.model_dump(mode="json")})

    @app.post("/rollouts/{rollout_id}/abort")
    async def abort_rollout(
        rollout_id: str,
        body: AbortRequest | None = BODY_NONE,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Abort a rollout; its controller rolls it back (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        reason = body.reason if body else "operator abort"
        state = await app.state.service.abort(rollout_id, reason)
        status = "already_terminal" if state.terminal else "abort_requested"
        return JSONResponse({"status": status, "rollout_id": rollout_id, "reason": reason})

    @app.post("/rollouts/{rollout_id}/approvals")
    async def decide_approval(
        rollout_id: str,
        request: ApprovalDecisionRequest,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Approve or deny a phase awaiting sign-off (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        decision = app.state.service.decide_approval(rollout_id, request)
        return JSONResponse({
            "rollout_id": rollout_id,
            "phase_index": request.phase_index,
            "decision": decision.model_dump(mode="json"),
        })

    @app.get("/approvals/pending")
    async def pending_approvals() -> JSONResponse:
        """List phases currently waiting for approval."""
        return JSONResponse({"pending": app.state.approvals.list_pending()})

    @app.post("/targets/{target}/samples", status_code=202)
    async def push_sample(target: str, payload: dict[str, Any]) -> JSONResponse:
        """Accept a pushed health sample for a target."""
        payload["target"] = target
        try:
            sample = HealthSample.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=json.loads(exc.json())) from exc
        rollout_id = app.state.service.ingest_sample(sample)
        return JSONResponse(
            {"accepted": rollout_id is not None, "target": target, "rollout_id": rollout_id},
            status_code=202,
        )

    def _abort_switch_unavailable() -> JSONResponse:
        return JSONResponse(
            {"status": "error", "message": "Abort switch unavailable"}, status_code=503
        )

    @app.post("/targets/{target}/freeze")
    async def freeze_target(
        target: str,
        body: AbortRequest | None = BODY_NONE,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Abort every rollout of a target until it is unfrozen (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        switch = app.state.abort_switch
        reason = body.reason if body else None
        if switch is None or not await switch.abort_target(target, reason):
            return _abort_switch_unavailable()
        logger.warning("target_frozen", target=target, reason=reason)
        return JSONResponse({"status": "frozen", "target": target})

    @app.post("/targets/{target}/unfreeze")
    async def unfreeze_target(
        target: str,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Lift a target freeze (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        switch = app.state.abort_switch
        if switch is None or not await switch.clear_target(target):
            return _abort_switch_unavailable()
        logger.info("target_unfrozen", target=target)
        return JSONResponse({"status": "unfrozen", "target": target})

    @app.post("/system/freeze")
    async def freeze_system(
        body: AbortRequest | None = BODY_NONE,
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Abort every rollout on every target (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        switch = app.state.abort_switch
        reason = body.reason if body else None
        if switch is None or not await switch.abort_all(reason):
            return _abort_switch_unavailable()
        logger.warning("system_frozen", reason=reason)
        return JSONResponse({"status": "frozen"})

    @app.post("/system/unfreeze")
    async def unfreeze_system(
        x_api_key: str | None = Header(None, alias="X-API-Key"),
    ) -> JSONResponse:
        """Lift a system-wide freeze (admin only)."""
        _authorize_admin_request(app.state.settings, x_api_key)
        switch = app.state.abort_switch
        if switch is None or not await switch.clear_all():
            return _abort_switch_unavailable()
        logger.info("system_unfrozen")
        return JSONResponse({"status": "unfrozen"})

    return app


app = create_app()
