"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

DenyPolicy = Literal["rollback", "halt"]


def _get_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed or default


def _get_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        return default


def _get_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _get_deny_policy() -> DenyPolicy:
    value = os.getenv("ROLLOUTGATE_DENY_POLICY", "rollback").strip().lower()
    if value == "halt":
        return "halt"
    return "rollback"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the controller, service, and HTTP API."""

    db_path: str = "./rollouts.db"
    log_level: str = "INFO"
    poll_interval_seconds: float = 5.0
    shift_max_retries: int = 3
    shift_retry_backoff_seconds: float = 1.0
    phase_max_seconds: float = 0.0
    max_window_samples: int = 1000
    controller_max_restarts: int = 3
    deny_policy: DenyPolicy = "rollback"
    redis_url: str | None = None
    traffic_url: str | None = None
    health_url: str | None = None
    risk_url: str | None = None
    webhook_url: str | None = None
    webhook_secret: str | None = None
    admin_api_key: str | None = None


def load_settings() -> Settings:
    """Build settings from ROLLOUTGATE_* environment variables."""
    return Settings(
        db_path=_get_str("ROLLOUTGATE_DB", "./rollouts.db") or "./rollouts.db",
        log_level=_get_str("ROLLOUTGATE_LOG_LEVEL", "INFO") or "INFO",
        poll_interval_seconds=_get_float(
            "ROLLOUTGATE_POLL_INTERVAL_SECONDS", 5.0, minimum=0.001
        ),
        shift_max_retries=_get_int("ROLLOUTGATE_SHIFT_MAX_RETRIES", 3),
        shift_retry_backoff_seconds=_get_float(
            "ROLLOUTGATE_SHIFT_RETRY_BACKOFF_SECONDS", 1.0
        ),
        phase_max_seconds=_get_float("ROLLOUTGATE_PHASE_MAX_SECONDS", 0.0),
        max_window_samples=_get_int("ROLLOUTGATE_MAX_WINDOW_SAMPLES", 1000, minimum=1),
        controller_max_restarts=_get_int("ROLLOUTGATE_CONTROLLER_MAX_RESTARTS", 3),
        deny_policy=_get_deny_policy(),
        redis_url=_get_str("ROLLOUTGATE_REDIS_URL"),
        traffic_url=_get_str("ROLLOUTGATE_TRAFFIC_URL"),
        health_url=_get_str("ROLLOUTGATE_HEALTH_URL"),
        risk_url=_get_str("ROLLOUTGATE_RISK_URL"),
        webhook_url=_get_str("ROLLOUTGATE_WEBHOOK_URL"),
        webhook_secret=_get_str("ROLLOUTGATE_WEBHOOK_SECRET"),
        admin_api_key=_get_str("ROLLOUTGATE_ADMIN_API_KEY"),
    )
