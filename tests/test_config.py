"""Settings loading tests."""

from __future__ import annotations

from rolloutgate.config import Settings, load_settings


def test_defaults_without_environment(monkeypatch) -> None:
    for name in (
        "ROLLOUTGATE_DB",
        "ROLLOUTGATE_POLL_INTERVAL_SECONDS",
        "ROLLOUTGATE_DENY_POLICY",
        "ROLLOUTGATE_REDIS_URL",
        "ROLLOUTGATE_ADMIN_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings == Settings()
    assert settings.deny_policy == "rollback"
    assert settings.redis_url is None


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("ROLLOUTGATE_DB", "/tmp/rollouts.db")
    monkeypatch.setenv("ROLLOUTGATE_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("ROLLOUTGATE_SHIFT_MAX_RETRIES", "5")
    monkeypatch.setenv("ROLLOUTGATE_PHASE_MAX_SECONDS", "3600")
    monkeypatch.setenv("ROLLOUTGATE_MAX_WINDOW_SAMPLES", "250")
    monkeypatch.setenv("ROLLOUTGATE_CONTROLLER_MAX_RESTARTS", "0")
    monkeypatch.setenv("ROLLOUTGATE_DENY_POLICY", "HALT")
    monkeypatch.setenv("ROLLOUTGATE_REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("ROLLOUTGATE_WEBHOOK_URL", "  ")

    settings = load_settings()

    assert settings.db_path == "/tmp/rollouts.db"
    assert settings.poll_interval_seconds == 0.5
    assert settings.shift_max_retries == 5
    assert settings.phase_max_seconds == 3600.0
    assert settings.max_window_samples == 250
    assert settings.controller_max_restarts == 0
    assert settings.deny_policy == "halt"
    assert settings.redis_url == "redis://cache:6379/0"
    assert settings.webhook_url is None


def test_malformed_numbers_fall_back_and_clamp(monkeypatch) -> None:
    monkeypatch.setenv("ROLLOUTGATE_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("ROLLOUTGATE_SHIFT_MAX_RETRIES", "lots")
    monkeypatch.setenv("ROLLOUTGATE_DENY_POLICY", "ignore")
    monkeypatch.setenv("ROLLOUTGATE_MAX_WINDOW_SAMPLES", "0")

    settings = load_settings()

    assert settings.poll_interval_seconds == 0.001
    assert settings.shift_max_retries == 3
    assert settings.deny_policy == "rollback"
    assert settings.max_window_samples == 1
