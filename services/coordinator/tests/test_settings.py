from __future__ import annotations

import pytest
from coordinator.settings import CoordinatorSettings
from pydantic import ValidationError

pytestmark = pytest.mark.unit

ENV_NAMES = (
    "COORDINATOR_DB_PATH",
    "COORDINATOR_RESUME_DIR",
    "WORKER_WEBHOOK_SECRET",
    "WORKER_WEBHOOK_URL",
    "COORDINATOR_PUBLIC_URL",
    "COORDINATOR_SIGNING_KEY",
    "RESUME_URL_TTL_SECONDS",
    "WORKER_DISPATCH_TIMEOUT_SECONDS",
    "WORKER_DISPATCH_MAX_ATTEMPTS",
    "SESSION_TTL_HOURS",
    "MAX_RESUME_BYTES",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment() -> None:
    settings = CoordinatorSettings.from_env()

    assert settings.webhook_secret == ""
    assert settings.worker_url == ""
    assert settings.resume_url_ttl_seconds == 3600
    assert settings.dispatch_timeout_seconds == 15.0
    assert settings.dispatch_max_attempts == 2
    assert settings.max_resume_bytes == 5 * 1024 * 1024
    assert len(settings.signing_key) == 64


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.setenv("COORDINATOR_DB_PATH", str(tmp_path / "db.sqlite3"))
    monkeypatch.setenv("WORKER_WEBHOOK_SECRET", "  s3cret  ")
    monkeypatch.setenv("WORKER_WEBHOOK_URL", "https://worker.example.com/hook")
    monkeypatch.setenv("RESUME_URL_TTL_SECONDS", "600")
    monkeypatch.setenv("WORKER_DISPATCH_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("WORKER_DISPATCH_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("SESSION_TTL_HOURS", "   ")

    settings = CoordinatorSettings.from_env()

    assert settings.database_path == str(tmp_path / "db.sqlite3")
    assert settings.webhook_secret == "s3cret"
    assert settings.worker_url == "https://worker.example.com/hook"
    assert settings.resume_url_ttl_seconds == 600
    assert settings.dispatch_timeout_seconds == 2.5
    assert settings.dispatch_max_attempts == 1
    assert settings.session_ttl_hours == 168


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("WORKER_DISPATCH_MAX_ATTEMPTS", "0"),
        ("WORKER_DISPATCH_TIMEOUT_SECONDS", "-1"),
        ("RESUME_URL_TTL_SECONDS", "soon"),
    ],
)
def test_invalid_environment_values_are_rejected(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        CoordinatorSettings.from_env()


def test_settings_are_frozen() -> None:
    settings = CoordinatorSettings()
    with pytest.raises(ValidationError):
        settings.webhook_secret = "changed"
