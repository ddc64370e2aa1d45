from __future__ import annotations

import os
import secrets
import tempfile

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DATA_DIR = os.path.join(tempfile.gettempdir(), "scoutline")
DEFAULT_DB_PATH = os.path.join(DEFAULT_DATA_DIR, "coordinator.sqlite3")
DEFAULT_RESUME_DIR = os.path.join(DEFAULT_DATA_DIR, "resumes")


class CoordinatorSettings(BaseModel):
    """Runtime configuration handed to ``create_app`` and the run coordinator.

    Business logic never reads the environment directly; ``from_env`` is the
    only place process-wide variables are consulted.
    """

    model_config = ConfigDict(frozen=True)

    database_path: str = DEFAULT_DB_PATH
    resume_dir: str = DEFAULT_RESUME_DIR
    webhook_secret: str = ""
    worker_url: str = ""
    public_base_url: str = "http://localhost:8000"
    signing_key: str = Field(default_factory=lambda: secrets.token_hex(32))
    resume_url_ttl_seconds: int = Field(default=3600, ge=1)
    dispatch_timeout_seconds: float = Field(default=15.0, gt=0)
    dispatch_max_attempts: int = Field(default=2, ge=1, le=5)
    session_ttl_hours: int = Field(default=168, ge=1)
    max_resume_bytes: int = Field(default=5 * 1024 * 1024, ge=1)

    @classmethod
    def from_env(cls) -> CoordinatorSettings:
        values: dict[str, str] = {}
        env_map = {
            "database_path": "COORDINATOR_DB_PATH",
            "resume_dir": "COORDINATOR_RESUME_DIR",
            "webhook_secret": "WORKER_WEBHOOK_SECRET",
            "worker_url": "WORKER_WEBHOOK_URL",
            "public_base_url": "COORDINATOR_PUBLIC_URL",
            "signing_key": "COORDINATOR_SIGNING_KEY",
            "resume_url_ttl_seconds": "RESUME_URL_TTL_SECONDS",
            "dispatch_timeout_seconds": "WORKER_DISPATCH_TIMEOUT_SECONDS",
            "dispatch_max_attempts": "WORKER_DISPATCH_MAX_ATTEMPTS",
            "session_ttl_hours": "SESSION_TTL_HOURS",
            "max_resume_bytes": "MAX_RESUME_BYTES",
        }
        for field_name, env_name in env_map.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw
        return cls.model_validate(values)
