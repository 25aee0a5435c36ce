"""Runtime configuration read from the environment.

``main.py`` loads a local ``.env`` (python-dotenv) before this module is used.
"""

from __future__ import annotations

import logging
import os

from pydantic import BaseModel, Field

_TRUTHY = ("1", "true", "yes", "on")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


class EngineSettings(BaseModel):
    """Defaults applied to every execution."""

    model_config = {"frozen": True}

    default_timeout_ms: float = Field(default=30_000.0, gt=0.0)
    default_retry_backoff_ms: float = Field(default=0.0, ge=0.0)
    tolerant_expressions: bool = Field(default=False)
    http_timeout_seconds: float = Field(default=30.0, gt=0.0)
    executions_db_path: str = Field(default="executions.db")
    log_level: str = Field(default="INFO")

    @property
    def log_level_value(self) -> int:
        level = getattr(logging, self.log_level.upper(), logging.INFO)
        return level if isinstance(level, int) else logging.INFO


def load_settings() -> EngineSettings:
    """Build settings from ``WORKFLOW_*`` environment variables."""
    return EngineSettings(
        default_timeout_ms=float(os.getenv("WORKFLOW_DEFAULT_TIMEOUT_MS", "30000")),
        default_retry_backoff_ms=float(os.getenv("WORKFLOW_DEFAULT_RETRY_BACKOFF_MS", "0")),
        tolerant_expressions=_env_bool("WORKFLOW_TOLERANT_EXPRESSIONS", "false"),
        http_timeout_seconds=float(os.getenv("WORKFLOW_HTTP_TIMEOUT_SECONDS", "30")),
        executions_db_path=os.getenv("WORKFLOW_EXECUTIONS_DB_PATH", "executions.db").strip() or "executions.db",
        log_level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO",
    )
