import logging

import pytest
from pydantic import ValidationError

from shared.config import EngineSettings, load_settings


def test_load_settings_reads_workflow_env(monkeypatch) -> None:
    monkeypatch.setenv("WORKFLOW_DEFAULT_TIMEOUT_MS", "1500")
    monkeypatch.setenv("WORKFLOW_DEFAULT_RETRY_BACKOFF_MS", "25")
    monkeypatch.setenv("WORKFLOW_TOLERANT_EXPRESSIONS", "Yes")
    monkeypatch.setenv("WORKFLOW_EXECUTIONS_DB_PATH", "  ")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.default_timeout_ms == 1500.0
    assert settings.default_retry_backoff_ms == 25.0
    assert settings.tolerant_expressions is True
    assert settings.executions_db_path == "executions.db"
    assert settings.log_level_value == logging.DEBUG


def test_unknown_log_level_falls_back_to_info() -> None:
    assert EngineSettings(log_level="chatty").log_level_value == logging.INFO
    assert EngineSettings(log_level="basic_format").log_level_value == logging.INFO


def test_non_positive_timeout_is_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(default_timeout_ms=0)
