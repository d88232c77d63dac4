from __future__ import annotations

from pathlib import Path

import allure
import pytest

from crawler_fleet.config import AssignmentSettings, RetrySettings, Settings

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch) -> None:
    for name in (
        "CRAWLER_FLEET_DB_PATH",
        "CRAWLER_FLEET_RETRY_BACKEND",
        "CRAWLER_FLEET_OUTPUT_DIR",
        "CRAWLER_FLEET_REARM_CRON_TASKS",
        "CRAWLER_FLEET_LIVENESS_THRESHOLD_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".crawler_fleet.db")
    assert settings.registry.liveness_threshold_seconds == 90
    assert settings.retry.backend == "sqlite"
    assert settings.retry.max_retries == 3
    assert settings.retry.base_delay_ms == 5_000
    assert settings.maintenance.output_dir is None
    assert settings.maintenance.rearm_cron_tasks is True
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CRAWLER_FLEET_RETRY_BACKEND", " JSON ")
    monkeypatch.setenv("CRAWLER_FLEET_RETRY_FILE_PATH", str(tmp_path / "retries.json"))
    monkeypatch.setenv("CRAWLER_FLEET_LIVENESS_THRESHOLD_SECONDS", "45")
    monkeypatch.setenv("CRAWLER_FLEET_OUTPUT_DIR", str(tmp_path / "output"))
    monkeypatch.setenv("CRAWLER_FLEET_REARM_CRON_TASKS", "off")

    settings = Settings.from_env(db_path=tmp_path / "override.db")

    assert settings.db_path == tmp_path / "override.db"
    assert settings.retry.backend == "json"
    assert settings.retry.file_path == tmp_path / "retries.json"
    assert settings.registry.liveness_threshold_seconds == 45
    assert settings.maintenance.output_dir == tmp_path / "output"
    assert settings.maintenance.rearm_cron_tasks is False


def test_from_env_rejects_invalid_integer(monkeypatch) -> None:
    monkeypatch.setenv("CRAWLER_FLEET_RETRY_MAX_RETRIES", "three")

    with pytest.raises(ValueError, match="CRAWLER_FLEET_RETRY_MAX_RETRIES"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("CRAWLER_FLEET_REARM_CRON_TASKS", "sometimes")

    with pytest.raises(ValueError, match="CRAWLER_FLEET_REARM_CRON_TASKS"):
        Settings.from_env()


def test_validate_rejects_unknown_retry_backend() -> None:
    settings = Settings(retry=RetrySettings(backend="redis"))

    with pytest.raises(ValueError, match="CRAWLER_FLEET_RETRY_BACKEND"):
        settings.validate()


def test_validate_rejects_non_positive_request_cap() -> None:
    settings = Settings(assignment=AssignmentSettings(max_tasks_per_request=0))

    with pytest.raises(ValueError, match="MAX_TASKS_PER_REQUEST"):
        settings.validate()
