"""Runtime configuration for the crawler fleet coordinator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

RETRY_BACKENDS = ("sqlite", "json")


@dataclass(slots=True)
class StorageSettings:
    """SQLite access policy."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class RegistrySettings:
    """Worker liveness settings."""

    liveness_threshold_seconds: int = 90


@dataclass(slots=True)
class AssignmentSettings:
    """Defaults applied to new tasks and worker polls."""

    default_max_retries: int = 3
    default_timeout_seconds: int = 300
    default_priority: int = 0
    max_tasks_per_request: int = 10


@dataclass(slots=True)
class RetrySettings:
    """Retry backlog settings."""

    backend: str = "sqlite"
    file_path: Path = Path("output/pipeline-retries.json")
    max_retries: int = 3
    base_delay_ms: int = 5_000
    cleanup_days: int = 7
    unknown_failure_max_retries: int = 1


@dataclass(slots=True)
class MaintenanceSettings:
    """Background pass settings."""

    interval_seconds: int = 30
    output_dir: Path | None = None
    rearm_cron_tasks: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".crawler_fleet.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        output_dir = os.getenv("CRAWLER_FLEET_OUTPUT_DIR", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CRAWLER_FLEET_DB_PATH", ".crawler_fleet.db")),
            storage=StorageSettings(
                busy_timeout_ms=_env_int("CRAWLER_FLEET_BUSY_TIMEOUT_MS", 5_000),
            ),
            registry=RegistrySettings(
                liveness_threshold_seconds=_env_int(
                    "CRAWLER_FLEET_LIVENESS_THRESHOLD_SECONDS",
                    90,
                ),
            ),
            assignment=AssignmentSettings(
                default_max_retries=_env_int("CRAWLER_FLEET_DEFAULT_MAX_RETRIES", 3),
                default_timeout_seconds=_env_int("CRAWLER_FLEET_DEFAULT_TIMEOUT_SECONDS", 300),
                default_priority=_env_int("CRAWLER_FLEET_DEFAULT_PRIORITY", 0),
                max_tasks_per_request=_env_int("CRAWLER_FLEET_MAX_TASKS_PER_REQUEST", 10),
            ),
            retry=RetrySettings(
                backend=os.getenv("CRAWLER_FLEET_RETRY_BACKEND", "sqlite").strip().lower(),
                file_path=Path(
                    os.getenv("CRAWLER_FLEET_RETRY_FILE_PATH", "output/pipeline-retries.json"),
                ),
                max_retries=_env_int("CRAWLER_FLEET_RETRY_MAX_RETRIES", 3),
                base_delay_ms=_env_int("CRAWLER_FLEET_RETRY_BASE_DELAY_MS", 5_000),
                cleanup_days=_env_int("CRAWLER_FLEET_RETRY_CLEANUP_DAYS", 7),
                unknown_failure_max_retries=_env_int(
                    "CRAWLER_FLEET_UNKNOWN_FAILURE_MAX_RETRIES",
                    1,
                ),
            ),
            maintenance=MaintenanceSettings(
                interval_seconds=_env_int("CRAWLER_FLEET_MAINTENANCE_INTERVAL_SECONDS", 30),
                output_dir=Path(output_dir) if output_dir else None,
                rearm_cron_tasks=_env_bool("CRAWLER_FLEET_REARM_CRON_TASKS", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("CRAWLER_FLEET_BUSY_TIMEOUT_MS must be > 0.")
        if self.registry.liveness_threshold_seconds <= 0:
            raise ValueError("CRAWLER_FLEET_LIVENESS_THRESHOLD_SECONDS must be > 0.")
        if self.assignment.default_max_retries < 0:
            raise ValueError("CRAWLER_FLEET_DEFAULT_MAX_RETRIES must be >= 0.")
        if self.assignment.default_timeout_seconds <= 0:
            raise ValueError("CRAWLER_FLEET_DEFAULT_TIMEOUT_SECONDS must be > 0.")
        if self.assignment.max_tasks_per_request <= 0:
            raise ValueError("CRAWLER_FLEET_MAX_TASKS_PER_REQUEST must be > 0.")
        if self.retry.backend not in RETRY_BACKENDS:
            raise ValueError(
                f"CRAWLER_FLEET_RETRY_BACKEND must be one of {', '.join(RETRY_BACKENDS)}, "
                f"got {self.retry.backend!r}.",
            )
        if self.retry.max_retries <= 0:
            raise ValueError("CRAWLER_FLEET_RETRY_MAX_RETRIES must be > 0.")
        if self.retry.base_delay_ms <= 0:
            raise ValueError("CRAWLER_FLEET_RETRY_BASE_DELAY_MS must be > 0.")
        if self.retry.cleanup_days < 0:
            raise ValueError("CRAWLER_FLEET_RETRY_CLEANUP_DAYS must be >= 0.")
        if self.retry.unknown_failure_max_retries < 0:
            raise ValueError("CRAWLER_FLEET_UNKNOWN_FAILURE_MAX_RETRIES must be >= 0.")
        if self.maintenance.interval_seconds <= 0:
            raise ValueError("CRAWLER_FLEET_MAINTENANCE_INTERVAL_SECONDS must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
