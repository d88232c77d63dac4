"""Domain models for the coordinator task store, worker registry and retry queue."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TASK_METADATA_SCHEMA_VERSION = 1

MetadataScalar = str | int | float | bool | None


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_TASK_STATUSES = frozenset({TaskStatus.ASSIGNED, TaskStatus.RUNNING})
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class ScheduleKind(str, Enum):
    ONCE = "once"
    CRON = "cron"


class WorkerStatus(str, Enum):
    """Reported or derived worker state."""

    ONLINE = "online"
    BUSY = "busy"
    IDLE = "idle"
    OFFLINE = "offline"


class HistoryStatus(str, Enum):
    """Outcome of one execution attempt as reported by a worker."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMEOUT = "timeout"
    EMPTY = "empty"

    @property
    def is_success(self) -> bool:
        return self in {HistoryStatus.SUCCESS, HistoryStatus.PARTIAL}


class FailureCategory(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    TRANSIENT_DATA = "transient_data"
    PERMANENT = "permanent"


class FailureReason(str, Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    EMPTY_DATA = "empty_data"
    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    CONFIG_ERROR = "config_error"
    PARSING_ERROR = "parsing_error"
    VERSION_BLACKLISTED = "version_blacklisted"
    UNKNOWN = "unknown"


class RetryReason(str, Enum):
    """Reason stored on retry-queue records."""

    EMPTY_DATA = "empty_data"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"


class TaskResolution(str, Enum):
    """Why a task reached a terminal state."""

    SUCCEEDED = "succeeded"
    PERMANENT_FAILURE = "permanent_failure"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CANCELLED = "cancelled"


class FailureResolution(str, Enum):
    RETRIED = "retried"
    ESCALATED = "escalated"
    IGNORED = "ignored"


class VersionAction(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SWITCH = "switch"


@dataclass(slots=True, frozen=True)
class VersionConstraints:
    """Worker version bounds a task may declare."""

    min_version: str | None = None
    max_version: str | None = None
    preferred_versions: tuple[str, ...] = ()
    blacklist_versions: tuple[str, ...] = ()
    preferred_mandatory: bool = False

    def is_empty(self) -> bool:
        return not (
            self.min_version
            or self.max_version
            or self.preferred_versions
            or self.blacklist_versions
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "min_version": self.min_version,
            "max_version": self.max_version,
            "preferred_versions": list(self.preferred_versions),
            "blacklist_versions": list(self.blacklist_versions),
            "preferred_mandatory": self.preferred_mandatory,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> VersionConstraints:
        return cls(
            min_version=payload.get("min_version") or None,
            max_version=payload.get("max_version") or None,
            preferred_versions=tuple(payload.get("preferred_versions") or ()),
            blacklist_versions=tuple(payload.get("blacklist_versions") or ()),
            preferred_mandatory=bool(payload.get("preferred_mandatory", False)),
        )


@dataclass(slots=True, frozen=True)
class TaskMetadata:
    """Schema-versioned map of scalar task extras."""

    values: dict[str, MetadataScalar] = field(default_factory=dict)
    schema_version: int = TASK_METADATA_SCHEMA_VERSION

    def __post_init__(self) -> None:
        for key, value in self.values.items():
            if not isinstance(key, str):
                raise ValueError(f"Task metadata keys must be strings, got {key!r}")
            if value is not None and not isinstance(value, str | int | float | bool):
                raise ValueError(
                    f"Task metadata value for {key!r} must be a scalar "
                    f"(str, int, float, bool or None), got {type(value).__name__}",
                )

    def to_json(self) -> str:
        return json.dumps(
            {"schema_version": self.schema_version, "values": self.values},
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | None) -> TaskMetadata:
        if not raw:
            return cls()
        parsed = json.loads(raw)
        if not isinstance(parsed, dict):
            raise ValueError("Task metadata document must be a JSON object.")
        return cls(
            values=dict(parsed.get("values") or {}),
            schema_version=int(parsed.get("schema_version", TASK_METADATA_SCHEMA_VERSION)),
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a collection task."""

    symbol_code: str
    region: str
    data_type: str
    config_identifier: str | None = None
    task_id: str | None = None
    schedule_kind: ScheduleKind = ScheduleKind.ONCE
    schedule_expression: str | None = None
    priority: int = 0
    max_retries: int = 3
    timeout_seconds: int = 300
    next_run_at: datetime | None = None
    required_config_version: str | None = None
    version_constraints: VersionConstraints | None = None
    metadata: TaskMetadata | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for service and CLI logic."""

    task_id: str
    symbol_code: str
    region: str
    data_type: str
    config_identifier: str
    schedule_kind: ScheduleKind
    schedule_expression: str | None
    priority: int
    status: TaskStatus
    retry_count: int
    max_retries: int
    timeout_seconds: int
    assigned_worker_id: str | None
    assigned_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    required_config_version: str | None
    version_constraints: VersionConstraints | None
    metadata: TaskMetadata
    resolution: TaskResolution | None
    last_failure_category: FailureCategory | None
    next_run_at: datetime
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionHistoryView:
    """One immutable execution attempt."""

    history_id: int
    task_id: str
    worker_id: str | None
    attempt_no: int
    status: HistoryStatus
    started_at: datetime | None
    completed_at: datetime
    records_fetched: int | None
    records_saved: int | None
    data_quality_score: float | None
    execution_time_ms: int | None
    error_type: str | None
    error_message: str | None


@dataclass(slots=True)
class FailureRecordView:
    """Stored failure classification for one attempt."""

    failure_id: int
    task_id: str
    history_id: int | None
    worker_id: str | None
    category: FailureCategory
    reason: FailureReason
    error_code: str | None
    error_message: str | None
    retry_attempt: int
    should_retry: bool
    next_retry_at: datetime | None
    retry_delay_ms: int | None
    request_url: str | None
    response_status: int | None
    selector_used: str | None
    resolution: FailureResolution | None
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream, attempts and failures."""

    task: TaskView
    events: list[TaskEventView]
    history: list[ExecutionHistoryView]
    failures: list[FailureRecordView]


@dataclass(slots=True)
class WorkerRegistration:
    """Worker self-description sent at startup."""

    worker_id: str
    name: str
    supported_regions: tuple[str, ...]
    supported_data_types: tuple[str, ...]
    max_concurrent_tasks: int = 1
    version: str | None = None


@dataclass(slots=True)
class HeartbeatPayload:
    current_load: int
    memory_usage_mb: float | None = None
    cpu_percent: float | None = None


@dataclass(slots=True)
class HeartbeatAck:
    worker_id: str
    status: WorkerStatus
    current_load: int
    received_at: datetime


@dataclass(slots=True)
class WorkerView:
    """Tracked worker state."""

    worker_id: str
    name: str
    status: WorkerStatus
    supported_regions: frozenset[str]
    supported_data_types: frozenset[str]
    max_concurrent_tasks: int
    current_load: int
    version: str | None
    memory_usage_mb: float | None
    cpu_percent: float | None
    total_tasks_completed: int
    total_tasks_failed: int
    last_heartbeat: datetime
    created_at: datetime
    updated_at: datetime

    @property
    def free_slots(self) -> int:
        return max(0, self.max_concurrent_tasks - self.current_load)


@dataclass(slots=True)
class TaskRequest:
    """Worker poll for new work."""

    regions: tuple[str, ...] = ()
    data_types: tuple[str, ...] = ()
    worker_version: str | None = None
    limit: int = 1


@dataclass(slots=True)
class ExecutionError:
    """Raw failure signal attached to a non-successful execution report."""

    message: str = ""
    error_code: str | None = None
    http_status: int | None = None
    timed_out: bool = False
    error_type: str | None = None
    request_url: str | None = None
    selector_used: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Execution report submitted by a worker."""

    task_id: str
    status: HistoryStatus
    worker_id: str | None = None
    started_at: datetime | None = None
    crawled_from: datetime | None = None
    crawled_to: datetime | None = None
    records_fetched: int | None = None
    records_saved: int | None = None
    quality_score: float | None = None
    execution_time_ms: int | None = None
    memory_usage_mb: float | None = None
    network_requests: int | None = None
    output_location: str | None = None
    error: ExecutionError | None = None


@dataclass(slots=True)
class ReportOutcome:
    """What the coordinator did with an execution report."""

    task_id: str
    status: TaskStatus
    duplicate: bool = False
    retry_scheduled: bool = False
    next_run_at: datetime | None = None
    failure_category: FailureCategory | None = None
    resolution: TaskResolution | None = None
    retries_cleared: int = 0


@dataclass(slots=True)
class SweepResult:
    """Result of one liveness sweep."""

    offline_workers: list[str] = field(default_factory=list)
    recovered_tasks: list[str] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class RetryKey:
    """Identity of one retry-queue entry."""

    config_identifier: str
    symbol_code: str
    report_type: str

    def label(self) -> str:
        return f"{self.config_identifier}|{self.symbol_code}|{self.report_type}"


@dataclass(slots=True)
class RetryRecord:
    """Retry-queue entry: one per (config, symbol, report type)."""

    key: RetryKey
    region: str
    reason: RetryReason
    retry_count: int
    max_retries: int
    timestamp: datetime
    last_retry_at: datetime | None = None

    @property
    def symbol_code(self) -> str:
        return self.key.symbol_code

    @property
    def report_type(self) -> str:
        return self.key.report_type

    @property
    def config_identifier(self) -> str:
        return self.key.config_identifier
