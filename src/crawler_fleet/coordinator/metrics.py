"""Read-only fleet aggregates and their operator-facing rendering."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

from crawler_fleet.coordinator.models import TaskResolution, TaskStatus, WorkerStatus
from crawler_fleet.coordinator.registry import WorkerRegistry
from crawler_fleet.coordinator.repository import FleetRepository
from crawler_fleet.coordinator.retry_queue import RetryQueueManager, RetryStatistics


@dataclass(slots=True)
class FleetStatistics:
    """Task, worker and retry-backlog aggregates for the stats surface."""

    task_status_counts: dict[str, int]
    task_region_counts: dict[str, int]
    task_data_type_counts: dict[str, int]
    failed_permanent: int
    failed_exhausted: int
    failure_reason_counts: dict[str, int]
    worker_status_counts: dict[str, int]
    worker_capacity: int
    worker_load: int
    retry: RetryStatistics = field(default_factory=RetryStatistics)

    @property
    def total_tasks(self) -> int:
        return sum(self.task_status_counts.values())


def build_fleet_statistics(
    *,
    repository: FleetRepository,
    registry: WorkerRegistry,
    retry_queue: RetryQueueManager,
) -> FleetStatistics:
    """Collect a statistics snapshot; nothing is mutated."""

    resolutions = repository.count_tasks_by("resolution")
    workers = registry.list_workers()
    worker_status_counts = Counter(worker.status.value for worker in workers)
    live_workers = [worker for worker in workers if worker.status != WorkerStatus.OFFLINE]
    return FleetStatistics(
        task_status_counts=repository.count_tasks_by("status"),
        task_region_counts=repository.count_tasks_by("region"),
        task_data_type_counts=repository.count_tasks_by("data_type"),
        failed_permanent=resolutions.get(TaskResolution.PERMANENT_FAILURE.value, 0),
        failed_exhausted=resolutions.get(TaskResolution.RETRIES_EXHAUSTED.value, 0),
        failure_reason_counts=repository.count_failures_by_reason(),
        worker_status_counts=dict(sorted(worker_status_counts.items())),
        worker_capacity=sum(worker.max_concurrent_tasks for worker in live_workers),
        worker_load=sum(worker.current_load for worker in live_workers),
        retry=retry_queue.statistics(),
    )


def render_stats_lines(*, snapshot: FleetStatistics) -> list[str]:
    """Render operator-facing statistics lines for CLI output."""

    pending = snapshot.task_status_counts.get(TaskStatus.PENDING.value, 0)
    lines = [
        "Crawler fleet status",
        f"Tasks: total={snapshot.total_tasks} pending={pending}",
        "Task status: " + (_fmt_key_value(snapshot.task_status_counts) or "none"),
        "Task regions: " + (_fmt_key_value(snapshot.task_region_counts) or "none"),
        "Task data types: " + (_fmt_key_value(snapshot.task_data_type_counts) or "none"),
        (
            "Failed tasks: "
            f"needs_attention(permanent)={snapshot.failed_permanent} "
            f"retries_exhausted={snapshot.failed_exhausted}"
        ),
        "Failure reasons: " + (_fmt_key_value(snapshot.failure_reason_counts) or "none"),
        "Workers: " + (_fmt_key_value(snapshot.worker_status_counts) or "none"),
        f"Worker load: {snapshot.worker_load}/{snapshot.worker_capacity} slots in use",
    ]
    lines.extend(render_retry_statistics_lines(stats=snapshot.retry))
    return lines


def render_retry_statistics_lines(*, stats: RetryStatistics) -> list[str]:
    oldest = stats.oldest_timestamp.isoformat() if stats.oldest_timestamp else "n/a"
    return [
        f"Retry queue: pending={stats.total_pending} oldest={oldest}",
        "Retry regions: " + (_fmt_key_value(stats.by_region) or "none"),
        "Retry report types: " + (_fmt_key_value(stats.by_report_type) or "none"),
        "Retry reasons: " + (_fmt_key_value(stats.by_reason) or "none"),
    ]


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
