"""Controllers for coordinator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from crawler_fleet.config import Settings
from crawler_fleet.coordinator.metrics import render_retry_statistics_lines, render_stats_lines
from crawler_fleet.coordinator.models import (
    MetadataScalar,
    ScheduleKind,
    TaskCreate,
    TaskMetadata,
    TaskStatus,
    VersionConstraints,
    WorkerStatus,
)
from crawler_fleet.coordinator.services import CoordinatorService


@dataclass(slots=True)
class TaskEnqueueCommand:  # noqa: PLR0902
    """CLI input for task enqueue."""

    db_path: Path | None
    symbol_code: str
    region: str
    data_type: str
    config_identifier: str | None = None
    task_id: str | None = None
    cron: str | None = None
    priority: int | None = None
    max_retries: int | None = None
    timeout_seconds: int | None = None
    required_version: str | None = None
    min_version: str | None = None
    max_version: str | None = None
    preferred_versions: tuple[str, ...] = ()
    blacklist_versions: tuple[str, ...] = ()
    preferred_mandatory: bool = False
    metadata: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    region: str | None
    data_type: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for cancel/requeue operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class WorkerListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class WorkerSweepCommand:
    """CLI input for a manual liveness sweep."""

    db_path: Path | None
    threshold_seconds: int | None


@dataclass(slots=True)
class RetryListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RetryCleanupCommand:
    """CLI input for expiring old retry records."""

    db_path: Path | None
    days: int | None


@dataclass(slots=True)
class RetryReconcileCommand:
    """CLI input for dropping retries whose output already exists."""

    db_path: Path | None
    output_dir: Path | None


@dataclass(slots=True)
class DbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class MaintainCommand:
    """CLI input for background maintenance."""

    db_path: Path | None
    once: bool
    max_passes: int | None = None


class FleetCliController:
    """Coordinates task, worker, retry and maintenance CLI operations."""

    def enqueue_task(self, command: TaskEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        defaults = settings.assignment
        payload = TaskCreate(
            symbol_code=command.symbol_code,
            region=command.region,
            data_type=command.data_type,
            config_identifier=command.config_identifier,
            task_id=command.task_id,
            schedule_kind=ScheduleKind.CRON if command.cron else ScheduleKind.ONCE,
            schedule_expression=command.cron,
            priority=defaults.default_priority if command.priority is None else command.priority,
            max_retries=(
                defaults.default_max_retries
                if command.max_retries is None
                else command.max_retries
            ),
            timeout_seconds=(
                defaults.default_timeout_seconds
                if command.timeout_seconds is None
                else command.timeout_seconds
            ),
            required_config_version=command.required_version,
            version_constraints=VersionConstraints(
                min_version=command.min_version,
                max_version=command.max_version,
                preferred_versions=command.preferred_versions,
                blacklist_versions=command.blacklist_versions,
                preferred_mandatory=command.preferred_mandatory,
            ),
            metadata=TaskMetadata(values=parse_metadata_pairs(command.metadata)),
        )
        with _service(settings) as service:
            task = service.enqueue_task(payload)
        return [
            "Task enqueued: "
            f"task_id={task.task_id} symbol={task.symbol_code} region={task.region} "
            f"data_type={task.data_type} status={task.status.value}",
            f"Config: {task.config_identifier}",
            f"Next run: {task.next_run_at.isoformat()}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status.strip().lower()) if command.status else None
        with _service(settings) as service:
            tasks = service.list_tasks(
                status=status_filter,
                region=command.region,
                data_type=command.data_type,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} {task.region}/{task.symbol_code}/{task.data_type} "
                f"status={task.status.value} priority={task.priority} "
                f"retries={task.retry_count}/{task.max_retries} "
                f"worker={task.assigned_worker_id or '-'} "
                f"next_run={task.next_run_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            details = service.repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Symbol: {task.region}/{task.symbol_code} data_type={task.data_type}",
            f"Config: {task.config_identifier}",
            f"Schedule: {task.schedule_kind.value} {task.schedule_expression or ''}".rstrip(),
            f"Status: {task.status.value}",
            f"Resolution: {task.resolution.value if task.resolution else '-'}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Worker: {task.assigned_worker_id or '-'}",
            "Last failure: "
            f"{task.last_failure_category.value if task.last_failure_category else '-'}",
            f"Attempts: {len(details.history)}",
            f"Failures: {len(details.failures)}",
            f"Events: {len(details.events)}",
        ]
        for attempt in details.history:
            lines.append(
                f"  attempt {attempt.attempt_no} worker={attempt.worker_id or '-'} "
                f"status={attempt.status.value} records={attempt.records_saved or 0} "
                f"error={attempt.error_message or '-'}",
            )
        for failure in details.failures:
            lines.append(
                f"  failure {failure.category.value}/{failure.reason.value} "
                f"retry={'yes' if failure.should_retry else 'no'} "
                f"resolution={failure.resolution.value if failure.resolution else '-'}",
            )
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            service.cancel_task(command.task_id)
        return [f"Task cancelled: {command.task_id}"]

    def requeue_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            service.requeue_task(command.task_id)
        return [f"Task re-queued: {command.task_id}"]

    def list_workers(self, command: WorkerListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = WorkerStatus(command.status.strip().lower()) if command.status else None
        with _service(settings) as service:
            workers = service.registry.list_workers(status=status_filter)

        lines = [f"Workers: {len(workers)}"]
        for worker in workers:
            lines.append(
                f"  {worker.worker_id} name={worker.name} status={worker.status.value} "
                f"load={worker.current_load}/{worker.max_concurrent_tasks} "
                f"regions={','.join(sorted(worker.supported_regions))} "
                f"data_types={','.join(sorted(worker.supported_data_types))} "
                f"version={worker.version or '-'} "
                f"done={worker.total_tasks_completed} failed={worker.total_tasks_failed} "
                f"last_heartbeat={worker.last_heartbeat.isoformat()}",
            )
        return lines

    def sweep_workers(self, command: WorkerSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        threshold = (
            timedelta(seconds=command.threshold_seconds)
            if command.threshold_seconds is not None
            else None
        )
        with _service(settings) as service:
            result = service.registry.sweep(threshold)
        return [
            "Sweep: "
            f"offline_workers={len(result.offline_workers)} "
            f"recovered_tasks={len(result.recovered_tasks)}",
            *(f"  offline {worker_id}" for worker_id in result.offline_workers),
            *(f"  recovered {task_id}" for task_id in result.recovered_tasks),
        ]

    def list_retries(self, command: RetryListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            records = service.retry_queue.pending()

        lines = [f"Pending retries: {len(records)}"]
        for record in records[: command.limit]:
            last_retry = record.last_retry_at.isoformat() if record.last_retry_at else "-"
            lines.append(
                f"  {record.config_identifier} {record.region}/{record.symbol_code}/"
                f"{record.report_type} reason={record.reason.value} "
                f"retries={record.retry_count}/{record.max_retries} "
                f"first_failed={record.timestamp.isoformat()} last_retry={last_retry}",
            )
        return lines

    def retry_stats(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            stats = service.retry_queue.statistics()
        return render_retry_statistics_lines(stats=stats)

    def cleanup_retries(self, command: RetryCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            removed = service.retry_queue.cleanup_expired(command.days)
        days = settings.retry.cleanup_days if command.days is None else command.days
        return [f"Expired retries removed: {removed} (older than {days} day(s))"]

    def reconcile_retries(self, command: RetryReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        output_dir = command.output_dir or settings.maintenance.output_dir
        if output_dir is None:
            raise ValueError(
                "Output directory is required: pass --output-dir or set CRAWLER_FLEET_OUTPUT_DIR.",
            )
        with _service(settings) as service:
            removed = service.reconcile_retries(output_dir)
        return [f"Reconciled retries removed: {removed} (output dir {output_dir})"]

    def clear_retries(self, command: DbCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            removed = service.retry_queue.clear()
        return [f"Retry records cleared: {removed}"]

    def stats(self, command: DbCommand) -> list[str]:
        """Show operator-facing fleet health."""

        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            snapshot = service.statistics()
        return render_stats_lines(snapshot=snapshot)

    def maintain(self, command: MaintainCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            runner = service.maintenance_runner()
            summary = runner.run_once() if command.once else runner.run_loop(
                max_passes=command.max_passes,
            )
        return [
            "Maintenance summary: "
            f"passes={summary.passes} offline_workers={summary.offline_workers} "
            f"recovered_tasks={summary.recovered_tasks} "
            f"expired_retries={summary.expired_retries} "
            f"reconciled_retries={summary.reconciled_retries} "
            f"rearmed_tasks={summary.rearmed_tasks}",
        ]


def parse_metadata_pairs(pairs: tuple[str, ...]) -> dict[str, MetadataScalar]:
    """Parse ``key=value`` CLI pairs into scalar metadata values."""

    values: dict[str, MetadataScalar] = {}
    for pair in pairs:
        key, separator, raw = pair.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Metadata must be given as key=value, got {pair!r}")
        values[key.strip()] = _parse_scalar(raw.strip())
    return values


def _parse_scalar(raw: str) -> MetadataScalar:
    lowered = raw.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    for convert in (int, float):
        try:
            return convert(raw)
        except ValueError:
            continue
    return raw


@contextmanager
def _service(settings: Settings) -> Iterator[CoordinatorService]:
    service = CoordinatorService.from_settings(settings)
    try:
        yield service
    finally:
        service.close()
