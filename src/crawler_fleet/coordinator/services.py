"""Request/response facade used by workers and operators."""

from __future__ import annotations

from pathlib import Path

from crawler_fleet.config import Settings
from crawler_fleet.coordinator.assignment import AssignmentEngine
from crawler_fleet.coordinator.maintenance import MaintenanceRunner
from crawler_fleet.coordinator.metrics import FleetStatistics, build_fleet_statistics
from crawler_fleet.coordinator.models import (
    ExecutionResult,
    HeartbeatAck,
    HeartbeatPayload,
    ReportOutcome,
    TaskCreate,
    TaskDetails,
    TaskRequest,
    TaskStatus,
    TaskView,
    WorkerRegistration,
)
from crawler_fleet.coordinator.registry import WorkerRegistry
from crawler_fleet.coordinator.reporting import ExecutionReportHandler
from crawler_fleet.coordinator.repository import FleetRepository, TaskNotFoundError
from crawler_fleet.coordinator.retry_queue import (
    FileOutputProbe,
    OutputProbe,
    RetryQueueManager,
    build_retry_store,
)
from crawler_fleet.coordinator.versioning import VersionCheckResult, check_version


class CoordinatorService:
    """Wires registry, assignment, reporting and retry backlog over one store."""

    def __init__(
        self,
        *,
        repository: FleetRepository,
        retry_queue: RetryQueueManager,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.retry_queue = retry_queue
        self.settings = settings
        self.registry = WorkerRegistry(
            repository,
            liveness_threshold_seconds=settings.registry.liveness_threshold_seconds,
        )
        self.assignment = AssignmentEngine(
            repository,
            self.registry,
            max_tasks_per_request=settings.assignment.max_tasks_per_request,
        )
        self.reporting = ExecutionReportHandler(
            repository,
            retry_queue,
            unknown_retry_ceiling=settings.retry.unknown_failure_max_retries,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> CoordinatorService:
        """Open the store described by ``settings`` and migrate it to head."""

        settings.validate()
        repository = FleetRepository(
            settings.db_path,
            busy_timeout_ms=settings.storage.busy_timeout_ms,
        )
        repository.init_schema()
        store = build_retry_store(
            backend=settings.retry.backend,
            engine=repository.engine,
            file_path=settings.retry.file_path,
        )
        retry_queue = RetryQueueManager(
            store,
            max_retries=settings.retry.max_retries,
            base_delay_ms=settings.retry.base_delay_ms,
            cleanup_days=settings.retry.cleanup_days,
        )
        return cls(repository=repository, retry_queue=retry_queue, settings=settings)

    def close(self) -> None:
        self.repository.close()

    def maintenance_runner(self, *, output_probe: OutputProbe | None = None) -> MaintenanceRunner:
        maintenance = self.settings.maintenance
        return MaintenanceRunner(
            repository=self.repository,
            registry=self.registry,
            retry_queue=self.retry_queue,
            interval_seconds=maintenance.interval_seconds,
            output_dir=maintenance.output_dir,
            output_probe=output_probe,
            rearm_cron_tasks=maintenance.rearm_cron_tasks,
        )

    def reconcile_retries(
        self,
        output_dir: Path,
        *,
        output_probe: OutputProbe | None = None,
    ) -> int:
        """Drop retries whose output already landed in ``output_dir``."""

        return self.retry_queue.cleanup_successful(output_probe or FileOutputProbe(), output_dir)

    def register_worker(self, registration: WorkerRegistration) -> str:
        return self.registry.register(registration)

    def heartbeat(self, worker_id: str, payload: HeartbeatPayload) -> HeartbeatAck:
        return self.registry.heartbeat(worker_id, payload)

    def request_tasks(self, worker_id: str, request: TaskRequest) -> list[TaskView]:
        return self.assignment.request_tasks(worker_id, request)

    def start_task(self, task_id: str, worker_id: str) -> TaskView:
        return self.reporting.mark_started(task_id, worker_id)

    def report_execution(self, result: ExecutionResult) -> ReportOutcome:
        return self.reporting.report(result.task_id, result)

    def check_version(self, task_id: str, worker_version: str | None) -> VersionCheckResult:
        """Check a worker version against one task's requirements."""

        task = self.repository.get_task(task_id)
        return check_version(
            worker_version,
            task.required_config_version,
            task.version_constraints,
        )

    def statistics(self) -> FleetStatistics:
        return build_fleet_statistics(
            repository=self.repository,
            registry=self.registry,
            retry_queue=self.retry_queue,
        )

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        return self.repository.enqueue_task(payload)

    def cancel_task(self, task_id: str) -> TaskView:
        return self.repository.cancel_task(task_id=task_id)

    def requeue_task(self, task_id: str) -> TaskView:
        return self.repository.requeue_task(task_id=task_id)

    def get_task_details(self, task_id: str) -> TaskDetails:
        details = self.repository.get_task_details(task_id=task_id)
        if details is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return details

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        region: str | None = None,
        data_type: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        return self.repository.list_tasks(
            status=status,
            region=region,
            data_type=data_type,
            limit=limit,
        )
