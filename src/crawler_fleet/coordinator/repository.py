"""Persistent task store and worker registry backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from crawler_fleet.coordinator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    FailureClassification,
)
from crawler_fleet.coordinator.models import (
    ACTIVE_TASK_STATUSES,
    ExecutionHistoryView,
    ExecutionResult,
    FailureCategory,
    FailureReason,
    FailureRecordView,
    FailureResolution,
    HeartbeatPayload,
    HistoryStatus,
    ScheduleKind,
    SweepResult,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskMetadata,
    TaskResolution,
    TaskStatus,
    TaskView,
    VersionConstraints,
    WorkerRegistration,
    WorkerStatus,
    WorkerView,
)
from crawler_fleet.coordinator.schedule import next_fire_time, validate_cron_expression
from crawler_fleet.storage.alembic_runner import upgrade_head
from crawler_fleet.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from crawler_fleet.storage.sqlmodel_models import (
    CrawlerExecutionHistory,
    CrawlerFailure,
    CrawlerTask,
    CrawlerTaskEvent,
    CrawlerWorker,
)

logger = logging.getLogger(__name__)

_ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_TASK_STATUSES)


class TaskNotFoundError(RuntimeError):
    """Raised when a task id is unknown to the store."""


class WorkerNotFoundError(RuntimeError):
    """Raised when a worker id was never registered."""


class TaskStateError(RuntimeError):
    """Raised when a transition is not allowed from the task's current state."""


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    LOST_RACE = "lost_race"
    WORKER_FULL = "worker_full"


@dataclass(slots=True)
class ClaimResult:
    outcome: ClaimOutcome
    task: TaskView | None = None


class FleetRepository:
    """Task, worker, history and failure persistence facade."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # Tasks

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        _validate_task_create(payload)
        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        next_run_at = payload.next_run_at
        if next_run_at is None:
            next_run_at = (
                next_fire_time(payload.schedule_expression or "", now)
                if payload.schedule_kind == ScheduleKind.CRON
                else now
            )
        constraints = payload.version_constraints
        metadata = payload.metadata or TaskMetadata()
        with Session(self.engine) as session:
            existing = session.exec(
                select(CrawlerTask.task_id).where(CrawlerTask.task_id == task_id),
            ).one_or_none()
            if existing is not None:
                raise ValueError(f"Task already exists: {task_id}")
            row = CrawlerTask(
                task_id=task_id,
                symbol_code=payload.symbol_code,
                region=payload.region,
                data_type=payload.data_type,
                config_identifier=payload.config_identifier
                or default_config_identifier(
                    region=payload.region,
                    symbol_code=payload.symbol_code,
                    data_type=payload.data_type,
                ),
                schedule_kind=payload.schedule_kind.value,
                schedule_expression=payload.schedule_expression,
                priority=payload.priority,
                status=TaskStatus.PENDING.value,
                retry_count=0,
                max_retries=payload.max_retries,
                timeout_seconds=payload.timeout_seconds,
                required_config_version=payload.required_config_version,
                version_constraints_json=(
                    json.dumps(constraints.to_dict(), sort_keys=True)
                    if constraints is not None and not constraints.is_empty()
                    else None
                ),
                metadata_json=metadata.to_json() if metadata.values else None,
                next_run_at=to_db_datetime(next_run_at),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "symbol_code": payload.symbol_code,
                    "region": payload.region,
                    "data_type": payload.data_type,
                    "priority": payload.priority,
                    "max_retries": payload.max_retries,
                    "schedule_kind": payload.schedule_kind.value,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        region: str | None = None,
        data_type: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(CrawlerTask)
            if status is not None:
                statement = statement.where(CrawlerTask.status == status.value)
            if region is not None:
                statement = statement.where(CrawlerTask.region == region)
            if data_type is not None:
                statement = statement.where(CrawlerTask.data_type == data_type)
            statement = statement.order_by(
                col(CrawlerTask.created_at).desc(),
                col(CrawlerTask.task_id).asc(),
            ).limit(limit)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def list_claim_candidates(  # noqa: PLR0913
        self,
        *,
        regions: frozenset[str],
        data_types: frozenset[str],
        now: datetime,
        limit: int,
        exclude_task_ids: frozenset[str] = frozenset(),
    ) -> list[TaskView]:
        """Pending tasks eligible for pickup, in assignment order."""

        if not regions or not data_types or limit <= 0:
            return []
        with Session(self.engine) as session:
            statement = select(CrawlerTask).where(
                CrawlerTask.status == TaskStatus.PENDING.value,
                col(CrawlerTask.next_run_at) <= to_db_datetime(now),
                col(CrawlerTask.retry_count) <= col(CrawlerTask.max_retries),
                col(CrawlerTask.region).in_(sorted(regions)),
                col(CrawlerTask.data_type).in_(sorted(data_types)),
            )
            if exclude_task_ids:
                statement = statement.where(
                    col(CrawlerTask.task_id).not_in(sorted(exclude_task_ids)),
                )
            rows = session.exec(
                statement.order_by(
                    col(CrawlerTask.priority).desc(),
                    col(CrawlerTask.created_at).asc(),
                    col(CrawlerTask.task_id).asc(),
                ).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def claim_task(self, *, task_id: str, worker_id: str) -> ClaimResult:
        """Atomically move one pending task to assigned and reserve a worker slot."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task_id,
                    col(CrawlerTask.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.ASSIGNED.value,
                    assigned_worker_id=worker_id,
                    assigned_at=now,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return ClaimResult(outcome=ClaimOutcome.LOST_RACE)

            new_load = col(CrawlerWorker.current_load) + 1
            reserved = session.exec(
                sa_update(CrawlerWorker)
                .where(
                    col(CrawlerWorker.worker_id) == worker_id,
                    col(CrawlerWorker.current_load) < col(CrawlerWorker.max_concurrent_tasks),
                )
                .values(
                    current_load=new_load,
                    status=case(
                        (new_load >= col(CrawlerWorker.max_concurrent_tasks), "busy"),
                        else_="online",
                    ),
                    last_heartbeat=now,
                    updated_at=now,
                ),
            )
            if reserved.rowcount != 1:
                session.rollback()
                return ClaimResult(outcome=ClaimOutcome.WORKER_FULL)

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.ASSIGNED,
                details={"worker_id": worker_id},
            )
            session.commit()
            claimed = self._get_task_row(session=session, task_id=task_id)
            return ClaimResult(outcome=ClaimOutcome.CLAIMED, task=_to_task_view(claimed))

    def mark_started(self, *, task_id: str, worker_id: str) -> TaskView:
        """Move an assigned task to running; only its assigned worker may do so."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.status == TaskStatus.RUNNING.value and row.assigned_worker_id == worker_id:
                return _to_task_view(row)
            result = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task_id,
                    col(CrawlerTask.status) == TaskStatus.ASSIGNED.value,
                    col(CrawlerTask.assigned_worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    f"Task {task_id} cannot be started by worker {worker_id} "
                    f"from status={row.status} (assigned to {row.assigned_worker_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="started",
                status_from=TaskStatus.ASSIGNED,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id},
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def complete_task(self, *, task: TaskView, result: ExecutionResult) -> TaskView | None:
        """Close an active task as succeeded and append its history record.

        Returns ``None`` when the task left the active state concurrently.
        """

        now = utc_now()
        worker_id = task.assigned_worker_id
        with Session(self.engine) as session:
            updated = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task.task_id,
                    col(CrawlerTask.status).in_(_ACTIVE_STATUS_VALUES),
                    col(CrawlerTask.assigned_worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    resolution=TaskResolution.SUCCEEDED.value,
                    assigned_worker_id=None,
                    completed_at=to_db_datetime(now),
                    last_failure_category=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if updated.rowcount != 1:
                session.rollback()
                return None

            history = self._append_history(
                session=session,
                task_id=task.task_id,
                worker_id=worker_id,
                result=result,
                completed_at=now,
            )
            self._release_worker_slot(
                session=session,
                worker_id=worker_id,
                succeeded=True,
            )
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="succeeded",
                status_from=task.status,
                status_to=TaskStatus.COMPLETED,
                details={
                    "worker_id": worker_id,
                    "history_status": result.status.value,
                    "attempt_no": history.attempt_no,
                    "records_saved": result.records_saved,
                },
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task.task_id))

    def fail_attempt(  # noqa: PLR0913
        self,
        *,
        task: TaskView,
        result: ExecutionResult,
        classification: FailureClassification,
        retry_at: datetime | None,
        retry_delay_ms: int | None,
        resolution: TaskResolution | None,
    ) -> TaskView | None:
        """Record a failed attempt, then either requeue the task or fail it terminally.

        A non-null ``retry_at`` requeues; otherwise ``resolution`` must name the
        terminal reason. Returns ``None`` when the task left the active state
        concurrently.
        """

        if retry_at is None and resolution is None:
            raise ValueError("Terminal failure requires a task resolution.")
        now = utc_now()
        worker_id = task.assigned_worker_id
        with Session(self.engine) as session:
            if retry_at is not None:
                values: dict[str, object] = {
                    "status": TaskStatus.PENDING.value,
                    "retry_count": task.retry_count + 1,
                    "next_run_at": to_db_datetime(retry_at),
                    "assigned_worker_id": None,
                    "assigned_at": None,
                    "started_at": None,
                    "last_failure_category": classification.category.value,
                    "updated_at": to_db_datetime(now),
                }
                status_to = TaskStatus.PENDING
            else:
                values = {
                    "status": TaskStatus.FAILED.value,
                    "resolution": resolution.value if resolution is not None else None,
                    "assigned_worker_id": None,
                    "completed_at": to_db_datetime(now),
                    "last_failure_category": classification.category.value,
                    "updated_at": to_db_datetime(now),
                }
                status_to = TaskStatus.FAILED

            updated = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task.task_id,
                    col(CrawlerTask.status).in_(_ACTIVE_STATUS_VALUES),
                    col(CrawlerTask.assigned_worker_id) == worker_id,
                )
                .values(**values),
            )
            if updated.rowcount != 1:
                session.rollback()
                return None

            history = self._append_history(
                session=session,
                task_id=task.task_id,
                worker_id=worker_id,
                result=result,
                completed_at=now,
            )
            error = result.error
            session.add(
                CrawlerFailure(
                    task_id=task.task_id,
                    history_id=history.history_id,
                    worker_id=worker_id,
                    category=classification.category.value,
                    reason=classification.reason.value,
                    classifier_version=FAILURE_CLASSIFIER_VERSION,
                    matched_rule=classification.matched_rule,
                    error_code=error.error_code if error is not None else None,
                    error_message=error.message if error is not None else None,
                    retry_attempt=task.retry_count + (1 if retry_at is not None else 0),
                    should_retry=classification.should_retry,
                    next_retry_at=to_db_datetime(retry_at) if retry_at is not None else None,
                    retry_delay_ms=retry_delay_ms,
                    request_url=error.request_url if error is not None else None,
                    response_status=error.http_status if error is not None else None,
                    selector_used=error.selector_used if error is not None else None,
                    resolution=(
                        FailureResolution.RETRIED.value
                        if retry_at is not None
                        else FailureResolution.ESCALATED.value
                    ),
                    resolved_at=None if retry_at is not None else to_db_datetime(now),
                    created_at=to_db_datetime(now),
                ),
            )
            self._release_worker_slot(session=session, worker_id=worker_id, succeeded=False)
            details: dict[str, object] = {
                "worker_id": worker_id,
                "history_status": result.status.value,
                "attempt_no": history.attempt_no,
                **classification.to_event_details(),
            }
            if retry_at is not None:
                details["next_run_at"] = to_utc_aware_datetime(retry_at).isoformat()
                details["retry_delay_ms"] = retry_delay_ms
                details["retry_count"] = task.retry_count + 1
            else:
                details["resolution"] = resolution.value if resolution is not None else None
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="retry_scheduled" if retry_at is not None else "failed",
                status_from=task.status,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task.task_id))

    def latest_history(self, task_id: str) -> ExecutionHistoryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(CrawlerExecutionHistory)
                .where(CrawlerExecutionHistory.task_id == task_id)
                .order_by(col(CrawlerExecutionHistory.history_id).desc())
                .limit(1),
            ).one_or_none()
            return _to_history_view(row) if row is not None else None

    def latest_history_status(self, task_id: str) -> HistoryStatus | None:
        latest = self.latest_history(task_id)
        return latest.status if latest is not None else None

    def cancel_task(self, *, task_id: str) -> TaskView:
        """Cancel a pending or assigned task."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.PENDING, TaskStatus.ASSIGNED}:
                raise TaskStateError(f"Task cannot be cancelled from status={row.status}")
            worker_id = row.assigned_worker_id

            result = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task_id,
                    col(CrawlerTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    resolution=TaskResolution.CANCELLED.value,
                    assigned_worker_id=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            if worker_id is not None:
                self._release_worker_slot(session=session, worker_id=worker_id, succeeded=None)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={"worker_id": worker_id} if worker_id else {},
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def requeue_task(self, *, task_id: str) -> TaskView:
        """Manual operator requeue for failed/cancelled tasks."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.FAILED, TaskStatus.CANCELLED}:
                raise TaskStateError(
                    f"Only failed/cancelled tasks can be requeued, got {row.status}.",
                )
            result = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == task_id,
                    col(CrawlerTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    retry_count=0,
                    resolution=None,
                    last_failure_category=None,
                    assigned_worker_id=None,
                    assigned_at=None,
                    started_at=None,
                    completed_at=None,
                    next_run_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    "Task state changed concurrently while requeueing; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="requeued",
                status_from=previous,
                status_to=TaskStatus.PENDING,
                details={"previous_retry_count": row.retry_count},
            )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def rearm_cron_tasks(self, *, now: datetime) -> list[str]:
        """Return completed cron tasks whose next fire time has passed to pending."""

        rearmed: list[str] = []
        with Session(self.engine) as session:
            rows = session.exec(
                select(CrawlerTask).where(
                    CrawlerTask.status == TaskStatus.COMPLETED.value,
                    CrawlerTask.schedule_kind == ScheduleKind.CRON.value,
                ),
            ).all()
            for row in rows:
                if not row.schedule_expression:
                    continue
                anchor = to_utc_aware_datetime(row.completed_at or row.updated_at)
                fire_at = next_fire_time(row.schedule_expression, anchor)
                if fire_at > now:
                    continue
                result = session.exec(
                    sa_update(CrawlerTask)
                    .where(
                        col(CrawlerTask.task_id) == row.task_id,
                        col(CrawlerTask.status) == TaskStatus.COMPLETED.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        retry_count=0,
                        resolution=None,
                        assigned_at=None,
                        started_at=None,
                        completed_at=None,
                        next_run_at=to_db_datetime(fire_at),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="rearmed",
                    status_from=TaskStatus.COMPLETED,
                    status_to=TaskStatus.PENDING,
                    details={"fire_at": fire_at.isoformat()},
                )
                rearmed.append(row.task_id)
            session.commit()
        return rearmed

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream, attempts and failures."""

        with Session(self.engine) as session:
            task = session.exec(
                select(CrawlerTask).where(CrawlerTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(CrawlerTaskEvent)
                .where(CrawlerTaskEvent.task_id == task_id)
                .order_by(col(CrawlerTaskEvent.id).asc()),
            ).all()
            history_rows = session.exec(
                select(CrawlerExecutionHistory)
                .where(CrawlerExecutionHistory.task_id == task_id)
                .order_by(col(CrawlerExecutionHistory.history_id).asc()),
            ).all()
            failure_rows = session.exec(
                select(CrawlerFailure)
                .where(CrawlerFailure.task_id == task_id)
                .order_by(col(CrawlerFailure.failure_id).asc()),
            ).all()

        return TaskDetails(
            task=_to_task_view(task),
            events=[_to_event_view(row) for row in event_rows],
            history=[_to_history_view(row) for row in history_rows],
            failures=[_to_failure_view(row) for row in failure_rows],
        )

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def count_tasks_by(self, column: str) -> dict[str, int]:
        """Task counts grouped by one of status, region, data_type or resolution."""

        if column not in {"status", "region", "data_type", "resolution"}:
            raise ValueError(f"Unsupported task grouping column: {column}")
        attribute = getattr(CrawlerTask, column)
        with Session(self.engine) as session:
            rows = session.exec(
                select(attribute, func.count())
                .where(col(attribute).is_not(None))
                .group_by(attribute),
            ).all()
        return {str(key): int(count) for key, count in rows}

    def count_failures_by_reason(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CrawlerFailure.reason, func.count()).group_by(CrawlerFailure.reason),
            ).all()
        return {str(key): int(count) for key, count in rows}

    # Workers

    def upsert_worker(self, registration: WorkerRegistration) -> tuple[WorkerView, list[str]]:
        """Insert or refresh a worker, recovering tasks a re-registering worker still holds."""

        now = utc_now()
        recovered: list[str] = []
        with Session(self.engine) as session:
            row = session.exec(
                select(CrawlerWorker).where(CrawlerWorker.worker_id == registration.worker_id),
            ).one_or_none()
            if row is None:
                row = CrawlerWorker(
                    worker_id=registration.worker_id,
                    name=registration.name,
                    status=WorkerStatus.ONLINE.value,
                    supported_regions_json=_dump_string_set(registration.supported_regions),
                    supported_data_types_json=_dump_string_set(
                        registration.supported_data_types,
                    ),
                    max_concurrent_tasks=registration.max_concurrent_tasks,
                    current_load=0,
                    version=registration.version,
                    last_heartbeat=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            else:
                recovered = self._recover_worker_tasks(
                    session=session,
                    worker_id=registration.worker_id,
                    reason="worker_reregistered",
                )
                row.name = registration.name
                row.status = WorkerStatus.ONLINE.value
                row.supported_regions_json = _dump_string_set(registration.supported_regions)
                row.supported_data_types_json = _dump_string_set(
                    registration.supported_data_types,
                )
                row.max_concurrent_tasks = registration.max_concurrent_tasks
                row.current_load = 0
                row.version = registration.version
                row.last_heartbeat = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row), recovered

    def get_worker(self, worker_id: str) -> WorkerView:
        with Session(self.engine) as session:
            return _to_worker_view(self._get_worker_row(session=session, worker_id=worker_id))

    def list_workers(self, *, status: WorkerStatus | None = None) -> list[WorkerView]:
        with Session(self.engine) as session:
            statement = select(CrawlerWorker).order_by(col(CrawlerWorker.worker_id).asc())
            if status is not None:
                statement = statement.where(CrawlerWorker.status == status.value)
            rows = session.exec(statement).all()
        return [_to_worker_view(row) for row in rows]

    def record_heartbeat(self, *, worker_id: str, payload: HeartbeatPayload) -> WorkerView:
        """Refresh liveness, load and resource metrics for a worker."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_worker_row(session=session, worker_id=worker_id)
            load = min(max(payload.current_load, 0), row.max_concurrent_tasks)
            row.current_load = load
            row.status = derive_worker_status(
                current_load=load,
                max_concurrent_tasks=row.max_concurrent_tasks,
            ).value
            row.memory_usage_mb = payload.memory_usage_mb
            row.cpu_percent = payload.cpu_percent
            row.last_heartbeat = now
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def touch_worker(self, *, worker_id: str) -> WorkerView:
        """Refresh liveness on a poll without changing reported load."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_worker_row(session=session, worker_id=worker_id)
            row.last_heartbeat = now
            row.updated_at = now
            if row.status == WorkerStatus.OFFLINE.value:
                row.status = derive_worker_status(
                    current_load=row.current_load,
                    max_concurrent_tasks=row.max_concurrent_tasks,
                ).value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker_view(row)

    def mark_stale_workers_offline(self, *, cutoff: datetime) -> SweepResult:
        """Take workers silent since ``cutoff`` offline and recover their tasks."""

        sweep = SweepResult()
        db_cutoff = to_db_datetime(cutoff)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(CrawlerWorker.worker_id)
                .where(
                    CrawlerWorker.status != WorkerStatus.OFFLINE.value,
                    col(CrawlerWorker.last_heartbeat) < db_cutoff,
                )
                .order_by(col(CrawlerWorker.worker_id).asc()),
            ).all()

        for worker_id in stale_ids:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(CrawlerWorker)
                    .where(
                        col(CrawlerWorker.worker_id) == worker_id,
                        col(CrawlerWorker.status) != WorkerStatus.OFFLINE.value,
                        col(CrawlerWorker.last_heartbeat) < db_cutoff,
                    )
                    .values(
                        status=WorkerStatus.OFFLINE.value,
                        current_load=0,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                recovered = self._recover_worker_tasks(
                    session=session,
                    worker_id=worker_id,
                    reason="worker_offline",
                )
                session.commit()
            sweep.offline_workers.append(worker_id)
            sweep.recovered_tasks.extend(recovered)
        return sweep

    def _recover_worker_tasks(
        self,
        *,
        session: Session,
        worker_id: str,
        reason: str,
    ) -> list[str]:
        now = to_db_datetime(utc_now())
        rows = session.exec(
            select(CrawlerTask)
            .where(
                CrawlerTask.assigned_worker_id == worker_id,
                col(CrawlerTask.status).in_(_ACTIVE_STATUS_VALUES),
            )
            .order_by(col(CrawlerTask.task_id).asc()),
        ).all()
        recovered: list[str] = []
        for row in rows:
            previous = TaskStatus(row.status)
            result = session.exec(
                sa_update(CrawlerTask)
                .where(
                    col(CrawlerTask.task_id) == row.task_id,
                    col(CrawlerTask.status) == previous.value,
                    col(CrawlerTask.assigned_worker_id) == worker_id,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    assigned_worker_id=None,
                    assigned_at=None,
                    started_at=None,
                    next_run_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                continue
            self._add_event(
                session=session,
                task_id=row.task_id,
                event_type="orphan_recovered",
                status_from=previous,
                status_to=TaskStatus.PENDING,
                details={"worker_id": worker_id, "reason": reason},
            )
            recovered.append(row.task_id)
        if recovered:
            logger.warning(
                "Recovered %d task(s) from worker %s (%s): %s",
                len(recovered),
                worker_id,
                reason,
                ", ".join(recovered),
            )
        return recovered

    def _release_worker_slot(
        self,
        *,
        session: Session,
        worker_id: str | None,
        succeeded: bool | None,
    ) -> None:
        if worker_id is None:
            return
        new_load = case(
            (col(CrawlerWorker.current_load) > 0, col(CrawlerWorker.current_load) - 1),
            else_=0,
        )
        values: dict[str, object] = {
            "current_load": new_load,
            "status": case(
                (col(CrawlerWorker.status) == WorkerStatus.OFFLINE.value, "offline"),
                (col(CrawlerWorker.current_load) <= 1, "idle"),
                else_="online",
            ),
            "updated_at": to_db_datetime(utc_now()),
        }
        if succeeded is True:
            values["total_tasks_completed"] = col(CrawlerWorker.total_tasks_completed) + 1
        elif succeeded is False:
            values["total_tasks_failed"] = col(CrawlerWorker.total_tasks_failed) + 1
        session.exec(
            sa_update(CrawlerWorker)
            .where(col(CrawlerWorker.worker_id) == worker_id)
            .values(**values),
        )

    def _append_history(
        self,
        *,
        session: Session,
        task_id: str,
        worker_id: str | None,
        result: ExecutionResult,
        completed_at: datetime,
    ) -> CrawlerExecutionHistory:
        previous_attempts = session.exec(
            select(func.count())
            .select_from(CrawlerExecutionHistory)
            .where(CrawlerExecutionHistory.task_id == task_id),
        ).one()
        error = result.error
        row = CrawlerExecutionHistory(
            task_id=task_id,
            worker_id=worker_id,
            attempt_no=int(previous_attempts) + 1,
            status=result.status.value,
            started_at=to_db_datetime(result.started_at) if result.started_at else None,
            completed_at=to_db_datetime(completed_at),
            crawled_from=to_db_datetime(result.crawled_from) if result.crawled_from else None,
            crawled_to=to_db_datetime(result.crawled_to) if result.crawled_to else None,
            records_fetched=result.records_fetched,
            records_saved=result.records_saved,
            data_quality_score=result.quality_score,
            execution_time_ms=result.execution_time_ms,
            memory_usage_mb=result.memory_usage_mb,
            network_requests=result.network_requests,
            error_type=error.error_type if error is not None else None,
            error_message=error.message if error is not None else None,
            output_location=result.output_location,
            created_at=to_db_datetime(completed_at),
        )
        session.add(row)
        session.flush()
        return row

    def _get_task_row(self, *, session: Session, task_id: str) -> CrawlerTask:
        row = session.exec(
            select(CrawlerTask).where(CrawlerTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _get_worker_row(self, *, session: Session, worker_id: str) -> CrawlerWorker:
        row = session.exec(
            select(CrawlerWorker).where(CrawlerWorker.worker_id == worker_id),
        ).one_or_none()
        if row is None:
            raise WorkerNotFoundError(f"Worker not found: {worker_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            CrawlerTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def default_config_identifier(*, region: str, symbol_code: str, data_type: str) -> str:
    """Crawler config a task runs when none is given explicitly."""

    return f"{region}-{symbol_code}-{data_type}"


def derive_worker_status(*, current_load: int, max_concurrent_tasks: int) -> WorkerStatus:
    if current_load <= 0:
        return WorkerStatus.IDLE
    if current_load >= max_concurrent_tasks:
        return WorkerStatus.BUSY
    return WorkerStatus.ONLINE


def _validate_task_create(payload: TaskCreate) -> None:
    for name in ("symbol_code", "region", "data_type"):
        if not getattr(payload, name).strip():
            raise ValueError(f"Task {name} must be non-empty.")
    if payload.max_retries < 0:
        raise ValueError("Task max_retries must be >= 0.")
    if payload.timeout_seconds <= 0:
        raise ValueError("Task timeout_seconds must be > 0.")
    if payload.schedule_kind == ScheduleKind.CRON:
        validate_cron_expression(payload.schedule_expression or "")
    elif payload.schedule_expression:
        raise ValueError("Only cron tasks may carry a schedule expression.")


def _dump_string_set(values: tuple[str, ...] | frozenset[str]) -> str:
    return json.dumps(sorted({value.strip() for value in values if value.strip()}))


def _load_string_set(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return frozenset()
    return frozenset(str(value) for value in parsed)


def _to_task_view(row: CrawlerTask) -> TaskView:
    constraints = None
    if row.version_constraints_json:
        parsed = json.loads(row.version_constraints_json)
        if isinstance(parsed, dict):
            constraints = VersionConstraints.from_dict(parsed)
    return TaskView(
        task_id=row.task_id,
        symbol_code=row.symbol_code,
        region=row.region,
        data_type=row.data_type,
        config_identifier=row.config_identifier,
        schedule_kind=ScheduleKind(row.schedule_kind),
        schedule_expression=row.schedule_expression,
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        timeout_seconds=row.timeout_seconds,
        assigned_worker_id=row.assigned_worker_id,
        assigned_at=optional_utc(row.assigned_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        required_config_version=row.required_config_version,
        version_constraints=constraints,
        metadata=TaskMetadata.from_json(row.metadata_json),
        resolution=TaskResolution(row.resolution) if row.resolution is not None else None,
        last_failure_category=(
            FailureCategory(row.last_failure_category)
            if row.last_failure_category is not None
            else None
        ),
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: CrawlerTaskEvent) -> TaskEventView:
    details = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )


def _to_history_view(row: CrawlerExecutionHistory) -> ExecutionHistoryView:
    return ExecutionHistoryView(
        history_id=row.history_id or 0,
        task_id=row.task_id,
        worker_id=row.worker_id,
        attempt_no=row.attempt_no,
        status=HistoryStatus(row.status),
        started_at=optional_utc(row.started_at),
        completed_at=to_utc_aware_datetime(row.completed_at),
        records_fetched=row.records_fetched,
        records_saved=row.records_saved,
        data_quality_score=row.data_quality_score,
        execution_time_ms=row.execution_time_ms,
        error_type=row.error_type,
        error_message=row.error_message,
    )


def _to_failure_view(row: CrawlerFailure) -> FailureRecordView:
    return FailureRecordView(
        failure_id=row.failure_id or 0,
        task_id=row.task_id,
        history_id=row.history_id,
        worker_id=row.worker_id,
        category=FailureCategory(row.category),
        reason=FailureReason(row.reason),
        error_code=row.error_code,
        error_message=row.error_message,
        retry_attempt=row.retry_attempt,
        should_retry=row.should_retry,
        next_retry_at=optional_utc(row.next_retry_at),
        retry_delay_ms=row.retry_delay_ms,
        request_url=row.request_url,
        response_status=row.response_status,
        selector_used=row.selector_used,
        resolution=FailureResolution(row.resolution) if row.resolution is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_worker_view(row: CrawlerWorker) -> WorkerView:
    return WorkerView(
        worker_id=row.worker_id,
        name=row.name,
        status=WorkerStatus(row.status),
        supported_regions=_load_string_set(row.supported_regions_json),
        supported_data_types=_load_string_set(row.supported_data_types_json),
        max_concurrent_tasks=row.max_concurrent_tasks,
        current_load=row.current_load,
        version=row.version,
        memory_usage_mb=row.memory_usage_mb,
        cpu_percent=row.cpu_percent,
        total_tasks_completed=row.total_tasks_completed,
        total_tasks_failed=row.total_tasks_failed,
        last_heartbeat=to_utc_aware_datetime(row.last_heartbeat),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
