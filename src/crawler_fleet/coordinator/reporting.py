"""Execution report handling: task outcome, history, failures and retry bookkeeping."""

from __future__ import annotations

import logging
from datetime import timedelta

from crawler_fleet.coordinator.failure_classifier import (
    DEFAULT_UNKNOWN_RETRY_CEILING,
    FailureClassification,
    FailureSignal,
    classify_failure,
)
from crawler_fleet.coordinator.models import (
    ACTIVE_TASK_STATUSES,
    ExecutionResult,
    ReportOutcome,
    RetryKey,
    TaskResolution,
    TaskView,
)
from crawler_fleet.coordinator.repository import FleetRepository, TaskStateError
from crawler_fleet.coordinator.retry_queue import RetryQueueManager
from crawler_fleet.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)


class ExecutionReportHandler:
    """Applies worker execution reports to the task store and retry backlog."""

    def __init__(
        self,
        repository: FleetRepository,
        retry_queue: RetryQueueManager,
        *,
        unknown_retry_ceiling: int = DEFAULT_UNKNOWN_RETRY_CEILING,
    ) -> None:
        self.repository = repository
        self.retry_queue = retry_queue
        self.unknown_retry_ceiling = unknown_retry_ceiling

    def mark_started(self, task_id: str, worker_id: str) -> TaskView:
        return self.repository.mark_started(task_id=task_id, worker_id=worker_id)

    def report(self, task_id: str, result: ExecutionResult) -> ReportOutcome:
        """Apply one execution report.

        Delivery is at-least-once: a repeat of the report that closed the
        task, or of a failure report from an earlier assignment of a task that
        has since been re-claimed, is acknowledged as a duplicate.
        """

        if result.task_id != task_id:
            raise ValueError(f"Report task id {result.task_id} does not match {task_id}.")
        task = self.repository.get_task(task_id)
        if task.status not in ACTIVE_TASK_STATUSES:
            return self._handle_inactive(task, result)
        if result.worker_id is not None and result.worker_id != task.assigned_worker_id:
            raise TaskStateError(
                f"Task {task_id} is assigned to {task.assigned_worker_id}, "
                f"not to reporting worker {result.worker_id}.",
            )
        if result.status.is_success:
            return self._handle_success(task, result)
        if self._is_redelivered_failure(task, result):
            return self._acknowledge_duplicate(task, result)
        return self._handle_failure(task, result)

    def _handle_inactive(self, task: TaskView, result: ExecutionResult) -> ReportOutcome:
        latest = self.repository.latest_history_status(task.task_id)
        if latest != result.status:
            raise TaskStateError(
                f"Task {task.task_id} is {task.status.value}; "
                f"cannot accept a {result.status.value} report.",
            )
        return self._acknowledge_duplicate(task, result)

    def _is_redelivered_failure(self, task: TaskView, result: ExecutionResult) -> bool:
        """Whether a failure report belongs to an attempt that was already recorded.

        Only reports carrying ``started_at`` can be matched: the attempt must
        have started before the current assignment and equal the latest
        history row.
        """

        if result.started_at is None or task.assigned_at is None:
            return False
        started_at = to_utc_aware_datetime(result.started_at)
        if started_at >= task.assigned_at:
            return False
        latest = self.repository.latest_history(task.task_id)
        return (
            latest is not None
            and latest.status == result.status
            and latest.started_at == started_at
        )

    def _acknowledge_duplicate(self, task: TaskView, result: ExecutionResult) -> ReportOutcome:
        self.repository.add_task_event(
            task_id=task.task_id,
            event_type="duplicate_report",
            status_from=task.status,
            status_to=task.status,
            details={"history_status": result.status.value, "worker_id": result.worker_id},
        )
        logger.info("Ignoring duplicate %s report for task %s", result.status.value, task.task_id)
        return ReportOutcome(
            task_id=task.task_id,
            status=task.status,
            duplicate=True,
            resolution=task.resolution,
        )

    def _handle_success(self, task: TaskView, result: ExecutionResult) -> ReportOutcome:
        updated = self.repository.complete_task(task=task, result=result)
        if updated is None:
            raise TaskStateError(
                f"Task {task.task_id} changed state concurrently while completing.",
            )
        # One successful crawl shows the symbol is reachable again; stale
        # retries for its other report types are dropped with it.
        cleared = self.retry_queue.remove_all_for_symbol(task.symbol_code, task.region)
        logger.info(
            "Task %s completed by %s (%s), %d retry record(s) cleared for %s/%s",
            task.task_id,
            task.assigned_worker_id,
            result.status.value,
            cleared,
            task.symbol_code,
            task.region,
        )
        return ReportOutcome(
            task_id=task.task_id,
            status=updated.status,
            resolution=updated.resolution,
            retries_cleared=cleared,
        )

    def _handle_failure(self, task: TaskView, result: ExecutionResult) -> ReportOutcome:
        classification = classify_failure(
            FailureSignal.from_result(result),
            unknown_retry_ceiling=self.unknown_retry_ceiling,
        )
        ceiling = effective_retry_ceiling(task, classification)
        key = RetryKey(
            config_identifier=task.config_identifier,
            symbol_code=task.symbol_code,
            report_type=task.data_type,
        )

        if classification.should_retry and task.retry_count < ceiling:
            delay_ms = self.retry_queue.delay(task.retry_count + 1)
            retry_at = utc_now() + timedelta(milliseconds=delay_ms)
            updated = self.repository.fail_attempt(
                task=task,
                result=result,
                classification=classification,
                retry_at=retry_at,
                retry_delay_ms=delay_ms,
                resolution=None,
            )
            if updated is None:
                raise TaskStateError(
                    f"Task {task.task_id} changed state concurrently while scheduling retry.",
                )
            # Records count failed attempts: N retries allow N + 1 attempts.
            self.retry_queue.add(
                key,
                task.region,
                classification.retry_reason,
                max_retries=ceiling + 1,
            )
            logger.info(
                "Task %s failed (%s/%s), retry %d/%d in %d ms",
                task.task_id,
                classification.category.value,
                classification.reason.value,
                updated.retry_count,
                ceiling,
                delay_ms,
            )
            return ReportOutcome(
                task_id=task.task_id,
                status=updated.status,
                retry_scheduled=True,
                next_run_at=updated.next_run_at,
                failure_category=classification.category,
            )

        resolution = (
            TaskResolution.RETRIES_EXHAUSTED
            if classification.should_retry
            else TaskResolution.PERMANENT_FAILURE
        )
        updated = self.repository.fail_attempt(
            task=task,
            result=result,
            classification=classification,
            retry_at=None,
            retry_delay_ms=None,
            resolution=resolution,
        )
        if updated is None:
            raise TaskStateError(
                f"Task {task.task_id} changed state concurrently while failing.",
            )
        self.retry_queue.remove(key)
        logger.warning(
            "Task %s failed terminally (%s): %s/%s after %d retries",
            task.task_id,
            resolution.value,
            classification.category.value,
            classification.reason.value,
            task.retry_count,
        )
        return ReportOutcome(
            task_id=task.task_id,
            status=updated.status,
            failure_category=classification.category,
            resolution=resolution,
        )


def effective_retry_ceiling(task: TaskView, classification: FailureClassification) -> int:
    """Task retry budget, lowered for failures the classifier could not place."""

    if classification.retry_ceiling is None:
        return task.max_retries
    return min(task.max_retries, classification.retry_ceiling)
