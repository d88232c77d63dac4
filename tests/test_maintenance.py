from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
from conftest import age_worker, make_registration
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from crawler_fleet.coordinator.maintenance import MaintenanceRunner, MaintenanceSummary
from crawler_fleet.coordinator.models import (
    ExecutionResult,
    HistoryStatus,
    RetryKey,
    RetryReason,
    ScheduleKind,
    TaskCreate,
    TaskStatus,
)
from crawler_fleet.coordinator.services import CoordinatorService
from crawler_fleet.storage.common import to_db_datetime, utc_now
from crawler_fleet.storage.sqlmodel_models import CrawlerTask

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Maintenance"),
]

EXPIRED_KEY = RetryKey(
    config_identifier="TW-1101-cashflow",
    symbol_code="1101",
    report_type="cashflow",
)
RECONCILED_KEY = RetryKey(
    config_identifier="TW-2317-cashflow",
    symbol_code="2317",
    report_type="cashflow",
)


def _runner(service: CoordinatorService, **overrides) -> MaintenanceRunner:
    values = {
        "repository": service.repository,
        "registry": service.registry,
        "retry_queue": service.retry_queue,
        "interval_seconds": 0.0,
    }
    values.update(overrides)
    return MaintenanceRunner(**values)


def _orphan_task(service: CoordinatorService) -> None:
    service.register_worker(make_registration("w-dead"))
    service.enqueue_task(
        TaskCreate(symbol_code="2330", region="TW", data_type="balance-sheet", task_id="t-1"),
    )
    service.repository.claim_task(task_id="t-1", worker_id="w-dead")
    age_worker(service.repository, "w-dead", seconds=600)


def _expired_retry(service: CoordinatorService) -> None:
    service.retry_queue.add(EXPIRED_KEY, "TW", RetryReason.EMPTY_DATA)
    store = service.retry_queue.store
    record = store.get(EXPIRED_KEY)
    assert record is not None
    assert store.compare_and_set(EXPIRED_KEY, expected=record, replacement=None)
    assert store.compare_and_set(
        EXPIRED_KEY,
        expected=None,
        replacement=replace(record, timestamp=utc_now() - timedelta(days=30)),
    )


def _reconcilable_retry(service: CoordinatorService, output_dir: Path) -> None:
    (output_dir / "tw").mkdir(parents=True)
    (output_dir / "tw" / "TW-2317-cashflow_20261017.json").write_text(
        json.dumps({"rows": [{"period": "2026Q3"}]}),
        "utf-8",
    )
    service.retry_queue.add(
        RECONCILED_KEY,
        "TW",
        RetryReason.EXECUTION_FAILED,
    )


def _fired_cron_task(service: CoordinatorService) -> None:
    service.register_worker(make_registration("w-live"))
    service.enqueue_task(
        TaskCreate(
            symbol_code="2454",
            region="TW",
            data_type="balance-sheet",
            task_id="cron-1",
            schedule_kind=ScheduleKind.CRON,
            schedule_expression="*/5 * * * *",
            next_run_at=utc_now() - timedelta(minutes=1),
        ),
    )
    claimed = service.repository.claim_task(task_id="cron-1", worker_id="w-live").task
    assert claimed is not None
    service.repository.complete_task(
        task=claimed,
        result=ExecutionResult(task_id="cron-1", status=HistoryStatus.SUCCESS),
    )
    with Session(service.repository.engine) as session:
        session.exec(
            sa_update(CrawlerTask)
            .where(col(CrawlerTask.task_id) == "cron-1")
            .values(completed_at=to_db_datetime(utc_now() - timedelta(minutes=30))),
        )
        session.commit()


def test_run_once_performs_every_step(service: CoordinatorService, tmp_path: Path) -> None:
    output_dir = tmp_path / "output"
    _orphan_task(service)
    _expired_retry(service)
    _reconcilable_retry(service, output_dir)
    _fired_cron_task(service)

    summary = _runner(service, output_dir=output_dir).run_once()

    assert summary == MaintenanceSummary(
        passes=1,
        offline_workers=1,
        recovered_tasks=1,
        expired_retries=1,
        reconciled_retries=1,
        rearmed_tasks=1,
    )
    assert service.repository.get_task("t-1").status == TaskStatus.PENDING
    assert service.repository.get_task("cron-1").status == TaskStatus.PENDING
    assert service.retry_queue.pending() == []


def test_run_once_skips_disabled_steps(service: CoordinatorService) -> None:
    _fired_cron_task(service)
    service.retry_queue.add(
        RECONCILED_KEY,
        "TW",
        RetryReason.EMPTY_DATA,
    )

    summary = _runner(service, rearm_cron_tasks=False).run_once()

    assert summary.reconciled_retries == 0
    assert summary.rearmed_tasks == 0
    assert service.repository.get_task("cron-1").status == TaskStatus.COMPLETED
    assert len(service.retry_queue.pending()) == 1


def test_run_loop_stops_after_max_passes(service: CoordinatorService) -> None:
    _orphan_task(service)

    summary = _runner(service).run_loop(max_passes=3)

    assert summary.passes == 3
    assert summary.offline_workers == 1
    assert summary.recovered_tasks == 1


def test_summary_merge_accumulates_counters() -> None:
    total = MaintenanceSummary()
    total.merge(MaintenanceSummary(passes=1, offline_workers=2, expired_retries=1))
    total.merge(MaintenanceSummary(passes=1, recovered_tasks=3, rearmed_tasks=1))

    assert total == MaintenanceSummary(
        passes=2,
        offline_workers=2,
        recovered_tasks=3,
        expired_retries=1,
        rearmed_tasks=1,
    )
