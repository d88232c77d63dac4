"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from crawler_fleet.config import RetrySettings, Settings
from crawler_fleet.coordinator.models import WorkerRegistration
from crawler_fleet.coordinator.repository import FleetRepository
from crawler_fleet.coordinator.services import CoordinatorService
from crawler_fleet.storage.common import to_db_datetime, utc_now
from crawler_fleet.storage.sqlmodel_models import CrawlerTask, CrawlerWorker


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[FleetRepository]:
    repo = FleetRepository(tmp_path / "fleet.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "fleet.db",
        retry=RetrySettings(file_path=tmp_path / "retries.json"),
    )


@pytest.fixture()
def service(settings: Settings) -> Iterator[CoordinatorService]:
    coordinator = CoordinatorService.from_settings(settings)
    try:
        yield coordinator
    finally:
        coordinator.close()


def make_registration(
    worker_id: str,
    *,
    regions: tuple[str, ...] = ("TW",),
    data_types: tuple[str, ...] = ("balance-sheet",),
    capacity: int = 1,
    version: str | None = None,
) -> WorkerRegistration:
    return WorkerRegistration(
        worker_id=worker_id,
        name=f"{worker_id}-host",
        supported_regions=regions,
        supported_data_types=data_types,
        max_concurrent_tasks=capacity,
        version=version,
    )


def age_worker(repository: FleetRepository, worker_id: str, *, seconds: int) -> None:
    """Move a worker's last heartbeat ``seconds`` into the past."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(CrawlerWorker)
            .where(col(CrawlerWorker.worker_id) == worker_id)
            .values(last_heartbeat=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
        )
        session.commit()


def make_task_due(repository: FleetRepository, task_id: str) -> None:
    """Pull a task's next run time into the past so it is eligible now."""

    with Session(repository.engine) as session:
        session.exec(
            sa_update(CrawlerTask)
            .where(col(CrawlerTask.task_id) == task_id)
            .values(next_run_at=to_db_datetime(utc_now() - timedelta(seconds=1))),
        )
        session.commit()
