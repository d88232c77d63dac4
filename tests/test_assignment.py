from __future__ import annotations

import allure
import pytest
from conftest import make_registration

from crawler_fleet.coordinator.assignment import AssignmentEngine
from crawler_fleet.coordinator.models import (
    TaskCreate,
    TaskRequest,
    TaskStatus,
    VersionConstraints,
    WorkerStatus,
)
from crawler_fleet.coordinator.registry import WorkerRegistry
from crawler_fleet.coordinator.repository import FleetRepository, WorkerNotFoundError

pytestmark = [
    allure.epic("Coordinator"),
    allure.feature("Task Assignment"),
]


@pytest.fixture()
def registry(repository: FleetRepository) -> WorkerRegistry:
    return WorkerRegistry(repository)


@pytest.fixture()
def engine(repository: FleetRepository, registry: WorkerRegistry) -> AssignmentEngine:
    return AssignmentEngine(repository, registry, max_tasks_per_request=10)


def _enqueue(repository: FleetRepository, task_id: str, **overrides) -> None:
    values = {
        "symbol_code": "2330",
        "region": "TW",
        "data_type": "balance-sheet",
        "task_id": task_id,
    }
    values.update(overrides)
    repository.enqueue_task(TaskCreate(**values))


def test_request_claims_within_free_capacity(
    engine: AssignmentEngine,
    registry: WorkerRegistry,
    repository: FleetRepository,
) -> None:
    registry.register(make_registration("w-1", capacity=2))
    for index in range(4):
        _enqueue(repository, f"t-{index}", priority=index)

    claimed = engine.request_tasks("w-1", TaskRequest(limit=5))
    follow_up = engine.request_tasks("w-1", TaskRequest(limit=5))

    assert [task.task_id for task in claimed] == ["t-3", "t-2"]
    assert all(task.status == TaskStatus.ASSIGNED for task in claimed)
    assert follow_up == []
    worker = registry.get("w-1")
    assert worker.current_load == 2
    assert worker.status == WorkerStatus.BUSY


def test_request_limit_caps_claims(
    engine: AssignmentEngine,
    registry: WorkerRegistry,
    repository: FleetRepository,
) -> None:
    registry.register(make_registration("w-1", capacity=5))
    for index in range(3):
        _enqueue(repository, f"t-{index}")

    claimed = engine.request_tasks("w-1", TaskRequest(limit=2))

    assert len(claimed) == 2
    assert registry.get("w-1").current_load == 2


def test_request_filters_by_capabilities(
    engine: AssignmentEngine,
    registry: WorkerRegistry,
    repository: FleetRepository,
) -> None:
    registry.register(
        make_registration("w-1", regions=("TW", "US"), data_types=("cashflow",), capacity=5),
    )
    _enqueue(repository, "tw-bs")
    _enqueue(repository, "tw-cf", data_type="cashflow")
    _enqueue(repository, "us-cf", region="US", symbol_code="AAPL", data_type="cashflow")
    _enqueue(repository, "jp-cf", region="JP", symbol_code="7203", data_type="cashflow")

    us_only = engine.request_tasks("w-1", TaskRequest(regions=("US",), limit=5))
    rest = engine.request_tasks("w-1", TaskRequest(limit=5))

    assert [task.task_id for task in us_only] == ["us-cf"]
    assert [task.task_id for task in rest] == ["tw-cf"]
    assert repository.get_task("tw-bs").status == TaskStatus.PENDING
    assert repository.get_task("jp-cf").status == TaskStatus.PENDING


def test_version_incompatible_tasks_are_skipped(
    engine: AssignmentEngine,
    registry: WorkerRegistry,
    repository: FleetRepository,
) -> None:
    registry.register(make_registration("w-old", capacity=5, version="1.0.0"))
    _enqueue(
        repository,
        "needs-2",
        priority=5,
        version_constraints=VersionConstraints(min_version="2.0.0"),
    )
    _enqueue(repository, "exact-1", required_config_version="1.0.0")
    _enqueue(
        repository,
        "blacklisted",
        version_constraints=VersionConstraints(blacklist_versions=("1.0.0",)),
    )

    claimed = engine.request_tasks("w-old", TaskRequest(limit=5))

    assert [task.task_id for task in claimed] == ["exact-1"]
    assert repository.get_task("needs-2").status == TaskStatus.PENDING
    assert repository.get_task("blacklisted").status == TaskStatus.PENDING

    upgraded = engine.request_tasks("w-old", TaskRequest(worker_version="2.1.0", limit=5))
    assert [task.task_id for task in upgraded] == ["needs-2", "blacklisted"]


def test_request_from_unknown_worker_raises(engine: AssignmentEngine) -> None:
    with pytest.raises(WorkerNotFoundError):
        engine.request_tasks("ghost", TaskRequest())


def test_request_refreshes_liveness(
    engine: AssignmentEngine,
    registry: WorkerRegistry,
) -> None:
    registry.register(make_registration("w-1"))
    before = registry.get("w-1").last_heartbeat

    engine.request_tasks("w-1", TaskRequest())

    assert registry.get("w-1").last_heartbeat >= before
