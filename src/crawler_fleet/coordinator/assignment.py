"""Capability-matching task assignment with atomic claims."""

from __future__ import annotations

import logging

from crawler_fleet.coordinator.models import TaskRequest, TaskView
from crawler_fleet.coordinator.registry import WorkerRegistry
from crawler_fleet.coordinator.repository import ClaimOutcome, FleetRepository
from crawler_fleet.coordinator.versioning import check_version
from crawler_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

_MIN_CANDIDATE_BATCH = 16


class AssignmentEngine:
    """Hands pending tasks to a polling worker within its free capacity."""

    def __init__(
        self,
        repository: FleetRepository,
        registry: WorkerRegistry,
        *,
        max_tasks_per_request: int = 10,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.max_tasks_per_request = max_tasks_per_request

    def request_tasks(self, worker_id: str, request: TaskRequest) -> list[TaskView]:
        """Claim up to ``request.limit`` eligible tasks for ``worker_id``.

        Candidates come in priority order (then oldest first, then task id).
        Version-incompatible candidates are skipped; a candidate claimed by
        another poller in the meantime is skipped too. The loop stops when the
        worker has no free slot left.
        """

        worker = self.registry.touch(worker_id)
        regions = frozenset(request.regions) or worker.supported_regions
        data_types = frozenset(request.data_types) or worker.supported_data_types
        worker_version = request.worker_version or worker.version
        capacity = min(request.limit, self.max_tasks_per_request, worker.free_slots)
        if capacity <= 0:
            logger.debug(
                "Worker %s has no free capacity (load %d/%d)",
                worker_id,
                worker.current_load,
                worker.max_concurrent_tasks,
            )
            return []

        claimed: list[TaskView] = []
        skipped: set[str] = set()
        batch_size = max(capacity * 4, _MIN_CANDIDATE_BATCH)
        while len(claimed) < capacity:
            candidates = self.repository.list_claim_candidates(
                regions=regions,
                data_types=data_types,
                now=utc_now(),
                limit=batch_size,
                exclude_task_ids=frozenset(skipped),
            )
            if not candidates:
                break
            for candidate in candidates:
                skipped.add(candidate.task_id)
                version = check_version(
                    worker_version,
                    candidate.required_config_version,
                    candidate.version_constraints,
                )
                if not version.compatible:
                    logger.debug(
                        "Skipping task %s for worker %s: %s",
                        candidate.task_id,
                        worker_id,
                        version.reason,
                    )
                    continue

                result = self.repository.claim_task(
                    task_id=candidate.task_id,
                    worker_id=worker_id,
                )
                if result.outcome == ClaimOutcome.WORKER_FULL:
                    return self._finish(worker_id, claimed)
                if result.outcome == ClaimOutcome.LOST_RACE or result.task is None:
                    logger.debug("Task %s was claimed concurrently", candidate.task_id)
                    continue
                claimed.append(result.task)
                if len(claimed) >= capacity:
                    break
        return self._finish(worker_id, claimed)

    def _finish(self, worker_id: str, claimed: list[TaskView]) -> list[TaskView]:
        if claimed:
            logger.info(
                "Assigned %d task(s) to worker %s: %s",
                len(claimed),
                worker_id,
                ", ".join(task.task_id for task in claimed),
            )
        return claimed
