"""Worker registration, heartbeats and liveness sweeps."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from crawler_fleet.coordinator.models import (
    HeartbeatAck,
    HeartbeatPayload,
    SweepResult,
    WorkerRegistration,
    WorkerStatus,
    WorkerView,
)
from crawler_fleet.coordinator.repository import FleetRepository
from crawler_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Tracks worker capability sets, load and liveness."""

    def __init__(
        self,
        repository: FleetRepository,
        *,
        liveness_threshold_seconds: int = 90,
    ) -> None:
        self.repository = repository
        self.liveness_threshold = timedelta(seconds=liveness_threshold_seconds)

    def register(self, registration: WorkerRegistration) -> str:
        """Store a worker as online with no load and return its id."""

        _validate_registration(registration)
        worker, recovered = self.repository.upsert_worker(registration)
        logger.info(
            "Registered worker %s (%s): regions=%s data_types=%s capacity=%d version=%s",
            worker.worker_id,
            worker.name,
            ",".join(sorted(worker.supported_regions)),
            ",".join(sorted(worker.supported_data_types)),
            worker.max_concurrent_tasks,
            worker.version or "-",
        )
        if recovered:
            logger.warning(
                "Worker %s re-registered while holding %d task(s); returned them to the queue",
                worker.worker_id,
                len(recovered),
            )
        return worker.worker_id

    def heartbeat(self, worker_id: str, payload: HeartbeatPayload) -> HeartbeatAck:
        worker = self.repository.record_heartbeat(worker_id=worker_id, payload=payload)
        return HeartbeatAck(
            worker_id=worker.worker_id,
            status=worker.status,
            current_load=worker.current_load,
            received_at=worker.last_heartbeat,
        )

    def touch(self, worker_id: str) -> WorkerView:
        """Count a poll as a liveness signal."""

        return self.repository.touch_worker(worker_id=worker_id)

    def sweep(self, liveness_threshold: timedelta | None = None) -> SweepResult:
        """Take silent workers offline and return their tasks to the queue."""

        threshold = self.liveness_threshold
        if liveness_threshold is not None:
            threshold = liveness_threshold
        result = self.repository.mark_stale_workers_offline(cutoff=utc_now() - threshold)
        if result.offline_workers:
            logger.info(
                "Liveness sweep: %d worker(s) offline (%s), %d task(s) recovered",
                len(result.offline_workers),
                ", ".join(result.offline_workers),
                len(result.recovered_tasks),
            )
        return result

    def get(self, worker_id: str) -> WorkerView:
        return self._effective(self.repository.get_worker(worker_id), now=utc_now())

    def list_workers(self, status: WorkerStatus | None = None) -> list[WorkerView]:
        """List workers with liveness applied to their reported status."""

        now = utc_now()
        workers = [self._effective(worker, now=now) for worker in self.repository.list_workers()]
        if status is None:
            return workers
        return [worker for worker in workers if worker.status == status]

    def _effective(self, worker: WorkerView, *, now: datetime) -> WorkerView:
        if worker.status != WorkerStatus.OFFLINE and self.is_stale(worker, now=now):
            return replace(worker, status=WorkerStatus.OFFLINE)
        return worker

    def is_stale(self, worker: WorkerView, *, now: datetime) -> bool:
        return now - worker.last_heartbeat > self.liveness_threshold


def _validate_registration(registration: WorkerRegistration) -> None:
    if not registration.worker_id.strip():
        raise ValueError("Worker id must be non-empty.")
    if not any(region.strip() for region in registration.supported_regions):
        raise ValueError(f"Worker {registration.worker_id} must support at least one region.")
    if not any(data_type.strip() for data_type in registration.supported_data_types):
        raise ValueError(
            f"Worker {registration.worker_id} must support at least one data type.",
        )
    if registration.max_concurrent_tasks < 1:
        raise ValueError(
            f"Worker {registration.worker_id} max_concurrent_tasks must be >= 1, "
            f"got {registration.max_concurrent_tasks}.",
        )
