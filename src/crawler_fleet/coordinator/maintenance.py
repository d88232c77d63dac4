"""Timer-driven background passes: liveness sweep, retry cleanup, reconciliation, cron re-arm."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from crawler_fleet.coordinator.registry import WorkerRegistry
from crawler_fleet.coordinator.repository import FleetRepository
from crawler_fleet.coordinator.retry_queue import (
    FileOutputProbe,
    OutputProbe,
    RetryQueueManager,
)
from crawler_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenanceSummary:
    """Aggregate maintenance counters for CLI reporting."""

    passes: int = 0
    offline_workers: int = 0
    recovered_tasks: int = 0
    expired_retries: int = 0
    reconciled_retries: int = 0
    rearmed_tasks: int = 0

    def merge(self, other: MaintenanceSummary) -> None:
        self.passes += other.passes
        self.offline_workers += other.offline_workers
        self.recovered_tasks += other.recovered_tasks
        self.expired_retries += other.expired_retries
        self.reconciled_retries += other.reconciled_retries
        self.rearmed_tasks += other.rearmed_tasks


class MaintenanceRunner:
    """Runs bounded maintenance passes, once or on an interval."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: FleetRepository,
        registry: WorkerRegistry,
        retry_queue: RetryQueueManager,
        interval_seconds: float = 30.0,
        output_dir: Path | None = None,
        output_probe: OutputProbe | None = None,
        rearm_cron_tasks: bool = True,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.retry_queue = retry_queue
        self.interval_seconds = interval_seconds
        self.output_dir = output_dir
        self.output_probe = output_probe or FileOutputProbe()
        self.rearm_cron_tasks = rearm_cron_tasks
        self._stop_requested = False

    def run_once(self) -> MaintenanceSummary:
        """Run one pass of every enabled maintenance step."""

        summary = MaintenanceSummary(passes=1)
        sweep = self.registry.sweep()
        summary.offline_workers = len(sweep.offline_workers)
        summary.recovered_tasks = len(sweep.recovered_tasks)
        summary.expired_retries = self.retry_queue.cleanup_expired()
        if self.output_dir is not None:
            summary.reconciled_retries = self.retry_queue.cleanup_successful(
                self.output_probe,
                self.output_dir,
            )
        if self.rearm_cron_tasks:
            rearmed = self.repository.rearm_cron_tasks(now=utc_now())
            summary.rearmed_tasks = len(rearmed)
            if rearmed:
                logger.info("Re-armed %d cron task(s): %s", len(rearmed), ", ".join(rearmed))
        logger.debug(
            "Maintenance pass: offline=%d recovered=%d expired=%d reconciled=%d rearmed=%d",
            summary.offline_workers,
            summary.recovered_tasks,
            summary.expired_retries,
            summary.reconciled_retries,
            summary.rearmed_tasks,
        )
        return summary

    def run_loop(self, *, max_passes: int | None = None) -> MaintenanceSummary:
        """Run passes every ``interval_seconds`` until stopped or ``max_passes`` is reached."""

        aggregate = MaintenanceSummary()
        self._stop_requested = False
        with self._signal_handlers():
            while not self._stop_requested:
                aggregate.merge(self.run_once())
                if max_passes is not None and aggregate.passes >= max_passes:
                    break
                self._sleep_with_stop(self.interval_seconds)
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping maintenance loop", name)
            self.request_stop()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
