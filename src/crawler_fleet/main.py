"""CLI entrypoint for crawler-fleet."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from crawler_fleet import __version__
from crawler_fleet.coordinator.controllers import (
    DbCommand,
    FleetCliController,
    MaintainCommand,
    RetryCleanupCommand,
    RetryListCommand,
    RetryReconcileCommand,
    TaskEnqueueCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    WorkerListCommand,
    WorkerSweepCommand,
)
from crawler_fleet.coordinator.repository import (
    TaskNotFoundError,
    TaskStateError,
    WorkerNotFoundError,
)
from crawler_fleet.coordinator.retry_queue import RetryStoreError

click.rich_click.USE_MARKDOWN = True
FLEET_CONTROLLER = FleetCliController()

CommandT = TypeVar("CommandT")

_TASK_STATUSES = ["pending", "assigned", "running", "completed", "failed", "cancelled"]
_WORKER_STATUSES = ["online", "busy", "idle", "offline"]
_OPERATOR_ERRORS = (
    TaskNotFoundError,
    WorkerNotFoundError,
    TaskStateError,
    RetryStoreError,
    ValueError,
)


@click.group()
@click.version_option(version=__version__, prog_name="crawler-fleet")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for coordinator components.",
)
def crawler_fleet(log_level: str) -> None:
    """Crawler fleet coordinator CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@crawler_fleet.group()
def tasks() -> None:
    """Collection task commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--symbol", "symbol_code", required=True, help="Symbol code, for example 2330.")
@click.option("--region", required=True, help="Market region, for example TW or US.")
@click.option("--data-type", required=True, help="Report type, for example balance-sheet.")
@click.option(
    "--config",
    "config_identifier",
    default=None,
    help="Crawler config identifier; defaults to <region>-<symbol>-<data-type>.",
)
@click.option("--task-id", default=None, help="Explicit task id; a UUID is generated otherwise.")
@click.option("--cron", default=None, help="Cron expression for a recurring task.")
@click.option("--priority", type=int, default=None, help="Higher runs sooner.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry budget; defaults to CRAWLER_FLEET_DEFAULT_MAX_RETRIES.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Execution timeout handed to workers.",
)
@click.option("--required-version", default=None, help="Exact worker config version required.")
@click.option("--min-version", default=None, help="Lowest acceptable worker version.")
@click.option("--max-version", default=None, help="Highest acceptable worker version.")
@click.option(
    "--preferred-version",
    "preferred_versions",
    multiple=True,
    help="Preferred worker version. Can be repeated.",
)
@click.option(
    "--blacklist-version",
    "blacklist_versions",
    multiple=True,
    help="Worker version that must never run this task. Can be repeated.",
)
@click.option(
    "--preferred-mandatory/--preferred-advisory",
    default=False,
    show_default=True,
    help="Whether preferred versions are required or only advised.",
)
@click.option(
    "--meta",
    "metadata",
    multiple=True,
    help="Task metadata as key=value. Can be repeated.",
)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    symbol_code: str,
    region: str,
    data_type: str,
    config_identifier: str | None,
    task_id: str | None,
    cron: str | None,
    priority: int | None,
    max_retries: int | None,
    timeout_seconds: int | None,
    required_version: str | None,
    min_version: str | None,
    max_version: str | None,
    preferred_versions: tuple[str, ...],
    blacklist_versions: tuple[str, ...],
    preferred_mandatory: bool,
    metadata: tuple[str, ...],
) -> None:
    """Enqueue one collection task."""

    _run(
        FLEET_CONTROLLER.enqueue_task,
        TaskEnqueueCommand(
            db_path=db_path,
            symbol_code=symbol_code,
            region=region,
            data_type=data_type,
            config_identifier=config_identifier,
            task_id=task_id,
            cron=cron,
            priority=priority,
            max_retries=max_retries,
            timeout_seconds=timeout_seconds,
            required_version=required_version,
            min_version=min_version,
            max_version=max_version,
            preferred_versions=preferred_versions,
            blacklist_versions=blacklist_versions,
            preferred_mandatory=preferred_mandatory,
            metadata=metadata,
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--region", default=None, help="Optional region filter.")
@click.option("--data-type", default=None, help="Optional report type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    region: str | None,
    data_type: str | None,
    limit: int,
) -> None:
    """List collection tasks, newest first."""

    _run(
        FLEET_CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            status=status,
            region=region,
            data_type=data_type,
            limit=limit,
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with attempts, failures and events."""

    _run(FLEET_CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending or assigned task."""

    _run(FLEET_CONTROLLER.cancel_task, TaskMutateCommand(db_path=db_path, task_id=task_id))


@tasks.command("requeue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_requeue(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a failed or cancelled task."""

    _run(FLEET_CONTROLLER.requeue_task, TaskMutateCommand(db_path=db_path, task_id=task_id))


@crawler_fleet.group()
def workers() -> None:
    """Worker registry commands."""


@workers.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(_WORKER_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter (liveness applied).",
)
def workers_list(db_path: Path | None, status: str | None) -> None:
    """List registered workers."""

    _run(FLEET_CONTROLLER.list_workers, WorkerListCommand(db_path=db_path, status=status))


@workers.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--threshold-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Liveness threshold; defaults to CRAWLER_FLEET_LIVENESS_THRESHOLD_SECONDS.",
)
def workers_sweep(db_path: Path | None, threshold_seconds: int | None) -> None:
    """Take silent workers offline and recover their tasks."""

    _run(
        FLEET_CONTROLLER.sweep_workers,
        WorkerSweepCommand(db_path=db_path, threshold_seconds=threshold_seconds),
    )


@crawler_fleet.group()
def retries() -> None:
    """Retry backlog commands."""


@retries.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max records to print.",
)
def retries_list(db_path: Path | None, limit: int) -> None:
    """List pending retry records, oldest first."""

    _run(FLEET_CONTROLLER.list_retries, RetryListCommand(db_path=db_path, limit=limit))


@retries.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def retries_stats(db_path: Path | None) -> None:
    """Show retry backlog statistics."""

    _run(FLEET_CONTROLLER.retry_stats, DbCommand(db_path=db_path))


@retries.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention in days; defaults to CRAWLER_FLEET_RETRY_CLEANUP_DAYS.",
)
def retries_cleanup(db_path: Path | None, days: int | None) -> None:
    """Drop retry records first queued before the retention window."""

    _run(FLEET_CONTROLLER.cleanup_retries, RetryCleanupCommand(db_path=db_path, days=days))


@retries.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Collected output directory; defaults to CRAWLER_FLEET_OUTPUT_DIR.",
)
def retries_reconcile(db_path: Path | None, output_dir: Path | None) -> None:
    """Drop retries for symbols whose output already exists."""

    _run(
        FLEET_CONTROLLER.reconcile_retries,
        RetryReconcileCommand(db_path=db_path, output_dir=output_dir),
    )


@retries.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.confirmation_option(prompt="Drop every retry record?")
def retries_clear(db_path: Path | None) -> None:
    """Drop every retry record."""

    _run(FLEET_CONTROLLER.clear_retries, DbCommand(db_path=db_path))


@crawler_fleet.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def fleet_stats(db_path: Path | None) -> None:
    """Show task, worker and retry statistics."""

    _run(FLEET_CONTROLLER.stats, DbCommand(db_path=db_path))


@crawler_fleet.command("maintain")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single maintenance pass or loop until interrupted.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for passes in loop mode.",
)
def maintain(db_path: Path | None, once: bool, max_passes: int | None) -> None:
    """Run liveness sweeps, retry cleanup, reconciliation and cron re-arm."""

    _run(
        FLEET_CONTROLLER.maintain,
        MaintainCommand(db_path=db_path, once=once, max_passes=max_passes),
    )


def _run(action: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = action(command)
    except _OPERATOR_ERRORS as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    crawler_fleet()
