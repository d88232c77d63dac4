"""Cron schedule helpers for recurring collection tasks."""

from __future__ import annotations

from datetime import UTC, datetime

from croniter import croniter


def validate_cron_expression(expression: str) -> None:
    """Raise ``ValueError`` if ``expression`` is not a valid cron expression."""

    if not expression or not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: {expression!r}")


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Return the first cron fire time strictly after ``after``, in UTC."""

    validate_cron_expression(expression)
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)
    next_run = croniter(expression, after.astimezone(UTC)).get_next(datetime)
    if next_run.tzinfo is None:
        return next_run.replace(tzinfo=UTC)
    return next_run.astimezone(UTC)
