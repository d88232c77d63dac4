"""Initial coordinator schema: tasks, events, workers, history, failures, retries."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "crawler_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("symbol_code", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("data_type", sa.String(), nullable=False),
        sa.Column("config_identifier", sa.String(), nullable=False),
        sa.Column("schedule_kind", sa.String(), nullable=False, server_default="once"),
        sa.Column("schedule_expression", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default=sa.text("300")),
        sa.Column("assigned_worker_id", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("required_config_version", sa.String(), nullable=True),
        sa.Column("version_constraints_json", sa.Text(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("last_failure_category", sa.String(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_crawler_tasks_queue",
        "crawler_tasks",
        ["status", "region", "data_type", "priority", "next_run_at"],
        unique=False,
    )
    op.create_index(
        "idx_crawler_tasks_symbol",
        "crawler_tasks",
        ["symbol_code", "region"],
        unique=False,
    )
    for column in (
        "symbol_code",
        "region",
        "data_type",
        "config_identifier",
        "priority",
        "status",
        "assigned_worker_id",
        "resolution",
    ):
        op.create_index(
            f"ix_crawler_tasks_{column}",
            "crawler_tasks",
            [column],
            unique=False,
        )

    op.create_table(
        "crawler_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["crawler_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_crawler_task_events_task_time",
        "crawler_task_events",
        ["task_id", "created_at"],
        unique=False,
    )
    for column in ("task_id", "event_type", "status_from", "status_to"):
        op.create_index(
            f"ix_crawler_task_events_{column}",
            "crawler_task_events",
            [column],
            unique=False,
        )

    op.create_table(
        "crawler_workers",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("supported_regions_json", sa.Text(), nullable=False),
        sa.Column("supported_data_types_json", sa.Text(), nullable=False),
        sa.Column(
            "max_concurrent_tasks",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
        ),
        sa.Column("current_load", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("version", sa.String(), nullable=True),
        sa.Column("memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("cpu_percent", sa.Float(), nullable=True),
        sa.Column(
            "total_tasks_completed",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column(
            "total_tasks_failed",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("worker_id"),
    )
    op.create_index("ix_crawler_workers_status", "crawler_workers", ["status"], unique=False)
    op.create_index(
        "ix_crawler_workers_last_heartbeat",
        "crawler_workers",
        ["last_heartbeat"],
        unique=False,
    )

    op.create_table(
        "crawler_execution_history",
        sa.Column("history_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("crawled_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("crawled_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("records_fetched", sa.Integer(), nullable=True),
        sa.Column("records_saved", sa.Integer(), nullable=True),
        sa.Column("data_quality_score", sa.Float(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=True),
        sa.Column("memory_usage_mb", sa.Float(), nullable=True),
        sa.Column("network_requests", sa.Integer(), nullable=True),
        sa.Column("error_type", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("output_location", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["crawler_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index(
        "idx_crawler_history_task_time",
        "crawler_execution_history",
        ["task_id", "created_at"],
        unique=False,
    )
    for column in ("task_id", "worker_id", "status"):
        op.create_index(
            f"ix_crawler_execution_history_{column}",
            "crawler_execution_history",
            [column],
            unique=False,
        )

    op.create_table(
        "crawler_failures",
        sa.Column("failure_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("history_id", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("classifier_version", sa.Integer(), nullable=False),
        sa.Column("matched_rule", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_attempt", sa.Integer(), nullable=False),
        sa.Column("should_retry", sa.Boolean(), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_delay_ms", sa.Integer(), nullable=True),
        sa.Column("request_url", sa.String(), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("selector_used", sa.String(), nullable=True),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["crawler_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["history_id"],
            ["crawler_execution_history.history_id"],
            ondelete="SET NULL",
        ),
        sa.PrimaryKeyConstraint("failure_id"),
    )
    op.create_index(
        "idx_crawler_failures_category_time",
        "crawler_failures",
        ["category", "created_at"],
        unique=False,
    )
    for column in ("task_id", "worker_id", "category"):
        op.create_index(
            f"ix_crawler_failures_{column}",
            "crawler_failures",
            [column],
            unique=False,
        )

    op.create_table(
        "crawler_retry_records",
        sa.Column("config_identifier", sa.String(), nullable=False),
        sa.Column("symbol_code", sa.String(), nullable=False),
        sa.Column("report_type", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint(
            "config_identifier",
            "symbol_code",
            "report_type",
            name="pk_crawler_retry_records",
        ),
    )
    op.create_index(
        "idx_crawler_retry_records_symbol_region",
        "crawler_retry_records",
        ["symbol_code", "region"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("crawler_retry_records")
    op.drop_table("crawler_failures")
    op.drop_table("crawler_execution_history")
    op.drop_table("crawler_workers")
    op.drop_table("crawler_task_events")
    op.drop_table("crawler_tasks")
