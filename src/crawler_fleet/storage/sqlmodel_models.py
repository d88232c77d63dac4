"""SQLModel ORM tables for coordinator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel


class CrawlerTask(SQLModel, table=True):
    __tablename__ = "crawler_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_crawler_tasks_queue",
            "status",
            "region",
            "data_type",
            "priority",
            "next_run_at",
        ),
        Index("idx_crawler_tasks_symbol", "symbol_code", "region"),
    )

    task_id: str = Field(primary_key=True)
    symbol_code: str = Field(index=True)
    region: str = Field(index=True)
    data_type: str = Field(index=True)
    config_identifier: str = Field(index=True)
    schedule_kind: str = Field(default="once")
    schedule_expression: str | None = None
    priority: int = Field(default=0, index=True)
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    timeout_seconds: int = Field(default=300)
    assigned_worker_id: str | None = Field(default=None, index=True)
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    required_config_version: str | None = None
    version_constraints_json: str | None = Field(default=None, sa_column=Column(Text))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    resolution: str | None = Field(default=None, index=True)
    last_failure_category: str | None = None
    next_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CrawlerTaskEvent(SQLModel, table=True):
    __tablename__ = "crawler_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_crawler_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("crawler_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CrawlerWorker(SQLModel, table=True):
    __tablename__ = "crawler_workers"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    name: str
    status: str = Field(index=True)
    supported_regions_json: str = Field(sa_column=Column(Text, nullable=False))
    supported_data_types_json: str = Field(sa_column=Column(Text, nullable=False))
    max_concurrent_tasks: int = Field(default=1)
    current_load: int = Field(default=0)
    version: str | None = None
    memory_usage_mb: float | None = None
    cpu_percent: float | None = None
    total_tasks_completed: int = Field(default=0)
    total_tasks_failed: int = Field(default=0)
    last_heartbeat: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CrawlerExecutionHistory(SQLModel, table=True):
    __tablename__ = "crawler_execution_history"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_crawler_history_task_time", "task_id", "created_at"),)

    history_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("crawler_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    worker_id: str | None = Field(default=None, index=True)
    attempt_no: int
    status: str = Field(index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    crawled_from: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    crawled_to: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    records_fetched: int | None = None
    records_saved: int | None = None
    data_quality_score: float | None = None
    execution_time_ms: int | None = None
    memory_usage_mb: float | None = None
    network_requests: int | None = None
    error_type: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    output_location: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CrawlerFailure(SQLModel, table=True):
    __tablename__ = "crawler_failures"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_crawler_failures_category_time", "category", "created_at"),)

    failure_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("crawler_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    history_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("crawler_execution_history.history_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    worker_id: str | None = Field(default=None, index=True)
    category: str = Field(index=True)
    reason: str
    classifier_version: int
    matched_rule: str
    error_code: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    retry_attempt: int
    should_retry: bool
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    retry_delay_ms: int | None = None
    request_url: str | None = None
    response_status: int | None = None
    selector_used: str | None = None
    resolution: str | None = None
    resolved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RetryRecordRow(SQLModel, table=True):
    __tablename__ = "crawler_retry_records"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint(
            "config_identifier",
            "symbol_code",
            "report_type",
            name="pk_crawler_retry_records",
        ),
        Index("idx_crawler_retry_records_symbol_region", "symbol_code", "region"),
    )

    config_identifier: str
    symbol_code: str
    report_type: str
    region: str
    reason: str
    retry_count: int
    max_retries: int
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
