"""SQLModel ORM tables for the job pipeline."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_lease", "queue", "status", "priority", "run_after"),
        Index("idx_jobs_org", "organization_id", "queue"),
    )

    job_id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=100)
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    deliveries: int = Field(default=0)
    organization_id: str
    user_id: str | None = None
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = Field(default=None, index=True)
    lease_token: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    cancel_requested: bool = Field(default=False)
    failure_class: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_events_job_time", "job_id", "created_at"),
        Index("idx_job_events_queue_type_time", "queue", "event_type", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(index=True)
    queue: str
    organization_id: str
    event_type: str
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_dead_letters_org_time", "organization_id", "failed_at"),)

    dead_letter_id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=100)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    organization_id: str
    user_id: str | None = None
    failure_reason: str = Field(sa_column=Column(Text, nullable=False))
    failure_class: str | None = None
    failed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    job_created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    replay_count: int = Field(default=0)
    last_replayed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_replay_job_id: str | None = None


class QueueCounter(SQLModel, table=True):
    __tablename__ = "queue_counters"  # type: ignore[bad-override]

    queue: str = Field(primary_key=True)
    outcome: str = Field(primary_key=True)
    count: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitHit(SQLModel, table=True):
    __tablename__ = "rate_limit_hits"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_rate_limit_hits_window", "organization_id", "queue_class", "admitted_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    organization_id: str
    queue_class: str
    admitted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RateLimitDenial(SQLModel, table=True):
    __tablename__ = "rate_limit_denials"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_rate_limit_denials_window", "organization_id", "queue_class", "denied_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    organization_id: str
    queue_class: str
    denied_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageLedgerEntry(SQLModel, table=True):
    __tablename__ = "usage_ledger"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_usage_ledger_org_month", "organization_id", "month_bucket"),)

    id: int | None = Field(default=None, primary_key=True)
    organization_id: str
    month_bucket: str
    job_id: str | None = None
    provider: str
    model: str
    input_tokens: int = Field(default=0)
    output_tokens: int = Field(default=0)
    cost_cents: float = Field(default=0.0)
    success: bool = Field(default=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrgBudget(SQLModel, table=True):
    __tablename__ = "org_budgets"  # type: ignore[bad-override]

    organization_id: str = Field(primary_key=True)
    monthly_budget_cents: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BudgetAlertSent(SQLModel, table=True):
    __tablename__ = "budget_alerts_sent"  # type: ignore[bad-override]

    organization_id: str = Field(primary_key=True)
    month_bucket: str = Field(primary_key=True)
    threshold: str = Field(primary_key=True)
    sent_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobProgress(SQLModel, table=True):
    __tablename__ = "job_progress"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    run: int = Field(default=0, primary_key=True)
    session_id: str | None = Field(default=None, index=True)
    organization_id: str
    attempt: int = Field(default=0)
    state: str
    percent: int = Field(default=0)
    detail: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    archived_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class IdempotencyKey(SQLModel, table=True):
    __tablename__ = "idempotency_keys"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    scope: str
    job_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Delivery(SQLModel, table=True):
    __tablename__ = "deliveries"  # type: ignore[bad-override]

    idempotency_key: str = Field(primary_key=True)
    job_id: str
    channel: str
    receipt_json: str | None = Field(default=None, sa_column=Column(Text))
    delivered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
