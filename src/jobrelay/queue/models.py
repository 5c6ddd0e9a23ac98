"""Domain models for the job store, dead letters, and counters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

EVENTS_QUEUE = "events"
ORCHESTRATION_QUEUE = "orchestration"
NOTIFICATIONS_QUEUE = "notifications"
KNOWN_QUEUES: tuple[str, ...] = (EVENTS_QUEUE, ORCHESTRATION_QUEUE, NOTIFICATIONS_QUEUE)


class JobStatus(str, Enum):
    """Durable job lifecycle states inside the active table."""

    WAITING = "waiting"
    ACTIVE = "active"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    VALIDATION = "validation"
    BUDGET_EXCEEDED = "budget_exceeded"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    TOOL_ERROR = "tool_error"
    DELIVERY_TRANSIENT = "delivery_transient"
    DELIVERY_PERMANENT = "delivery_permanent"


class AdmissionPolicy(str, Enum):
    """What enqueue does when the organization's window is exhausted."""

    REJECT = "reject"
    DEFER = "defer"
    DROP = "drop"
    BYPASS = "bypass"


class QueueOutcome(str, Enum):
    """Counter keys emitted by the job store."""

    ENQUEUED = "enqueued"
    DEFERRED = "deferred"
    RATE_LIMITED = "rate_limited"
    DROPPED = "dropped"
    ACKED = "acked"
    CANCELED = "canceled"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    REPLAYED = "replayed"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    queue: str
    payload: dict[str, Any]
    organization_id: str
    user_id: str | None = None
    priority: int = 100
    max_attempts: int | None = None
    delay_seconds: float = 0.0
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for workers and CLI."""

    job_id: str
    queue: str
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    attempt: int
    max_attempts: int
    deliveries: int
    organization_id: str
    user_id: str | None
    run_after: datetime
    worker_id: str | None
    lease_token: str | None
    lease_expires_at: datetime | None
    cancel_requested: bool
    failure_class: FailureClass | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> str:
        """Store key in `queue:jobId` form."""

        return f"{self.queue}:{self.job_id}"


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    queue: str
    event_type: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RetryOutcome:
    """Result of a retry call: rescheduled or moved to the dead-letter table."""

    retried: bool
    dead_lettered: bool
    attempt: int
    delay_seconds: float | None = None


@dataclass(slots=True)
class DeadLetterView:
    """Stored dead-letter record."""

    dead_letter_id: str
    queue: str
    payload: dict[str, Any]
    priority: int
    attempt: int
    max_attempts: int
    organization_id: str
    user_id: str | None
    failure_reason: str
    failure_class: FailureClass | None
    failed_at: datetime
    job_created_at: datetime
    replay_count: int
    last_replayed_at: datetime | None
    last_replay_job_id: str | None

    @property
    def key(self) -> str:
        """Store key in `deadletter:jobId` form."""

        return f"deadletter:{self.dead_letter_id}"


@dataclass(slots=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    admitted: bool
    organization_id: str
    queue_class: str
    count: int
    ceiling: int
    retry_after_seconds: float = 0.0
