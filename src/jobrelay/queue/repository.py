"""Persistent job store: enqueue, lease, ack, retry, and dead-letter transfer."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, case, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from jobrelay.config import Settings
from jobrelay.errors import LeaseLost, NotFound, RateLimited
from jobrelay.queue.models import (
    AdmissionPolicy,
    DeadLetterView,
    FailureClass,
    JobCreate,
    JobEventView,
    JobStatus,
    JobView,
    QueueOutcome,
    RetryOutcome,
)
from jobrelay.queue.rate_limiter import SlidingWindowRateLimiter
from jobrelay.storage.alembic_runner import upgrade_head
from jobrelay.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from jobrelay.storage.sqlmodel_models import (
    DeadLetter,
    Delivery,
    IdempotencyKey,
    Job,
    JobEvent,
    QueueCounter,
)

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000


class JobStore:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional UPDATE/DELETE on the previous state,
    so several worker processes can share one database file without
    in-process locks.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = db_path
        self.settings = settings or Settings(db_path=db_path)
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=self.settings.sqlite_busy_timeout_ms,
        )
        self.limiter = SlidingWindowRateLimiter(
            self.engine,
            settings=self.settings.rate_limits,
            clock=clock,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self._clock()

    def enqueue(
        self,
        payload: JobCreate,
        *,
        admission: AdmissionPolicy | None = None,
    ) -> JobView | None:
        """Create a waiting job after the organization's admission check.

        Returns `None` only when the admission policy is `drop` and the
        window is exhausted. Raises `RateLimited` under the `reject` policy.
        """

        queue_settings = self.settings.queue(payload.queue)
        policy = admission or queue_settings.admission
        delay_seconds = max(0.0, payload.delay_seconds)
        outcome = QueueOutcome.ENQUEUED

        if policy != AdmissionPolicy.BYPASS:
            decision = self.limiter.admit(payload.organization_id, queue_settings.rate_class)
            if not decision.admitted:
                self.increment_counter(payload.queue, QueueOutcome.RATE_LIMITED)
                if policy == AdmissionPolicy.REJECT:
                    raise RateLimited(
                        organization_id=payload.organization_id,
                        queue_class=queue_settings.rate_class,
                        retry_after_seconds=decision.retry_after_seconds,
                    )
                if policy == AdmissionPolicy.DROP:
                    logger.warning(
                        "Dropped %s job for organization=%s: rate limit exhausted",
                        payload.queue,
                        payload.organization_id,
                    )
                    self.increment_counter(payload.queue, QueueOutcome.DROPPED)
                    return None
                slot_in = self.limiter.reserve(payload.organization_id, queue_settings.rate_class)
                delay_seconds = max(delay_seconds, slot_in)
                outcome = QueueOutcome.DEFERRED

        now = self._clock()
        job_id = payload.job_id or str(uuid4())
        max_attempts = payload.max_attempts or queue_settings.max_attempts
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                queue=payload.queue,
                payload_json=dump_json(payload.payload),
                priority=payload.priority,
                status=JobStatus.WAITING.value,
                attempt=0,
                max_attempts=max_attempts,
                deliveries=0,
                organization_id=payload.organization_id,
                user_id=payload.user_id,
                run_after=to_db_datetime(now + timedelta(seconds=delay_seconds)),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                row=row,
                event_type=outcome.value,
                details={
                    "priority": payload.priority,
                    "max_attempts": max_attempts,
                    "delay_seconds": round(delay_seconds, 3),
                },
            )
            self._bump_counter(session=session, queue=payload.queue, outcome=outcome)
            session.commit()
            session.refresh(row)
            view = _to_job_view(row)

        logger.debug("Enqueued %s (organization=%s)", view.key, view.organization_id)
        return view

    def lease(
        self,
        queue: str,
        *,
        worker_id: str,
        visibility_timeout_seconds: int | None = None,
    ) -> JobView | None:
        """Atomically take the best ready job and hide it for the visibility timeout."""

        timeout = visibility_timeout_seconds or self.settings.queue(queue).visibility_timeout_seconds
        while True:
            now = self._clock()
            db_now = to_db_datetime(now)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.queue == queue,
                        or_(
                            and_(
                                col(Job.status) == JobStatus.WAITING.value,
                                col(Job.run_after) <= db_now,
                            ),
                            and_(
                                col(Job.status) == JobStatus.ACTIVE.value,
                                col(Job.lease_expires_at) <= db_now,
                            ),
                        ),
                    )
                    .order_by(
                        col(Job.priority).asc(),
                        col(Job.run_after).asc(),
                        col(Job.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                previous_status = JobStatus(candidate.status)
                previous_worker = candidate.worker_id
                lease_token = uuid4().hex
                result = session.exec(  # type: ignore[call-overload]
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == candidate.status,
                        col(Job.deliveries) == candidate.deliveries,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        worker_id=worker_id,
                        lease_token=lease_token,
                        lease_expires_at=to_db_datetime(now + timedelta(seconds=timeout)),
                        deliveries=candidate.deliveries + 1,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                leased = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
                if previous_status == JobStatus.ACTIVE:
                    logger.warning(
                        "Lease of %s held by %s expired; re-leasing to %s",
                        f"{leased.queue}:{leased.job_id}",
                        previous_worker,
                        worker_id,
                    )
                    self._add_event(
                        session=session,
                        row=leased,
                        event_type="lease_expired",
                        details={"previous_worker_id": previous_worker},
                    )
                self._add_event(
                    session=session,
                    row=leased,
                    event_type="leased",
                    details={
                        "worker_id": worker_id,
                        "attempt": leased.attempt,
                        "deliveries": leased.deliveries,
                        "visibility_timeout_seconds": timeout,
                    },
                )
                session.commit()
                return _to_job_view(leased)

    def extend_lease(
        self,
        job_id: str,
        *,
        lease_token: str,
        visibility_timeout_seconds: int | None = None,
    ) -> datetime:
        """Push the lease expiry forward for a job the caller still owns."""

        now = self._clock()
        with Session(self.engine) as session:
            row = self._owned_row(session=session, job_id=job_id, lease_token=lease_token)
            timeout = (
                visibility_timeout_seconds
                or self.settings.queue(row.queue).visibility_timeout_seconds
            )
            expires_at = now + timedelta(seconds=timeout)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.lease_token) == lease_token,
                    col(Job.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    lease_expires_at=to_db_datetime(expires_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseLost(f"Lease lost for job {job_id}")
            session.commit()
        return expires_at

    def ack(
        self,
        job_id: str,
        *,
        lease_token: str,
        outcome: QueueOutcome = QueueOutcome.ACKED,
    ) -> bool:
        """Remove a finished job. Returns False when the lease no longer belongs to the caller."""

        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(
                    Job.job_id == job_id,
                    Job.lease_token == lease_token,
                    Job.status == JobStatus.ACTIVE.value,
                ),
            ).one_or_none()
            if row is None:
                logger.warning("Late ack for job %s ignored: lease no longer owned", job_id)
                return False
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(Job).where(
                    col(Job.job_id) == job_id,
                    col(Job.lease_token) == lease_token,
                    col(Job.status) == JobStatus.ACTIVE.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            latency = (to_utc_aware(now) - to_utc_aware(row.created_at)).total_seconds()
            self._add_event(
                session=session,
                row=row,
                event_type=outcome.value,
                details={
                    "attempt": row.attempt,
                    "deliveries": row.deliveries,
                    "latency_seconds": round(max(0.0, latency), 3),
                    "worker_id": row.worker_id,
                },
            )
            self._bump_counter(session=session, queue=row.queue, outcome=outcome)
            session.commit()
        return True

    def retry(
        self,
        job_id: str,
        *,
        lease_token: str,
        error: str,
        failure_class: FailureClass = FailureClass.TRANSIENT,
    ) -> RetryOutcome:
        """Consume one attempt; re-schedule with backoff or dead-letter when exhausted."""

        now = self._clock()
        error = error[:_MAX_ERROR_CHARS]
        with Session(self.engine) as session:
            row = self._owned_row(session=session, job_id=job_id, lease_token=lease_token)
            queue = row.queue
            max_attempts = row.max_attempts
            attempt = row.attempt + 1
            if attempt >= row.max_attempts:
                self._move_to_dead_letters(
                    session=session,
                    row=row,
                    lease_token=lease_token,
                    attempt=attempt,
                    reason=error,
                    failure_class=failure_class,
                    now=now,
                )
                session.commit()
                return RetryOutcome(retried=False, dead_lettered=True, attempt=attempt)

            delay_seconds = self.compute_retry_delay(queue=row.queue, attempt=attempt)
            run_after = now + timedelta(seconds=delay_seconds)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.lease_token) == lease_token,
                    col(Job.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.WAITING.value,
                    attempt=attempt,
                    run_after=to_db_datetime(run_after),
                    worker_id=None,
                    lease_token=None,
                    lease_expires_at=None,
                    failure_class=failure_class.value,
                    last_error=error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseLost(f"Lease lost for job {job_id}")
            self._add_event(
                session=session,
                row=row,
                event_type="retry_scheduled",
                details={
                    "attempt": attempt,
                    "delay_seconds": round(delay_seconds, 3),
                    "run_after": to_utc_aware(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    "error": error,
                },
            )
            self._bump_counter(session=session, queue=row.queue, outcome=QueueOutcome.RETRIED)
            session.commit()

        logger.info(
            "Retry %d/%d scheduled for %s:%s in %.1fs (%s)",
            attempt,
            max_attempts,
            queue,
            job_id,
            delay_seconds,
            failure_class.value,
        )
        return RetryOutcome(
            retried=True,
            dead_lettered=False,
            attempt=attempt,
            delay_seconds=delay_seconds,
        )

    def fail(
        self,
        job_id: str,
        *,
        lease_token: str,
        reason: str,
        failure_class: FailureClass,
    ) -> None:
        """Dead-letter a job at once for a permanent error, without consuming an attempt."""

        now = self._clock()
        with Session(self.engine) as session:
            row = self._owned_row(session=session, job_id=job_id, lease_token=lease_token)
            self._move_to_dead_letters(
                session=session,
                row=row,
                lease_token=lease_token,
                attempt=row.attempt,
                reason=reason[:_MAX_ERROR_CHARS],
                failure_class=failure_class,
                now=now,
            )
            session.commit()

    def compute_retry_delay(self, *, queue: str, attempt: int) -> float:
        """Delay before attempt `attempt`: `base * 2^(attempt-1)` plus jitter in `[0, base)`."""

        base = self.settings.queue(queue).backoff_base_seconds
        return base * (2 ** max(attempt - 1, 0)) + self._random.random() * base

    def request_cancel(self, job_id: str) -> bool:
        """Cancel a job.

        A waiting job is removed at once and True is returned. A leased job is
        flagged; its worker stops between rounds and acks it as canceled.
        """

        now = self._clock()
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                raise NotFound(f"Job not found: {job_id}")

            if row.status == JobStatus.WAITING.value:
                result = session.exec(  # type: ignore[call-overload]
                    sa_delete(Job).where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.WAITING.value,
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        row=row,
                        event_type=QueueOutcome.CANCELED.value,
                        details={"while": JobStatus.WAITING.value},
                    )
                    self._bump_counter(
                        session=session,
                        queue=row.queue,
                        outcome=QueueOutcome.CANCELED,
                    )
                    session.commit()
                    return True
                session.rollback()

            session.exec(  # type: ignore[call-overload]
                sa_update(Job)
                .where(col(Job.job_id) == job_id)
                .values(cancel_requested=True, updated_at=to_db_datetime(now)),
            )
            self._add_event(
                session=session,
                row=row,
                event_type="cancel_requested",
                details={"worker_id": row.worker_id},
            )
            session.commit()
        return False

    def is_cancel_requested(self, job_id: str) -> bool:
        with Session(self.engine) as session:
            flag = session.exec(
                select(Job.cancel_requested).where(Job.job_id == job_id),
            ).one_or_none()
        return bool(flag)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        queue: str | None = None,
        status: JobStatus | None = None,
        organization_id: str | None = None,
        limit: int | None = 50,
    ) -> list[JobView]:
        """List jobs still in the store, newest first."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc())
            if queue is not None:
                statement = statement.where(Job.queue == queue)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if organization_id is not None:
                statement = statement.where(Job.organization_id == organization_id)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_job_events(
        self,
        *,
        job_id: str | None = None,
        queue: str | None = None,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[JobEventView]:
        """Audit events in chronological order."""

        with Session(self.engine) as session:
            statement = select(JobEvent).order_by(
                col(JobEvent.created_at).asc(),
                col(JobEvent.id).asc(),
            )
            if job_id is not None:
                statement = statement.where(JobEvent.job_id == job_id)
            if queue is not None:
                statement = statement.where(JobEvent.queue == queue)
            if event_type is not None:
                statement = statement.where(JobEvent.event_type == event_type)
            if since is not None:
                statement = statement.where(col(JobEvent.created_at) >= to_db_datetime(since))
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                queue=row.queue,
                event_type=row.event_type,
                created_at=to_utc_aware(row.created_at),
                details=load_json_object(row.details_json),
            )
            for row in rows
        ]

    def increment_counter(self, queue: str, outcome: QueueOutcome, amount: int = 1) -> None:
        with Session(self.engine) as session:
            self._bump_counter(session=session, queue=queue, outcome=outcome, amount=amount)
            session.commit()

    def list_counters(self) -> dict[str, dict[str, int]]:
        """Counter values as `{queue: {outcome: count}}`."""

        counters: dict[str, dict[str, int]] = {}
        with Session(self.engine) as session:
            rows = session.exec(select(QueueCounter)).all()
        for row in rows:
            counters.setdefault(row.queue, {})[row.outcome] = row.count
        return counters

    def count_jobs(self) -> dict[str, dict[str, int]]:
        """Active-table depth per queue: ready, delayed, and leased jobs."""

        db_now = to_db_datetime(self._clock())
        depths: dict[str, dict[str, int]] = {}
        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    Job.queue,
                    Job.status,
                    func.count(),
                    func.sum(case((col(Job.run_after) <= db_now, 1), else_=0)),
                ).group_by(col(Job.queue), col(Job.status)),
            ).all()
        for queue, status, count, due in rows:
            bucket = depths.setdefault(queue, {"waiting": 0, "delayed": 0, "active": 0})
            if status == JobStatus.ACTIVE.value:
                bucket["active"] += int(count)
            else:
                bucket["waiting"] += int(due or 0)
                bucket["delayed"] += int(count) - int(due or 0)
        return depths

    def claim_idempotency_key(self, key: str, *, scope: str, job_id: str | None = None) -> bool:
        """Insert `key` once; False when another caller already claimed it."""

        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sqlite_insert(IdempotencyKey.__table__)  # type: ignore[arg-type]
                .values(
                    key=key,
                    scope=scope,
                    job_id=job_id,
                    created_at=to_db_datetime(self._clock()),
                )
                .on_conflict_do_nothing(index_elements=["key"]),
            )
            session.commit()
        return result.rowcount == 1

    def idempotency_job_id(self, key: str) -> str | None:
        with Session(self.engine) as session:
            return session.exec(
                select(IdempotencyKey.job_id).where(IdempotencyKey.key == key),
            ).one_or_none()

    def has_history(self, job_id: str) -> bool:
        """True when any audit event exists for `job_id`, including acked jobs."""

        with Session(self.engine) as session:
            first = session.exec(
                select(JobEvent.id).where(JobEvent.job_id == job_id).limit(1),
            ).first()
        return first is not None

    def record_delivery(
        self,
        idempotency_key: str,
        *,
        job_id: str,
        channel: str,
        receipt: dict[str, Any] | None = None,
    ) -> bool:
        """Remember a completed delivery; False when the key was already delivered."""

        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sqlite_insert(Delivery.__table__)  # type: ignore[arg-type]
                .values(
                    idempotency_key=idempotency_key,
                    job_id=job_id,
                    channel=channel,
                    receipt_json=dump_json(receipt) if receipt else None,
                    delivered_at=to_db_datetime(self._clock()),
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"]),
            )
            session.commit()
        return result.rowcount == 1

    def is_delivered(self, idempotency_key: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(Delivery.idempotency_key).where(
                    Delivery.idempotency_key == idempotency_key,
                ),
            ).one_or_none()
        return row is not None

    def _owned_row(self, *, session: Session, job_id: str, lease_token: str) -> Job:
        row = session.exec(
            select(Job).where(
                Job.job_id == job_id,
                Job.lease_token == lease_token,
                Job.status == JobStatus.ACTIVE.value,
            ),
        ).one_or_none()
        if row is None:
            raise LeaseLost(f"Lease lost for job {job_id}")
        return row

    def _move_to_dead_letters(  # noqa: PLR0913
        self,
        *,
        session: Session,
        row: Job,
        lease_token: str,
        attempt: int,
        reason: str,
        failure_class: FailureClass,
        now: datetime,
    ) -> None:
        result = session.exec(  # type: ignore[call-overload]
            sa_delete(Job).where(
                col(Job.job_id) == row.job_id,
                col(Job.lease_token) == lease_token,
                col(Job.status) == JobStatus.ACTIVE.value,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise LeaseLost(f"Lease lost for job {row.job_id}")
        session.add(
            DeadLetter(
                dead_letter_id=row.job_id,
                queue=row.queue,
                payload_json=row.payload_json,
                priority=row.priority,
                attempt=attempt,
                max_attempts=row.max_attempts,
                organization_id=row.organization_id,
                user_id=row.user_id,
                failure_reason=reason,
                failure_class=failure_class.value,
                failed_at=to_db_datetime(now),
                job_created_at=row.created_at,
                replay_count=0,
            ),
        )
        self._add_event(
            session=session,
            row=row,
            event_type="dead_lettered",
            details={
                "attempt": attempt,
                "failure_class": failure_class.value,
                "reason": reason,
            },
        )
        self._bump_counter(session=session, queue=row.queue, outcome=QueueOutcome.DEAD_LETTERED)
        logger.error(
            "Dead-lettered %s:%s after attempt %d/%d (%s): %s",
            row.queue,
            row.job_id,
            attempt,
            row.max_attempts,
            failure_class.value,
            reason,
        )

    def _bump_counter(
        self,
        *,
        session: Session,
        queue: str,
        outcome: QueueOutcome,
        amount: int = 1,
    ) -> None:
        db_now = to_db_datetime(self._clock())
        statement = sqlite_insert(QueueCounter.__table__).values(  # type: ignore[arg-type]
            queue=queue,
            outcome=outcome.value,
            count=amount,
            updated_at=db_now,
        )
        session.exec(  # type: ignore[call-overload]
            statement.on_conflict_do_update(
                index_elements=["queue", "outcome"],
                set_={
                    "count": QueueCounter.__table__.c["count"] + amount,  # type: ignore[attr-defined]
                    "updated_at": db_now,
                },
            ),
        )

    def _add_event(
        self,
        *,
        session: Session,
        row: Job,
        event_type: str,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEvent(
                job_id=row.job_id,
                queue=row.queue,
                organization_id=row.organization_id,
                event_type=event_type,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        queue=row.queue,
        payload=load_json_object(row.payload_json),
        priority=row.priority,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        deliveries=row.deliveries,
        organization_id=row.organization_id,
        user_id=row.user_id,
        run_after=to_utc_aware(row.run_after),
        worker_id=row.worker_id,
        lease_token=row.lease_token,
        lease_expires_at=optional_utc(row.lease_expires_at),
        cancel_requested=row.cancel_requested,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def to_dead_letter_view(row: DeadLetter) -> DeadLetterView:
    return DeadLetterView(
        dead_letter_id=row.dead_letter_id,
        queue=row.queue,
        payload=load_json_object(row.payload_json),
        priority=row.priority,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        organization_id=row.organization_id,
        user_id=row.user_id,
        failure_reason=row.failure_reason,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        failed_at=to_utc_aware(row.failed_at),
        job_created_at=to_utc_aware(row.job_created_at),
        replay_count=row.replay_count,
        last_replayed_at=optional_utc(row.last_replayed_at),
        last_replay_job_id=row.last_replay_job_id,
    )
