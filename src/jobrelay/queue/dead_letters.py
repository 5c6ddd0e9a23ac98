"""Dead-letter records: listing, operator replay, and batch recovery."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from jobrelay.errors import JobRelayError, NotFound, RateLimited
from jobrelay.queue.failure_classifier import classify_failure_reason
from jobrelay.queue.models import DeadLetterView, JobCreate, JobView, QueueOutcome
from jobrelay.queue.repository import JobStore, to_dead_letter_view
from jobrelay.storage.common import to_db_datetime, to_utc_aware
from jobrelay.storage.sqlmodel_models import DeadLetter

logger = logging.getLogger(__name__)

RECOVERY_BASE_DELAY = timedelta(minutes=5)
RECOVERY_BACKOFF_FACTOR = 3
RECOVERY_MAX_DELAY = timedelta(hours=6)


@dataclass(slots=True)
class RecoveryReport:
    """Outcome counts of one recovery batch."""

    scanned: int = 0
    retried: int = 0
    skipped: int = 0
    notified: int = 0
    replayed_job_ids: list[str] = field(default_factory=list)
    skip_reasons: Counter[str] = field(default_factory=Counter)
    non_retryable_reasons: Counter[str] = field(default_factory=Counter)


def recovery_delay(replay_count: int) -> timedelta:
    """Wait before the next automatic replay: 5 min x 3^replays, capped at 6 h."""

    delay = RECOVERY_BASE_DELAY * (RECOVERY_BACKOFF_FACTOR**replay_count)
    return min(delay, RECOVERY_MAX_DELAY)


class DeadLetterStore:
    """Read and replay jobs that exhausted their attempts or failed permanently.

    Records are immutable audit entries: replay enqueues a fresh job and
    only bumps the replay bookkeeping on the record.
    """

    def __init__(self, jobs: JobStore, *, max_replays: int | None = None) -> None:
        self.jobs = jobs
        self.engine = jobs.engine
        self.max_replays = (
            max_replays if max_replays is not None else jobs.settings.worker.dead_letter_max_replays
        )

    def list(
        self,
        *,
        organization_id: str | None = None,
        queue: str | None = None,
        limit: int | None = 50,
    ) -> list[DeadLetterView]:
        with Session(self.engine) as session:
            statement = select(DeadLetter).order_by(col(DeadLetter.failed_at).desc())
            if organization_id is not None:
                statement = statement.where(DeadLetter.organization_id == organization_id)
            if queue is not None:
                statement = statement.where(DeadLetter.queue == queue)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [to_dead_letter_view(row) for row in rows]

    def get(self, dead_letter_id: str) -> DeadLetterView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DeadLetter).where(DeadLetter.dead_letter_id == dead_letter_id),
            ).one_or_none()
        return to_dead_letter_view(row) if row is not None else None

    def count_by_queue(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DeadLetter.queue, func.count()).group_by(col(DeadLetter.queue)),
            ).all()
        return {queue: int(count) for queue, count in rows}

    def replay(self, dead_letter_id: str) -> JobView:
        """Re-enqueue a fresh job (attempt 0) into the record's original queue.

        The replay is a normal admission: it is rate limited with the queue's
        admission policy and may raise `RateLimited`.
        """

        record = self.get(dead_letter_id)
        if record is None:
            raise NotFound(f"Dead-letter record not found: {dead_letter_id}")

        job = self.jobs.enqueue(
            JobCreate(
                queue=record.queue,
                payload=record.payload,
                organization_id=record.organization_id,
                user_id=record.user_id,
                priority=record.priority,
                max_attempts=record.max_attempts,
            ),
        )
        if job is None:
            raise JobRelayError(f"Replay of {record.key} was dropped by admission control")

        now = self.jobs.now()
        with Session(self.engine) as session:
            session.exec(  # type: ignore[call-overload]
                sa_update(DeadLetter)
                .where(col(DeadLetter.dead_letter_id) == dead_letter_id)
                .values(
                    replay_count=col(DeadLetter.replay_count) + 1,
                    last_replayed_at=to_db_datetime(now),
                    last_replay_job_id=job.job_id,
                ),
            )
            session.commit()
        self.jobs.increment_counter(record.queue, QueueOutcome.REPLAYED)
        logger.info(
            "Replayed %s into %s as job %s (replay #%d)",
            record.key,
            record.queue,
            job.job_id,
            record.replay_count + 1,
        )
        return job

    def recover_batch(self, *, limit: int = 50) -> RecoveryReport:
        """Replay up to `limit` retryable records whose recovery backoff has elapsed.

        Records under the replay cap are scanned oldest first (by their last
        replay, else their failure) in pages until `limit` replays were made
        or the candidates run out. Non-retryable records are counted as
        `notified` for operator review and left untouched.
        """

        report = RecoveryReport()
        now = to_utc_aware(self.jobs.now())
        for record in self._recovery_candidates(page_size=max(limit, 1)):
            if report.retried >= limit:
                break
            report.scanned += 1
            classification = classify_failure_reason(record.failure_reason)
            if not classification.retryable:
                report.notified += 1
                report.non_retryable_reasons[classification.reason_code] += 1
                continue
            if _backoff_pending(record, now=now):
                _skip(report, "backoff_not_expired")
                continue
            try:
                job = self.replay(record.dead_letter_id)
            except RateLimited:
                _skip(report, "rate_limited")
                continue
            report.retried += 1
            report.replayed_job_ids.append(job.job_id)

        if report.notified:
            logger.warning(
                "Dead-letter recovery found %d non-retryable records: %s",
                report.notified,
                ", ".join(
                    f"{reason}={count}"
                    for reason, count in sorted(report.non_retryable_reasons.items())
                ),
            )
        logger.info(
            "Dead-letter recovery scanned=%d retried=%d skipped=%d notified=%d",
            report.scanned,
            report.retried,
            report.skipped,
            report.notified,
        )
        return report

    def _recovery_candidates(self, *, page_size: int) -> Iterator[DeadLetterView]:
        """Records below the replay cap, oldest anchor first, fetched page by page."""

        anchor = func.coalesce(col(DeadLetter.last_replayed_at), col(DeadLetter.failed_at))
        cursor: tuple[datetime, str] | None = None
        seen: set[str] = set()
        while True:
            with Session(self.engine) as session:
                statement = (
                    select(DeadLetter)
                    .where(col(DeadLetter.replay_count) < self.max_replays)
                    .order_by(anchor.asc(), col(DeadLetter.dead_letter_id).asc())
                    .limit(page_size)
                )
                if cursor is not None:
                    after, last_id = cursor
                    statement = statement.where(
                        or_(
                            anchor > after,
                            and_(anchor == after, col(DeadLetter.dead_letter_id) > last_id),
                        ),
                    )
                rows = session.exec(statement).all()
            if not rows:
                return
            last = rows[-1]
            cursor = (last.last_replayed_at or last.failed_at, last.dead_letter_id)
            for row in rows:
                # A replay moves the record's anchor forward into a later page.
                if row.dead_letter_id in seen:
                    continue
                seen.add(row.dead_letter_id)
                yield to_dead_letter_view(row)


def _backoff_pending(record: DeadLetterView, *, now: datetime) -> bool:
    anchor = record.last_replayed_at or record.failed_at
    return now < anchor + recovery_delay(record.replay_count)


def _skip(report: RecoveryReport, reason: str) -> None:
    report.skipped += 1
    report.skip_reasons[reason] += 1
