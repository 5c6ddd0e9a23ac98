"""Orchestration progress state machine, persistence, and best-effort fan-out."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from jobrelay.errors import InvalidProgressTransition
from jobrelay.queue.models import JobView
from jobrelay.storage.common import optional_utc, to_db_datetime, to_utc_aware, utc_now
from jobrelay.storage.sqlmodel_models import JobProgress

logger = logging.getLogger(__name__)


class ProgressState(str, Enum):
    """Orchestration stages in the order a successful job passes them."""

    STARTED = "started"
    VALIDATED = "validated"
    PROCESSING = "processing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def percent(self) -> int:
        return _PERCENT[self]

    @property
    def terminal(self) -> bool:
        return self in (ProgressState.COMPLETED, ProgressState.FAILED)


_PERCENT = {
    ProgressState.STARTED: 0,
    ProgressState.VALIDATED: 20,
    ProgressState.PROCESSING: 50,
    ProgressState.FINALIZING: 80,
    ProgressState.COMPLETED: 100,
    ProgressState.FAILED: 0,
}

_ORDER = {
    ProgressState.STARTED: 0,
    ProgressState.VALIDATED: 1,
    ProgressState.PROCESSING: 2,
    ProgressState.FINALIZING: 3,
    ProgressState.COMPLETED: 4,
}


def check_transition(current: ProgressState, target: ProgressState) -> None:
    """Raise `InvalidProgressTransition` unless `current -> target` is allowed.

    Moves are strictly forward; FAILED is reachable from any non-terminal
    state; nothing follows COMPLETED or FAILED.
    """

    if current.terminal:
        raise InvalidProgressTransition(
            f"Progress is terminal ({current.value}); cannot move to {target.value}",
        )
    if target == ProgressState.FAILED:
        return
    if _ORDER[target] <= _ORDER[current]:
        raise InvalidProgressTransition(
            f"Progress cannot move backward: {current.value} -> {target.value}",
        )


def progress_key(job_id: str, run: int) -> str:
    """Subscription key for one lease of a job."""

    return f"{job_id}#{run}"


@dataclass(slots=True)
class ProgressUpdate:
    """One published progress snapshot."""

    job_id: str
    run: int
    session_id: str | None
    organization_id: str
    attempt: int
    state: ProgressState
    percent: int
    detail: str | None
    updated_at: datetime
    archived_at: datetime | None = None

    @property
    def key(self) -> str:
        return progress_key(self.job_id, self.run)


class ProgressSubscription:
    """Bounded mailbox of updates for one run or session key."""

    def __init__(self, broadcaster: ProgressBroadcaster, key: str, maxsize: int) -> None:
        self.key = key
        self.updates: queue.Queue[ProgressUpdate] = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._broadcaster = broadcaster

    def get(self, timeout: float | None = None) -> ProgressUpdate | None:
        try:
            return self.updates.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressUpdate]:
        items: list[ProgressUpdate] = []
        while True:
            try:
                items.append(self.updates.get_nowait())
            except queue.Empty:
                return items

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)


class ProgressBroadcaster:
    """Fan-out of progress updates to subscribers keyed by run key or session id.

    Publishing never blocks: a full subscriber mailbox drops the update.
    """

    def __init__(self, *, mailbox_size: int = 32) -> None:
        self.mailbox_size = mailbox_size
        self._subscribers: dict[str, list[ProgressSubscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str) -> ProgressSubscription:
        subscription = ProgressSubscription(self, key, self.mailbox_size)
        with self._lock:
            self._subscribers.setdefault(key, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.key, None)

    def publish(self, update: ProgressUpdate) -> int:
        """Offer `update` to every matching subscriber; returns how many accepted it."""

        keys = [update.key]
        if update.session_id:
            keys.append(update.session_id)
        with self._lock:
            targets = [sub for key in keys for sub in self._subscribers.get(key, [])]

        delivered = 0
        for subscription in targets:
            try:
                subscription.updates.put_nowait(update)
            except queue.Full:
                subscription.dropped += 1
                logger.info(
                    "Dropped progress update %s for subscriber %s (mailbox full)",
                    update.state.value,
                    subscription.key,
                )
                continue
            delivered += 1
        return delivered


class ProgressTracker:
    """Authoritative progress rows in `job_progress`, published after each write.

    Every lease of a job opens its own row keyed by `(job_id, run)`, where
    `run` is the job's delivery count. Methods without an explicit `run`
    act on the newest row of the job. A COMPLETED or FAILED row is final.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        broadcaster: ProgressBroadcaster | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.broadcaster = broadcaster
        self._clock = clock

    def start(self, job: JobView, *, session_id: str | None = None) -> ProgressUpdate:
        """Open the STARTED row for the job's current lease."""

        statement = sqlite_insert(JobProgress.__table__).values(  # type: ignore[arg-type]
            job_id=job.job_id,
            run=job.deliveries,
            session_id=session_id,
            organization_id=job.organization_id,
            attempt=job.attempt,
            state=ProgressState.STARTED.value,
            percent=ProgressState.STARTED.percent,
            detail=None,
            updated_at=to_db_datetime(self._clock()),
            archived_at=None,
        )
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                statement.on_conflict_do_nothing(index_elements=["job_id", "run"]),
            )
            session.commit()
        if result.rowcount != 1:
            logger.debug("Progress run %s already open", progress_key(job.job_id, job.deliveries))
        return self._publish(job.job_id, job.deliveries)

    def advance(
        self,
        job_id: str,
        state: ProgressState,
        *,
        run: int | None = None,
        detail: str | None = None,
    ) -> ProgressUpdate:
        with Session(self.engine) as session:
            row = _select_run(session, job_id, run)
            if row is None:
                raise InvalidProgressTransition(f"No progress started for job {job_id}")
            current = ProgressState(row.state)
            check_transition(current, state)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(JobProgress)
                .where(
                    col(JobProgress.job_id) == job_id,
                    col(JobProgress.run) == row.run,
                    col(JobProgress.state) == current.value,
                )
                .values(
                    state=state.value,
                    percent=state.percent,
                    detail=detail,
                    updated_at=to_db_datetime(self._clock()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidProgressTransition(
                    f"Progress for job {job_id} changed concurrently; refusing {state.value}",
                )
            session.commit()
            run = row.run
        return self._publish(job_id, run)

    def fail(
        self,
        job_id: str,
        *,
        run: int | None = None,
        detail: str | None = None,
    ) -> ProgressUpdate | None:
        """Move to FAILED unless progress is already terminal."""

        current = self.get(job_id, run=run)
        if current is None or current.state.terminal:
            return current
        return self.advance(job_id, ProgressState.FAILED, run=current.run, detail=detail)

    def archive(self, job_id: str) -> bool:
        """Stamp every unarchived run of the job; False when nothing was left to archive."""

        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(JobProgress)
                .where(
                    col(JobProgress.job_id) == job_id,
                    col(JobProgress.archived_at).is_(None),
                )
                .values(archived_at=to_db_datetime(self._clock())),
            )
            session.commit()
        return bool(result.rowcount)

    def get(self, job_id: str, *, run: int | None = None) -> ProgressUpdate | None:
        with Session(self.engine) as session:
            row = _select_run(session, job_id, run)
        return _to_update(row) if row is not None else None

    def list_for_session(self, session_id: str) -> list[ProgressUpdate]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobProgress)
                .where(JobProgress.session_id == session_id)
                .order_by(col(JobProgress.updated_at).asc(), col(JobProgress.run).asc()),
            ).all()
        return [_to_update(row) for row in rows]

    def _publish(self, job_id: str, run: int) -> ProgressUpdate:
        update = self.get(job_id, run=run)
        if update is None:
            raise InvalidProgressTransition(f"Progress row vanished for job {job_id}")
        if self.broadcaster is not None:
            try:
                self.broadcaster.publish(update)
            except Exception:  # noqa: BLE001
                logger.warning("Progress publish failed for %s", update.key, exc_info=True)
        return update


def _select_run(session: Session, job_id: str, run: int | None) -> JobProgress | None:
    statement = select(JobProgress).where(JobProgress.job_id == job_id)
    if run is not None:
        statement = statement.where(JobProgress.run == run)
    return session.exec(statement.order_by(col(JobProgress.run).desc()).limit(1)).first()


def _to_update(row: JobProgress) -> ProgressUpdate:
    return ProgressUpdate(
        job_id=row.job_id,
        run=row.run,
        session_id=row.session_id,
        organization_id=row.organization_id,
        attempt=row.attempt,
        state=ProgressState(row.state),
        percent=row.percent,
        detail=row.detail,
        updated_at=to_utc_aware(row.updated_at),
        archived_at=optional_utc(row.archived_at),
    )
