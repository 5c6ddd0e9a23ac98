"""Lease-handle-resolve loop shared by all queue workers."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from jobrelay.errors import LeaseLost
from jobrelay.queue.failure_classifier import classify_exception, is_retryable
from jobrelay.queue.models import FailureClass, JobView, QueueOutcome
from jobrelay.queue.repository import JobStore

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    """How a handled job left the worker."""

    ACKED = "acked"
    CANCELED = "canceled"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    LEASE_LOST = "lease_lost"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    canceled: int = 0
    retried: int = 0
    dead_lettered: int = 0
    lease_lost: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.canceled += other.canceled
        self.retried += other.retried
        self.dead_lettered += other.dead_lettered
        self.lease_lost += other.lease_lost
        self.idle_polls += other.idle_polls

    def count(self, resolution: Resolution) -> None:
        if resolution == Resolution.ACKED:
            self.succeeded += 1
        elif resolution == Resolution.CANCELED:
            self.canceled += 1
        elif resolution == Resolution.RETRIED:
            self.retried += 1
        elif resolution == Resolution.DEAD_LETTERED:
            self.dead_lettered += 1
        else:
            self.lease_lost += 1


class QueueWorker:
    """Leases one job at a time from `queue` and resolves it.

    Subclasses implement `handle`, which must ack, retry, or fail the job and
    report which. Exceptions escaping `handle` are classified and the job is
    retried or dead-lettered, so no lease is left to expire silently.
    """

    queue: str = ""

    def __init__(
        self,
        *,
        jobs: JobStore,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if not self.queue:
            raise ValueError(f"{type(self).__name__} must set a queue name")
        self.jobs = jobs
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, *, reason: str = "requested") -> None:
        if not self._stop.is_set():
            logger.info("Worker %s stopping (%s)", self.worker_id, reason)
        self._stop.set()

    def handle(self, job: JobView) -> Resolution:
        raise NotImplementedError

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.jobs.lease(self.queue, worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            resolution = self.handle(job)
        except LeaseLost:
            logger.warning(
                "Worker %s lost the lease on %s before resolving it",
                self.worker_id,
                job.key,
            )
            resolution = Resolution.LEASE_LOST
        except Exception as error:  # noqa: BLE001
            logger.exception("Unhandled error while processing %s", job.key)
            classification = classify_exception(error)
            resolution = self.resolve_failure(
                job,
                error=f"{type(error).__name__}: {error}",
                failure_class=classification.failure_class,
            )
        summary.count(resolution)
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, `max_tasks` jobs ran, or a stop is requested.

        Args:
            max_tasks: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self.stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def resolve_failure(
        self,
        job: JobView,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> Resolution:
        """Retry retryable failures; dead-letter the rest without consuming an attempt."""

        try:
            if is_retryable(failure_class):
                outcome = self.jobs.retry(
                    job.job_id,
                    lease_token=_token(job),
                    error=error,
                    failure_class=failure_class,
                )
                return Resolution.DEAD_LETTERED if outcome.dead_lettered else Resolution.RETRIED
            self.jobs.fail(
                job.job_id,
                lease_token=_token(job),
                reason=error,
                failure_class=failure_class,
            )
        except LeaseLost:
            logger.warning("Could not record failure of %s: lease lost", job.key)
            return Resolution.LEASE_LOST
        return Resolution.DEAD_LETTERED

    def ack(self, job: JobView, *, outcome: QueueOutcome = QueueOutcome.ACKED) -> Resolution:
        if not self.jobs.ack(job.job_id, lease_token=_token(job), outcome=outcome):
            return Resolution.LEASE_LOST
        return Resolution.CANCELED if outcome == QueueOutcome.CANCELED else Resolution.ACKED

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop.wait(max(0.0, seconds))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _token(job: JobView) -> str:
    if job.lease_token is None:
        raise LeaseLost(f"Job {job.job_id} was not leased")
    return job.lease_token
