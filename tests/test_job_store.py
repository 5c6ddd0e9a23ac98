from __future__ import annotations

import random
import threading
from typing import TYPE_CHECKING

import allure
import pytest

from jobrelay.config import Settings
from jobrelay.errors import LeaseLost, NotFound
from jobrelay.queue.dead_letters import DeadLetterStore
from jobrelay.queue.models import (
    EVENTS_QUEUE,
    NOTIFICATIONS_QUEUE,
    ORCHESTRATION_QUEUE,
    FailureClass,
    JobCreate,
    JobStatus,
    QueueOutcome,
)
from jobrelay.queue.repository import JobStore

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Job Store Reliability"),
]


def _job(queue: str = NOTIFICATIONS_QUEUE, **overrides: object) -> JobCreate:
    values: dict[str, object] = {
        "queue": queue,
        "payload": {"text": "hello"},
        "organization_id": "org-1",
    }
    values.update(overrides)
    return JobCreate(**values)  # type: ignore[arg-type]


def test_enqueue_creates_waiting_job_with_defaults(store: JobStore) -> None:
    job = store.enqueue(_job(ORCHESTRATION_QUEUE, user_id="u-1"))

    assert job is not None
    assert job.status == JobStatus.WAITING
    assert job.attempt == 0
    assert job.max_attempts == 3
    assert job.payload == {"text": "hello"}
    assert job.key == f"orchestration:{job.job_id}"
    assert [event.event_type for event in store.list_job_events(job_id=job.job_id)] == [
        "enqueued",
    ]


def test_lease_is_exclusive_until_visibility_timeout(store: JobStore) -> None:
    job = store.enqueue(_job())
    assert job is not None

    first = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1")
    second = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-2")

    assert first is not None
    assert first.job_id == job.job_id
    assert first.status == JobStatus.ACTIVE
    assert first.worker_id == "w-1"
    assert first.deliveries == 1
    assert second is None


def test_lease_prefers_lower_priority_then_earlier_run_after(
    store: JobStore,
    clock: FakeClock,
) -> None:
    late = store.enqueue(_job(priority=100))
    clock.advance(1)
    urgent = store.enqueue(_job(priority=10))
    clock.advance(1)
    later = store.enqueue(_job(priority=100))
    assert late is not None and urgent is not None and later is not None

    order = []
    for _ in range(3):
        leased = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1")
        assert leased is not None
        order.append(leased.job_id)

    assert order == [urgent.job_id, late.job_id, later.job_id]


def test_delayed_job_is_not_leased_before_run_after(store: JobStore, clock: FakeClock) -> None:
    store.enqueue(_job(delay_seconds=30))

    assert store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1") is None
    clock.advance(30)
    assert store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1") is not None


def test_crashed_worker_job_is_redelivered_and_late_ack_is_ignored(
    store: JobStore,
    clock: FakeClock,
) -> None:
    job = store.enqueue(_job())
    assert job is not None

    crashed = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-crashed", visibility_timeout_seconds=30)
    assert crashed is not None
    clock.advance(10)
    assert store.lease(NOTIFICATIONS_QUEUE, worker_id="w-2") is None

    clock.advance(21)
    recovered = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-2")
    assert recovered is not None
    assert recovered.job_id == job.job_id
    assert recovered.deliveries == 2
    assert recovered.attempt == 0
    assert recovered.lease_token != crashed.lease_token

    assert store.ack(job.job_id, lease_token=str(recovered.lease_token)) is True
    assert store.ack(job.job_id, lease_token=str(crashed.lease_token)) is False
    assert store.get_job(job.job_id) is None

    events = [event.event_type for event in store.list_job_events(job_id=job.job_id)]
    assert events == ["enqueued", "leased", "lease_expired", "leased", "acked"]
    assert store.list_counters()[NOTIFICATIONS_QUEUE]["acked"] == 1


def test_extend_lease_keeps_job_hidden(store: JobStore, clock: FakeClock) -> None:
    store.enqueue(_job())
    leased = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1", visibility_timeout_seconds=30)
    assert leased is not None

    clock.advance(20)
    store.extend_lease(
        leased.job_id,
        lease_token=str(leased.lease_token),
        visibility_timeout_seconds=30,
    )
    clock.advance(20)

    assert store.lease(NOTIFICATIONS_QUEUE, worker_id="w-2") is None
    with pytest.raises(LeaseLost):
        store.extend_lease(leased.job_id, lease_token="not-the-token")


def test_retry_delay_grows_exponentially_with_bounded_jitter(settings: Settings) -> None:
    settings.queues[ORCHESTRATION_QUEUE].backoff_base_seconds = 10.0
    jobs = JobStore(settings.db_path, settings=settings, rng=random.Random(1))
    try:
        for attempt in range(1, 6):
            for _ in range(20):
                delay = jobs.compute_retry_delay(queue=ORCHESTRATION_QUEUE, attempt=attempt)
                assert 10.0 * 2 ** (attempt - 1) <= delay < 10.0 * 2**attempt
    finally:
        jobs.close()


def test_retry_reschedules_with_backoff_and_keeps_error(store: JobStore, clock: FakeClock) -> None:
    job = store.enqueue(_job(ORCHESTRATION_QUEUE))
    assert job is not None
    leased = store.lease(ORCHESTRATION_QUEUE, worker_id="w-1")
    assert leased is not None

    outcome = store.retry(
        job.job_id,
        lease_token=str(leased.lease_token),
        error="upstream timeout",
    )

    assert outcome.retried is True
    assert outcome.dead_lettered is False
    assert outcome.attempt == 1
    assert outcome.delay_seconds is not None
    assert 1.0 <= outcome.delay_seconds < 2.0

    stored = store.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.WAITING
    assert stored.attempt == 1
    assert stored.last_error == "upstream timeout"
    assert stored.failure_class == FailureClass.TRANSIENT
    assert store.lease(ORCHESTRATION_QUEUE, worker_id="w-1") is None

    clock.advance(2)
    assert store.lease(ORCHESTRATION_QUEUE, worker_id="w-1") is not None


def test_exhausted_job_moves_to_dead_letters_and_replay_resets_attempts(
    store: JobStore,
    clock: FakeClock,
) -> None:
    job = store.enqueue(_job(ORCHESTRATION_QUEUE, payload={"request_text": "hi"}))
    assert job is not None

    outcomes = []
    for _ in range(3):
        leased = store.lease(ORCHESTRATION_QUEUE, worker_id="w-1")
        assert leased is not None
        outcomes.append(
            store.retry(job.job_id, lease_token=str(leased.lease_token), error="503 overloaded"),
        )
        clock.advance(10)

    assert [outcome.dead_lettered for outcome in outcomes] == [False, False, True]
    assert store.get_job(job.job_id) is None

    dead_letters = DeadLetterStore(store)
    record = dead_letters.get(job.job_id)
    assert record is not None
    assert record.attempt == 3
    assert record.max_attempts == 3
    assert record.failure_reason == "503 overloaded"
    assert record.payload == {"request_text": "hi"}
    assert record.key == f"deadletter:{job.job_id}"

    replayed = dead_letters.replay(job.job_id)

    assert replayed.queue == ORCHESTRATION_QUEUE
    assert replayed.attempt == 0
    assert replayed.status == JobStatus.WAITING
    assert replayed.payload == {"request_text": "hi"}
    after = dead_letters.get(job.job_id)
    assert after is not None
    assert after.replay_count == 1
    assert after.last_replay_job_id == replayed.job_id
    assert store.list_counters()[ORCHESTRATION_QUEUE]["replayed"] == 1


def test_fail_dead_letters_without_consuming_an_attempt(store: JobStore) -> None:
    job = store.enqueue(_job(EVENTS_QUEUE))
    assert job is not None
    leased = store.lease(EVENTS_QUEUE, worker_id="w-1")
    assert leased is not None

    store.fail(
        job.job_id,
        lease_token=str(leased.lease_token),
        reason="Event field 'channel' is required",
        failure_class=FailureClass.VALIDATION,
    )

    record = DeadLetterStore(store).get(job.job_id)
    assert record is not None
    assert record.attempt == 0
    assert record.failure_class == FailureClass.VALIDATION
    with pytest.raises(LeaseLost):
        store.fail(
            job.job_id,
            lease_token=str(leased.lease_token),
            reason="again",
            failure_class=FailureClass.VALIDATION,
        )


def test_replay_of_unknown_dead_letter_raises(store: JobStore) -> None:
    with pytest.raises(NotFound):
        DeadLetterStore(store).replay("missing")


def test_cancel_removes_waiting_job_and_flags_active_job(store: JobStore) -> None:
    waiting = store.enqueue(_job())
    active = store.enqueue(_job(priority=1))
    assert waiting is not None and active is not None
    leased = store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1")
    assert leased is not None and leased.job_id == active.job_id

    assert store.request_cancel(waiting.job_id) is True
    assert store.get_job(waiting.job_id) is None

    assert store.request_cancel(active.job_id) is False
    assert store.is_cancel_requested(active.job_id) is True
    assert store.ack(
        active.job_id,
        lease_token=str(leased.lease_token),
        outcome=QueueOutcome.CANCELED,
    )
    assert store.list_counters()[NOTIFICATIONS_QUEUE]["canceled"] == 2

    with pytest.raises(NotFound):
        store.request_cancel("missing")


def test_count_jobs_splits_ready_delayed_and_active(store: JobStore) -> None:
    store.enqueue(_job())
    store.enqueue(_job())
    store.enqueue(_job(delay_seconds=60))
    store.lease(NOTIFICATIONS_QUEUE, worker_id="w-1")

    assert store.count_jobs() == {NOTIFICATIONS_QUEUE: {"waiting": 1, "delayed": 1, "active": 1}}


def test_idempotency_key_and_delivery_are_claimed_once(store: JobStore) -> None:
    assert store.claim_idempotency_key("evt-1", scope="event", job_id="job-1") is True
    assert store.claim_idempotency_key("evt-1", scope="event", job_id="job-2") is False
    assert store.idempotency_job_id("evt-1") == "job-1"
    assert store.idempotency_job_id("evt-2") is None

    assert store.is_delivered("job-1:result") is False
    assert store.record_delivery("job-1:result", job_id="n-1", channel="log") is True
    assert store.record_delivery("job-1:result", job_id="n-2", channel="log") is False
    assert store.is_delivered("job-1:result") is True


def test_concurrent_workers_never_lease_the_same_job(settings: Settings) -> None:
    seed = JobStore(settings.db_path, settings=settings)
    seed.init_schema()
    for index in range(20):
        seed.enqueue(_job(payload={"index": index}))
    seed.close()

    leased_ids: list[str] = []
    lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        jobs = JobStore(settings.db_path, settings=settings)
        try:
            while True:
                job = jobs.lease(NOTIFICATIONS_QUEUE, worker_id=worker_id)
                if job is None:
                    return
                with lock:
                    leased_ids.append(job.job_id)
        finally:
            jobs.close()

    threads = [threading.Thread(target=_drain, args=(f"w-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(leased_ids) == 20
    assert len(set(leased_ids)) == 20
