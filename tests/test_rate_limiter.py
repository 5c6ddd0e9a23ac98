from __future__ import annotations

from typing import TYPE_CHECKING

import allure
import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from jobrelay.errors import RateLimited, ValidationError
from jobrelay.queue.models import (
    EVENTS_QUEUE,
    NOTIFICATIONS_QUEUE,
    ORCHESTRATION_QUEUE,
    AdmissionPolicy,
    JobCreate,
)
from jobrelay.queue.rate_limiter import DENIAL_RETENTION
from jobrelay.queue.repository import JobStore
from jobrelay.services import IngestionService, SubmitEvent
from jobrelay.storage.sqlmodel_models import RateLimitHit

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Admission Control"),
]


def _event(request_id: str, organization_id: str = "org-1") -> SubmitEvent:
    return SubmitEvent(
        payload={
            "source": "api",
            "organization_id": organization_id,
            "request_id": request_id,
            "text": "summarize the incident",
        },
    )


def test_ingestion_admits_ceiling_and_rejects_the_next_event(
    store: JobStore,
    clock: FakeClock,
) -> None:
    service = IngestionService(jobs=store)

    for index in range(100):
        assert service.submit_event(_event(f"req-{index}")) is not None

    with pytest.raises(RateLimited) as raised:
        service.submit_event(_event("req-100"))

    assert raised.value.organization_id == "org-1"
    assert raised.value.queue_class == "ingestion"
    assert 0 < raised.value.retry_after_seconds <= 60
    assert len(store.list_jobs(queue=EVENTS_QUEUE, limit=None)) == 100
    counters = store.list_counters()[EVENTS_QUEUE]
    assert counters["enqueued"] == 100
    assert counters["rate_limited"] == 1
    assert store.limiter.denial_counts(since=clock()) == {("org-1", "ingestion"): 1}


def test_window_slides_and_admits_again(store: JobStore, clock: FakeClock) -> None:
    service = IngestionService(jobs=store)
    for index in range(100):
        service.submit_event(_event(f"req-{index}"))
    with pytest.raises(RateLimited):
        service.submit_event(_event("req-100"))

    clock.advance(61)

    assert service.submit_event(_event("req-101")) is not None
    assert store.limiter.current_count("org-1", "ingestion") == 1


def test_organizations_have_independent_windows(store: JobStore) -> None:
    service = IngestionService(jobs=store)
    for index in range(100):
        service.submit_event(_event(f"req-{index}", organization_id="org-busy"))

    assert service.submit_event(_event("req-0", organization_id="org-quiet")) is not None


def test_defer_policy_delays_job_until_window_frees(store: JobStore, clock: FakeClock) -> None:
    store.settings.rate_limits.ceilings["orchestration"] = 1
    first = store.enqueue(
        JobCreate(queue=ORCHESTRATION_QUEUE, payload={}, organization_id="org-1"),
    )
    clock.advance(10)
    deferred = store.enqueue(
        JobCreate(queue=ORCHESTRATION_QUEUE, payload={}, organization_id="org-1"),
    )

    assert first is not None and deferred is not None
    assert (deferred.run_after - clock()).total_seconds() == pytest.approx(50, abs=0.01)
    assert store.list_counters()[ORCHESTRATION_QUEUE]["deferred"] == 1
    assert [event.event_type for event in store.list_job_events(job_id=deferred.job_id)] == [
        "deferred",
    ]


def test_deferred_jobs_book_consecutive_slots(store: JobStore, clock: FakeClock) -> None:
    store.settings.rate_limits.ceilings["orchestration"] = 1
    job = JobCreate(queue=ORCHESTRATION_QUEUE, payload={}, organization_id="org-1")
    store.enqueue(job)
    clock.advance(10)

    deferred = [store.enqueue(job) for _ in range(3)]

    waits = [(view.run_after - clock()).total_seconds() for view in deferred if view is not None]
    assert waits == pytest.approx([50, 110, 170], abs=0.01)
    assert store.limiter.current_count("org-1", "orchestration") == 4

    clock.advance(200)
    admitted = store.limiter.admit("org-1", "orchestration")
    assert admitted.admitted is False
    assert admitted.retry_after_seconds == pytest.approx(30, abs=0.01)


def test_drop_policy_returns_none(store: JobStore) -> None:
    store.settings.rate_limits.ceilings["notification"] = 1
    job = JobCreate(queue=NOTIFICATIONS_QUEUE, payload={}, organization_id="org-1")

    assert store.enqueue(job, admission=AdmissionPolicy.DROP) is not None
    assert store.enqueue(job, admission=AdmissionPolicy.DROP) is None
    assert store.list_counters()[NOTIFICATIONS_QUEUE]["dropped"] == 1


def test_bypass_policy_skips_the_limiter(store: JobStore) -> None:
    store.settings.rate_limits.ceilings["notification"] = 1
    for _ in range(5):
        store.enqueue(JobCreate(queue=NOTIFICATIONS_QUEUE, payload={}, organization_id="org-1"))

    assert store.limiter.current_count("org-1", "notification") == 0
    assert len(store.list_jobs(queue=NOTIFICATIONS_QUEUE)) == 5


def test_zero_ceiling_means_unlimited(store: JobStore) -> None:
    store.settings.rate_limits.ceilings["ingestion"] = 0
    decision = store.limiter.admit("org-1", "ingestion")

    assert decision.admitted is True
    assert decision.ceiling == 0


def test_prune_removes_admissions_outside_the_window(store: JobStore, clock: FakeClock) -> None:
    for _ in range(3):
        store.limiter.admit("org-1", "ingestion")
    clock.advance(120)

    assert store.limiter.prune() == 3
    assert store.limiter.current_count("org-1", "ingestion") == 0


def test_admission_log_stays_bounded_without_a_separate_prune(
    store: JobStore,
    clock: FakeClock,
) -> None:
    service = IngestionService(jobs=store)

    for index in range(50):
        assert service.submit_event(_event(f"req-{index}")) is not None
        clock.advance(120)

    with Session(store.engine) as session:
        rows = session.exec(select(func.count()).select_from(RateLimitHit)).one()
    assert rows == 1


def test_prune_drops_denials_past_retention(store: JobStore, clock: FakeClock) -> None:
    store.settings.rate_limits.ceilings["ingestion"] = 1
    store.limiter.admit("org-1", "ingestion")
    assert store.limiter.admit("org-1", "ingestion").admitted is False
    clock.advance(DENIAL_RETENTION.total_seconds() + 1)

    assert store.limiter.prune() == 2
    assert store.limiter.denial_counts(since=clock() - DENIAL_RETENTION * 2) == {}


def test_ingestion_rejects_unsupported_source(store: JobStore) -> None:
    service = IngestionService(jobs=store)

    with pytest.raises(ValidationError, match="Unsupported event source"):
        service.submit_event(SubmitEvent(payload={"source": "email", "organization_id": "o"}))
    with pytest.raises(ValidationError, match="organization_id"):
        service.submit_event(SubmitEvent(payload={"source": "api", "text": "hi"}))
