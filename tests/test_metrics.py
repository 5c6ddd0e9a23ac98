from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import allure
import pytest

from jobrelay.budget.models import BudgetStatus
from jobrelay.queue.metrics import build_monitoring_snapshot, render_monitoring_lines
from jobrelay.queue.models import (
    EVENTS_QUEUE,
    KNOWN_QUEUES,
    NOTIFICATIONS_QUEUE,
    ORCHESTRATION_QUEUE,
    JobCreate,
    JobEventView,
)
from jobrelay.queue.repository import JobStore

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Monitoring"),
    allure.feature("Queue Health"),
]


def _ack_event(queue: str, latency: float | None) -> JobEventView:
    details = {} if latency is None else {"latency_seconds": latency}
    return JobEventView(
        event_id=1,
        job_id="job-1",
        queue=queue,
        event_type="acked",
        created_at=datetime(2026, 10, 19, 12, 0, tzinfo=UTC),
        details=details,
    )


def _status(budget_cents: int, spent_cents: float) -> BudgetStatus:
    return BudgetStatus(
        organization_id="org-1",
        month_bucket="2026-10",
        budget_cents=budget_cents,
        spent_cents=spent_cents,
        warning_threshold=0.80,
        critical_threshold=0.95,
    )


def test_snapshot_combines_depths_counters_and_latency() -> None:
    snapshot = build_monitoring_snapshot(
        queues=KNOWN_QUEUES,
        depths={ORCHESTRATION_QUEUE: {"waiting": 3, "delayed": 1, "active": 2}},
        counters={ORCHESTRATION_QUEUE: {"acked": 7, "retried": 2, "dead_lettered": 1}},
        dead_letter_counts={ORCHESTRATION_QUEUE: 1, "legacy": 4},
        ack_events=[
            _ack_event(ORCHESTRATION_QUEUE, 1.0),
            _ack_event(ORCHESTRATION_QUEUE, 2.0),
            _ack_event(ORCHESTRATION_QUEUE, 3.0),
            _ack_event(ORCHESTRATION_QUEUE, 4.0),
            _ack_event(ORCHESTRATION_QUEUE, 5.0),
            _ack_event(EVENTS_QUEUE, None),
        ],
        window_hours=2,
    )

    assert [queue.queue for queue in snapshot.queues] == [*KNOWN_QUEUES, "legacy"]
    orchestration = next(q for q in snapshot.queues if q.queue == ORCHESTRATION_QUEUE)
    assert (orchestration.waiting, orchestration.delayed, orchestration.active) == (3, 1, 2)
    assert orchestration.completed == 7
    assert orchestration.retried == 2
    assert orchestration.failed == 1
    assert orchestration.window_acks == 5
    assert orchestration.throughput_per_hour == 2.5
    assert orchestration.latency is not None
    assert orchestration.latency.sample_size == 5
    assert orchestration.latency.p50_seconds == 3.0
    assert orchestration.latency.p90_seconds == pytest.approx(4.6)
    assert orchestration.latency.p99_seconds == pytest.approx(4.96)

    events = next(q for q in snapshot.queues if q.queue == EVENTS_QUEUE)
    assert events.window_acks == 1
    assert events.latency is None
    assert snapshot.organizations == []


def test_organizations_collect_denials_and_budget() -> None:
    snapshot = build_monitoring_snapshot(
        queues=KNOWN_QUEUES,
        depths={},
        counters={},
        dead_letter_counts={},
        ack_events=[],
        window_hours=24,
        denial_counts={("org-2", "ingestion"): 4, ("org-1", "orchestration"): 1},
        budget_statuses=[_status(1000, 850.0)],
    )

    assert [org.organization_id for org in snapshot.organizations] == ["org-1", "org-2"]
    assert snapshot.organizations[0].rate_limit_denials == {"orchestration": 1}
    assert snapshot.organizations[0].budget is not None
    assert snapshot.organizations[1].budget is None

    lines = render_monitoring_lines(snapshot=snapshot)

    assert lines[0] == "Queue health (window=24h)"
    assert "  latency: none" in lines
    assert "Organizations:" in lines
    assert "  org-1: rate_limit_denials orchestration=1" in lines
    assert (
        "    budget month=2026-10 spent=850.00c limit=1000c used=85.0% status=warning" in lines
    )
    assert "  org-2: rate_limit_denials ingestion=4" in lines


def test_render_without_organizations() -> None:
    snapshot = build_monitoring_snapshot(
        queues=(NOTIFICATIONS_QUEUE,),
        depths={NOTIFICATIONS_QUEUE: {"waiting": 1}},
        counters={},
        dead_letter_counts={},
        ack_events=[_ack_event(NOTIFICATIONS_QUEUE, 0.5)],
        window_hours=1,
    )

    assert render_monitoring_lines(snapshot=snapshot) == [
        "Queue health (window=1h)",
        "notifications: waiting=1 delayed=0 active=0 completed=0 failed=0 "
        "retried=0 canceled=0 rate_limited=0 dead_letters=0",
        "  throughput=1.00/h acks_in_window=1",
        "  latency n=1 p50=0.50s p90=0.50s p99=0.50s",
        "Organizations: none",
    ]


def test_ack_events_carry_queue_latency(store: JobStore, clock: FakeClock) -> None:
    job = store.enqueue(JobCreate(queue=EVENTS_QUEUE, payload={}, organization_id="org-1"))
    assert job is not None
    clock.advance(4)
    leased = store.lease(EVENTS_QUEUE, worker_id="w-1")
    assert leased is not None
    clock.advance(2)
    assert store.ack(leased.job_id, lease_token=str(leased.lease_token)) is True

    acked = store.list_job_events(event_type="acked")

    assert len(acked) == 1
    assert acked[0].details["latency_seconds"] == 6.0
