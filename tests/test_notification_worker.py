from __future__ import annotations

import json
from typing import TYPE_CHECKING

import allure
import httpx
import pytest

from jobrelay.errors import DeliveryError, ValidationError
from jobrelay.queue.dead_letters import DeadLetterStore
from jobrelay.queue.models import NOTIFICATIONS_QUEUE, ORCHESTRATION_QUEUE, FailureClass, JobCreate
from jobrelay.queue.repository import JobStore
from jobrelay.workers.notification import (
    LogChannel,
    NotificationKind,
    NotificationMessage,
    NotificationWorker,
    WebhookChannel,
)
from jobrelay.workers.progress import ProgressState, ProgressTracker

if TYPE_CHECKING:
    from conftest import FakeClock

pytestmark = [
    allure.epic("Job Pipeline"),
    allure.feature("Notification Delivery"),
]


def _message(**overrides: object) -> NotificationMessage:
    values: dict[str, object] = {
        "kind": NotificationKind.RESULT,
        "organization_id": "org-1",
        "text": "Here is your answer.",
        "idempotency_key": "job-1:result",
        "origin_job_id": "job-1",
        "session_id": "s-1",
        "reply_to": {"kind": "api", "request_id": "r-1"},
    }
    values.update(overrides)
    return NotificationMessage(**values)  # type: ignore[arg-type]


def _webhook(handler: object) -> WebhookChannel:
    return WebhookChannel(
        "https://hooks.example.com/notify",
        transport=httpx.MockTransport(handler),  # type: ignore[arg-type]
    )


def test_message_round_trips_through_job_payload() -> None:
    message = _message(details={"rounds": 2})

    job = message.to_job()

    assert job.queue == NOTIFICATIONS_QUEUE
    assert NotificationMessage.from_payload(job.payload) == message
    with pytest.raises(ValidationError, match="Unknown notification kind"):
        NotificationMessage.from_payload({**job.payload, "kind": "sms"})
    with pytest.raises(ValidationError, match="idempotency_key"):
        NotificationMessage.from_payload({**job.payload, "idempotency_key": ""})


def test_webhook_posts_payload_with_idempotency_key() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    receipt = _webhook(_handler).deliver(_message())

    assert receipt == {"channel": "webhook", "status_code": 202}
    assert seen[0].url == "https://hooks.example.com/notify"
    assert seen[0].headers["Idempotency-Key"] == "job-1:result"
    assert json.loads(seen[0].content)["text"] == "Here is your answer."


def test_webhook_prefers_reply_to_url() -> None:
    seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200)

    _webhook(_handler).deliver(
        _message(reply_to={"kind": "api", "webhook_url": "https://client.example.com/cb"}),
    )

    assert seen == ["https://client.example.com/cb"]


@pytest.mark.parametrize(
    ("status", "transient"),
    [(500, True), (503, True), (429, True), (408, True), (400, False), (404, False)],
)
def test_webhook_status_codes_map_to_retryability(status: int, transient: bool) -> None:
    channel = _webhook(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(DeliveryError) as raised:
        channel.deliver(_message())

    assert raised.value.transient is transient


def test_webhook_connection_errors_are_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DeliveryError) as raised:
        _webhook(_handler).deliver(_message())

    assert raised.value.transient is True


def test_webhook_without_any_url_is_permanent_failure() -> None:
    channel = WebhookChannel(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    with pytest.raises(DeliveryError) as raised:
        channel.deliver(_message())

    assert raised.value.transient is False


def test_worker_delivers_records_and_archives_progress(store: JobStore, clock: FakeClock) -> None:
    origin = store.enqueue(
        JobCreate(queue=ORCHESTRATION_QUEUE, payload={}, organization_id="org-1"),
    )
    assert origin is not None
    progress = ProgressTracker(store.engine, clock=clock)
    progress.start(origin)
    progress.advance(origin.job_id, ProgressState.COMPLETED)
    store.enqueue(
        _message(idempotency_key=f"{origin.job_id}:result", origin_job_id=origin.job_id).to_job(),
    )
    channel = LogChannel()

    summary = NotificationWorker(
        jobs=store,
        channel=channel,
        worker_id="notify-1",
        progress=progress,
    ).run_once()

    assert summary.succeeded == 1
    assert [message.text for message in channel.delivered] == ["Here is your answer."]
    assert store.is_delivered(f"{origin.job_id}:result") is True
    archived = progress.get(origin.job_id)
    assert archived is not None
    assert archived.archived_at is not None


def test_already_delivered_key_is_acked_without_sending(store: JobStore) -> None:
    store.record_delivery("job-1:result", job_id="earlier", channel="log")
    store.enqueue(_message().to_job())
    channel = LogChannel()

    summary = NotificationWorker(jobs=store, channel=channel, worker_id="notify-1").run_once()

    assert summary.succeeded == 1
    assert channel.delivered == []


def test_transient_failures_retry_until_delivered(store: JobStore, clock: FakeClock) -> None:
    responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200)])
    store.enqueue(_message().to_job())
    worker = NotificationWorker(
        jobs=store,
        channel=_webhook(lambda request: next(responses)),
        worker_id="notify-1",
    )

    results = []
    for _ in range(3):
        results.append(worker.run_once())
        clock.advance(60)

    assert [summary.retried for summary in results] == [1, 1, 0]
    assert results[-1].succeeded == 1
    assert store.is_delivered("job-1:result") is True
    assert store.list_jobs(queue=NOTIFICATIONS_QUEUE) == []


def test_notifications_get_eight_attempts(store: JobStore, clock: FakeClock) -> None:
    store.enqueue(_message().to_job())
    worker = NotificationWorker(
        jobs=store,
        channel=_webhook(lambda request: httpx.Response(503)),
        worker_id="notify-1",
    )

    runs = 0
    while store.list_jobs(queue=NOTIFICATIONS_QUEUE):
        worker.run_once()
        runs += 1
        clock.advance(600)

    assert runs == 8
    record = DeadLetterStore(store).get(store.list_job_events(event_type="dead_lettered")[0].job_id)
    assert record is not None
    assert record.attempt == 8
    assert record.failure_class == FailureClass.DELIVERY_TRANSIENT


def test_permanent_failure_is_dead_lettered_at_once(store: JobStore) -> None:
    store.enqueue(_message().to_job())
    worker = NotificationWorker(
        jobs=store,
        channel=_webhook(lambda request: httpx.Response(410)),
        worker_id="notify-1",
    )

    summary = worker.run_once()

    assert summary.dead_lettered == 1
    records = DeadLetterStore(store).list()
    assert records[0].failure_class == FailureClass.DELIVERY_PERMANENT
    assert records[0].attempt == 0
