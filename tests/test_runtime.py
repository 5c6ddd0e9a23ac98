from __future__ import annotations

import json
import time
from pathlib import Path

import allure
import httpx
import pytest

from jobrelay.config import Settings
from jobrelay.engine.backend import (
    HttpModelClient,
    ModelRequest,
    ScriptedModelClient,
    ToolSchema,
)
from jobrelay.engine.backend.http_client import parse_messages_response
from jobrelay.errors import ModelCallError
from jobrelay.queue.models import (
    EVENTS_QUEUE,
    KNOWN_QUEUES,
    NOTIFICATIONS_QUEUE,
    ORCHESTRATION_QUEUE,
    JobCreate,
)
from jobrelay.queue.repository import JobStore
from jobrelay.runtime import WorkerFactory, build_channel, build_model_client
from jobrelay.workers.events import EventWorker
from jobrelay.workers.notification import LogChannel, NotificationWorker, WebhookChannel
from jobrelay.workers.orchestration import OrchestrationWorker
from jobrelay.workers.pool import WorkerPool

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Runtime Assembly"),
]


def _request() -> ModelRequest:
    return ModelRequest(
        model="claude-sonnet-4-5",
        messages=[{"role": "user", "content": "hi"}],
        tools=[ToolSchema(name="builtin__echo", description="Echo", input_schema={})],
        max_tokens=256,
        system="Be brief.",
    )


def _http_client(handler: object) -> HttpModelClient:
    return HttpModelClient(
        base_url="https://models.example.com/",
        api_key="secret",
        model="claude-sonnet-4-5",
        transport=httpx.MockTransport(handler),  # type: ignore[arg-type]
    )


def test_factory_builds_one_worker_type_per_queue(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "runtime.db")
    factory = WorkerFactory(settings, client=ScriptedModelClient.echo())

    workers = {queue: factory(queue, f"w-{queue}") for queue in KNOWN_QUEUES}

    assert isinstance(workers[EVENTS_QUEUE], EventWorker)
    assert isinstance(workers[ORCHESTRATION_QUEUE], OrchestrationWorker)
    assert isinstance(workers[NOTIFICATIONS_QUEUE], NotificationWorker)
    assert workers[ORCHESTRATION_QUEUE].engine.max_rounds == 10  # type: ignore[attr-defined]
    for worker in workers.values():
        worker.jobs.close()
    with pytest.raises(ValueError, match="No worker for queue"):
        factory("billing", "w-billing")


def test_model_client_and_channel_follow_settings(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "runtime.db")

    settings.engine.provider = "scripted"
    assert isinstance(build_model_client(settings), ScriptedModelClient)
    settings.engine.provider = "anthropic"
    assert isinstance(build_model_client(settings), HttpModelClient)

    assert isinstance(build_channel(settings), LogChannel)
    settings.worker.notify_webhook_url = "https://hooks.example.com/notify"
    assert isinstance(build_channel(settings), WebhookChannel)


def test_http_client_sends_messages_request() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "content": [
                    {"type": "text", "text": "Calling a tool."},
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "builtin__echo",
                        "input": {"text": "hi"},
                    },
                ],
                "usage": {"input_tokens": 11, "output_tokens": 7},
                "stop_reason": "tool_use",
            },
        )

    response = _http_client(_handler).complete(_request())

    assert str(seen[0].url) == "https://models.example.com/v1/messages"
    assert seen[0].headers["x-api-key"] == "secret"
    body = json.loads(seen[0].content)
    assert body["system"] == "Be brief."
    assert body["tools"][0]["name"] == "builtin__echo"
    assert response.text == "Calling a tool."
    assert [(call.call_id, call.arguments) for call in response.tool_calls] == [
        ("toolu_1", {"text": "hi"}),
    ]
    assert (response.usage.input_tokens, response.usage.output_tokens) == (11, 7)
    assert response.stop_reason == "tool_use"


@pytest.mark.parametrize(
    ("status", "transient"),
    [(429, True), (500, True), (529, True), (400, False), (401, False)],
)
def test_http_client_status_codes_map_to_retryability(status: int, transient: bool) -> None:
    client = _http_client(
        lambda request: httpx.Response(status, json={"error": {"message": "upstream said no"}}),
    )

    with pytest.raises(ModelCallError, match="upstream said no") as raised:
        client.complete(_request())

    assert raised.value.transient is transient
    assert raised.value.status_code == status


def test_http_client_error_carries_billed_usage() -> None:
    client = _http_client(
        lambda request: httpx.Response(
            500,
            json={
                "error": {"message": "stream interrupted"},
                "usage": {"input_tokens": 900, "output_tokens": 55},
            },
        ),
    )

    with pytest.raises(ModelCallError, match="stream interrupted") as raised:
        client.complete(_request())

    assert (raised.value.input_tokens, raised.value.output_tokens) == (900, 55)


def test_http_client_timeouts_are_transient() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ModelCallError, match="timed out") as raised:
        _http_client(_handler).complete(_request())

    assert raised.value.transient is True


def test_parse_tolerates_missing_usage_and_unknown_blocks() -> None:
    response = parse_messages_response({"content": [{"type": "thinking"}, "junk"]})

    assert response.text == ""
    assert response.tool_calls == []
    assert response.usage.input_tokens == 0


def test_pool_drains_the_pipeline_and_stops(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "pool.db")
    settings.worker.poll_interval_seconds = 0.01
    settings.engine.provider = "scripted"
    for queue in settings.queues.values():
        queue.concurrency = 2
    store = JobStore(settings.db_path, settings=settings)
    store.init_schema()
    for index in range(6):
        store.enqueue(
            JobCreate(
                queue=EVENTS_QUEUE,
                payload={
                    "source": "api",
                    "organization_id": "org-1",
                    "request_id": f"r-{index}",
                    "text": f"request {index}",
                },
                organization_id="org-1",
            ),
        )
    channel = LogChannel()
    pool = WorkerPool(settings=settings, build_worker=WorkerFactory(settings, channel=channel))

    pool.start()
    deadline = time.monotonic() + 30
    while store.list_jobs(limit=None) and time.monotonic() < deadline:
        time.sleep(0.05)
    pool.stop()
    summaries = pool.join(timeout=10)
    store.close()

    assert sorted(message.text for message in channel.delivered) == [
        f"Echo: request {index}" for index in range(6)
    ]
    assert {queue: summary.succeeded for queue, summary in summaries.items()} == {
        EVENTS_QUEUE: 6,
        ORCHESTRATION_QUEUE: 6,
        NOTIFICATIONS_QUEUE: 6,
    }
    with pytest.raises(RuntimeError, match="already started"):
        pool.start()
