"""Assembly of workers and their collaborators from `Settings`."""

from __future__ import annotations

import logging

from jobrelay.budget.guard import BudgetGuard
from jobrelay.budget.ledger import UsageLedger
from jobrelay.config import Settings
from jobrelay.engine.backend import HttpModelClient, ModelClient, ScriptedModelClient
from jobrelay.engine.executor import ToolExecutionEngine
from jobrelay.engine.tools import BuiltinToolProvider, ToolProvider, ToolRegistry
from jobrelay.queue.models import EVENTS_QUEUE, NOTIFICATIONS_QUEUE, ORCHESTRATION_QUEUE
from jobrelay.queue.repository import JobStore
from jobrelay.workers.base import QueueWorker
from jobrelay.workers.events import EventWorker
from jobrelay.workers.notification import (
    LogChannel,
    NotificationChannel,
    NotificationWorker,
    WebhookChannel,
)
from jobrelay.workers.orchestration import OrchestrationWorker
from jobrelay.workers.progress import ProgressBroadcaster, ProgressTracker

logger = logging.getLogger(__name__)


def build_model_client(settings: Settings) -> ModelClient:
    """HTTP client for the configured provider; the `scripted` provider echoes requests."""

    engine = settings.engine
    if engine.provider == "scripted":
        return ScriptedModelClient.echo()
    if not engine.api_key:
        logger.warning("JOBRELAY_MODEL_API_KEY is empty; model calls will likely be rejected")
    return HttpModelClient(
        base_url=engine.base_url,
        api_key=engine.api_key,
        model=engine.model,
        provider=engine.provider,
        timeout_seconds=engine.timeout_seconds,
    )


def build_channel(settings: Settings) -> NotificationChannel:
    if settings.worker.notify_webhook_url:
        return WebhookChannel(
            settings.worker.notify_webhook_url,
            timeout_seconds=settings.worker.notify_timeout_seconds,
        )
    return LogChannel()


class WorkerFactory:
    """Builds one worker per slot, each with its own `JobStore` connection.

    Model client, tool providers, channel, and broadcaster may be injected;
    otherwise they come from settings.
    """

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        client: ModelClient | None = None,
        providers: list[ToolProvider] | None = None,
        channel: NotificationChannel | None = None,
        broadcaster: ProgressBroadcaster | None = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.providers = providers
        self.channel = channel
        self.broadcaster = broadcaster or ProgressBroadcaster()

    def __call__(self, queue: str, worker_id: str) -> QueueWorker:
        return self.build(queue, worker_id)

    def build(self, queue: str, worker_id: str) -> QueueWorker:
        settings = self.settings
        jobs = JobStore(settings.db_path, settings=settings)
        poll = settings.worker.poll_interval_seconds
        if queue == EVENTS_QUEUE:
            return EventWorker(jobs=jobs, worker_id=worker_id, poll_interval_seconds=poll)
        if queue == ORCHESTRATION_QUEUE:
            ledger = UsageLedger(jobs.engine)
            guard = BudgetGuard(jobs.engine, ledger=ledger, settings=settings.budget)
            return OrchestrationWorker(
                jobs=jobs,
                engine=ToolExecutionEngine(
                    client=self.client or build_model_client(settings),
                    ledger=ledger,
                    guard=guard,
                    max_rounds=settings.engine.max_tool_rounds,
                    max_tokens=settings.engine.max_tokens,
                ),
                tools=ToolRegistry(self.providers or [BuiltinToolProvider()]),
                progress=ProgressTracker(jobs.engine, broadcaster=self.broadcaster),
                worker_id=worker_id,
                poll_interval_seconds=poll,
                max_request_chars=settings.engine.max_request_chars,
            )
        if queue == NOTIFICATIONS_QUEUE:
            return NotificationWorker(
                jobs=jobs,
                channel=self.channel or build_channel(settings),
                progress=ProgressTracker(jobs.engine, broadcaster=self.broadcaster),
                worker_id=worker_id,
                poll_interval_seconds=poll,
            )
        jobs.close()
        raise ValueError(f"No worker for queue {queue!r}")
