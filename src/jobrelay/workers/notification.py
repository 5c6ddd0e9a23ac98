"""Notification worker and delivery channels."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from jobrelay.errors import DeliveryError, ValidationError
from jobrelay.queue.models import NOTIFICATIONS_QUEUE, FailureClass, JobCreate, JobView
from jobrelay.queue.repository import JobStore
from jobrelay.workers.base import QueueWorker, Resolution
from jobrelay.workers.progress import ProgressTracker

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class NotificationKind(str, Enum):
    """What the notification tells the user."""

    RESULT = "result"
    ERROR = "error"
    BUDGET_EXCEEDED = "budget_exceeded"
    BUDGET_ALERT = "budget_alert"


@dataclass(slots=True)
class NotificationMessage:
    """Payload of one `notifications` job."""

    kind: NotificationKind
    organization_id: str
    text: str
    idempotency_key: str
    user_id: str | None = None
    origin_job_id: str | None = None
    session_id: str | None = None
    reply_to: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "organization_id": self.organization_id,
            "text": self.text,
            "idempotency_key": self.idempotency_key,
            "user_id": self.user_id,
            "origin_job_id": self.origin_job_id,
            "session_id": self.session_id,
            "reply_to": self.reply_to,
            "details": self.details,
        }

    def to_job(self) -> JobCreate:
        return JobCreate(
            queue=NOTIFICATIONS_QUEUE,
            payload=self.to_payload(),
            organization_id=self.organization_id,
            user_id=self.user_id,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> NotificationMessage:
        try:
            kind = NotificationKind(payload.get("kind"))
        except ValueError as error:
            raise ValidationError(f"Unknown notification kind: {payload.get('kind')!r}") from error
        organization_id = payload.get("organization_id")
        key = payload.get("idempotency_key")
        if not organization_id or not key:
            raise ValidationError("Notification needs organization_id and idempotency_key")
        reply_to = payload.get("reply_to")
        details = payload.get("details")
        return cls(
            kind=kind,
            organization_id=str(organization_id),
            text=str(payload.get("text") or ""),
            idempotency_key=str(key),
            user_id=payload.get("user_id"),
            origin_job_id=payload.get("origin_job_id"),
            session_id=payload.get("session_id"),
            reply_to=reply_to if isinstance(reply_to, dict) else {},
            details=details if isinstance(details, dict) else {},
        )


class NotificationChannel(Protocol):
    """Outbound delivery boundary."""

    name: str

    def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        """Send `message`; return a receipt or raise `DeliveryError`."""


class LogChannel:
    """Writes notifications to the log; used when no webhook is configured."""

    name = "log"

    def __init__(self) -> None:
        self.delivered: list[NotificationMessage] = []

    def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        logger.info(
            "Notification %s for organization=%s session=%s: %s",
            message.kind.value,
            message.organization_id,
            message.session_id,
            message.text,
        )
        self.delivered.append(message)
        return {"channel": self.name}


class WebhookChannel:
    """POSTs notifications as JSON with an `Idempotency-Key` header.

    A `webhook_url` in the message's `reply_to` overrides the default URL.
    """

    name = "webhook"

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(timeout=timeout_seconds, transport=transport)

    def deliver(self, message: NotificationMessage) -> dict[str, Any]:
        url = message.reply_to.get("webhook_url") or self.url
        if not url:
            raise DeliveryError("No webhook URL for notification", transient=False)

        try:
            response = self._client.post(
                url,
                json=message.to_payload(),
                headers={"Idempotency-Key": message.idempotency_key},
            )
        except httpx.HTTPError as error:
            raise DeliveryError(f"Webhook request failed: {error}", transient=True) from error

        status = response.status_code
        if response.is_success:
            return {"channel": self.name, "status_code": status}
        transient = status in _TRANSIENT_STATUS_CODES or status >= 500
        raise DeliveryError(
            f"Webhook returned HTTP {status}: {response.text[:200]}",
            transient=transient,
        )

    def close(self) -> None:
        self._client.close()


class NotificationWorker(QueueWorker):
    """Delivers `notifications` jobs exactly once per idempotency key."""

    queue = NOTIFICATIONS_QUEUE

    def __init__(
        self,
        *,
        jobs: JobStore,
        channel: NotificationChannel,
        worker_id: str,
        progress: ProgressTracker | None = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        super().__init__(jobs=jobs, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds)
        self.channel = channel
        self.progress = progress

    def handle(self, job: JobView) -> Resolution:
        try:
            message = NotificationMessage.from_payload(job.payload)
        except ValidationError as error:
            return self.resolve_failure(job, error=str(error), failure_class=FailureClass.VALIDATION)

        if self.jobs.is_delivered(message.idempotency_key):
            logger.info(
                "Notification %s already delivered; acking %s",
                message.idempotency_key,
                job.key,
            )
            self._archive_origin(message)
            return self.ack(job)

        try:
            receipt = self.channel.deliver(message)
        except DeliveryError as error:
            logger.warning("Delivery of %s failed: %s", job.key, error)
            return self.resolve_failure(
                job,
                error=str(error),
                failure_class=(
                    FailureClass.DELIVERY_TRANSIENT
                    if error.transient
                    else FailureClass.DELIVERY_PERMANENT
                ),
            )

        self.jobs.record_delivery(
            message.idempotency_key,
            job_id=job.job_id,
            channel=self.channel.name,
            receipt=receipt,
        )
        self._archive_origin(message)
        return self.ack(job)

    def _archive_origin(self, message: NotificationMessage) -> None:
        if self.progress is None or message.origin_job_id is None:
            return
        if message.kind == NotificationKind.BUDGET_ALERT:
            return
        self.progress.archive(message.origin_job_id)
