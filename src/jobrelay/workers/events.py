"""Event worker: normalize inbound events, drop duplicates, start orchestration."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from jobrelay.errors import ValidationError
from jobrelay.queue.models import (
    EVENTS_QUEUE,
    ORCHESTRATION_QUEUE,
    FailureClass,
    JobCreate,
    JobView,
)
from jobrelay.queue.repository import JobStore
from jobrelay.workers.base import QueueWorker, Resolution

logger = logging.getLogger(__name__)

EVENT_KEY_SCOPE = "event"
SUPPORTED_SOURCES = ("slack", "api")

_MENTION_RE = re.compile(r"<@[A-Z0-9]+(?:\|[^>]*)?>")
_JOB_ID_NAMESPACE = uuid.UUID("6f1c8f2e-4d7b-4f43-9a57-1b0c1ad5e9d1")


@dataclass(slots=True)
class CanonicalEvent:
    """Source-independent request handed to orchestration."""

    source: str
    organization_id: str
    user_id: str | None
    session_id: str
    request_text: str
    idempotency_key: str
    reply_to: dict[str, Any] = field(default_factory=dict)
    source_metadata: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "request_text": self.request_text,
            "idempotency_key": self.idempotency_key,
            "reply_to": self.reply_to,
            "source_metadata": self.source_metadata,
        }


def normalize_event(payload: dict[str, Any]) -> CanonicalEvent:
    """Build a `CanonicalEvent`; raises `ValidationError` for malformed events."""

    source = str(payload.get("source") or "").strip().lower()
    if source == "slack":
        return _normalize_slack(payload)
    if source == "api":
        return _normalize_api(payload)
    raise ValidationError(
        f"Unsupported event source {source or '<missing>'!r}; "
        f"expected one of: {', '.join(SUPPORTED_SOURCES)}",
    )


def orchestration_job_id(idempotency_key: str) -> str:
    """Stable orchestration job id for an event, so redelivery cannot fork work."""

    return str(uuid.uuid5(_JOB_ID_NAMESPACE, idempotency_key))


def _normalize_slack(payload: dict[str, Any]) -> CanonicalEvent:
    event = payload.get("event")
    if not isinstance(event, dict):
        raise ValidationError("Slack payload has no 'event' object")

    organization_id = _required(payload, "organization_id", fallback_key="team_id")
    channel = _required(event, "channel")
    ts = _required(event, "ts")
    thread_ts = str(event.get("thread_ts") or ts)
    text = _MENTION_RE.sub("", str(event.get("text") or "")).strip()
    text = re.sub(r"\s+", " ", text)

    return CanonicalEvent(
        source="slack",
        organization_id=organization_id,
        user_id=_optional(event, "user"),
        session_id=f"{channel}:{thread_ts}",
        request_text=text,
        idempotency_key=str(payload.get("event_id") or f"slack:{channel}:{ts}"),
        reply_to={"kind": "slack", "channel": channel, "thread_ts": thread_ts},
        source_metadata={
            "event_type": event.get("type"),
            "channel": channel,
            "ts": ts,
            "thread_ts": thread_ts,
        },
    )


def _normalize_api(payload: dict[str, Any]) -> CanonicalEvent:
    organization_id = _required(payload, "organization_id")
    request_id = _required(payload, "request_id")
    text = payload.get("text")
    if not isinstance(text, str):
        raise ValidationError("API event 'text' must be a string")

    reply_to: dict[str, Any] = {"kind": "api", "request_id": request_id}
    callback_url = payload.get("callback_url")
    if callback_url:
        reply_to["webhook_url"] = str(callback_url)

    return CanonicalEvent(
        source="api",
        organization_id=organization_id,
        user_id=_optional(payload, "user_id"),
        session_id=str(payload.get("session_id") or request_id),
        request_text=text.strip(),
        idempotency_key=f"api:{organization_id}:{request_id}",
        reply_to=reply_to,
        source_metadata={"request_id": request_id},
    )


def _required(payload: dict[str, Any], key: str, *, fallback_key: str | None = None) -> str:
    value = payload.get(key)
    if not value and fallback_key is not None:
        value = payload.get(fallback_key)
    if not value:
        raise ValidationError(f"Event field {key!r} is required")
    return str(value)


def _optional(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return str(value) if value else None


class EventWorker(QueueWorker):
    """Consumes `events` and enqueues one orchestration job per new event."""

    queue = EVENTS_QUEUE

    def __init__(
        self,
        *,
        jobs: JobStore,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        priority: int = 100,
    ) -> None:
        super().__init__(jobs=jobs, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds)
        self.priority = priority

    def handle(self, job: JobView) -> Resolution:
        try:
            event = normalize_event(job.payload)
        except ValidationError as error:
            logger.warning("Malformed event %s: %s", job.key, error)
            return self.resolve_failure(
                job,
                error=str(error),
                failure_class=FailureClass.VALIDATION,
            )

        if event.organization_id != job.organization_id:
            return self.resolve_failure(
                job,
                error=(
                    f"Event organization {event.organization_id!r} does not match "
                    f"job organization {job.organization_id!r}"
                ),
                failure_class=FailureClass.VALIDATION,
            )

        target_job_id = orchestration_job_id(event.idempotency_key)
        claimed = self.jobs.claim_idempotency_key(
            event.idempotency_key,
            scope=EVENT_KEY_SCOPE,
            job_id=target_job_id,
        )
        if not claimed and self.jobs.has_history(target_job_id):
            logger.info("Duplicate event %s ignored (%s)", event.idempotency_key, job.key)
            return self.ack(job)

        self.jobs.enqueue(
            JobCreate(
                queue=ORCHESTRATION_QUEUE,
                payload=event.to_payload(),
                organization_id=event.organization_id,
                user_id=event.user_id,
                priority=self.priority,
                job_id=target_job_id,
            ),
        )
        logger.info(
            "Event %s routed to %s:%s",
            event.idempotency_key,
            ORCHESTRATION_QUEUE,
            target_job_id,
        )
        return self.ack(job)
