"""Ingestion boundary: accepts raw events into the `events` queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from jobrelay.errors import ValidationError
from jobrelay.queue.models import EVENTS_QUEUE, AdmissionPolicy, JobCreate, JobView
from jobrelay.queue.repository import JobStore
from jobrelay.workers.events import SUPPORTED_SOURCES

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubmitEvent:
    """High-level command to accept one inbound event."""

    payload: dict[str, Any]
    priority: int = 100
    admission: AdmissionPolicy | None = None


class IngestionService:
    """Admits inbound events under the organization's ingestion rate limit.

    Only the fields needed for admission are checked here; full
    normalization happens in the event worker.
    """

    def __init__(self, *, jobs: JobStore) -> None:
        self.jobs = jobs

    def submit_event(self, command: SubmitEvent) -> JobView | None:
        """Enqueue the event; raises `RateLimited` under the default `reject` policy."""

        payload = command.payload
        source = str(payload.get("source") or "").lower()
        if source not in SUPPORTED_SOURCES:
            raise ValidationError(
                f"Unsupported event source {source or '<missing>'!r}; "
                f"expected one of: {', '.join(SUPPORTED_SOURCES)}",
            )
        organization_id = payload.get("organization_id") or payload.get("team_id")
        if not organization_id:
            raise ValidationError("Event needs an organization_id")

        job = self.jobs.enqueue(
            JobCreate(
                queue=EVENTS_QUEUE,
                payload=payload,
                organization_id=str(organization_id),
                user_id=_user_id(payload),
                priority=command.priority,
            ),
            admission=command.admission,
        )
        if job is not None:
            logger.info("Accepted %s event as %s", source, job.key)
        return job


def _user_id(payload: dict[str, Any]) -> str | None:
    event = payload.get("event")
    if isinstance(event, dict) and event.get("user"):
        return str(event["user"])
    user_id = payload.get("user_id")
    return str(user_id) if user_id else None
