"""Orchestration worker: progress-tracked tool-execution runs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from jobrelay.engine.executor import (
    ExecutionContext,
    ExecutionRequest,
    ExecutionResult,
    ToolExecutionEngine,
)
from jobrelay.engine.tools import ToolRegistry
from jobrelay.errors import LeaseLost, ModelCallError, ValidationError
from jobrelay.queue.models import (
    ORCHESTRATION_QUEUE,
    AdmissionPolicy,
    FailureClass,
    JobView,
    QueueOutcome,
)
from jobrelay.queue.repository import JobStore
from jobrelay.workers.base import QueueWorker, Resolution
from jobrelay.workers.notification import NotificationKind, NotificationMessage
from jobrelay.workers.progress import ProgressState, ProgressTracker

logger = logging.getLogger(__name__)

BUDGET_EXCEEDED_TEXT = (
    "Your organization has reached its monthly AI budget. "
    "Ask an administrator to raise the limit to continue."
)


@dataclass(slots=True)
class OrchestrationRequest:
    """Validated orchestration payload."""

    organization_id: str
    user_id: str | None
    session_id: str | None
    text: str
    reply_to: dict[str, Any] = field(default_factory=dict)
    source: str | None = None


def parse_request(job: JobView, *, max_chars: int) -> OrchestrationRequest:
    """Validate an orchestration payload; raises `ValidationError`."""

    payload = job.payload
    text = payload.get("request_text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Request text is empty")
    if len(text) > max_chars:
        raise ValidationError(f"Request text is too long ({len(text)} > {max_chars} characters)")
    reply_to = payload.get("reply_to")
    return OrchestrationRequest(
        organization_id=job.organization_id,
        user_id=payload.get("user_id") or job.user_id,
        session_id=payload.get("session_id"),
        text=text.strip(),
        reply_to=reply_to if isinstance(reply_to, dict) else {},
        source=payload.get("source"),
    )


class OrchestrationWorker(QueueWorker):
    """Runs one orchestration job per slot through the tool-execution engine.

    Progress: STARTED -> VALIDATED -> PROCESSING -> FINALIZING -> COMPLETED,
    or FAILED from any of them, tracked per lease. Every outcome that ends
    the job for good enqueues a notification so the user is never left
    without an answer. The lease is renewed before every model call, so a
    long tool loop is never handed to a second worker mid-run.
    """

    queue = ORCHESTRATION_QUEUE

    def __init__(  # noqa: PLR0913
        self,
        *,
        jobs: JobStore,
        engine: ToolExecutionEngine,
        tools: ToolRegistry,
        progress: ProgressTracker,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        max_request_chars: int = 20_000,
    ) -> None:
        super().__init__(jobs=jobs, worker_id=worker_id, poll_interval_seconds=poll_interval_seconds)
        self.engine = engine
        self.tools = tools
        self.progress = progress
        self.max_request_chars = max_request_chars

    def handle(self, job: JobView) -> Resolution:
        self.progress.start(job, session_id=job.payload.get("session_id"))
        try:
            request = parse_request(job, max_chars=self.max_request_chars)
        except ValidationError as error:
            fallback = OrchestrationRequest(
                organization_id=job.organization_id,
                user_id=job.user_id,
                session_id=job.payload.get("session_id"),
                text="",
                reply_to=_dict(job.payload.get("reply_to")),
            )
            return self._fail_permanently(
                job,
                fallback,
                error=str(error),
                failure_class=FailureClass.VALIDATION,
                kind=NotificationKind.ERROR,
                text=f"Your request could not be processed: {error}",
            )

        self.progress.advance(job.job_id, ProgressState.VALIDATED, run=job.deliveries)
        self.progress.advance(job.job_id, ProgressState.PROCESSING, run=job.deliveries)

        try:
            result = self.engine.execute(
                ExecutionRequest(text=request.text),
                self.tools,
                ExecutionContext(
                    organization_id=request.organization_id,
                    user_id=request.user_id,
                    job_id=job.job_id,
                    session_id=request.session_id,
                    cancel_requested=lambda: self.jobs.is_cancel_requested(job.job_id),
                    heartbeat=lambda: self.jobs.extend_lease(
                        job.job_id,
                        lease_token=str(job.lease_token),
                    ),
                ),
            )
        except LeaseLost:
            self.progress.fail(job.job_id, run=job.deliveries, detail="lease lost")
            raise
        except ModelCallError as error:
            if error.transient:
                return self._retry(
                    job,
                    request,
                    error=str(error),
                    failure_class=FailureClass.TRANSIENT,
                )
            return self._fail_permanently(
                job,
                request,
                error=str(error),
                failure_class=FailureClass.NON_RETRYABLE,
                kind=NotificationKind.ERROR,
                text=f"Your request failed: {error}",
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Execution of %s failed", job.key)
            return self._retry(
                job,
                request,
                error=f"{type(error).__name__}: {error}",
                failure_class=FailureClass.TRANSIENT,
            )
        finally:
            self._claim_budget_alert(request)

        if result.canceled:
            self.progress.fail(job.job_id, run=job.deliveries, detail="canceled")
            logger.info("Orchestration %s canceled after %d rounds", job.key, result.rounds)
            return self.ack(job, outcome=QueueOutcome.CANCELED)

        if result.budget_exceeded:
            return self._fail_permanently(
                job,
                request,
                error=result.error or "Monthly budget exceeded",
                failure_class=FailureClass.BUDGET_EXCEEDED,
                kind=NotificationKind.BUDGET_EXCEEDED,
                text=BUDGET_EXCEEDED_TEXT,
            )

        return self._complete(job, request, result)

    def _complete(
        self,
        job: JobView,
        request: OrchestrationRequest,
        result: ExecutionResult,
    ) -> Resolution:
        self.progress.advance(job.job_id, ProgressState.FINALIZING, run=job.deliveries)
        self._notify(
            job,
            request,
            kind=NotificationKind.RESULT,
            text=result.result_text,
            details={
                "rounds": result.rounds,
                "truncated": result.truncated,
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
                "tool_calls": [call.name for call in result.tool_calls],
            },
        )
        self.progress.advance(job.job_id, ProgressState.COMPLETED, run=job.deliveries)
        logger.info(
            "Orchestration %s completed in %d rounds (truncated=%s)",
            job.key,
            result.rounds,
            result.truncated,
        )
        return self.ack(job)

    def _fail_permanently(  # noqa: PLR0913
        self,
        job: JobView,
        request: OrchestrationRequest,
        *,
        error: str,
        failure_class: FailureClass,
        kind: NotificationKind,
        text: str,
    ) -> Resolution:
        self.progress.fail(job.job_id, run=job.deliveries, detail=error)
        self._notify(
            job,
            request,
            kind=kind,
            text=text,
            details={"failure_class": failure_class.value, "error": error},
        )
        return self.resolve_failure(job, error=error, failure_class=failure_class)

    def _retry(
        self,
        job: JobView,
        request: OrchestrationRequest,
        *,
        error: str,
        failure_class: FailureClass,
    ) -> Resolution:
        self.progress.fail(job.job_id, run=job.deliveries, detail=error)
        resolution = self.resolve_failure(job, error=error, failure_class=failure_class)
        if resolution == Resolution.DEAD_LETTERED:
            self._notify(
                job,
                request,
                kind=NotificationKind.ERROR,
                text="Your request failed after several attempts. Please try again later.",
                details={"failure_class": failure_class.value, "error": error},
            )
        return resolution

    def _notify(
        self,
        job: JobView,
        request: OrchestrationRequest,
        *,
        kind: NotificationKind,
        text: str,
        details: dict[str, Any],
    ) -> None:
        message = NotificationMessage(
            kind=kind,
            organization_id=request.organization_id,
            text=text,
            idempotency_key=f"{job.job_id}:{kind.value}",
            user_id=request.user_id,
            origin_job_id=job.job_id,
            session_id=request.session_id,
            reply_to=request.reply_to,
            details=details,
        )
        self.jobs.enqueue(message.to_job())

    def _claim_budget_alert(self, request: OrchestrationRequest) -> None:
        try:
            alert = self.engine.guard.claim_alert(request.organization_id)
            if alert is None:
                return
            message = NotificationMessage(
                kind=NotificationKind.BUDGET_ALERT,
                organization_id=request.organization_id,
                text=alert.message,
                idempotency_key=(
                    f"budget_alert:{request.organization_id}:"
                    f"{alert.status.month_bucket}:{alert.level.value}"
                ),
                user_id=request.user_id,
                session_id=request.session_id,
                reply_to=request.reply_to,
                details={
                    "level": alert.level.value,
                    "percent_used": alert.status.percent_used,
                    "budget_cents": alert.status.budget_cents,
                    "spent_cents": alert.status.spent_cents,
                },
            )
            self.jobs.enqueue(message.to_job(), admission=AdmissionPolicy.DROP)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Budget alert check failed for organization=%s",
                request.organization_id,
                exc_info=True,
            )


def _dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}
