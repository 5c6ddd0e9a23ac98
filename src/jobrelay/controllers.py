"""Controllers for jobrelay CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from jobrelay.budget.guard import BudgetGuard
from jobrelay.budget.ledger import UsageLedger
from jobrelay.budget.models import BudgetStatus
from jobrelay.config import Settings
from jobrelay.errors import NotFound
from jobrelay.queue.dead_letters import DeadLetterStore
from jobrelay.queue.metrics import build_monitoring_snapshot, render_monitoring_lines
from jobrelay.queue.models import KNOWN_QUEUES, JobStatus, QueueOutcome
from jobrelay.queue.repository import JobStore
from jobrelay.runtime import WorkerFactory
from jobrelay.services import IngestionService, SubmitEvent
from jobrelay.workers.base import WorkerRunSummary
from jobrelay.workers.pool import WorkerPool
from jobrelay.workers.progress import ProgressTracker

ALL_QUEUES = "all"


@dataclass(slots=True)
class EventSubmitCommand:
    """CLI input for submitting one event."""

    db_path: Path | None
    organization_id: str | None
    text: str | None
    user_id: str | None = None
    request_id: str | None = None
    session_id: str | None = None
    callback_url: str | None = None
    payload_file: Path | None = None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    queue: str
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    pool: bool = False


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    queue: str | None
    status: str | None
    organization_id: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for inspecting or canceling one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class DeadLetterListCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    organization_id: str | None
    queue: str | None
    limit: int


@dataclass(slots=True)
class DeadLetterReplayCommand:
    """CLI input for one operator replay."""

    db_path: Path | None
    dead_letter_id: str


@dataclass(slots=True)
class DeadLetterRecoverCommand:
    """CLI input for batch recovery of retryable dead letters."""

    db_path: Path | None
    limit: int


@dataclass(slots=True)
class BudgetSetCommand:
    """CLI input for setting a monthly budget."""

    db_path: Path | None
    organization_id: str
    monthly_budget_cents: int


@dataclass(slots=True)
class BudgetShowCommand:
    """CLI input for budget status."""

    db_path: Path | None
    organization_id: str
    entries: int


@dataclass(slots=True)
class StatsCommand:
    """CLI input for the monitoring snapshot."""

    db_path: Path | None
    hours: int


class JobRelayCliController:
    """Coordinates ingestion, worker, queue inspection, and budget CLI operations."""

    def submit_event(self, command: EventSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        payload = _event_payload(command)
        with _job_store(settings) as jobs:
            job = IngestionService(jobs=jobs).submit_event(SubmitEvent(payload=payload))
        if job is None:
            return ["Event dropped by admission control."]
        return [
            f"Event accepted: job_id={job.job_id} queue={job.queue} "
            f"organization={job.organization_id}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.queue == ALL_QUEUES:
            queues = KNOWN_QUEUES
        else:
            settings.queue(command.queue)
            queues = (command.queue,)
        with _job_store(settings) as jobs:
            jobs.limiter.prune()
        factory = WorkerFactory(settings)

        if command.pool:
            pool = WorkerPool(settings=settings, build_worker=factory, queues=queues)
            return _summary_lines(pool.run())

        totals = {queue: WorkerRunSummary() for queue in queues}
        while True:
            processed = 0
            for queue in queues:
                worker = factory(queue, f"cli-{queue}-{uuid4().hex[:8]}")
                try:
                    summary = (
                        worker.run_once()
                        if command.once
                        else worker.run_loop(
                            max_tasks=command.max_tasks,
                            max_idle_polls=command.max_idle_polls,
                        )
                    )
                finally:
                    worker.jobs.close()
                totals[queue].add(summary)
                processed += summary.processed
            if command.once or len(queues) == 1 or processed == 0:
                break
        return _summary_lines(totals)

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status = JobStatus(command.status) if command.status else None
        with _job_store(settings) as jobs:
            items = jobs.list_jobs(
                queue=command.queue,
                status=status,
                organization_id=command.organization_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(items)}"]
        for job in items:
            lines.append(
                f"  {job.key} status={job.status.value} org={job.organization_id} "
                f"priority={job.priority} attempt={job.attempt}/{job.max_attempts} "
                f"run_after={job.run_after.isoformat()}"
                + (" cancel_requested" if job.cancel_requested else ""),
            )
        return lines

    def inspect_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            job = jobs.get_job(command.job_id)
            events = jobs.list_job_events(job_id=command.job_id)
            progress = ProgressTracker(jobs.engine).get(command.job_id)
        if job is None and not events:
            return [f"Job not found: {command.job_id}"]

        lines = [f"Job: {command.job_id}"]
        if job is None:
            lines.append("Status: resolved (no longer in the store)")
        else:
            lines.extend(
                [
                    f"Queue: {job.queue}",
                    f"Status: {job.status.value}",
                    f"Organization: {job.organization_id}",
                    f"Attempt: {job.attempt}/{job.max_attempts} deliveries={job.deliveries}",
                    f"Worker: {job.worker_id or '-'}",
                    f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
                    f"Error: {job.last_error or '-'}",
                ],
            )
        if progress is not None:
            lines.append(
                f"Progress: run={progress.run} {progress.state.value} {progress.percent}%"
                + (f" ({progress.detail})" if progress.detail else "")
                + (" archived" if progress.archived_at else ""),
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            details = json.dumps(event.details, sort_keys=True) if event.details else ""
            lines.append(f"  {event.created_at.isoformat()} {event.event_type} {details}".rstrip())
        return lines

    def cancel_job(self, command: JobCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            try:
                removed = jobs.request_cancel(command.job_id)
            except NotFound:
                return [f"Job not found: {command.job_id}"]
        if removed:
            return [f"Job canceled: {command.job_id}"]
        return [f"Cancel requested: {command.job_id} (the worker stops before its next round)"]

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            records = DeadLetterStore(jobs).list(
                organization_id=command.organization_id,
                queue=command.queue,
                limit=command.limit,
            )

        lines = [f"Dead letters: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.key} queue={record.queue} org={record.organization_id} "
                f"attempt={record.attempt}/{record.max_attempts} "
                f"class={record.failure_class.value if record.failure_class else '-'} "
                f"replays={record.replay_count} failed_at={record.failed_at.isoformat()}",
            )
            lines.append(f"    reason: {record.failure_reason}")
        return lines

    def replay_dead_letter(self, command: DeadLetterReplayCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            job = DeadLetterStore(jobs).replay(command.dead_letter_id)
        return [f"Replayed {command.dead_letter_id} as job_id={job.job_id} queue={job.queue}"]

    def recover_dead_letters(self, command: DeadLetterRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            report = DeadLetterStore(jobs).recover_batch(limit=command.limit)
        lines = [
            f"Recovery: scanned={report.scanned} retried={report.retried} "
            f"skipped={report.skipped} notified={report.notified}",
        ]
        if report.skip_reasons:
            lines.append(
                "  skipped: "
                + " ".join(f"{key}={value}" for key, value in sorted(report.skip_reasons.items())),
            )
        if report.non_retryable_reasons:
            lines.append(
                "  non-retryable: "
                + " ".join(
                    f"{key}={value}" for key, value in sorted(report.non_retryable_reasons.items())
                ),
            )
        return lines

    def set_budget(self, command: BudgetSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            guard = _budget_guard(jobs, settings)
            guard.set_budget(command.organization_id, command.monthly_budget_cents)
            status = guard.status(command.organization_id)
        return [_budget_line(status)]

    def show_budget(self, command: BudgetShowCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            guard = _budget_guard(jobs, settings)
            status = guard.status(command.organization_id)
            entries = guard.ledger.list_entries(
                organization_id=command.organization_id,
                month=status.month_bucket,
                limit=command.entries,
            )
        lines = [_budget_line(status), f"Ledger entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.provider}:{entry.model} "
                f"in={entry.input_tokens} out={entry.output_tokens} "
                f"cost={entry.cost_cents:.4f}c success={entry.success} job={entry.job_id or '-'}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health, rate-limit pressure, and budgets."""

        settings = _settings(command.db_path)
        with _job_store(settings) as jobs:
            cutoff = jobs.now() - timedelta(hours=max(1, command.hours))
            guard = _budget_guard(jobs, settings)
            snapshot = build_monitoring_snapshot(
                queues=KNOWN_QUEUES,
                depths=jobs.count_jobs(),
                counters=jobs.list_counters(),
                dead_letter_counts=DeadLetterStore(jobs).count_by_queue(),
                ack_events=jobs.list_job_events(
                    event_type=QueueOutcome.ACKED.value,
                    since=cutoff,
                ),
                window_hours=command.hours,
                denial_counts=jobs.limiter.denial_counts(since=cutoff),
                budget_statuses=[
                    guard.status(organization_id)
                    for organization_id in guard.ledger.organizations()
                ],
            )
        return render_monitoring_lines(snapshot=snapshot)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _event_payload(command: EventSubmitCommand) -> dict[str, Any]:
    if command.payload_file is not None:
        payload = json.loads(command.payload_file.read_text("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Event file must contain a JSON object: {command.payload_file}")
        return payload
    if not command.organization_id or command.text is None:
        raise ValueError("Either --payload-file or both --org and --text are required.")
    payload: dict[str, Any] = {
        "source": "api",
        "organization_id": command.organization_id,
        "request_id": command.request_id or str(uuid4()),
        "text": command.text,
    }
    if command.user_id:
        payload["user_id"] = command.user_id
    if command.session_id:
        payload["session_id"] = command.session_id
    if command.callback_url:
        payload["callback_url"] = command.callback_url
    return payload


def _budget_guard(jobs: JobStore, settings: Settings) -> BudgetGuard:
    return BudgetGuard(jobs.engine, ledger=UsageLedger(jobs.engine), settings=settings.budget)


def _budget_line(status: BudgetStatus) -> str:
    if status.unlimited:
        return (
            f"Budget {status.organization_id} {status.month_bucket}: "
            f"spent={status.spent_cents:.2f}c limit=unlimited"
        )
    level = status.alert_level.value if status.alert_level is not None else "ok"
    return (
        f"Budget {status.organization_id} {status.month_bucket}: "
        f"spent={status.spent_cents:.2f}c limit={status.budget_cents}c "
        f"remaining={status.remaining_cents:.2f}c used={status.percent_used:.1f}% status={level}"
    )


def _summary_lines(summaries: dict[str, WorkerRunSummary]) -> list[str]:
    return [
        f"Worker summary {queue}: processed={summary.processed} "
        f"succeeded={summary.succeeded} canceled={summary.canceled} "
        f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
        f"lease_lost={summary.lease_lost} idle_polls={summary.idle_polls}"
        for queue, summary in summaries.items()
    ]


@contextmanager
def _job_store(settings: Settings) -> Iterator[JobStore]:
    jobs = JobStore(settings.db_path, settings=settings)
    jobs.init_schema()
    try:
        yield jobs
    finally:
        jobs.close()
