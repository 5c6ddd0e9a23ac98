"""CLI entrypoint for jobrelay."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from jobrelay import __version__
from jobrelay.controllers import (
    ALL_QUEUES,
    BudgetSetCommand,
    BudgetShowCommand,
    DeadLetterListCommand,
    DeadLetterRecoverCommand,
    DeadLetterReplayCommand,
    EventSubmitCommand,
    JobCommand,
    JobRelayCliController,
    JobsListCommand,
    StatsCommand,
    WorkerRunCommand,
)
from jobrelay.errors import JobRelayError
from jobrelay.queue.models import KNOWN_QUEUES, JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = JobRelayCliController()

_DB_PATH_HELP = "SQLite DB path (default: JOBRELAY_DB_PATH or .jobrelay.db)."


@click.group()
@click.version_option(version=__version__, prog_name="jobrelay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (default: JOBRELAY_LOG_LEVEL or INFO).",
)
def jobrelay(log_level: str | None) -> None:
    """Durable job pipeline for tool-calling LLM requests."""

    level = (log_level or os.getenv("JOBRELAY_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@jobrelay.group()
def events() -> None:
    """Ingestion commands."""


@events.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--org", "organization_id", default=None, help="Organization id.")
@click.option("--text", default=None, help="Request text.")
@click.option("--user", "user_id", default=None, help="Originating user id.")
@click.option("--request-id", default=None, help="Client request id used for dedup.")
@click.option("--session-id", default=None, help="Conversation/session id for progress.")
@click.option("--callback-url", default=None, help="Webhook URL for the reply.")
@click.option(
    "--payload-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Raw event JSON (slack or api source) instead of --org/--text.",
)
def events_submit(  # noqa: PLR0913
    db_path: Path | None,
    organization_id: str | None,
    text: str | None,
    user_id: str | None,
    request_id: str | None,
    session_id: str | None,
    callback_url: str | None,
    payload_file: Path | None,
) -> None:
    """Submit one event under the organization's ingestion rate limit."""

    _emit(
        lambda: CONTROLLER.submit_event(
            EventSubmitCommand(
                db_path=db_path,
                organization_id=organization_id,
                text=text,
                user_id=user_id,
                request_id=request_id,
                session_id=session_id,
                callback_url=callback_url,
                payload_file=payload_file,
            ),
        ),
    )


@jobrelay.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--queue",
    type=click.Choice([*KNOWN_QUEUES, ALL_QUEUES]),
    default=ALL_QUEUES,
    show_default=True,
    help="Queue to consume.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one job per queue.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop each worker after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a worker exits.",
)
@click.option(
    "--pool",
    is_flag=True,
    default=False,
    help="Run the configured number of slots per queue until SIGINT/SIGTERM.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    queue: str,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    pool: bool,
) -> None:
    """Consume jobs until the queues are idle (or forever with --pool)."""

    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                queue=queue,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                pool=pool,
            ),
        ),
    )


@jobrelay.group()
def jobs() -> None:
    """Job inspection commands."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--queue", type=click.Choice(KNOWN_QUEUES), default=None, help="Queue filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Status filter.",
)
@click.option("--org", "organization_id", default=None, help="Organization filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    queue: str | None,
    status: str | None,
    organization_id: str | None,
    limit: int,
) -> None:
    """List jobs still in the store."""

    _emit(
        lambda: CONTROLLER.list_jobs(
            JobsListCommand(
                db_path=db_path,
                queue=queue,
                status=status,
                organization_id=organization_id,
                limit=limit,
            ),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show a job, its progress, and its audit events."""

    _emit(lambda: CONTROLLER.inspect_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a waiting job, or ask the worker to stop a running one."""

    _emit(lambda: CONTROLLER.cancel_job(JobCommand(db_path=db_path, job_id=job_id)))


@jobrelay.group()
def dlq() -> None:
    """Dead-letter commands."""


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--org", "organization_id", default=None, help="Organization filter.")
@click.option("--queue", type=click.Choice(KNOWN_QUEUES), default=None, help="Queue filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max records to print.",
)
def dlq_list(
    db_path: Path | None,
    organization_id: str | None,
    queue: str | None,
    limit: int,
) -> None:
    """List dead-letter records, newest first."""

    _emit(
        lambda: CONTROLLER.list_dead_letters(
            DeadLetterListCommand(
                db_path=db_path,
                organization_id=organization_id,
                queue=queue,
                limit=limit,
            ),
        ),
    )


@dlq.command("replay")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("dead_letter_id")
def dlq_replay(db_path: Path | None, dead_letter_id: str) -> None:
    """Re-enqueue a dead-lettered job with its attempt count reset."""

    _emit(
        lambda: CONTROLLER.replay_dead_letter(
            DeadLetterReplayCommand(db_path=db_path, dead_letter_id=dead_letter_id),
        ),
    )


@dlq.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max records to scan.",
)
def dlq_recover(db_path: Path | None, limit: int) -> None:
    """Replay retryable dead letters whose recovery backoff has elapsed."""

    _emit(
        lambda: CONTROLLER.recover_dead_letters(
            DeadLetterRecoverCommand(db_path=db_path, limit=limit),
        ),
    )


@jobrelay.group()
def budget() -> None:
    """Budget commands."""


@budget.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("organization_id")
@click.argument("monthly_budget_cents", type=click.IntRange(min=0))
def budget_set(db_path: Path | None, organization_id: str, monthly_budget_cents: int) -> None:
    """Set an organization's monthly budget in cents (0 = unlimited)."""

    _emit(
        lambda: CONTROLLER.set_budget(
            BudgetSetCommand(
                db_path=db_path,
                organization_id=organization_id,
                monthly_budget_cents=monthly_budget_cents,
            ),
        ),
    )


@budget.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--entries",
    type=click.IntRange(min=0, max=1000),
    default=10,
    show_default=True,
    help="Recent ledger entries to print.",
)
@click.argument("organization_id")
def budget_show(db_path: Path | None, entries: int, organization_id: str) -> None:
    """Show the current month's budget status and recent ledger entries."""

    _emit(
        lambda: CONTROLLER.show_budget(
            BudgetShowCommand(db_path=db_path, organization_id=organization_id, entries=entries),
        ),
    )


@jobrelay.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for throughput and latency.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show queue health, rate-limit denials, and budgets."""

    _emit(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (JobRelayError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    jobrelay()
