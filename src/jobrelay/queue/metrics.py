"""Queue health metrics for the monitoring surface."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from jobrelay.budget.models import BudgetStatus
from jobrelay.queue.models import JobEventView, QueueOutcome


@dataclass(slots=True)
class LatencyPercentiles:
    """Created-to-ack latency percentiles for one queue."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class QueueHealth:
    """Depth, lifetime counters, and windowed throughput of one queue."""

    queue: str
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    canceled: int = 0
    rate_limited: int = 0
    dead_letters: int = 0
    window_acks: int = 0
    throughput_per_hour: float = 0.0
    latency: LatencyPercentiles | None = None


@dataclass(slots=True)
class OrganizationHealth:
    """Rate-limit pressure and budget position of one organization."""

    organization_id: str
    rate_limit_denials: dict[str, int] = field(default_factory=dict)
    budget: BudgetStatus | None = None


@dataclass(slots=True)
class MonitoringSnapshot:
    """Aggregated monitoring view used by the stats command."""

    window_hours: int
    queues: list[QueueHealth]
    organizations: list[OrganizationHealth]


def build_monitoring_snapshot(  # noqa: PLR0913
    *,
    queues: tuple[str, ...],
    depths: dict[str, dict[str, int]],
    counters: dict[str, dict[str, int]],
    dead_letter_counts: dict[str, int],
    ack_events: list[JobEventView],
    window_hours: int,
    denial_counts: dict[tuple[str, str], int] | None = None,
    budget_statuses: list[BudgetStatus] | None = None,
) -> MonitoringSnapshot:
    """Build one snapshot from store reads.

    `ack_events` are the `acked` job events inside the window; their
    `latency_seconds` detail feeds the percentiles.
    """

    latencies: dict[str, list[float]] = defaultdict(list)
    window_acks: dict[str, int] = defaultdict(int)
    for event in ack_events:
        window_acks[event.queue] += 1
        latency = event.details.get("latency_seconds")
        if isinstance(latency, int | float):
            latencies[event.queue].append(float(latency))

    names = list(queues) + sorted(
        (set(depths) | set(counters) | set(dead_letter_counts)) - set(queues),
    )
    health: list[QueueHealth] = []
    for name in names:
        depth = depths.get(name, {})
        counts = counters.get(name, {})
        values = latencies.get(name, [])
        health.append(
            QueueHealth(
                queue=name,
                waiting=depth.get("waiting", 0),
                delayed=depth.get("delayed", 0),
                active=depth.get("active", 0),
                completed=counts.get(QueueOutcome.ACKED.value, 0),
                failed=counts.get(QueueOutcome.DEAD_LETTERED.value, 0),
                retried=counts.get(QueueOutcome.RETRIED.value, 0),
                canceled=counts.get(QueueOutcome.CANCELED.value, 0),
                rate_limited=counts.get(QueueOutcome.RATE_LIMITED.value, 0),
                dead_letters=dead_letter_counts.get(name, 0),
                window_acks=window_acks.get(name, 0),
                throughput_per_hour=window_acks.get(name, 0) / max(window_hours, 1),
                latency=(
                    LatencyPercentiles(
                        sample_size=len(values),
                        p50_seconds=_percentile(values, 0.50),
                        p90_seconds=_percentile(values, 0.90),
                        p99_seconds=_percentile(values, 0.99),
                    )
                    if values
                    else None
                ),
            ),
        )

    organizations: dict[str, OrganizationHealth] = {}
    for (organization_id, queue_class), count in sorted((denial_counts or {}).items()):
        org = organizations.setdefault(organization_id, OrganizationHealth(organization_id))
        org.rate_limit_denials[queue_class] = count
    for status in budget_statuses or []:
        org = organizations.setdefault(
            status.organization_id,
            OrganizationHealth(status.organization_id),
        )
        org.budget = status

    return MonitoringSnapshot(
        window_hours=window_hours,
        queues=health,
        organizations=[organizations[key] for key in sorted(organizations)],
    )


def render_monitoring_lines(*, snapshot: MonitoringSnapshot) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [f"Queue health (window={snapshot.window_hours}h)"]
    for queue in snapshot.queues:
        lines.append(
            f"{queue.queue}: waiting={queue.waiting} delayed={queue.delayed} "
            f"active={queue.active} completed={queue.completed} failed={queue.failed} "
            f"retried={queue.retried} canceled={queue.canceled} "
            f"rate_limited={queue.rate_limited} dead_letters={queue.dead_letters}",
        )
        lines.append(
            f"  throughput={queue.throughput_per_hour:.2f}/h acks_in_window={queue.window_acks}",
        )
        if queue.latency is None:
            lines.append("  latency: none")
        else:
            lines.append(
                f"  latency n={queue.latency.sample_size} "
                f"p50={queue.latency.p50_seconds:.2f}s "
                f"p90={queue.latency.p90_seconds:.2f}s "
                f"p99={queue.latency.p99_seconds:.2f}s",
            )

    if not snapshot.organizations:
        lines.append("Organizations: none")
        return lines

    lines.append("Organizations:")
    for org in snapshot.organizations:
        denials = _fmt_key_value(org.rate_limit_denials) or "none"
        lines.append(f"  {org.organization_id}: rate_limit_denials {denials}")
        if org.budget is not None:
            lines.append(f"    budget {_fmt_budget(org.budget)}")
    return lines


def _fmt_budget(status: BudgetStatus) -> str:
    if status.unlimited:
        return f"month={status.month_bucket} spent={status.spent_cents:.2f}c limit=unlimited"
    flag = status.alert_level.value if status.alert_level is not None else "ok"
    return (
        f"month={status.month_bucket} spent={status.spent_cents:.2f}c "
        f"limit={status.budget_cents}c used={status.percent_used or 0.0:.1f}% status={flag}"
    )


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
