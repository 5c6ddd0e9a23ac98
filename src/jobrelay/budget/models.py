"""Budget status and usage views."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AlertLevel(str, Enum):
    """Budget thresholds that produce one alert per organization and month."""

    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(slots=True)
class BudgetStatus:
    """Derived monthly budget position of one organization.

    A `budget_cents` of 0 means the organization has no ceiling.
    """

    organization_id: str
    month_bucket: str
    budget_cents: int
    spent_cents: float
    warning_threshold: float
    critical_threshold: float

    @property
    def unlimited(self) -> bool:
        return self.budget_cents <= 0

    @property
    def remaining_cents(self) -> float | None:
        if self.unlimited:
            return None
        return max(0.0, self.budget_cents - self.spent_cents)

    @property
    def percent_used(self) -> float | None:
        if self.unlimited:
            return None
        return self.spent_cents / self.budget_cents * 100

    @property
    def warning(self) -> bool:
        return not self.unlimited and self.spent_cents >= self.budget_cents * self.warning_threshold

    @property
    def critical(self) -> bool:
        return not self.unlimited and self.spent_cents >= self.budget_cents * self.critical_threshold

    @property
    def exceeded(self) -> bool:
        return not self.unlimited and self.spent_cents >= self.budget_cents

    @property
    def alert_level(self) -> AlertLevel | None:
        """Highest threshold currently crossed."""

        if self.exceeded:
            return AlertLevel.EXCEEDED
        if self.critical:
            return AlertLevel.CRITICAL
        if self.warning:
            return AlertLevel.WARNING
        return None


@dataclass(slots=True)
class BudgetAlert:
    """Alert to deliver when an organization crosses a threshold."""

    level: AlertLevel
    status: BudgetStatus
    message: str


@dataclass(slots=True)
class UsageRecord:
    """One model invocation to append to the usage ledger."""

    organization_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    success: bool
    job_id: str | None = None


@dataclass(slots=True)
class UsageEntryView:
    """Stored usage ledger row."""

    entry_id: int
    organization_id: str
    month_bucket: str
    job_id: str | None
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_cents: float
    success: bool
    created_at: datetime
