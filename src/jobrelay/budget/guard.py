"""Budget guard: monthly status, enforcement, and threshold alerts."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from jobrelay.budget.ledger import UsageLedger
from jobrelay.budget.models import AlertLevel, BudgetAlert, BudgetStatus
from jobrelay.config import BudgetSettings
from jobrelay.errors import BudgetExceeded
from jobrelay.storage.common import month_bucket, to_db_datetime, utc_now
from jobrelay.storage.sqlmodel_models import BudgetAlertSent, OrgBudget

logger = logging.getLogger(__name__)


class BudgetGuard:
    """Answers whether an organization may spend more this month."""

    def __init__(
        self,
        engine: Engine,
        *,
        ledger: UsageLedger,
        settings: BudgetSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.ledger = ledger
        self.settings = settings
        self._clock = clock

    def budget_cents(self, organization_id: str) -> int:
        with Session(self.engine) as session:
            row = session.exec(
                select(OrgBudget).where(OrgBudget.organization_id == organization_id),
            ).one_or_none()
        if row is None:
            return self.settings.default_budget_cents
        return row.monthly_budget_cents

    def set_budget(self, organization_id: str, monthly_budget_cents: int) -> None:
        """Set the monthly ceiling; 0 removes the limit."""

        if monthly_budget_cents < 0:
            raise ValueError("Monthly budget must be >= 0 cents.")
        now = to_db_datetime(self._clock())
        statement = sqlite_insert(OrgBudget.__table__).values(  # type: ignore[arg-type]
            organization_id=organization_id,
            monthly_budget_cents=monthly_budget_cents,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.exec(  # type: ignore[call-overload]
                statement.on_conflict_do_update(
                    index_elements=["organization_id"],
                    set_={"monthly_budget_cents": monthly_budget_cents, "updated_at": now},
                ),
            )
            session.commit()
        logger.info(
            "Budget for organization=%s set to %d cents",
            organization_id,
            monthly_budget_cents,
        )

    def status(self, organization_id: str) -> BudgetStatus:
        bucket = month_bucket(self._clock())
        return BudgetStatus(
            organization_id=organization_id,
            month_bucket=bucket,
            budget_cents=self.budget_cents(organization_id),
            spent_cents=self.ledger.monthly_spend_cents(organization_id, month=bucket),
            warning_threshold=self.settings.warning_threshold,
            critical_threshold=self.settings.critical_threshold,
        )

    def check(self, organization_id: str) -> BudgetStatus:
        """Return the status, or raise `BudgetExceeded` when spent >= a non-zero budget."""

        status = self.status(organization_id)
        if status.exceeded:
            logger.warning(
                "Budget exceeded for organization=%s: %.2f of %d cents",
                organization_id,
                status.spent_cents,
                status.budget_cents,
            )
            raise BudgetExceeded(status)
        return status

    def claim_alert(self, organization_id: str) -> BudgetAlert | None:
        """Return the alert for the highest crossed threshold once per month.

        The first caller to insert the `(organization, month, level)` marker
        wins; every later call for that level returns None.
        """

        status = self.status(organization_id)
        level = status.alert_level
        if level is None:
            return None

        statement = (
            sqlite_insert(BudgetAlertSent.__table__)  # type: ignore[arg-type]
            .values(
                organization_id=organization_id,
                month_bucket=status.month_bucket,
                threshold=level.value,
                sent_at=to_db_datetime(self._clock()),
            )
            .on_conflict_do_nothing()
        )
        with Session(self.engine) as session:
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
        if result.rowcount != 1:
            return None
        return BudgetAlert(level=level, status=status, message=_alert_message(level, status))


def _alert_message(level: AlertLevel, status: BudgetStatus) -> str:
    budget = status.budget_cents / 100
    spent = status.spent_cents / 100
    remaining = (status.remaining_cents or 0.0) / 100
    percent = status.percent_used or 0.0
    if level == AlertLevel.EXCEEDED:
        return (
            f"Budget exceeded: spent ${spent:.2f} of the ${budget:.2f} monthly budget. "
            "Model execution is blocked until the budget is raised or the month rolls over."
        )
    if level == AlertLevel.CRITICAL:
        return (
            f"Budget at {percent:.0f}%: spent ${spent:.2f} of ${budget:.2f}, "
            f"${remaining:.2f} remaining."
        )
    return (
        f"Budget at {percent:.0f}%: spent ${spent:.2f} of ${budget:.2f}, "
        f"${remaining:.2f} remaining this month."
    )
