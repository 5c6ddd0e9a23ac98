"""Append-only usage ledger of model invocations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from jobrelay.budget.models import UsageEntryView, UsageRecord
from jobrelay.budget.pricing import estimate_cost_cents
from jobrelay.storage.common import month_bucket, to_db_datetime, to_utc_aware, utc_now
from jobrelay.storage.sqlmodel_models import UsageLedgerEntry

logger = logging.getLogger(__name__)


class UsageLedger:
    """Token and cost rows keyed by organization and `YYYY-MM` bucket.

    Spend is always derived by summing rows, so concurrent writers never
    contend on a shared running total.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def record(self, usage: UsageRecord) -> UsageEntryView:
        now = self._clock()
        cost_cents = estimate_cost_cents(
            provider=usage.provider,
            model=usage.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        with Session(self.engine) as session:
            row = UsageLedgerEntry(
                organization_id=usage.organization_id,
                month_bucket=month_bucket(now),
                job_id=usage.job_id,
                provider=usage.provider,
                model=usage.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost_cents=cost_cents,
                success=usage.success,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_entry_view(row)
        logger.debug(
            "Usage organization=%s model=%s in=%d out=%d cost=%.4fc success=%s",
            usage.organization_id,
            usage.model,
            usage.input_tokens,
            usage.output_tokens,
            cost_cents,
            usage.success,
        )
        return view

    def monthly_spend_cents(self, organization_id: str, *, month: str | None = None) -> float:
        bucket = month or month_bucket(self._clock())
        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(UsageLedgerEntry.cost_cents), 0.0)).where(
                    UsageLedgerEntry.organization_id == organization_id,
                    UsageLedgerEntry.month_bucket == bucket,
                ),
            ).one()
        return float(total)

    def list_entries(
        self,
        *,
        organization_id: str | None = None,
        month: str | None = None,
        limit: int | None = 100,
    ) -> list[UsageEntryView]:
        with Session(self.engine) as session:
            statement = select(UsageLedgerEntry).order_by(
                col(UsageLedgerEntry.created_at).desc(),
                col(UsageLedgerEntry.id).desc(),
            )
            if organization_id is not None:
                statement = statement.where(UsageLedgerEntry.organization_id == organization_id)
            if month is not None:
                statement = statement.where(UsageLedgerEntry.month_bucket == month)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_entry_view(row) for row in rows]

    def organizations(self, *, month: str | None = None) -> list[str]:
        """Organizations with at least one ledger row in the month."""

        bucket = month or month_bucket(self._clock())
        with Session(self.engine) as session:
            rows = session.exec(
                select(UsageLedgerEntry.organization_id)
                .where(UsageLedgerEntry.month_bucket == bucket)
                .distinct(),
            ).all()
        return sorted(rows)


def _to_entry_view(row: UsageLedgerEntry) -> UsageEntryView:
    return UsageEntryView(
        entry_id=row.id or 0,
        organization_id=row.organization_id,
        month_bucket=row.month_bucket,
        job_id=row.job_id,
        provider=row.provider,
        model=row.model,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cost_cents=row.cost_cents,
        success=row.success,
        created_at=to_utc_aware(row.created_at),
    )
