"""Sliding-window admission limiter backed by the shared SQLite store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import DateTime, func, insert, literal
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from jobrelay.config import RateLimitSettings
from jobrelay.queue.models import RateLimitDecision
from jobrelay.storage.common import to_db_datetime, to_utc_aware, utc_now
from jobrelay.storage.sqlmodel_models import RateLimitDenial, RateLimitHit

logger = logging.getLogger(__name__)

DENIAL_RETENTION = timedelta(days=7)


class SlidingWindowRateLimiter:
    """Per (organization, queue class) sliding log of admissions.

    Admission is a single `INSERT ... SELECT ... WHERE count < ceiling`
    statement, so concurrent workers in separate processes never admit more
    than the ceiling inside one window. Each call also deletes the pair's
    admissions that left the window, which keeps the log bounded by the
    ceiling. Denials are kept for `DENIAL_RETENTION` for queue health stats.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        settings: RateLimitSettings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self.settings = settings
        self._clock = clock

    def ceiling_for(self, queue_class: str) -> int:
        return self.settings.ceilings.get(queue_class, 0)

    def admit(self, organization_id: str, queue_class: str) -> RateLimitDecision:
        """Record one admission if the window has room, otherwise record a denial."""

        ceiling = self.ceiling_for(queue_class)
        now = self._clock()
        if ceiling <= 0:
            return RateLimitDecision(
                admitted=True,
                organization_id=organization_id,
                queue_class=queue_class,
                count=0,
                ceiling=ceiling,
            )

        db_now = to_db_datetime(now)
        cutoff = to_db_datetime(now - timedelta(seconds=self.settings.window_seconds))
        in_window = (
            sa_select(func.count())
            .select_from(RateLimitHit)
            .where(
                col(RateLimitHit.organization_id) == organization_id,
                col(RateLimitHit.queue_class) == queue_class,
                col(RateLimitHit.admitted_at) > cutoff,
            )
            .scalar_subquery()
        )
        statement = insert(RateLimitHit.__table__).from_select(  # type: ignore[arg-type]
            ["organization_id", "queue_class", "admitted_at"],
            sa_select(
                literal(organization_id),
                literal(queue_class),
                literal(db_now, DateTime(timezone=True)),
            ).where(in_window < ceiling),
        )

        with Session(self.engine) as session:
            session.exec(  # type: ignore[call-overload]
                sa_delete(RateLimitHit).where(
                    col(RateLimitHit.organization_id) == organization_id,
                    col(RateLimitHit.queue_class) == queue_class,
                    col(RateLimitHit.admitted_at) <= cutoff,
                ),
            )
            result = session.exec(statement)  # type: ignore[call-overload]
            admitted = result.rowcount == 1
            if not admitted:
                session.exec(  # type: ignore[call-overload]
                    sa_delete(RateLimitDenial).where(
                        col(RateLimitDenial.organization_id) == organization_id,
                        col(RateLimitDenial.queue_class) == queue_class,
                        col(RateLimitDenial.denied_at) <= to_db_datetime(now - DENIAL_RETENTION),
                    ),
                )
                session.add(
                    RateLimitDenial(
                        organization_id=organization_id,
                        queue_class=queue_class,
                        denied_at=db_now,
                    ),
                )
            session.commit()

            count, oldest = session.exec(
                select(func.count(), func.min(RateLimitHit.admitted_at)).where(
                    col(RateLimitHit.organization_id) == organization_id,
                    col(RateLimitHit.queue_class) == queue_class,
                    col(RateLimitHit.admitted_at) > cutoff,
                ),
            ).one()

        retry_after = 0.0
        if not admitted:
            retry_after = self.settings.window_seconds
            if oldest is not None:
                expires_at = to_utc_aware(oldest) + timedelta(seconds=self.settings.window_seconds)
                retry_after = max(0.001, (expires_at - to_utc_aware(now)).total_seconds())
            logger.info(
                "Rate limit denied organization=%s class=%s count=%d ceiling=%d "
                "retry_after=%.1fs",
                organization_id,
                queue_class,
                count,
                ceiling,
                retry_after,
            )
        return RateLimitDecision(
            admitted=admitted,
            organization_id=organization_id,
            queue_class=queue_class,
            count=int(count),
            ceiling=ceiling,
            retry_after_seconds=retry_after,
        )

    def reserve(self, organization_id: str, queue_class: str) -> float:
        """Book the earliest future slot with room in the window; returns seconds until it.

        Used for deferred admissions. The booked slot counts against the
        window like any admission, so consecutive deferrals get distinct slots.
        """

        ceiling = self.ceiling_for(queue_class)
        now = to_utc_aware(self._clock())
        window = timedelta(seconds=self.settings.window_seconds)
        with Session(self.engine) as session:
            newest = session.exec(
                select(RateLimitHit.admitted_at)
                .where(
                    col(RateLimitHit.organization_id) == organization_id,
                    col(RateLimitHit.queue_class) == queue_class,
                    col(RateLimitHit.admitted_at) > to_db_datetime(now - window),
                )
                .order_by(col(RateLimitHit.admitted_at).desc())
                .limit(max(ceiling, 1)),
            ).all()
            slot = now
            if ceiling > 0 and len(newest) >= ceiling:
                # The ceiling-th newest admission must leave the window first.
                slot = max(now, to_utc_aware(newest[-1]) + window)
            session.add(
                RateLimitHit(
                    organization_id=organization_id,
                    queue_class=queue_class,
                    admitted_at=to_db_datetime(slot),
                ),
            )
            session.commit()

        delay = (slot - now).total_seconds()
        logger.debug(
            "Reserved %s slot for organization=%s in %.1fs",
            queue_class,
            organization_id,
            delay,
        )
        return delay

    def current_count(self, organization_id: str, queue_class: str) -> int:
        cutoff = to_db_datetime(self._clock() - timedelta(seconds=self.settings.window_seconds))
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(RateLimitHit)
                    .where(
                        col(RateLimitHit.organization_id) == organization_id,
                        col(RateLimitHit.queue_class) == queue_class,
                        col(RateLimitHit.admitted_at) > cutoff,
                    ),
                ).one(),
            )

    def denial_counts(self, *, since: datetime) -> dict[tuple[str, str], int]:
        """Denials per (organization, class) recorded since the given instant."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(
                    RateLimitDenial.organization_id,
                    RateLimitDenial.queue_class,
                    func.count(),
                )
                .where(col(RateLimitDenial.denied_at) >= to_db_datetime(since))
                .group_by(
                    col(RateLimitDenial.organization_id),
                    col(RateLimitDenial.queue_class),
                ),
            ).all()
        return {(org, queue_class): int(count) for org, queue_class, count in rows}

    def prune(self) -> int:
        """Delete admissions that fell out of every window and denials past retention."""

        now = self._clock()
        cutoff = to_db_datetime(now - timedelta(seconds=self.settings.window_seconds))
        with Session(self.engine) as session:
            hits = session.exec(  # type: ignore[call-overload]
                sa_delete(RateLimitHit).where(col(RateLimitHit.admitted_at) <= cutoff),
            )
            denials = session.exec(  # type: ignore[call-overload]
                sa_delete(RateLimitDenial).where(
                    col(RateLimitDenial.denied_at) <= to_db_datetime(now - DENIAL_RETENTION),
                ),
            )
            session.commit()
            removed = (hits.rowcount or 0) + (denials.rowcount or 0)
        if removed:
            logger.debug("Pruned %d expired rate-limit rows", removed)
        return removed
