"""
Notification Ledger: idempotency and audit store for notification attempts.

This module implements the "append only" rule:
- Every dispatch attempt, successful or not, becomes one new row
- Rows are never updated or deleted here
- Only successful deliveries block a later notification for the same
  (employee, milestone, expiry date) key

The check-then-send sequence is not atomic. Two concurrent runs may both
deliver for the same key; the check is done right before dispatch to keep
that window small.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import Select, and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.database import get_session_context
from ..models import NotificationLog, NotificationType, UrgencyTier


logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class NotificationLogEntry:
    """The durable outcome of one dispatch attempt."""
    employee_id: str | None
    milestone: int | None
    expiry_date_at_evaluation: date | None
    urgency: UrgencyTier | None
    sent_at: datetime
    delivery_succeeded: bool
    error_messages: tuple[str, ...] = ()
    manual_trigger: bool = False
    template_id: str | None = None
    days_remaining: int | None = None
    sent_to: tuple[str, ...] = ()
    subject: str | None = None
    run_id: UUID | None = None
    notification_type: NotificationType = NotificationType.VISA_EXPIRY


@dataclass
class HistoryQuery:
    """Filters for the notification history view."""
    employee_id: str | None = None
    milestone: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    manual_only: bool = False
    succeeded: bool | None = None
    notification_type: NotificationType | None = None


@dataclass
class LedgerStats:
    """Aggregate counts over the ledger."""
    total: int
    succeeded: int
    failed: int
    manual: int
    by_urgency: dict[str, int] = field(default_factory=dict)
    by_milestone: dict[str, int] = field(default_factory=dict)


# =============================================================================
# LEDGER
# =============================================================================


class NotificationLedger:
    """
    Append-only ledger backed by the notification_logs table.

    Every call opens its own short transaction, so concurrent dispatch
    tasks can use one ledger instance safely.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def already_notified(
        self,
        employee_id: str,
        milestone: int | None,
        expiry_date: date,
    ) -> bool:
        """Whether a successful delivery exists for the key. Failed attempts never count."""
        milestone_filter = (
            NotificationLog.milestone.is_(None)
            if milestone is None
            else NotificationLog.milestone == milestone
        )
        query = (
            select(NotificationLog.id)
            .where(
                NotificationLog.notification_type == NotificationType.VISA_EXPIRY,
                NotificationLog.employee_id == employee_id,
                milestone_filter,
                NotificationLog.expiry_date_at_evaluation == expiry_date,
                NotificationLog.delivery_succeeded.is_(True),
            )
            .limit(1)
        )

        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.first() is not None

    async def record(self, entry: NotificationLogEntry) -> None:
        """Append one entry. Never overwrites an existing row."""
        row = NotificationLog(
            notification_type=entry.notification_type,
            run_id=entry.run_id,
            employee_id=entry.employee_id,
            milestone=entry.milestone,
            expiry_date_at_evaluation=entry.expiry_date_at_evaluation,
            days_remaining=entry.days_remaining,
            urgency=entry.urgency,
            sent_to=list(entry.sent_to),
            delivery_succeeded=entry.delivery_succeeded,
            error_messages=list(entry.error_messages),
            manual_trigger=entry.manual_trigger,
            template_id=entry.template_id,
            subject=entry.subject,
            sent_at=entry.sent_at,
        )

        async with get_session_context(self._session_factory) as session:
            session.add(row)

        logger.debug(
            f"Recorded {entry.notification_type.value} attempt for {entry.employee_id} "
            f"(milestone={entry.milestone}, succeeded={entry.delivery_succeeded})"
        )

    # =========================================================================
    # HISTORY & STATS
    # =========================================================================

    async def get_history(
        self,
        filters: HistoryQuery | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[NotificationLog], int]:
        """Query ledger entries, newest first."""
        filters = filters or HistoryQuery()
        query = self._apply_filters(select(NotificationLog), filters)

        count_query = self._apply_filters(
            select(func.count()).select_from(NotificationLog), filters
        )

        async with self._session_factory() as session:
            total = (await session.execute(count_query)).scalar_one()
            result = await session.execute(
                query.order_by(NotificationLog.sent_at.desc()).limit(limit).offset(offset)
            )
            entries = result.scalars().all()

        return entries, total

    async def get_stats(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> LedgerStats:
        """Aggregate visa expiry notification counts over an optional date range."""
        conditions = [NotificationLog.notification_type == NotificationType.VISA_EXPIRY]
        if start_date:
            conditions.append(NotificationLog.sent_at >= start_date)
        if end_date:
            conditions.append(NotificationLog.sent_at <= end_date)
        base_filter = and_(*conditions)

        async with self._session_factory() as session:
            totals = await session.execute(
                select(
                    func.count().label("total"),
                    func.count().filter(NotificationLog.delivery_succeeded.is_(True)).label("succeeded"),
                    func.count().filter(NotificationLog.manual_trigger.is_(True)).label("manual"),
                )
                .select_from(NotificationLog)
                .where(base_filter)
            )
            row = totals.one()

            urgency_result = await session.execute(
                select(NotificationLog.urgency, func.count().label("count"))
                .where(base_filter)
                .group_by(NotificationLog.urgency)
            )
            by_urgency = {
                r.urgency.value: r.count
                for r in urgency_result.all()
                if r.urgency is not None
            }

            milestone_result = await session.execute(
                select(NotificationLog.milestone, func.count().label("count"))
                .where(base_filter)
                .group_by(NotificationLog.milestone)
            )
            by_milestone = {
                "generic" if r.milestone is None else str(r.milestone): r.count
                for r in milestone_result.all()
            }

        return LedgerStats(
            total=row.total,
            succeeded=row.succeeded,
            failed=row.total - row.succeeded,
            manual=row.manual,
            by_urgency=by_urgency,
            by_milestone=by_milestone,
        )

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @staticmethod
    def _apply_filters(query: Select, filters: HistoryQuery) -> Select:
        if filters.notification_type:
            query = query.where(NotificationLog.notification_type == filters.notification_type)
        if filters.employee_id:
            query = query.where(NotificationLog.employee_id == filters.employee_id)
        if filters.milestone is not None:
            query = query.where(NotificationLog.milestone == filters.milestone)
        if filters.start_date:
            query = query.where(NotificationLog.sent_at >= filters.start_date)
        if filters.end_date:
            query = query.where(NotificationLog.sent_at <= filters.end_date)
        if filters.manual_only:
            query = query.where(NotificationLog.manual_trigger.is_(True))
        if filters.succeeded is not None:
            query = query.where(NotificationLog.delivery_succeeded.is_(filters.succeeded))
        return query
