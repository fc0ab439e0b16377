"""SQLAlchemy ORM Models for Visa Alerts.

The employees table belongs to the surrounding HR application and is only
read here. The notification log is insert-only.
"""

from datetime import date, datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin


# =============================================================================
# ENUMS
# =============================================================================


class UrgencyTier(str, PyEnum):
    """How close a visa expiry is, ordered from least to most urgent."""
    NOTICE = "notice"
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _URGENCY_ORDER.index(self)


_URGENCY_ORDER = [
    UrgencyTier.NOTICE,
    UrgencyTier.WARNING,
    UrgencyTier.URGENT,
    UrgencyTier.CRITICAL,
]


class NotificationType(str, PyEnum):
    VISA_EXPIRY = "visa_expiry"
    BATCH_SUMMARY = "batch_summary"


# =============================================================================
# EMPLOYEES (read-only)
# =============================================================================


class Employee(Base, UUIDMixin, TimestampMixin):
    """Employee profile as stored by the HR application."""

    __tablename__ = "employees"

    employee_code: Mapped[str | None] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    visa_expiry_date: Mapped[date | None] = mapped_column(Date)
    company_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    department: Mapped[str | None] = mapped_column(String(255))
    nationality: Mapped[str | None] = mapped_column(String(100))
    trade: Mapped[str | None] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("idx_employees_visa_expiry", "is_active", "visa_expiry_date"),
    )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class NotificationLog(Base, UUIDMixin):
    """Append-only record of every notification delivery attempt."""

    __tablename__ = "notification_logs"

    notification_type: Mapped[NotificationType] = mapped_column(
        Enum(
            NotificationType,
            name="notification_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=NotificationType.VISA_EXPIRY,
        nullable=False,
    )
    run_id: Mapped[UUID | None] = mapped_column()
    # Opaque identifier from the employee record source; null for summaries
    employee_id: Mapped[str | None] = mapped_column(String(64))
    milestone: Mapped[int | None] = mapped_column(Integer)
    expiry_date_at_evaluation: Mapped[date | None] = mapped_column(Date)
    days_remaining: Mapped[int | None] = mapped_column(Integer)
    urgency: Mapped[UrgencyTier | None] = mapped_column(
        Enum(
            UrgencyTier,
            name="urgency_tier",
            values_callable=lambda x: [e.value for e in x],
        ),
    )
    sent_to: Mapped[list] = mapped_column(JSON, default=list)
    delivery_succeeded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_messages: Mapped[list] = mapped_column(JSON, default=list)
    manual_trigger: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(100))
    subject: Mapped[str | None] = mapped_column(String(500))
    sent_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index(
            "idx_notification_logs_dedup",
            "employee_id",
            "milestone",
            "expiry_date_at_evaluation",
        ),
        Index("idx_notification_logs_sent_at", "sent_at"),
        Index("idx_notification_logs_manual", "manual_trigger"),
    )


class EmailTemplate(Base, UUIDMixin, TimestampMixin):
    """Operator-editable template overriding the built-in layout for a milestone."""

    __tablename__ = "email_templates"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    # Null milestone marks the generic template
    milestone: Mapped[int | None] = mapped_column(Integer)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
