"""Schemas for the notification trigger, query, and audit endpoints."""

from datetime import date, datetime
from uuid import UUID

from pydantic import Field, model_validator

from ..models import NotificationType, UrgencyTier
from .base import VisaAlertsBaseModel


# =============================================================================
# TRIGGER
# =============================================================================


class TriggerRequest(VisaAlertsBaseModel):
    """Trigger a notification run."""

    manual: bool = Field(default=False, description="Flag the run as manually triggered")
    employee_id: str | None = Field(
        default=None,
        description="Notify a single employee (requires manual=true)",
    )
    milestone: int | None = Field(
        default=None,
        gt=0,
        description="Sweep a single milestone instead of the automated set",
    )
    dedup: bool | None = Field(
        default=None,
        description="Override the ledger check (default: on for sweeps, off for single-employee)",
    )

    @model_validator(mode="after")
    def _check_scope(self) -> "TriggerRequest":
        if self.employee_id and self.milestone is not None:
            raise ValueError("employee_id and milestone cannot be combined")
        return self


class EmployeeResultResponse(VisaAlertsBaseModel):
    """Outcome of one candidate in a run."""

    employee_id: str
    milestone: int | None
    days_remaining: int
    urgency: str | None
    succeeded: bool
    skipped: bool = False
    error: str | None = None


class BatchSummaryResponse(VisaAlertsBaseModel):
    """Aggregate over one run."""

    total_candidates: int
    sent: int
    failed: int
    skipped_duplicates: int
    by_urgency: dict[str, int]
    by_department: dict[str, int]
    manual: bool


class TriggerResponse(VisaAlertsBaseModel):
    """Result of a notification run."""

    run_id: UUID
    state: str
    summary: BatchSummaryResponse
    per_employee_results: list[EmployeeResultResponse]


# =============================================================================
# EXPIRY QUERIES
# =============================================================================


class ExpiringEmployeeResponse(VisaAlertsBaseModel):
    """An employee whose visa expires within the requested window."""

    employee_id: str
    employee_code: str | None
    name: str
    email: str | None
    company_name: str
    department: str | None
    nationality: str | None
    visa_expiry_date: date
    days_remaining: int
    urgency: UrgencyTier
    milestones: list[int]


class ExpiringEmployeesListResponse(VisaAlertsBaseModel):
    employees: list[ExpiringEmployeeResponse]
    total_count: int
    within_days: int


class VisaStatsResponse(VisaAlertsBaseModel):
    """Expiry buckets over active employees. Buckets are cumulative."""

    total: int = Field(..., description="Active employees with a visa expiry date")
    expired: int = Field(..., description="Visa already expired or expiring today")
    expiring_1_day: int
    expiring_7_days: int
    expiring_30_days: int
    expiring_90_days: int


# =============================================================================
# LEDGER AUDIT
# =============================================================================


class NotificationLogResponse(VisaAlertsBaseModel):
    """One ledger entry."""

    id: UUID
    notification_type: NotificationType
    run_id: UUID | None
    employee_id: str | None
    milestone: int | None
    expiry_date_at_evaluation: date | None
    days_remaining: int | None
    urgency: UrgencyTier | None
    sent_to: list[str]
    delivery_succeeded: bool
    error_messages: list[str]
    manual_trigger: bool
    template_id: str | None
    subject: str | None
    sent_at: datetime


class NotificationHistoryResponse(VisaAlertsBaseModel):
    entries: list[NotificationLogResponse]
    total_count: int
    has_more: bool


class NotificationStatsResponse(VisaAlertsBaseModel):
    """Ledger aggregate over an optional date range."""

    total: int
    succeeded: int
    failed: int
    manual: int
    by_urgency: dict[str, int]
    by_milestone: dict[str, int]
