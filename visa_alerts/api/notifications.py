"""
Notifications API: trigger runs and inspect visa expiry state.

These endpoints power the HR screens for:
1. Triggering a sweep, a single-milestone backfill, or a manual send
2. Listing employees whose visa expires soon (never sends anything)
3. Browsing the notification ledger and its statistics
"""

from datetime import datetime

from fastapi import APIRouter, Query

from ..core.dependencies import ExpiryEngineDep, LedgerDep, OrchestratorDep
from ..models import NotificationType
from ..schemas import (
    BatchSummaryResponse,
    EmployeeResultResponse,
    ErrorResponse,
    ExpiringEmployeeResponse,
    ExpiringEmployeesListResponse,
    NotificationHistoryResponse,
    NotificationLogResponse,
    NotificationStatsResponse,
    TriggerRequest,
    TriggerResponse,
    VisaStatsResponse,
)
from ..services.ledger import HistoryQuery
from ..services.orchestrator import RunRequest


router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    summary="Trigger a notification run",
    description="""
    Run the visa expiry notification engine.

    - No arguments: scheduled sweep over the automated milestones
    - `milestone`: sweep one milestone (backfills and re-runs)
    - `employee_id` with `manual=true`: notify one employee now, regardless
      of milestones and, unless `dedup=true`, of prior notifications
    """,
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def trigger_notifications(
    data: TriggerRequest,
    orchestrator: OrchestratorDep,
):
    result = await orchestrator.run(RunRequest(
        manual=data.manual,
        employee_id=data.employee_id,
        milestone=data.milestone,
        dedup=data.dedup,
    ))

    summary = result.summary
    return TriggerResponse(
        run_id=result.run_id,
        state=result.state.value,
        summary=BatchSummaryResponse(
            total_candidates=summary.total_candidates,
            sent=summary.sent,
            failed=summary.failed,
            skipped_duplicates=summary.skipped_duplicates,
            by_urgency=summary.by_urgency,
            by_department=summary.by_department,
            manual=summary.manual,
        ),
        per_employee_results=[
            EmployeeResultResponse(
                employee_id=r.employee_id,
                milestone=r.milestone,
                days_remaining=r.days_remaining,
                urgency=r.urgency,
                succeeded=r.succeeded,
                skipped=r.skipped,
                error=r.error,
            )
            for r in result.per_employee_results
        ],
    )


@router.get(
    "/expiring",
    response_model=ExpiringEmployeesListResponse,
    summary="List employees with expiring visas",
    description="""
    Employees whose visa expires within `within_days`, most urgent first.

    Read-only: this never checks the ledger or sends notifications.
    """,
)
async def get_expiring_employees(
    engine: ExpiryEngineDep,
    within_days: int = Query(default=30, ge=1, le=365),
    include_expired: bool = Query(default=False),
):
    expiring = await engine.find_expiring(within_days, include_expired=include_expired)

    return ExpiringEmployeesListResponse(
        employees=[
            ExpiringEmployeeResponse(
                employee_id=e.employee.id,
                employee_code=e.employee.employee_code,
                name=e.employee.display_name,
                email=e.employee.email,
                company_name=e.employee.company_name,
                department=e.employee.department,
                nationality=e.employee.nationality,
                visa_expiry_date=e.employee.visa_expiry_date,
                days_remaining=e.days_remaining,
                urgency=e.urgency,
                milestones=e.milestones,
            )
            for e in expiring
        ],
        total_count=len(expiring),
        within_days=within_days,
    )


@router.get(
    "/visa-stats",
    response_model=VisaStatsResponse,
    summary="Get visa expiry statistics",
)
async def get_visa_stats(engine: ExpiryEngineDep):
    """Expiry buckets over active employees."""
    stats = await engine.get_visa_stats()

    return VisaStatsResponse(
        total=stats.total,
        expired=stats.expired,
        expiring_1_day=stats.expiring_1_day,
        expiring_7_days=stats.expiring_7_days,
        expiring_30_days=stats.expiring_30_days,
        expiring_90_days=stats.expiring_90_days,
    )


@router.get(
    "/history",
    response_model=NotificationHistoryResponse,
    summary="Get notification history",
    description="""
    Ledger entries, newest first.

    Every dispatch attempt appears here, including failed ones and
    batch summaries sent to operations staff.
    """,
)
async def get_notification_history(
    ledger: LedgerDep,
    employee_id: str | None = Query(default=None),
    milestone: int | None = Query(default=None, gt=0),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    manual_only: bool = Query(default=False),
    succeeded: bool | None = Query(default=None),
    notification_type: NotificationType | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    entries, total = await ledger.get_history(
        HistoryQuery(
            employee_id=employee_id,
            milestone=milestone,
            start_date=start_date,
            end_date=end_date,
            manual_only=manual_only,
            succeeded=succeeded,
            notification_type=notification_type,
        ),
        limit=limit,
        offset=offset,
    )

    return NotificationHistoryResponse(
        entries=[NotificationLogResponse.model_validate(e) for e in entries],
        total_count=total,
        has_more=offset + len(entries) < total,
    )


@router.get(
    "/stats",
    response_model=NotificationStatsResponse,
    summary="Get notification statistics",
)
async def get_notification_stats(
    ledger: LedgerDep,
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
):
    """Aggregate visa expiry notification counts."""
    stats = await ledger.get_stats(start_date, end_date)

    return NotificationStatsResponse(
        total=stats.total,
        succeeded=stats.succeeded,
        failed=stats.failed,
        manual=stats.manual,
        by_urgency=stats.by_urgency,
        by_milestone=stats.by_milestone,
    )
