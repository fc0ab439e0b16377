"""
Expiry Engine: visa expiry threshold evaluation.

This module decides which employees are due a notification on a given day.
It performs no I/O apart from loading the snapshot in ExpiryEngine.

Key responsibilities:
1. Compute calendar-day distance to each visa expiry date
2. Classify urgency (independent of which milestone matched)
3. Match milestones exactly (sweeps) or by window (queries)
4. Narrow candidates to a scope (all, one milestone, one employee)
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Sequence
from zoneinfo import ZoneInfo

from ..core.config import Settings
from ..models import UrgencyTier
from .snapshot import EmployeeRecordSource, EmployeeSnapshot


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for one notification run."""

    # General milestone set (days before expiry)
    milestones: tuple[int, ...] = (90, 60, 30, 15, 7, 1)

    # Milestones used by the automated daily sweep
    automated_milestones: tuple[int, ...] = (30, 15, 7, 1)

    # Extra days after a milestone during which a missed sweep still fires
    grace_days: int = 0

    # Bounded parallelism for per-candidate dispatch
    dispatch_concurrency: int = 5

    # Overall run deadline
    run_deadline_seconds: float = 300.0

    # Zone used to derive "today" when no date is injected
    timezone: str = "UTC"

    operations_recipients: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            milestones=tuple(settings.milestones),
            automated_milestones=tuple(settings.automated_milestones),
            grace_days=settings.grace_days,
            dispatch_concurrency=settings.dispatch_concurrency,
            run_deadline_seconds=settings.run_deadline_seconds,
            timezone=settings.notification_timezone,
            operations_recipients=tuple(settings.operations_recipients),
        )


DEFAULT_CONFIG = EngineConfig()


def today_in(tz_name: str = "UTC") -> date:
    """Calendar date of the evaluation instant in the given zone."""
    return datetime.now(timezone.utc).astimezone(ZoneInfo(tz_name)).date()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


class MatchMode(str, Enum):
    EXACT_DAY = "exact_day"
    WINDOW = "window"


class ScopeKind(str, Enum):
    ALL = "all"
    SINGLE_MILESTONE = "single_milestone"
    SINGLE_EMPLOYEE = "single_employee"


@dataclass(frozen=True)
class EvaluationScope:
    """Narrows the candidate set of a run."""
    kind: ScopeKind = ScopeKind.ALL
    milestone: int | None = None
    employee_id: str | None = None

    @classmethod
    def all(cls) -> "EvaluationScope":
        return cls()

    @classmethod
    def single_milestone(cls, milestone: int) -> "EvaluationScope":
        return cls(kind=ScopeKind.SINGLE_MILESTONE, milestone=milestone)

    @classmethod
    def single_employee(cls, employee_id: str) -> "EvaluationScope":
        return cls(kind=ScopeKind.SINGLE_EMPLOYEE, employee_id=employee_id)


@dataclass(frozen=True)
class NotificationCandidate:
    """An (employee, milestone) pairing that has not been dispatched yet."""
    employee_id: str
    milestone: int | None
    urgency: UrgencyTier
    expiry_date: date
    days_remaining: int


@dataclass
class ExpiringEmployee:
    """An employee inside a query window, for display."""
    employee: EmployeeSnapshot
    days_remaining: int
    urgency: UrgencyTier
    milestones: list[int] = field(default_factory=list)


@dataclass
class VisaStats:
    """Expiry buckets over active employees."""
    total: int
    expired: int
    expiring_1_day: int
    expiring_7_days: int
    expiring_30_days: int
    expiring_90_days: int


# =============================================================================
# CLASSIFICATION
# =============================================================================


def days_until(expiry_date: date, today: date) -> int:
    """Whole calendar days from today to the expiry date."""
    if isinstance(expiry_date, datetime):
        expiry_date = expiry_date.date()
    if isinstance(today, datetime):
        today = today.date()
    return (expiry_date - today).days


def classify_urgency(days_remaining: int) -> UrgencyTier:
    """
    Map days remaining to an urgency tier.

    Already expired and 1-7 days are CRITICAL, 8-15 URGENT,
    16-30 WARNING, anything further out NOTICE.
    """
    if days_remaining <= 7:
        return UrgencyTier.CRITICAL
    if days_remaining <= 15:
        return UrgencyTier.URGENT
    if days_remaining <= 30:
        return UrgencyTier.WARNING
    return UrgencyTier.NOTICE


# =============================================================================
# THRESHOLD EVALUATOR
# =============================================================================


class ThresholdEvaluator:
    """
    Pure evaluation of a snapshot against a milestone set.

    Never calls external services, so it cannot fail partially.
    """

    def __init__(self, grace_days: int = 0):
        self._grace_days = grace_days

    def evaluate(
        self,
        snapshot: Sequence[EmployeeSnapshot],
        milestones: Sequence[int],
        scope: EvaluationScope = EvaluationScope(),
        today: date | None = None,
        mode: MatchMode = MatchMode.EXACT_DAY,
    ) -> list[NotificationCandidate]:
        """
        Produce notification candidates for a snapshot.

        EXACT_DAY yields one candidate per milestone equal to the days
        remaining (widened by the grace window). WINDOW yields one candidate
        per milestone m with 0 < days remaining <= m. SINGLE_EMPLOYEE scope
        skips milestone matching and always yields one candidate.
        """
        if today is None:
            today = today_in()

        if scope.kind == ScopeKind.SINGLE_MILESTONE:
            milestones = [scope.milestone]

        candidates = []
        for employee in snapshot:
            if not employee.is_active or employee.visa_expiry_date is None:
                continue

            if scope.kind == ScopeKind.SINGLE_EMPLOYEE:
                if employee.id != scope.employee_id:
                    continue
                candidates.append(self._single_employee_candidate(employee, today, milestones))
                continue

            days_remaining = days_until(employee.visa_expiry_date, today)
            urgency = classify_urgency(days_remaining)

            for milestone in milestones:
                if not self._matches(milestone, days_remaining, mode):
                    continue
                candidates.append(NotificationCandidate(
                    employee_id=employee.id,
                    milestone=milestone,
                    urgency=urgency,
                    expiry_date=employee.visa_expiry_date,
                    days_remaining=days_remaining,
                ))

        return candidates

    def _matches(self, milestone: int, days_remaining: int, mode: MatchMode) -> bool:
        if mode == MatchMode.WINDOW:
            return 0 < days_remaining <= milestone
        if self._grace_days == 0:
            return days_remaining == milestone
        return 0 < days_remaining and milestone - self._grace_days <= days_remaining <= milestone

    def _single_employee_candidate(
        self,
        employee: EmployeeSnapshot,
        today: date,
        milestones: Sequence[int],
    ) -> NotificationCandidate:
        days_remaining = days_until(employee.visa_expiry_date, today)
        return NotificationCandidate(
            employee_id=employee.id,
            milestone=days_remaining if days_remaining in milestones else None,
            urgency=classify_urgency(days_remaining),
            expiry_date=employee.visa_expiry_date,
            days_remaining=days_remaining,
        )


# =============================================================================
# EXPIRY ENGINE (query surface)
# =============================================================================


class ExpiryEngine:
    """
    Read-only expiry queries for display screens.

    Uses window matching and never touches the ledger or the dispatcher.
    """

    def __init__(
        self,
        source: EmployeeRecordSource,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], date] | None = None,
    ):
        self._source = source
        self._config = config
        self._clock = clock or (lambda: today_in(config.timezone))
        self._evaluator = ThresholdEvaluator()

    async def find_expiring(
        self,
        within_days: int,
        today: date | None = None,
        include_expired: bool = False,
    ) -> list[ExpiringEmployee]:
        """Employees whose visa expires within N days, most urgent first."""
        today = today or self._clock()
        snapshot = await self._source.fetch_active_employees_with_expiry()

        milestones = sorted({within_days, *(m for m in self._config.milestones if m <= within_days)})
        candidates = self._evaluator.evaluate(
            snapshot,
            milestones=milestones,
            today=today,
            mode=MatchMode.WINDOW,
        )

        by_employee: dict[str, list[int]] = {}
        for candidate in candidates:
            by_employee.setdefault(candidate.employee_id, []).append(candidate.milestone)

        expiring = []
        for employee in snapshot:
            days_remaining = days_until(employee.visa_expiry_date, today)
            matched = by_employee.get(employee.id)
            if matched is None and not (include_expired and days_remaining <= 0):
                continue
            expiring.append(ExpiringEmployee(
                employee=employee,
                days_remaining=days_remaining,
                urgency=classify_urgency(days_remaining),
                milestones=sorted(m for m in (matched or []) if m in self._config.milestones),
            ))

        expiring.sort(key=lambda e: e.days_remaining)
        return expiring

    async def get_visa_stats(self, today: date | None = None) -> VisaStats:
        """Aggregated expiry buckets over active employees."""
        today = today or self._clock()
        snapshot = await self._source.fetch_active_employees_with_expiry()

        stats = VisaStats(
            total=len(snapshot),
            expired=0,
            expiring_1_day=0,
            expiring_7_days=0,
            expiring_30_days=0,
            expiring_90_days=0,
        )
        for employee in snapshot:
            days_remaining = days_until(employee.visa_expiry_date, today)
            if days_remaining <= 0:
                stats.expired += 1
                continue
            if days_remaining <= 1:
                stats.expiring_1_day += 1
            if days_remaining <= 7:
                stats.expiring_7_days += 1
            if days_remaining <= 30:
                stats.expiring_30_days += 1
            if days_remaining <= 90:
                stats.expiring_90_days += 1

        return stats
