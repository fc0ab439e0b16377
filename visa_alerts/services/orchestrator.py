"""
Batch Orchestrator: drives one notification run end to end.

Run state machine:
    INITIALIZED -> SNAPSHOT_LOADED -> EVALUATED -> DISPATCHING -> SUMMARIZED -> DONE

FAILED is reachable only before evaluation. Once candidates exist, every
error degrades to a per-candidate failure recorded in the ledger, and the
run always reaches SUMMARIZED.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable
from uuid import UUID, uuid4

from .exceptions import (
    EmployeeNotFoundError,
    InvalidTriggerError,
    MissingRecipientError,
    RunFatalError,
    TemplateRenderError,
)
from .expiry_engine import (
    DEFAULT_CONFIG,
    EngineConfig,
    EvaluationScope,
    NotificationCandidate,
    ScopeKind,
    ThresholdEvaluator,
    today_in,
)
from .ledger import NotificationLedger
from .notification_service import DispatchContext, Dispatcher, DispatchResult
from .snapshot import EmployeeRecordSource, EmployeeSnapshot
from .summary import BatchSummary, SummaryReporter
from .templates import TemplateCatalog, compose, validate_recipient


logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


class RunState(str, Enum):
    INITIALIZED = "initialized"
    SNAPSHOT_LOADED = "snapshot_loaded"
    EVALUATED = "evaluated"
    DISPATCHING = "dispatching"
    SUMMARIZED = "summarized"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunRequest:
    """
    Trigger arguments.

    dedup=None means the default: sweeps check the ledger, manual
    single-employee triggers bypass it.
    """
    manual: bool = False
    employee_id: str | None = None
    milestone: int | None = None
    dedup: bool | None = None


@dataclass
class EmployeeResult:
    """Outcome of one candidate."""
    employee_id: str
    days_remaining: int
    succeeded: bool
    milestone: int | None = None
    urgency: str | None = None
    skipped: bool = False
    error: str | None = None


@dataclass
class RunResult:
    run_id: UUID
    state: RunState
    summary: BatchSummary
    per_employee_results: list[EmployeeResult] = field(default_factory=list)


# =============================================================================
# ORCHESTRATOR
# =============================================================================


class BatchOrchestrator:
    """
    Coordinates evaluation, dedup, dispatch and summary for one run.

    Per-candidate work runs on a bounded worker pool; the summary waits
    for every candidate to reach a terminal state.
    """

    def __init__(
        self,
        source: EmployeeRecordSource,
        ledger: NotificationLedger,
        catalog: TemplateCatalog,
        dispatcher: Dispatcher,
        reporter: SummaryReporter,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], date] | None = None,
        verify_provider: bool = True,
        catalog_loader: Callable[[], Awaitable[TemplateCatalog]] | None = None,
    ):
        self._source = source
        self._ledger = ledger
        self._catalog = catalog
        self._dispatcher = dispatcher
        self._reporter = reporter
        self._config = config
        self._clock = clock or (lambda: today_in(config.timezone))
        self._verify_provider = verify_provider
        self._catalog_loader = catalog_loader
        self._evaluator = ThresholdEvaluator(grace_days=config.grace_days)
        self.state = RunState.INITIALIZED

    async def run(self, request: RunRequest | None = None, today: date | None = None) -> RunResult:
        """
        Execute one run.

        Raises:
            InvalidTriggerError: inconsistent trigger arguments
            EmployeeNotFoundError: single-employee trigger for an unknown employee
            RunFatalError: snapshot, templates or provider unavailable; nothing was dispatched
        """
        request = request or RunRequest()
        run_id = uuid4()
        self.state = RunState.INITIALIZED

        scope = self._resolve_scope(request)
        today = today or self._clock()
        logger.info(
            f"Starting notification run {run_id} (scope={scope.kind.value}, "
            f"manual={request.manual}, today={today})"
        )

        try:
            if self._verify_provider:
                await self._dispatcher.verify_provider()
            snapshot = await self._source.fetch_active_employees_with_expiry()
            if self._catalog_loader is not None:
                self._catalog = await self._catalog_loader()
        except RunFatalError as e:
            self.state = RunState.FAILED
            logger.critical(f"Notification run {run_id} aborted: {e}")
            raise

        self._transition(RunState.SNAPSHOT_LOADED)
        employees = {e.id: e for e in snapshot}

        if scope.kind == ScopeKind.SINGLE_EMPLOYEE and scope.employee_id not in employees:
            self.state = RunState.FAILED
            raise EmployeeNotFoundError(
                f"Employee {scope.employee_id} not found, inactive, or without a visa expiry date"
            )

        candidates = self._evaluate(snapshot, scope, request, today)
        self._transition(RunState.EVALUATED)
        logger.info(f"Run {run_id}: {len(candidates)} candidates evaluated")

        dedup = request.dedup if request.dedup is not None else scope.kind != ScopeKind.SINGLE_EMPLOYEE

        self._transition(RunState.DISPATCHING)
        results = await self._dispatch_all(candidates, employees, request.manual, dedup, run_id)

        summary = self._reporter.summarize(
            candidates, results, employees, manual=request.manual, run_id=run_id
        )
        self._transition(RunState.SUMMARIZED)

        if scope.kind != ScopeKind.SINGLE_EMPLOYEE and candidates:
            await self._reporter.report(summary)

        self._transition(RunState.DONE)
        logger.info(
            f"Notification run {run_id} complete: {summary.sent} sent, {summary.failed} failed, "
            f"{summary.skipped_duplicates} already notified"
        )

        return RunResult(
            run_id=run_id,
            state=self.state,
            summary=summary,
            per_employee_results=[
                self._employee_result(c, results.get(c)) for c in candidates
            ],
        )

    async def preview(
        self,
        request: RunRequest | None = None,
        today: date | None = None,
    ) -> list[NotificationCandidate]:
        """Evaluate without dispatching or touching the ledger."""
        request = request or RunRequest()
        scope = self._resolve_scope(request)
        today = today or self._clock()
        snapshot = await self._source.fetch_active_employees_with_expiry()
        return self._evaluate(snapshot, scope, request, today)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _transition(self, state: RunState) -> None:
        logger.debug(f"Run state {self.state.value} -> {state.value}")
        self.state = state

    @staticmethod
    def _resolve_scope(request: RunRequest) -> EvaluationScope:
        if request.milestone is not None and request.milestone <= 0:
            raise InvalidTriggerError(f"Milestone must be a positive day count, got {request.milestone}")
        if request.employee_id and request.milestone is not None:
            raise InvalidTriggerError("employee_id and milestone cannot be combined")
        if request.employee_id:
            if not request.manual:
                raise InvalidTriggerError("Single-employee triggers must be manual")
            return EvaluationScope.single_employee(request.employee_id)
        if request.milestone is not None:
            return EvaluationScope.single_milestone(request.milestone)
        return EvaluationScope.all()

    def _evaluate(
        self,
        snapshot: list[EmployeeSnapshot],
        scope: EvaluationScope,
        request: RunRequest,
        today: date,
    ) -> list[NotificationCandidate]:
        if scope.kind == ScopeKind.SINGLE_EMPLOYEE:
            milestones = self._config.milestones
        else:
            milestones = self._config.automated_milestones
        return self._evaluator.evaluate(snapshot, milestones, scope=scope, today=today)

    async def _dispatch_all(
        self,
        candidates: list[NotificationCandidate],
        employees: dict[str, EmployeeSnapshot],
        manual: bool,
        dedup: bool,
        run_id: UUID,
    ) -> dict[NotificationCandidate, DispatchResult | None]:
        """Process every candidate; None marks a dedup skip."""
        results: dict[NotificationCandidate, DispatchResult | None] = {}
        if not candidates:
            return results

        semaphore = asyncio.Semaphore(self._config.dispatch_concurrency)

        async def worker(candidate: NotificationCandidate) -> None:
            async with semaphore:
                results[candidate] = await self._process_candidate(
                    candidate, employees[candidate.employee_id], manual, dedup, run_id
                )

        tasks = [asyncio.create_task(worker(c)) for c in candidates]
        _, pending = await asyncio.wait(tasks, timeout=self._config.run_deadline_seconds)

        if pending:
            logger.error(
                f"Run {run_id} deadline of {self._config.run_deadline_seconds}s reached, "
                f"cancelling {len(pending)} in-flight dispatches"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for candidate in candidates:
            if candidate in results:
                continue
            context = self._context(candidate, manual, run_id)
            error = f"Dispatch timed out after run deadline of {self._config.run_deadline_seconds}s"
            try:
                results[candidate] = await self._dispatcher.record_failure(
                    context, error, recipient=employees[candidate.employee_id].email
                )
            except Exception as e:
                logger.error(f"Could not record timeout for employee {candidate.employee_id}: {e}")
                results[candidate] = DispatchResult(False, [error, str(e)])

        return results

    async def _process_candidate(
        self,
        candidate: NotificationCandidate,
        employee: EmployeeSnapshot,
        manual: bool,
        dedup: bool,
        run_id: UUID,
    ) -> DispatchResult | None:
        """compose -> ledger check -> send -> record, for one candidate."""
        context = self._context(candidate, manual, run_id)
        try:
            if dedup and await self._ledger.already_notified(
                candidate.employee_id, candidate.milestone, candidate.expiry_date
            ):
                logger.debug(
                    f"Skipping employee {candidate.employee_id}: already notified "
                    f"for milestone {candidate.milestone}"
                )
                return None

            try:
                recipient = validate_recipient(employee.email)
                composed = compose(candidate, employee, self._catalog, manual=manual)
            except (MissingRecipientError, TemplateRenderError) as e:
                logger.error(f"Cannot notify employee {candidate.employee_id}: {e}")
                return await self._dispatcher.record_failure(context, str(e), recipient=employee.email)

            return await self._dispatcher.dispatch(composed, recipient, context)
        except Exception as e:
            # Per-candidate failures never abort the run
            logger.exception(f"Unexpected error processing employee {candidate.employee_id}: {e}")
            error = f"Unexpected error: {e}"
            try:
                return await self._dispatcher.record_failure(context, error, recipient=employee.email)
            except Exception as record_error:
                logger.error(
                    f"Could not record failure for employee {candidate.employee_id}: {record_error}"
                )
                return DispatchResult(False, [error, str(record_error)])

    @staticmethod
    def _context(candidate: NotificationCandidate, manual: bool, run_id: UUID) -> DispatchContext:
        return DispatchContext(
            employee_id=candidate.employee_id,
            milestone=candidate.milestone,
            expiry_date=candidate.expiry_date,
            days_remaining=candidate.days_remaining,
            urgency=candidate.urgency,
            manual=manual,
            run_id=run_id,
        )

    @staticmethod
    def _employee_result(
        candidate: NotificationCandidate,
        result: DispatchResult | None,
    ) -> EmployeeResult:
        if result is None:
            return EmployeeResult(
                employee_id=candidate.employee_id,
                days_remaining=candidate.days_remaining,
                succeeded=False,
                milestone=candidate.milestone,
                urgency=candidate.urgency.value,
                skipped=True,
            )
        return EmployeeResult(
            employee_id=candidate.employee_id,
            days_remaining=candidate.days_remaining,
            succeeded=result.succeeded,
            milestone=candidate.milestone,
            urgency=candidate.urgency.value,
            error="; ".join(result.error_messages) if not result.succeeded else None,
        )
