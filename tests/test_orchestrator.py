"""
Tests for the Batch Orchestrator - end-to-end runs.

These tests verify:
1. IDEMPOTENCY: A repeated sweep never re-sends a delivered milestone
2. RE-ARM: A corrected expiry date lets a milestone fire again
3. ISOLATION: One failing employee never aborts the run
4. MANUAL: Single-employee triggers bypass the ledger check
5. FATAL: Snapshot and provider failures abort before dispatch
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from visa_alerts.models import EmailTemplate, Employee, NotificationLog, NotificationType, UrgencyTier
from visa_alerts.services.exceptions import (
    EmployeeNotFoundError,
    InvalidTriggerError,
    ProviderConfigurationError,
    SnapshotUnavailableError,
    TemplateCatalogUnavailableError,
)
from visa_alerts.services.expiry_engine import EngineConfig
from visa_alerts.services.notification_service import DeliveryOutcome
from visa_alerts.services import orchestrator as orchestrator_module
from visa_alerts.services.orchestrator import RunRequest, RunState
from visa_alerts.services.templates import TemplateCatalog


async def visa_rows(session_factory) -> list[NotificationLog]:
    async with session_factory() as session:
        result = await session.execute(
            select(NotificationLog).where(
                NotificationLog.notification_type == NotificationType.VISA_EXPIRY
            )
        )
        return list(result.scalars().all())


async def summary_rows(session_factory) -> list[NotificationLog]:
    async with session_factory() as session:
        result = await session.execute(
            select(NotificationLog).where(
                NotificationLog.notification_type == NotificationType.BATCH_SUMMARY
            )
        )
        return list(result.scalars().all())


# =============================================================================
# TEST: SCHEDULED SWEEP
# =============================================================================


class TestScheduledSweep:

    async def test_end_to_end_seven_days(self, add_employee, build_orchestrator, provider, session_factory):
        employee = await add_employee(days_remaining=7)
        orchestrator = build_orchestrator()

        result = await orchestrator.run()

        assert result.state == RunState.DONE
        assert len(result.per_employee_results) == 1
        outcome = result.per_employee_results[0]
        assert outcome.employee_id == str(employee.id)
        assert outcome.milestone == 7
        assert outcome.urgency == UrgencyTier.CRITICAL.value
        assert outcome.days_remaining == 7
        assert outcome.succeeded is True

        assert len(provider.sent_to(employee.email)) == 1
        rows = await visa_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].delivery_succeeded is True
        assert rows[0].run_id == result.run_id

        # Same day again: evaluator emits the candidate, dedup filters it
        second = await build_orchestrator().run()

        assert second.summary.total_candidates == 1
        assert second.summary.skipped_duplicates == 1
        assert second.summary.sent == 0
        assert second.per_employee_results[0].skipped is True
        assert len(provider.sent_to(employee.email)) == 1
        assert len(await visa_rows(session_factory)) == 1

    async def test_only_automated_milestones_fire(self, add_employee, build_orchestrator, provider):
        await add_employee(days_remaining=60)
        await add_employee(days_remaining=30)
        await add_employee(days_remaining=12)

        result = await build_orchestrator().run()

        assert [r.milestone for r in result.per_employee_results] == [30]

    async def test_expiry_change_rearms_milestone(self, add_employee, build_orchestrator, provider, session_factory, today):
        employee = await add_employee(days_remaining=7)
        await build_orchestrator().run()

        # Corrected expiry date lands on the same milestone a week later
        new_expiry = employee.visa_expiry_date + timedelta(days=7)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Employee).where(Employee.id == employee.id).values(visa_expiry_date=new_expiry)
                )

        result = await build_orchestrator().run(today=today + timedelta(days=7))

        assert result.summary.sent == 1
        assert len(provider.sent_to(employee.email)) == 2
        rows = await visa_rows(session_factory)
        assert {r.expiry_date_at_evaluation for r in rows} == {employee.visa_expiry_date, new_expiry}

    async def test_failed_delivery_retried_on_next_run(self, add_employee, build_orchestrator, provider, session_factory):
        employee = await add_employee(days_remaining=15)
        provider.fail(employee.email, DeliveryOutcome(False, "SendGrid Error (400): bad", retryable=False))

        first = await build_orchestrator().run()
        assert first.summary.failed == 1

        provider.scripted.clear()
        second = await build_orchestrator().run()

        assert second.summary.sent == 1
        rows = await visa_rows(session_factory)
        assert sorted(r.delivery_succeeded for r in rows) == [False, True]

    async def test_single_milestone_backfill(self, add_employee, build_orchestrator):
        await add_employee(days_remaining=60)
        await add_employee(days_remaining=7)

        result = await build_orchestrator().run(RunRequest(milestone=60))

        assert [r.milestone for r in result.per_employee_results] == [60]
        assert result.per_employee_results[0].urgency == UrgencyTier.NOTICE.value


# =============================================================================
# TEST: PARTIAL FAILURE ISOLATION
# =============================================================================


class TestPartialFailure:

    async def test_one_failing_candidate_does_not_abort_run(self, add_employee, build_orchestrator, provider, session_factory):
        employees = [await add_employee(days_remaining=7) for _ in range(10)]
        provider.fail(
            employees[4].email,
            DeliveryOutcome(False, "SendGrid Error (400): rejected content", retryable=False),
        )

        result = await build_orchestrator().run()

        assert result.state == RunState.DONE
        assert result.summary.total_candidates == 10
        assert result.summary.sent == 9
        assert result.summary.failed == 1

        failed = [r for r in result.per_employee_results if not r.succeeded]
        assert [r.employee_id for r in failed] == [str(employees[4].id)]
        assert "rejected content" in failed[0].error

        rows = await visa_rows(session_factory)
        assert len(rows) == 10
        assert sum(1 for r in rows if r.delivery_succeeded) == 9

    async def test_missing_recipient_recorded_without_sending(self, add_employee, build_orchestrator, provider, session_factory):
        await add_employee(days_remaining=7, email=None)
        good = await add_employee(days_remaining=7)

        result = await build_orchestrator().run()

        assert result.summary.sent == 1
        assert result.summary.failed == 1
        assert provider.attempts.count(good.email) == 1
        assert len(provider.sent) == 2  # the employee plus the ops rollup

        rows = await visa_rows(session_factory)
        failed = [r for r in rows if not r.delivery_succeeded]
        assert len(failed) == 1
        assert "no email address" in failed[0].error_messages[0]

    async def test_raising_provider_is_recorded(self, add_employee, build_orchestrator, provider, session_factory):
        broken = await add_employee(days_remaining=7)
        healthy = await add_employee(days_remaining=7)
        provider.errors[broken.email] = ValueError("provider blew up")

        result = await build_orchestrator().run()

        assert result.state == RunState.DONE
        outcomes = {r.employee_id: r for r in result.per_employee_results}
        assert outcomes[str(healthy.id)].succeeded is True
        assert outcomes[str(broken.id)].succeeded is False
        assert "provider blew up" in outcomes[str(broken.id)].error

        rows = await visa_rows(session_factory)
        assert len(rows) == 2
        failed = [r for r in rows if not r.delivery_succeeded]
        assert [r.employee_id for r in failed] == [str(broken.id)]
        assert failed[0].sent_to == [broken.email]

    async def test_unexpected_compose_error_is_recorded(self, add_employee, build_orchestrator, session_factory, monkeypatch):
        employee = await add_employee(days_remaining=15)

        def broken_compose(*args, **kwargs):
            raise RuntimeError("layout missing")

        monkeypatch.setattr(orchestrator_module, "compose", broken_compose)

        result = await build_orchestrator().run()

        assert result.summary.failed == 1
        assert "layout missing" in result.per_employee_results[0].error
        rows = await visa_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].employee_id == str(employee.id)
        assert rows[0].delivery_succeeded is False
        assert rows[0].error_messages == ["Unexpected error: layout missing"]

    async def test_deadline_records_timeouts(self, add_employee, build_orchestrator, provider, session_factory):
        slow = await add_employee(days_remaining=7)
        fast = await add_employee(days_remaining=7)
        provider.delays[slow.email] = 5

        orchestrator = build_orchestrator(EngineConfig(run_deadline_seconds=0.5))
        result = await orchestrator.run()

        assert result.state == RunState.DONE
        outcomes = {r.employee_id: r for r in result.per_employee_results}
        assert outcomes[str(fast.id)].succeeded is True
        assert outcomes[str(slow.id)].succeeded is False
        assert "timed out" in outcomes[str(slow.id)].error

        rows = await visa_rows(session_factory)
        assert len(rows) == 2


# =============================================================================
# TEST: MANUAL TRIGGERS
# =============================================================================


class TestManualTrigger:

    async def test_manual_bypasses_ledger(self, add_employee, build_orchestrator, provider, session_factory):
        employee = await add_employee(days_remaining=7)
        await build_orchestrator().run()

        result = await build_orchestrator().run(
            RunRequest(manual=True, employee_id=str(employee.id))
        )

        assert result.per_employee_results[0].succeeded is True
        assert len(provider.sent_to(employee.email)) == 2
        rows = await visa_rows(session_factory)
        assert len(rows) == 2
        assert sorted(r.manual_trigger for r in rows) == [False, True]
        assert provider.sent_to(employee.email)[1]["subject"].startswith("[MANUAL] ")

    async def test_manual_with_dedup_is_idempotent(self, add_employee, build_orchestrator, provider):
        employee = await add_employee(days_remaining=7)
        request = RunRequest(manual=True, employee_id=str(employee.id), dedup=True)

        await build_orchestrator().run(request)
        second = await build_orchestrator().run(request)

        assert second.per_employee_results[0].skipped is True
        assert len(provider.sent_to(employee.email)) == 1

    async def test_manual_off_milestone_uses_generic_template(self, add_employee, build_orchestrator, session_factory):
        employee = await add_employee(days_remaining=12)

        result = await build_orchestrator().run(
            RunRequest(manual=True, employee_id=str(employee.id))
        )

        assert result.per_employee_results[0].milestone is None
        assert result.per_employee_results[0].urgency == UrgencyTier.URGENT.value
        rows = await visa_rows(session_factory)
        assert rows[0].template_id == "visa_expiry_generic"

    async def test_manual_single_employee_skips_rollup(self, add_employee, build_orchestrator, session_factory):
        employee = await add_employee(days_remaining=7)

        await build_orchestrator().run(RunRequest(manual=True, employee_id=str(employee.id)))

        assert await summary_rows(session_factory) == []

    async def test_unknown_employee_raises(self, add_employee, build_orchestrator):
        inactive = await add_employee(days_remaining=7, is_active=False)

        with pytest.raises(EmployeeNotFoundError):
            await build_orchestrator().run(RunRequest(manual=True, employee_id=str(inactive.id)))

    @pytest.mark.parametrize(
        "request_args",
        [
            {"milestone": 0},
            {"milestone": -7},
            {"manual": True, "employee_id": "emp-1", "milestone": 7},
            {"manual": False, "employee_id": "emp-1"},
        ],
    )
    async def test_invalid_trigger(self, build_orchestrator, request_args):
        with pytest.raises(InvalidTriggerError):
            await build_orchestrator().run(RunRequest(**request_args))


# =============================================================================
# TEST: FATAL ERRORS AND SUMMARY
# =============================================================================


class TestFatalAndSummary:

    async def test_provider_credentials_fail_before_dispatch(self, add_employee, build_orchestrator, provider, session_factory):
        await add_employee(days_remaining=7)
        provider.verify_error = ProviderConfigurationError("SendGrid rejected the API key (401)")
        orchestrator = build_orchestrator()

        with pytest.raises(ProviderConfigurationError):
            await orchestrator.run()

        assert orchestrator.state == RunState.FAILED
        assert provider.attempts == []
        assert await visa_rows(session_factory) == []

    async def test_snapshot_failure_is_fatal(self, build_orchestrator, provider, db_engine):
        orchestrator = build_orchestrator()
        async with db_engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE employees")

        with pytest.raises(SnapshotUnavailableError):
            await orchestrator.run()

        assert orchestrator.state == RunState.FAILED
        assert provider.attempts == []

    async def test_template_store_failure_is_fatal(self, add_employee, build_orchestrator, provider, session_factory, db_engine):
        await add_employee(days_remaining=7)
        orchestrator = build_orchestrator(
            catalog_loader=lambda: TemplateCatalog.load(session_factory),
        )
        async with db_engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE email_templates")

        with pytest.raises(TemplateCatalogUnavailableError):
            await orchestrator.run()

        assert orchestrator.state == RunState.FAILED
        assert provider.attempts == []
        assert await visa_rows(session_factory) == []

    async def test_templates_loaded_at_run_start(self, add_employee, build_orchestrator, provider, session_factory):
        employee = await add_employee(days_remaining=7)
        orchestrator = build_orchestrator(
            catalog_loader=lambda: TemplateCatalog.load(session_factory),
        )
        async with session_factory() as session:
            async with session.begin():
                session.add(EmailTemplate(
                    name="seven-day",
                    milestone=7,
                    subject="{{employee_name}}: {{days_until_expiry}} days left",
                    html_content="<p>{{current_date}}</p>",
                ))

        await orchestrator.run()

        assert provider.sent_to(employee.email)[0]["subject"] == "[CRITICAL] Ahmed Khan: 7 days left"

    async def test_rollup_sent_and_recorded(self, add_employee, build_orchestrator, provider, session_factory):
        await add_employee(days_remaining=7, department="Finance")
        await add_employee(days_remaining=30, department=None)

        result = await build_orchestrator().run()

        assert result.summary.by_urgency == {"critical": 1, "warning": 1}
        assert result.summary.by_department == {"Finance": 1, "Unknown": 1}

        rollups = provider.sent_to("ops@example.com")
        assert len(rollups) == 1
        assert "2 candidates" in rollups[0]["subject"]
        rows = await summary_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].delivery_succeeded is True

    async def test_rollup_failure_does_not_fail_run(self, add_employee, build_orchestrator, provider, session_factory):
        await add_employee(days_remaining=7)
        provider.fail("ops@example.com", DeliveryOutcome(False, "SendGrid Error (400): bad", retryable=False))

        result = await build_orchestrator().run()

        assert result.state == RunState.DONE
        assert result.summary.sent == 1
        rows = await summary_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].delivery_succeeded is False

    async def test_no_candidates_sends_no_rollup(self, add_employee, build_orchestrator, provider):
        await add_employee(days_remaining=45)

        result = await build_orchestrator().run()

        assert result.state == RunState.DONE
        assert result.summary.total_candidates == 0
        assert provider.sent == []
