"""Tests for the visa expiry cron job."""

import pytest

from visa_alerts.core.config import Settings
from visa_alerts.core.database import build_engine, build_session_factory
from visa_alerts.jobs import expiry_cron
from visa_alerts.jobs.expiry_cron import main, run_notification_job
from visa_alerts.services.exceptions import ProviderConfigurationError, SnapshotUnavailableError
from visa_alerts.services.notification_service import DeliveryOutcome
from visa_alerts.services.orchestrator import RunRequest


@pytest.fixture
def settings() -> Settings:
    return Settings(
        operations_recipients_str="ops@example.com",
        dispatch_backoff_seconds=0,
        slack_alerts_webhook_url=None,
        alert_webhook_url=None,
    )


@pytest.fixture
def alerts(monkeypatch) -> list[dict]:
    sent: list[dict] = []

    async def fake_send_alert(title, message, severity="error", details=None, settings=None):
        sent.append({"title": title, "severity": severity, "details": details})

    monkeypatch.setattr(expiry_cron, "send_alert", fake_send_alert)
    return sent


class TestRunNotificationJob:

    async def test_sweep_reports_counts(self, settings, session_factory, provider, add_employee, today, alerts):
        await add_employee(days_remaining=7)
        await add_employee(days_remaining=30)

        results = await run_notification_job(
            settings, today=today, session_factory=session_factory, provider=provider
        )

        assert results["candidates"] == 2
        assert results["notifications_sent"] == 2
        assert results["notifications_failed"] == 0
        assert results["run_id"] is not None
        assert len(provider.sent_to("ops@example.com")) == 1
        assert alerts == []

    async def test_dry_run_sends_nothing(self, settings, session_factory, provider, add_employee, today, ledger, alerts):
        employee = await add_employee(days_remaining=15)

        results = await run_notification_job(
            settings, today=today, dry_run=True, session_factory=session_factory, provider=provider
        )

        assert results["candidates"] == 1
        assert results["preview"] == [{
            "employee_id": str(employee.id),
            "milestone": 15,
            "days_remaining": 15,
            "urgency": "urgent",
        }]
        assert provider.attempts == []
        _, total = await ledger.get_history()
        assert total == 0

    async def test_failed_deliveries_raise_warning_alert(self, settings, session_factory, provider, add_employee, today, alerts):
        employee = await add_employee(days_remaining=1)
        provider.fail(employee.email, DeliveryOutcome(False, "SendGrid Error (400): bad", retryable=False))

        results = await run_notification_job(
            settings, today=today, session_factory=session_factory, provider=provider
        )

        assert results["notifications_failed"] == 1
        assert len(results["errors"]) == 1
        assert [a["severity"] for a in alerts] == ["warning"]

    async def test_fatal_error_alerts_and_raises(self, settings, session_factory, provider, add_employee, today, alerts):
        await add_employee(days_remaining=7)
        provider.verify_error = ProviderConfigurationError("SendGrid rejected the API key (401)")

        with pytest.raises(ProviderConfigurationError):
            await run_notification_job(
                settings, today=today, session_factory=session_factory, provider=provider
            )

        assert len(alerts) == 1
        assert alerts[0]["severity"] == "critical"
        assert alerts[0]["details"]["error_type"] == "ProviderConfigurationError"

    async def test_unreachable_database_alerts_and_raises(self, settings, provider, tmp_path, alerts):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'visa.db'}")
        try:
            with pytest.raises(SnapshotUnavailableError):
                await run_notification_job(
                    settings, session_factory=build_session_factory(engine), provider=provider
                )
        finally:
            await engine.dispose()

        assert [a["severity"] for a in alerts] == ["critical"]
        assert alerts[0]["details"]["error_type"] == "SnapshotUnavailableError"
        assert provider.attempts == []

    async def test_manual_single_employee(self, settings, session_factory, provider, add_employee, today, alerts):
        employee = await add_employee(days_remaining=45)

        results = await run_notification_job(
            settings,
            request=RunRequest(manual=True, employee_id=str(employee.id)),
            today=today,
            session_factory=session_factory,
            provider=provider,
        )

        assert results["notifications_sent"] == 1
        assert provider.sent_to("ops@example.com") == []


class TestCli:

    def test_employee_id_requires_manual(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--employee-id", "emp-1"])

        assert exc_info.value.code == 2

    def test_employee_and_milestone_are_exclusive(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--manual", "--employee-id", "emp-1", "--milestone", "7"])

        assert exc_info.value.code == 2
