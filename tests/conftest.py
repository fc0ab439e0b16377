"""Shared fixtures: temporary SQLite database, employees, and a recording email provider."""

import asyncio
from datetime import date, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visa_alerts.core.database import build_engine, build_session_factory, init_db
from visa_alerts.models import Employee
from visa_alerts.services.expiry_engine import EngineConfig
from visa_alerts.services.ledger import NotificationLedger
from visa_alerts.services.notification_service import (
    DeliveryOutcome,
    Dispatcher,
    EmailProvider,
    RetryPolicy,
)
from visa_alerts.services.orchestrator import BatchOrchestrator
from visa_alerts.services.snapshot import SqlEmployeeSource
from visa_alerts.services.summary import SummaryReporter
from visa_alerts.services.templates import TemplateCatalog


TODAY = date(2026, 3, 2)


# =============================================================================
# EMAIL PROVIDER
# =============================================================================


class RecordingProvider(EmailProvider):
    """In-memory provider that records every send attempt."""

    def __init__(self):
        self.sent: list[dict] = []
        self.attempts: list[str] = []
        # recipient -> outcomes returned in order (last one repeats)
        self.scripted: dict[str, list[DeliveryOutcome]] = {}
        # recipient -> seconds to hang before answering
        self.delays: dict[str, float] = {}
        self.verify_error: Exception | None = None
        # recipient -> exception raised instead of answering
        self.errors: dict[str, Exception] = {}

    def fail(self, recipient: str, *outcomes: DeliveryOutcome) -> None:
        self.scripted[recipient] = list(outcomes)

    async def verify_credentials(self) -> None:
        if self.verify_error is not None:
            raise self.verify_error

    async def send(self, to, subject, html_body, text_body, metadata=None) -> DeliveryOutcome:
        self.attempts.append(to)
        if to in self.delays:
            await asyncio.sleep(self.delays[to])
        if to in self.errors:
            raise self.errors[to]

        outcomes = self.scripted.get(to)
        if outcomes:
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            if not outcome.delivered:
                return outcome

        self.sent.append({
            "to": to,
            "subject": subject,
            "html_body": html_body,
            "text_body": text_body,
            "metadata": metadata or {},
        })
        return DeliveryOutcome(True)

    def sent_to(self, recipient: str) -> list[dict]:
        return [m for m in self.sent if m["to"] == recipient]


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
def sqlite_file_url_async(tmp_path: Path):
    db = tmp_path / "sqlite.db"
    db.touch()
    yield f"sqlite+aiosqlite:///{db.absolute().resolve()}"
    db.unlink(missing_ok=True)


@pytest.fixture
async def db_engine(sqlite_file_url_async):
    engine = build_engine(sqlite_file_url_async)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(db_engine)


@pytest.fixture
def ledger(session_factory) -> NotificationLedger:
    return NotificationLedger(session_factory)


# =============================================================================
# DOMAIN FIXTURES
# =============================================================================


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def add_employee(session_factory, today):
    """Insert an employee whose visa expires `days_remaining` days from today."""

    async def _add(days_remaining: int | None = 7, **overrides) -> Employee:
        values = {
            "employee_code": f"EMP-{uuid4().hex[:6].upper()}",
            "name": "Ahmed Khan",
            "email": f"employee.{uuid4().hex[:8]}@example.com",
            "company_name": "Gulf Contracting LLC",
            "department": "Operations",
            "nationality": "Pakistani",
            "trade": "Electrician",
            "visa_expiry_date": today + timedelta(days=days_remaining) if days_remaining is not None else None,
            "is_active": True,
        }
        values.update(overrides)
        employee = Employee(**values)

        async with session_factory() as session:
            async with session.begin():
                session.add(employee)
        return employee

    return _add


@pytest.fixture
def provider() -> RecordingProvider:
    return RecordingProvider()


@pytest.fixture
def build_orchestrator(session_factory, ledger, provider, today):
    """Assemble a BatchOrchestrator over the test database with a pinned clock."""

    def _build(
        config: EngineConfig | None = None,
        catalog: TemplateCatalog | None = None,
        email_provider: EmailProvider | None = None,
        catalog_loader=None,
    ) -> BatchOrchestrator:
        config = config or EngineConfig(operations_recipients=("ops@example.com",))
        dispatcher = Dispatcher(
            email_provider or provider,
            ledger,
            RetryPolicy(max_retries=2, backoff_seconds=0),
        )
        return BatchOrchestrator(
            source=SqlEmployeeSource(session_factory),
            ledger=ledger,
            catalog=catalog or TemplateCatalog(),
            dispatcher=dispatcher,
            reporter=SummaryReporter(dispatcher, config.operations_recipients),
            config=config,
            clock=lambda: today,
            catalog_loader=catalog_loader,
        )

    return _build
