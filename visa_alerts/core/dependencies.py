"""FastAPI dependencies wiring the notification engine."""

import logging
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..services.expiry_engine import EngineConfig, ExpiryEngine
from ..services.ledger import NotificationLedger
from ..services.notification_service import (
    Dispatcher,
    EmailConfig,
    EmailProvider,
    RetryPolicy,
    SendGridProvider,
)
from ..services.orchestrator import BatchOrchestrator
from ..services.snapshot import SqlEmployeeSource
from ..services.summary import SummaryReporter
from ..services.templates import TemplateCatalog
from .config import Settings, get_settings
from .database import get_session_factory

logger = logging.getLogger(__name__)


SettingsDep = Annotated[Settings, Depends(get_settings)]
SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


def get_email_provider(settings: SettingsDep) -> EmailProvider:
    """Email delivery provider configured from settings."""
    return SendGridProvider(EmailConfig.from_settings(settings))


EmailProviderDep = Annotated[EmailProvider, Depends(get_email_provider)]


def build_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: EmailProvider | None = None,
) -> BatchOrchestrator:
    """Assemble a BatchOrchestrator from settings (used by the API and the cron job).

    Email templates are loaded from the database at the start of each run.
    """
    config = EngineConfig.from_settings(settings)
    ledger = NotificationLedger(session_factory)
    dispatcher = Dispatcher(
        provider or SendGridProvider(EmailConfig.from_settings(settings)),
        ledger,
        RetryPolicy(
            max_retries=settings.dispatch_max_retries,
            backoff_seconds=settings.dispatch_backoff_seconds,
        ),
    )
    return BatchOrchestrator(
        source=SqlEmployeeSource(session_factory),
        ledger=ledger,
        catalog=TemplateCatalog(),
        dispatcher=dispatcher,
        reporter=SummaryReporter(dispatcher, config.operations_recipients),
        config=config,
        verify_provider=settings.verify_provider_credentials,
        catalog_loader=lambda: TemplateCatalog.load(session_factory),
    )


def get_orchestrator(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    provider: EmailProviderDep,
) -> BatchOrchestrator:
    return build_orchestrator(settings, session_factory, provider)


def get_expiry_engine(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> ExpiryEngine:
    return ExpiryEngine(SqlEmployeeSource(session_factory), EngineConfig.from_settings(settings))


def get_ledger(session_factory: SessionFactoryDep) -> NotificationLedger:
    return NotificationLedger(session_factory)


OrchestratorDep = Annotated[BatchOrchestrator, Depends(get_orchestrator)]
ExpiryEngineDep = Annotated[ExpiryEngine, Depends(get_expiry_engine)]
LedgerDep = Annotated[NotificationLedger, Depends(get_ledger)]
