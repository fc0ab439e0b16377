"""Business logic services for visa expiry notifications."""

from .exceptions import (
    EmployeeNotFoundError,
    InvalidTriggerError,
    MissingRecipientError,
    NotificationEngineError,
    ProviderConfigurationError,
    RunFatalError,
    SnapshotUnavailableError,
    TemplateCatalogUnavailableError,
    TemplateRenderError,
)
from .expiry_engine import (
    EngineConfig,
    EvaluationScope,
    ExpiringEmployee,
    ExpiryEngine,
    MatchMode,
    NotificationCandidate,
    ThresholdEvaluator,
    VisaStats,
    classify_urgency,
    days_until,
)
from .ledger import HistoryQuery, LedgerStats, NotificationLedger, NotificationLogEntry
from .notification_service import (
    DeliveryOutcome,
    DispatchContext,
    Dispatcher,
    DispatchResult,
    EmailConfig,
    EmailProvider,
    RetryPolicy,
    SendGridProvider,
)
from .orchestrator import BatchOrchestrator, EmployeeResult, RunRequest, RunResult, RunState
from .snapshot import EmployeeRecordSource, EmployeeSnapshot, SqlEmployeeSource, StaticEmployeeSource
from .summary import BatchSummary, SummaryReporter
from .templates import ComposedNotification, EmailTemplateSpec, TemplateCatalog, compose

__all__ = [
    # Errors
    "NotificationEngineError",
    "RunFatalError",
    "SnapshotUnavailableError",
    "ProviderConfigurationError",
    "TemplateCatalogUnavailableError",
    "EmployeeNotFoundError",
    "InvalidTriggerError",
    "MissingRecipientError",
    "TemplateRenderError",
    # Evaluation
    "EngineConfig",
    "EvaluationScope",
    "ExpiringEmployee",
    "ExpiryEngine",
    "MatchMode",
    "NotificationCandidate",
    "ThresholdEvaluator",
    "VisaStats",
    "classify_urgency",
    "days_until",
    # Ledger
    "HistoryQuery",
    "LedgerStats",
    "NotificationLedger",
    "NotificationLogEntry",
    # Delivery
    "DeliveryOutcome",
    "DispatchContext",
    "Dispatcher",
    "DispatchResult",
    "EmailConfig",
    "EmailProvider",
    "RetryPolicy",
    "SendGridProvider",
    # Runs
    "BatchOrchestrator",
    "EmployeeResult",
    "RunRequest",
    "RunResult",
    "RunState",
    "BatchSummary",
    "SummaryReporter",
    # Records and templates
    "EmployeeRecordSource",
    "EmployeeSnapshot",
    "SqlEmployeeSource",
    "StaticEmployeeSource",
    "ComposedNotification",
    "EmailTemplateSpec",
    "TemplateCatalog",
    "compose",
]
