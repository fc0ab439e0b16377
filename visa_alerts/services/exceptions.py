"""Exceptions raised by the notification engine."""


class NotificationEngineError(Exception):
    """Base exception for notification engine operations."""
    pass


class RunFatalError(NotificationEngineError):
    """The run cannot start; nothing was dispatched."""
    pass


class SnapshotUnavailableError(RunFatalError):
    """Employee record source is unreachable or misconfigured."""
    pass


class ProviderConfigurationError(RunFatalError):
    """Email delivery provider credentials are missing or rejected."""
    pass


class TemplateCatalogUnavailableError(RunFatalError):
    """Email templates could not be loaded from the store."""
    pass


class EmployeeNotFoundError(NotificationEngineError):
    """Employee is unknown, inactive, or has no visa expiry date."""
    pass


class InvalidTriggerError(NotificationEngineError):
    """Trigger arguments are inconsistent."""
    pass


class MissingRecipientError(NotificationEngineError):
    """Employee has no deliverable email address. Never retried."""
    pass


class TemplateRenderError(NotificationEngineError):
    """Template references a placeholder that has no value. Never retried."""
    pass
