"""SQLAlchemy ORM Models for Visa Alerts."""

from .base import Base, TimestampMixin, UUIDMixin
from .models import (
    # Enums
    NotificationType,
    UrgencyTier,
    # Records
    EmailTemplate,
    Employee,
    NotificationLog,
)

__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "TimestampMixin",
    # Enums
    "NotificationType",
    "UrgencyTier",
    # Records
    "Employee",
    "NotificationLog",
    "EmailTemplate",
]
