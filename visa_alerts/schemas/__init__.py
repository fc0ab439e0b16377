"""Pydantic schemas for API request/response validation."""

from .base import ErrorDetail, ErrorResponse, VisaAlertsBaseModel
from .notifications import (
    BatchSummaryResponse,
    EmployeeResultResponse,
    ExpiringEmployeeResponse,
    ExpiringEmployeesListResponse,
    NotificationHistoryResponse,
    NotificationLogResponse,
    NotificationStatsResponse,
    TriggerRequest,
    TriggerResponse,
    VisaStatsResponse,
)

__all__ = [
    # Base
    "VisaAlertsBaseModel",
    "ErrorDetail",
    "ErrorResponse",
    # Notifications
    "TriggerRequest",
    "TriggerResponse",
    "EmployeeResultResponse",
    "BatchSummaryResponse",
    "ExpiringEmployeeResponse",
    "ExpiringEmployeesListResponse",
    "VisaStatsResponse",
    "NotificationLogResponse",
    "NotificationHistoryResponse",
    "NotificationStatsResponse",
]
