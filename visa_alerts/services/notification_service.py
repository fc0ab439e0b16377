"""
Notification Service: delivery of composed notifications.

This module is responsible for:
1. Sending email through the delivery provider (SendGrid v3 API)
2. Retrying transport-level failures with backoff
3. Recording every attempt in the notification ledger
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import UUID

import httpx

from ..core.config import Settings
from ..models import NotificationType, UrgencyTier
from .exceptions import ProviderConfigurationError
from .ledger import NotificationLedger, NotificationLogEntry
from .templates import ComposedNotification


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class EmailConfig:
    """Email delivery configuration."""
    api_key: str | None = None
    api_url: str = "https://api.sendgrid.com/v3"
    from_email: str = "notifications@visa-alerts.local"
    from_name: str = "Visa Notification System"
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailConfig":
        return cls(
            api_key=settings.sendgrid_api_key,
            api_url=settings.sendgrid_api_url,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            timeout_seconds=settings.provider_timeout_seconds,
        )


@dataclass
class RetryPolicy:
    """Retry behaviour for transport-level failures."""
    max_retries: int = 2
    backoff_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


# =============================================================================
# DELIVERY PROVIDERS
# =============================================================================


@dataclass
class DeliveryOutcome:
    """Result of a single provider call."""
    delivered: bool
    error: str | None = None
    retryable: bool = False


class EmailProvider(ABC):
    """Abstract single-recipient email delivery provider."""

    @abstractmethod
    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        metadata: dict[str, str] | None = None,
    ) -> DeliveryOutcome:
        pass

    async def verify_credentials(self) -> None:
        """
        Check credentials once before a run.

        Raises:
            ProviderConfigurationError: credentials are missing or rejected
        """
        return None


class SendGridProvider(EmailProvider):
    """Email delivery through the SendGrid v3 REST API."""

    RETRYABLE_STATUSES = {429}

    def __init__(self, config: EmailConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client

    async def verify_credentials(self) -> None:
        if not self._config.api_key:
            raise ProviderConfigurationError("SendGrid API key is not configured")

        try:
            response = await self._request("GET", "/scopes")
        except httpx.HTTPError as e:
            # Unreachable provider is a transport problem, retried per candidate
            logger.warning(f"Could not verify SendGrid credentials: {e}")
            return

        if response.status_code in (401, 403):
            raise ProviderConfigurationError(
                f"SendGrid rejected the API key ({response.status_code})"
            )

    async def send(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        metadata: dict[str, str] | None = None,
    ) -> DeliveryOutcome:
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": {"email": self._config.from_email, "name": self._config.from_name},
            # text/plain must precede text/html
            "content": [
                {"type": "text/plain", "value": text_body},
                {"type": "text/html", "value": html_body},
            ],
        }
        if metadata:
            payload["categories"] = [c for c in (metadata.get("category"), metadata.get("trigger")) if c]
            payload["custom_args"] = {k: str(v) for k, v in metadata.items()}

        try:
            response = await self._request("POST", "/mail/send", json=payload)
        except httpx.TimeoutException as e:
            return DeliveryOutcome(False, f"SendGrid timeout: {e}", retryable=True)
        except httpx.TransportError as e:
            return DeliveryOutcome(False, f"SendGrid connection error: {e}", retryable=True)

        if response.is_success:
            return DeliveryOutcome(True)

        error = f"SendGrid Error ({response.status_code}): {response.text[:500]}"
        retryable = response.status_code >= 500 or response.status_code in self.RETRYABLE_STATUSES
        return DeliveryOutcome(False, error, retryable=retryable)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }
        url = f"{self._config.api_url.rstrip('/')}{path}"
        if self._client is not None:
            return await self._client.request(
                method, url, headers=headers, timeout=self._config.timeout_seconds, **kwargs
            )
        async with httpx.AsyncClient() as client:
            return await client.request(
                method, url, headers=headers, timeout=self._config.timeout_seconds, **kwargs
            )


# =============================================================================
# DISPATCHER
# =============================================================================


@dataclass
class DispatchContext:
    """Ledger fields describing what a dispatch is for."""
    employee_id: str | None = None
    milestone: int | None = None
    expiry_date: date | None = None
    days_remaining: int | None = None
    urgency: UrgencyTier | None = None
    manual: bool = False
    run_id: UUID | None = None
    notification_type: NotificationType = NotificationType.VISA_EXPIRY


@dataclass
class DispatchResult:
    """Classified outcome of one dispatch."""
    succeeded: bool
    error_messages: list[str] = field(default_factory=list)
    attempts: int = 0
    recipients: list[str] = field(default_factory=list)


class Dispatcher:
    """
    Sends composed notifications and records each outcome.

    Every dispatch ends in exactly one ledger entry, whether it was
    delivered, rejected, or exhausted its retries.
    """

    def __init__(
        self,
        provider: EmailProvider,
        ledger: NotificationLedger,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._ledger = ledger
        self._retry = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def verify_provider(self) -> None:
        await self._provider.verify_credentials()

    async def send(
        self,
        composed: ComposedNotification,
        recipient: str,
        metadata: dict[str, str] | None = None,
    ) -> DispatchResult:
        """Deliver to one recipient, retrying transport failures. Does not record."""
        errors: list[str] = []
        attempts = 0

        while True:
            attempts += 1
            try:
                outcome = await self._provider.send(
                    to=recipient,
                    subject=composed.subject,
                    html_body=composed.html_body,
                    text_body=composed.text_body,
                    metadata=metadata,
                )
            except httpx.HTTPError as e:
                outcome = DeliveryOutcome(False, f"Transport error: {e}", retryable=True)
            except Exception as e:
                logger.exception(f"Email provider raised while sending to {recipient}: {e}")
                outcome = DeliveryOutcome(False, f"Provider error: {e}", retryable=False)

            if outcome.delivered:
                return DispatchResult(True, errors, attempts, [recipient])

            errors.append(outcome.error or "Unknown delivery error")

            if not outcome.retryable or attempts > self._retry.max_retries:
                return DispatchResult(False, errors, attempts, [recipient])

            delay = self._retry.delay(attempts)
            logger.warning(
                f"Delivery to {recipient} failed (attempt {attempts}), retrying in {delay:.1f}s: {outcome.error}"
            )
            await self._sleep(delay)

    async def dispatch(
        self,
        composed: ComposedNotification,
        recipient: str,
        context: DispatchContext,
    ) -> DispatchResult:
        """Deliver one notification and record the outcome in the ledger."""
        result = await self.send(composed, recipient, self._metadata(context))

        if result.succeeded:
            logger.info(
                f"Notification delivered to {recipient} for employee {context.employee_id} "
                f"(milestone={context.milestone}, attempts={result.attempts})"
            )
        else:
            logger.error(
                f"Notification to {recipient} for employee {context.employee_id} failed: "
                f"{'; '.join(result.error_messages)}"
            )

        await self._record(context, result, composed)
        return result

    async def broadcast(
        self,
        composed: ComposedNotification,
        recipients: list[str],
        context: DispatchContext,
    ) -> DispatchResult:
        """Deliver one notification to several recipients, recorded as a single entry."""
        errors: list[str] = []
        attempts = 0
        delivered = 0
        metadata = self._metadata(context)

        for recipient in recipients:
            result = await self.send(composed, recipient, metadata)
            attempts += result.attempts
            if result.succeeded:
                delivered += 1
            else:
                errors.extend(f"{recipient}: {e}" for e in result.error_messages)

        result = DispatchResult(
            succeeded=bool(recipients) and delivered == len(recipients),
            error_messages=errors,
            attempts=attempts,
            recipients=list(recipients),
        )
        await self._record(context, result, composed)
        return result

    async def record_failure(
        self,
        context: DispatchContext,
        error: str,
        recipient: str | None = None,
        composed: ComposedNotification | None = None,
    ) -> DispatchResult:
        """Record an attempt that failed before or instead of delivery."""
        result = DispatchResult(
            succeeded=False,
            error_messages=[error],
            attempts=0,
            recipients=[recipient] if recipient else [],
        )
        await self._record(context, result, composed)
        return result

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    async def _record(
        self,
        context: DispatchContext,
        result: DispatchResult,
        composed: ComposedNotification | None,
    ) -> None:
        await self._ledger.record(NotificationLogEntry(
            notification_type=context.notification_type,
            run_id=context.run_id,
            employee_id=context.employee_id,
            milestone=context.milestone,
            expiry_date_at_evaluation=context.expiry_date,
            days_remaining=context.days_remaining,
            urgency=context.urgency,
            sent_at=datetime.now(timezone.utc),
            delivery_succeeded=result.succeeded,
            error_messages=tuple(result.error_messages),
            manual_trigger=context.manual,
            template_id=composed.template_id if composed else None,
            subject=composed.subject if composed else None,
            sent_to=tuple(result.recipients),
        ))

    @staticmethod
    def _metadata(context: DispatchContext) -> dict[str, str]:
        metadata = {
            "category": context.notification_type.value,
            "trigger": "manual" if context.manual else "automated",
        }
        if context.employee_id:
            metadata["employee_id"] = context.employee_id
        if context.days_remaining is not None:
            metadata["days_until_expiry"] = str(context.days_remaining)
        if context.urgency is not None:
            metadata["urgency"] = context.urgency.value
        return metadata
