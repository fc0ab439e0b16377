"""
Notification Composer: renders visa expiry emails.

Templates are selected by milestone, falling back to a generic template.
Rendering is plain placeholder interpolation ({{ name }}) into a fixed
layout; the only branching is the urgency-driven subject prefix.
"""

import html
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import EmailTemplate, UrgencyTier
from .exceptions import MissingRecipientError, TemplateCatalogUnavailableError, TemplateRenderError
from .expiry_engine import NotificationCandidate
from .snapshot import EmployeeSnapshot


logger = logging.getLogger(__name__)

PLACEHOLDER = "Unknown"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

URGENCY_STYLES: dict[UrgencyTier, tuple[str, str]] = {
    # tier -> (subject prefix, banner color)
    UrgencyTier.CRITICAL: ("[CRITICAL]", "#DC2626"),
    UrgencyTier.URGENT: ("[URGENT]", "#EA580C"),
    UrgencyTier.WARNING: ("[WARNING]", "#F59E0B"),
    UrgencyTier.NOTICE: ("[NOTICE]", "#3B82F6"),
}


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class EmailTemplateSpec:
    """Subject and bodies with {{ placeholder }} slots.

    Non-strict templates render unknown placeholders as PLACEHOLDER
    instead of failing.
    """
    template_id: str
    subject: str
    html_body: str
    text_body: str
    strict: bool = True

    def placeholders(self) -> set[str]:
        return {
            match.group(1)
            for text in (self.subject, self.html_body, self.text_body)
            for match in _PLACEHOLDER_RE.finditer(text)
        }


@dataclass(frozen=True)
class ComposedNotification:
    """A rendered notification, ready for the dispatcher."""
    subject: str
    html_body: str
    text_body: str
    template_id: str


# =============================================================================
# BUILT-IN LAYOUT
# =============================================================================


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Visa Expiry Notification</title>
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #374151; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background-color: {{urgency_color}}; color: white; padding: 16px; border-radius: 8px 8px 0 0;">
        <h1 style="margin: 0; font-size: 18px;">{{urgency_label}}: Visa Expiry Notification</h1>
    </div>
    <div style="border: 1px solid #E5E7EB; border-top: none; padding: 24px; border-radius: 0 0 8px 8px;">
        <p>Hi {{employee_name}},</p>
        <p>%(lead)s</p>
        <table style="width: 100%%; border-collapse: collapse;">
            <tr><td style="padding: 6px 0; font-weight: bold;">Name:</td><td>{{employee_name}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Employee ID:</td><td>{{employee_code}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Company:</td><td>{{company_name}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Department:</td><td>{{department}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Nationality:</td><td>{{nationality}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Visa Expiry Date:</td><td style="color: {{urgency_color}}; font-weight: bold;">{{visa_expiry_date}}</td></tr>
            <tr><td style="padding: 6px 0; font-weight: bold;">Days Remaining:</td><td style="color: {{urgency_color}}; font-weight: bold;">{{days_remaining}}</td></tr>
        </table>
        <p>Please take the following actions:</p>
        <ul>
            <li>Arrange the visa renewal with HR</li>
            <li>Prepare the documentation required for the extension</li>
            <li>Let HR know once the renewal is complete so your record is updated</li>
        </ul>
        <hr style="border: none; border-top: 1px solid #E5E7EB; margin: 24px 0;">
        <p style="color: #9CA3AF; font-size: 12px;">
            This {{trigger_label}} notification was sent by the visa notification system. Please do not reply.
        </p>
    </div>
</body>
</html>
"""

_TEXT_LAYOUT = """{{urgency_label}}: VISA EXPIRY NOTIFICATION

Hi {{employee_name}},

%(lead)s

Employee Details:
- Name: {{employee_name}}
- Employee ID: {{employee_code}}
- Company: {{company_name}}
- Department: {{department}}
- Nationality: {{nationality}}
- Visa Expiry Date: {{visa_expiry_date}}
- Days Remaining: {{days_remaining}}

Please take the following actions:
- Arrange the visa renewal with HR
- Prepare the documentation required for the extension
- Let HR know once the renewal is complete so your record is updated

This {{trigger_label}} notification was sent by the visa notification system. Please do not reply.
"""

_SUBJECT = "Visa Expiry Alert - {{employee_name}} ({{days_phrase}})"

_MILESTONE_LEADS: dict[int | None, str] = {
    90: "This is an advance notice that your visa {{days_phrase}}. Please begin renewal preparations.",
    60: "Your visa {{days_phrase}}. Please start the renewal process now.",
    30: "Your visa {{days_phrase}}. Renewal action is required this month.",
    15: "Your visa {{days_phrase}}. Please complete the renewal paperwork as a priority.",
    7: "Your visa {{days_phrase}}. Immediate action is required.",
    1: "Your visa {{days_phrase}}. This is the final reminder before expiry.",
    None: "Your visa {{days_phrase}}. Please review your renewal status.",
}


def _builtin(milestone: int | None, lead: str) -> EmailTemplateSpec:
    template_id = "visa_expiry_generic" if milestone is None else f"visa_expiry_{milestone}d"
    return EmailTemplateSpec(
        template_id=template_id,
        subject=_SUBJECT,
        html_body=_HTML_LAYOUT % {"lead": lead},
        text_body=_TEXT_LAYOUT % {"lead": lead},
    )


BUILTIN_TEMPLATES: dict[int | None, EmailTemplateSpec] = {
    milestone: _builtin(milestone, lead) for milestone, lead in _MILESTONE_LEADS.items()
}


# =============================================================================
# TEMPLATE CATALOG
# =============================================================================


class TemplateCatalog:
    """Templates keyed by milestone; the None key holds the generic template."""

    def __init__(self, templates: Mapping[int | None, EmailTemplateSpec] | None = None):
        self._templates: dict[int | None, EmailTemplateSpec] = dict(
            BUILTIN_TEMPLATES if templates is None else templates
        )

    def register(self, milestone: int | None, template: EmailTemplateSpec) -> None:
        self._templates[milestone] = template

    def select(self, milestone: int | None) -> EmailTemplateSpec:
        """Template for a milestone, or the generic one."""
        template = self._templates.get(milestone)
        if template is None:
            template = self._templates.get(None, BUILTIN_TEMPLATES[None])
        return template

    @classmethod
    async def load(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> "TemplateCatalog":
        """
        Built-in templates overridden by active rows of email_templates.

        Raises:
            TemplateCatalogUnavailableError: the template store could not be read
        """
        catalog = cls()
        try:
            async with session_factory() as session:
                result = await session.execute(
                    select(EmailTemplate)
                    .where(EmailTemplate.is_active.is_(True))
                    .order_by(EmailTemplate.created_at.asc())
                )
                rows = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise TemplateCatalogUnavailableError(f"Failed to load email templates: {e}") from e

        for row in rows:
            fallback = catalog.select(row.milestone)
            template = EmailTemplateSpec(
                template_id=f"db:{row.name}",
                subject=row.subject,
                html_body=row.html_content,
                text_body=row.text_content or fallback.text_body,
                strict=False,
            )
            unknown = template.placeholders() - TEMPLATE_FIELDS
            if unknown:
                logger.warning(
                    f"Email template {row.name} uses unknown placeholders {sorted(unknown)}; "
                    f"they will render as {PLACEHOLDER!r}"
                )
            catalog.register(row.milestone, template)

        if rows:
            logger.info(f"Loaded {len(rows)} email template overrides")
        return catalog


# =============================================================================
# RENDERING
# =============================================================================


TEMPLATE_FIELDS = frozenset({
    "employee_name",
    "employee_id",
    "employee_code",
    "company_name",
    "department",
    "nationality",
    "trade",
    "email",
    "visa_expiry_date",
    "current_date",
    "days_remaining",
    "days_until_expiry",
    "days_phrase",
    "milestone",
    "urgency",
    "urgency_level",
    "urgency_label",
    "urgency_color",
    "trigger_label",
})


def render(
    template: str,
    context: Mapping[str, object],
    escape: bool = False,
    strict: bool = True,
) -> str:
    """Substitute {{ name }} placeholders.

    Unknown names raise TemplateRenderError, or render as PLACEHOLDER when
    strict is False.
    """

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in context:
            if strict:
                raise TemplateRenderError(f"Unknown template placeholder: {key}")
            return PLACEHOLDER
        value = str(context[key])
        return html.escape(value) if escape else value

    return _PLACEHOLDER_RE.sub(replace, template)


def validate_recipient(email: str | None) -> str:
    """Normalized recipient address, or MissingRecipientError."""
    if not email:
        raise MissingRecipientError("Employee has no email address")
    try:
        return validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise MissingRecipientError(f"Invalid email address {email!r}: {e}") from e


def days_phrase(days_remaining: int) -> str:
    if days_remaining < 0:
        return f"expired {-days_remaining} days ago"
    if days_remaining == 0:
        return "expires today"
    if days_remaining == 1:
        return "expires in 1 day"
    return f"expires in {days_remaining} days"


def build_context(
    candidate: NotificationCandidate,
    employee: EmployeeSnapshot,
    manual: bool = False,
) -> dict[str, object]:
    prefix, color = URGENCY_STYLES[candidate.urgency]
    evaluated_on = candidate.expiry_date - timedelta(days=candidate.days_remaining)
    return {
        "employee_name": employee.display_name or PLACEHOLDER,
        "employee_id": employee.id,
        "employee_code": employee.employee_code or employee.id,
        "company_name": employee.company_name or PLACEHOLDER,
        "department": employee.department or PLACEHOLDER,
        "nationality": employee.nationality or PLACEHOLDER,
        "trade": employee.trade or PLACEHOLDER,
        "email": employee.email or PLACEHOLDER,
        "visa_expiry_date": candidate.expiry_date.strftime("%d %B %Y"),
        "current_date": evaluated_on.strftime("%d %B %Y"),
        "days_remaining": candidate.days_remaining,
        "days_until_expiry": candidate.days_remaining,
        "days_phrase": days_phrase(candidate.days_remaining),
        "milestone": candidate.milestone if candidate.milestone is not None else PLACEHOLDER,
        "urgency": candidate.urgency.value,
        "urgency_level": prefix.strip("[]"),
        "urgency_label": prefix.strip("[]"),
        "urgency_color": color,
        "trigger_label": "manual" if manual else "automated",
    }


def compose(
    candidate: NotificationCandidate,
    employee: EmployeeSnapshot,
    catalog: TemplateCatalog,
    manual: bool = False,
) -> ComposedNotification:
    """
    Render the notification for one candidate.

    Raises:
        MissingRecipientError: employee email is missing or malformed
        TemplateRenderError: a strict template uses an unknown placeholder
    """
    validate_recipient(employee.email)

    template = catalog.select(candidate.milestone)
    context = build_context(candidate, employee, manual)
    strict = template.strict

    prefix, _ = URGENCY_STYLES[candidate.urgency]
    subject = f"{prefix} {render(template.subject, context, strict=strict)}"
    if manual:
        subject = f"[MANUAL] {subject}"

    return ComposedNotification(
        subject=subject,
        html_body=render(template.html_body, context, escape=True, strict=strict),
        text_body=render(template.text_body, context, strict=strict),
        template_id=template.template_id,
    )
