"""
Summary Reporter: per-run rollup for operations staff.

Aggregates the terminal outcomes of one run and sends a single rollup
notification through the Dispatcher. A failed rollup never fails the run.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Mapping, Sequence
from uuid import UUID

from ..models import NotificationType
from .expiry_engine import NotificationCandidate
from .notification_service import DispatchContext, Dispatcher, DispatchResult
from .snapshot import EmployeeSnapshot
from .templates import ComposedNotification, PLACEHOLDER, render


logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Aggregate over one run."""
    total_candidates: int = 0
    sent: int = 0
    failed: int = 0
    skipped_duplicates: int = 0
    by_urgency: dict[str, int] = field(default_factory=dict)
    by_department: dict[str, int] = field(default_factory=dict)
    manual: bool = False
    run_id: UUID | None = None


_SUBJECT = "Visa Expiry Run Summary - {{total}} candidates ({{trigger_label}})"

_TEXT_BODY = """VISA EXPIRY NOTIFICATION RUN

Run ID: {{run_id}}
Trigger: {{trigger_label}}

Candidates evaluated: {{total}}
Sent: {{sent}}
Failed: {{failed}}
Skipped (already notified): {{skipped}}

By urgency:
{{urgency_lines}}

By department:
{{department_lines}}
"""

_HTML_BODY = """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #374151; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="margin-top: 0;">Visa Expiry Notification Run</h2>
    <p>Run ID: {{run_id}}<br>Trigger: {{trigger_label}}</p>
    <table style="border-collapse: collapse;">
        <tr><td style="padding: 4px 12px 4px 0;">Candidates evaluated</td><td><strong>{{total}}</strong></td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Sent</td><td><strong>{{sent}}</strong></td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Failed</td><td><strong>{{failed}}</strong></td></tr>
        <tr><td style="padding: 4px 12px 4px 0;">Skipped (already notified)</td><td><strong>{{skipped}}</strong></td></tr>
    </table>
    <h3>By urgency</h3>
    <pre>{{urgency_lines}}</pre>
    <h3>By department</h3>
    <pre>{{department_lines}}</pre>
</body>
</html>
"""

SUMMARY_TEMPLATE_ID = "batch_summary"


def _lines(counts: Mapping[str, int]) -> str:
    if not counts:
        return "- none"
    return "\n".join(f"- {key}: {value}" for key, value in sorted(counts.items()))


class SummaryReporter:
    """Builds the BatchSummary and sends the operations rollup."""

    def __init__(self, dispatcher: Dispatcher, recipients: Sequence[str] = ()):
        self._dispatcher = dispatcher
        self._recipients = list(recipients)

    def summarize(
        self,
        candidates: Sequence[NotificationCandidate],
        results: Mapping[NotificationCandidate, DispatchResult | None],
        employees: Mapping[str, EmployeeSnapshot],
        manual: bool = False,
        run_id: UUID | None = None,
    ) -> BatchSummary:
        """
        Aggregate candidate outcomes.

        A candidate mapped to None was filtered by the ledger dedup check.
        """
        summary = BatchSummary(
            total_candidates=len(candidates),
            manual=manual,
            run_id=run_id,
        )
        urgency = Counter()
        department = Counter()

        for candidate in candidates:
            urgency[candidate.urgency.value] += 1
            employee = employees.get(candidate.employee_id)
            department[(employee.department if employee else None) or PLACEHOLDER] += 1

            result = results.get(candidate)
            if result is None:
                summary.skipped_duplicates += 1
            elif result.succeeded:
                summary.sent += 1
            else:
                summary.failed += 1

        summary.by_urgency = dict(urgency)
        summary.by_department = dict(department)
        return summary

    async def report(self, summary: BatchSummary) -> DispatchResult | None:
        """Send the rollup. Returns None when there is nobody to send it to."""
        if not self._recipients:
            logger.info("No operations recipients configured, skipping run summary")
            return None

        context = {
            "run_id": summary.run_id or PLACEHOLDER,
            "trigger_label": "manual" if summary.manual else "automated",
            "total": summary.total_candidates,
            "sent": summary.sent,
            "failed": summary.failed,
            "skipped": summary.skipped_duplicates,
            "urgency_lines": _lines(summary.by_urgency),
            "department_lines": _lines(summary.by_department),
        }
        composed = ComposedNotification(
            subject=render(_SUBJECT, context),
            html_body=render(_HTML_BODY, context, escape=True),
            text_body=render(_TEXT_BODY, context),
            template_id=SUMMARY_TEMPLATE_ID,
        )

        try:
            result = await self._dispatcher.broadcast(
                composed,
                self._recipients,
                DispatchContext(
                    manual=summary.manual,
                    run_id=summary.run_id,
                    notification_type=NotificationType.BATCH_SUMMARY,
                ),
            )
        except Exception as e:
            logger.warning(f"Run summary could not be dispatched: {e}")
            return None

        if not result.succeeded:
            logger.warning(f"Run summary dispatch failed: {'; '.join(result.error_messages)}")
        return result
