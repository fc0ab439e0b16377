"""
Expiry Cron Job: daily visa expiry notification sweep.

This module runs as a scheduled job (via cron or similar) to notify
employees whose visa reaches a milestone today.

Typical cron schedule: 0 9 * * * (daily at 9 AM)
"""

import asyncio
import logging
import traceback
from datetime import date, datetime, timezone
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings, get_settings
from ..core.database import build_engine, build_session_factory
from ..core.dependencies import build_orchestrator
from ..services.exceptions import NotificationEngineError
from ..services.notification_service import EmailProvider
from ..services.orchestrator import RunRequest


logger = logging.getLogger(__name__)


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
    settings: Settings | None = None,
) -> None:
    """
    Send an operator alert about the sweep.

    Supports multiple channels:
    - Slack webhook
    - Generic webhook (for PagerDuty, Opsgenie, etc.)
    - Logs (always)
    """
    settings = settings or get_settings()

    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    if settings.slack_alerts_webhook_url:
        try:
            await _send_slack_alert(settings.slack_alerts_webhook_url, title, message, severity, details)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send Slack alert: {e}")

    if settings.alert_webhook_url:
        try:
            await _send_webhook_alert(settings.alert_webhook_url, title, message, severity, details)
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert: {e}")


async def _send_slack_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    """Send alert to Slack."""
    color = "#dc2626" if severity == "critical" else "#f59e0b"

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": title},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": message},
        },
    ]

    if details:
        details_text = "\n".join([f"• *{k}*: {v}" for k, v in details.items()])
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": details_text},
        })

    blocks.append({
        "type": "context",
        "elements": [
            {"type": "mrkdwn", "text": f"Severity: *{severity.upper()}* | Time: {datetime.now(timezone.utc).isoformat()}"},
        ],
    })

    async with httpx.AsyncClient() as client:
        await client.post(
            webhook_url,
            json={"attachments": [{"color": color, "blocks": blocks}]},
            timeout=10,
        )


async def _send_webhook_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    """Send alert to generic webhook endpoint."""
    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "visa-alerts-cron",
        "details": details or {},
    }

    async with httpx.AsyncClient() as client:
        await client.post(webhook_url, json=payload, timeout=10)


# =============================================================================
# JOB
# =============================================================================


async def run_notification_job(
    settings: Settings,
    request: RunRequest | None = None,
    today: date | None = None,
    dry_run: bool = False,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    provider: EmailProvider | None = None,
) -> dict[str, Any]:
    """
    Run one notification sweep.

    Args:
        settings: Application settings
        request: Trigger arguments (defaults to the scheduled sweep)
        today: Evaluation date (defaults to today in the configured zone)
        dry_run: Evaluate and report candidates without sending anything
        session_factory: Existing session factory (a new engine is created otherwise)
        provider: Email provider override

    Returns:
        Job result summary
    """
    start_time = datetime.now(timezone.utc)
    request = request or RunRequest()
    logger.info(f"Starting visa expiry job at {start_time.isoformat()}")

    engine = None
    if session_factory is None:
        engine = build_engine(settings.database_url_async, echo=settings.database_echo)
        session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "dry_run": dry_run,
        "run_id": None,
        "candidates": 0,
        "notifications_sent": 0,
        "notifications_failed": 0,
        "already_notified": 0,
        "errors": [],
    }

    try:
        orchestrator = build_orchestrator(settings, session_factory, provider)

        if dry_run:
            candidates = await orchestrator.preview(request, today=today)
            results["candidates"] = len(candidates)
            results["preview"] = [
                {
                    "employee_id": c.employee_id,
                    "milestone": c.milestone,
                    "days_remaining": c.days_remaining,
                    "urgency": c.urgency.value,
                }
                for c in candidates
            ]
            logger.info(f"Dry run: {len(candidates)} candidates, nothing sent")
        else:
            run = await orchestrator.run(request, today=today)
            results["run_id"] = str(run.run_id)
            results["candidates"] = run.summary.total_candidates
            results["notifications_sent"] = run.summary.sent
            results["notifications_failed"] = run.summary.failed
            results["already_notified"] = run.summary.skipped_duplicates
            results["errors"] = [
                f"{r.employee_id}: {r.error}" for r in run.per_employee_results if r.error
            ]

    except NotificationEngineError as e:
        error_msg = f"Visa expiry job failed: {e}"
        results["errors"].append(error_msg)

        await send_alert(
            title="Visa Expiry Job Failed",
            message="The visa expiry notification run did not execute.",
            severity="critical",
            details={
                "error": str(e),
                "error_type": type(e).__name__,
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
            settings=settings,
        )
        raise

    finally:
        if engine is not None:
            await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Visa expiry job completed in {results['duration_seconds']:.2f}s: "
        f"{results['candidates']} candidates, {results['notifications_sent']} sent, "
        f"{results['notifications_failed']} failed"
    )

    # Alert if there were partial failures (notifications failed but job completed)
    if results["notifications_failed"] > 0:
        await send_alert(
            title="Visa Expiry Job Completed with Warnings",
            message=f"The job completed but {results['notifications_failed']} notifications failed to send.",
            severity="warning",
            details={
                "notifications_sent": results["notifications_sent"],
                "notifications_failed": results["notifications_failed"],
                "errors": results["errors"][:5],
            },
            settings=settings,
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the visa expiry job."""
    import argparse

    parser = argparse.ArgumentParser(description="Run the visa expiry notification sweep")
    parser.add_argument(
        "--milestone",
        type=int,
        default=None,
        help="Sweep a single milestone (days before expiry) instead of the automated set",
    )
    parser.add_argument(
        "--employee-id",
        default=None,
        help="Notify a single employee (requires --manual)",
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Flag the run as manually triggered",
    )
    parser.add_argument(
        "--dedup",
        action="store_true",
        default=None,
        help="Check the ledger even for a single-employee run",
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Evaluation date (YYYY-MM-DD), defaults to today",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would be sent without sending or recording anything",
    )

    args = parser.parse_args(argv)

    if args.employee_id and not args.manual:
        parser.error("--employee-id requires --manual")
    if args.employee_id and args.milestone is not None:
        parser.error("--employee-id and --milestone cannot be combined")

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    request = RunRequest(
        manual=args.manual,
        employee_id=args.employee_id,
        milestone=args.milestone,
        dedup=args.dedup,
    )

    try:
        results = asyncio.run(run_notification_job(
            settings=get_settings(),
            request=request,
            today=args.today,
            dry_run=args.dry_run,
        ))
        print(f"Job completed: {results}")
    except NotificationEngineError as e:
        print(f"Job failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
