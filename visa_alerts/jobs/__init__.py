"""
Background Jobs for Visa Alerts.

This module contains scheduled jobs:
- expiry_cron: Daily visa expiry notification sweep
"""

from .expiry_cron import run_notification_job, send_alert

__all__ = ["run_notification_job", "send_alert"]
