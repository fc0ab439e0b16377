"""Visa Alerts: visa expiry notification engine."""

__version__ = "1.0.0"
