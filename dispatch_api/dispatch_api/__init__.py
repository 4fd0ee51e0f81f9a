"""Notification dispatcher service: cron-triggered SMS jobs and inbound opt-out handling."""

__version__ = "0.1.0"
