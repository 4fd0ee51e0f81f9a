"""API router modules for the notification dispatcher."""

from __future__ import annotations

from dispatch_api.routers import cron, credits, health, sms_inbound

__all__ = [
    "cron",
    "credits",
    "health",
    "sms_inbound",
]
