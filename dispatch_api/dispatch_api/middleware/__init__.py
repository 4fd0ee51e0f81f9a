"""Middleware and logging components for the dispatcher API."""

from __future__ import annotations

from dispatch_api.middleware.json_formatter import JSONFormatter
from dispatch_api.middleware.logging import RequestLoggingMiddleware

__all__ = [
    "JSONFormatter",
    "RequestLoggingMiddleware",
]
