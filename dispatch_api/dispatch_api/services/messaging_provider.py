"""Outbound SMS providers.

:class:`MessagingProvider` is the seam the scheduler sends through.  Two
implementations are provided:

* :class:`HTTPMessagingProvider` posts JSON to a messaging gateway with a
  bearer token.
* :class:`LoggingProvider` logs the message and reports success; used for
  local runs where no gateway is configured.

Providers never raise for delivery problems.  Every failure is reported as a
:class:`SendResult` with ``success=False`` so the caller can record it and
move on to the next recipient.
"""

from __future__ import annotations

import logging
import uuid
from typing import Protocol, runtime_checkable

import httpx
from credit_engine.compliance.phone import mask_phone
from credit_engine.errors import ProviderSendError
from pydantic import BaseModel

from dispatch_api.config import APISettings

logger = logging.getLogger(__name__)


class SendResult(BaseModel):
    """Outcome of a single provider send."""

    success: bool
    message_id: str | None = None
    error: str | None = None


@runtime_checkable
class MessagingProvider(Protocol):
    """Anything that can deliver one SMS."""

    async def send(self, phone_number: str, body: str) -> SendResult: ...


class HTTPMessagingProvider:
    """Send messages through a JSON gateway.

    Calls ``POST {base_url}/messages`` with ``{"to", "from", "body"}`` and
    expects a JSON response carrying the provider message id under ``id``
    (or ``sid``).

    Parameters
    ----------
    base_url:
        Root URL of the gateway.
    token:
        Bearer token.  When empty, no ``Authorization`` header is sent.
    sender:
        Originating number or sender id.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the gateway.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        sender: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sender = sender
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def send(self, phone_number: str, body: str) -> SendResult:
        try:
            message_id = await self._post_message(phone_number, body)
        except ProviderSendError as exc:
            logger.warning("SMS to %s failed: %s", mask_phone(phone_number), exc)
            return SendResult(success=False, error=str(exc))
        logger.info("SMS to %s accepted (id=%s)", mask_phone(phone_number), message_id)
        return SendResult(success=True, message_id=message_id)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _post_message(self, phone_number: str, body: str) -> str | None:
        payload = {"to": phone_number, "from": self._sender, "body": body}
        try:
            response = await self._client.post("/messages", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ProviderSendError(
                f"gateway returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderSendError(f"gateway request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        message_id = data.get("id") or data.get("sid")
        return str(message_id) if message_id is not None else None


class LoggingProvider:
    """Local-mode provider: log the message and report success."""

    def __init__(self, logger_name: str = "dispatch_api.sms") -> None:
        self._logger = logging.getLogger(logger_name)
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number: str, body: str) -> SendResult:
        message_id = f"local-{uuid.uuid4().hex[:12]}"
        self.sent.append((phone_number, body))
        self._logger.info("SMS %s to %s: %s", message_id, mask_phone(phone_number), body.splitlines()[0] if body else "")
        return SendResult(success=True, message_id=message_id)

    async def close(self) -> None:
        return None


def build_provider(settings: APISettings) -> HTTPMessagingProvider | LoggingProvider:
    """Return the provider selected by *settings*."""
    if not settings.provider_url:
        logger.info("No provider URL configured; messages will be logged, not sent")
        return LoggingProvider()
    return HTTPMessagingProvider(
        settings.provider_url,
        settings.provider_token.get_secret_value(),
        sender=settings.provider_sender,
        timeout=settings.provider_timeout,
    )
