"""Tests for the outbound messaging providers."""

from __future__ import annotations

import json

import httpx
import pytest
from dispatch_api.config import APISettings
from dispatch_api.services.messaging_provider import (
    HTTPMessagingProvider,
    LoggingProvider,
    MessagingProvider,
    build_provider,
)


def _gateway(status: int = 201, payload: object | None = None, *, seen: list[httpx.Request] | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if payload is None:
            return httpx.Response(status, text="accepted")
        return httpx.Response(status, json=payload)

    return httpx.MockTransport(handler)


class TestHTTPMessagingProvider:
    @pytest.mark.asyncio
    async def test_successful_send(self):
        seen: list[httpx.Request] = []
        provider = HTTPMessagingProvider(
            "https://sms.example.com/v1/",
            "tok-123",
            sender="+15550000000",
            transport=_gateway(payload={"sid": "SM42"}, seen=seen),
        )
        try:
            result = await provider.send("+15551234567", "Hello")
        finally:
            await provider.close()

        assert result.success is True
        assert result.message_id == "SM42"
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://sms.example.com/v1/messages"
        assert request.headers["Authorization"] == "Bearer tok-123"
        assert json.loads(request.content) == {"to": "+15551234567", "from": "+15550000000", "body": "Hello"}

    @pytest.mark.asyncio
    async def test_id_field_preferred(self):
        provider = HTTPMessagingProvider("https://sms.example.com", transport=_gateway(payload={"id": 7, "sid": "x"}))
        result = await provider.send("+15551234567", "Hello")
        await provider.close()
        assert result.message_id == "7"

    @pytest.mark.asyncio
    async def test_no_token_sends_no_auth_header(self):
        seen: list[httpx.Request] = []
        provider = HTTPMessagingProvider("https://sms.example.com", transport=_gateway(payload={}, seen=seen))
        await provider.send("+15551234567", "Hello")
        await provider.close()
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_non_json_response_still_succeeds(self):
        provider = HTTPMessagingProvider("https://sms.example.com", transport=_gateway(status=202))
        result = await provider.send("+15551234567", "Hello")
        await provider.close()
        assert result.success is True
        assert result.message_id is None

    @pytest.mark.asyncio
    async def test_http_error_is_reported_not_raised(self):
        provider = HTTPMessagingProvider(
            "https://sms.example.com",
            transport=_gateway(status=500, payload={"error": "upstream"}),
        )
        result = await provider.send("+15551234567", "Hello")
        await provider.close()

        assert result.success is False
        assert "500" in result.error

    @pytest.mark.asyncio
    async def test_connection_error_is_reported_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = HTTPMessagingProvider("https://sms.example.com", transport=httpx.MockTransport(handler))
        result = await provider.send("+15551234567", "Hello")
        await provider.close()

        assert result.success is False
        assert "request failed" in result.error

    def test_satisfies_protocol(self):
        assert isinstance(HTTPMessagingProvider("https://sms.example.com"), MessagingProvider)


class TestLoggingProvider:
    @pytest.mark.asyncio
    async def test_records_and_succeeds(self, caplog):
        provider = LoggingProvider()

        with caplog.at_level("INFO", logger="dispatch_api.sms"):
            result = await provider.send("+15551234567", "First line\nSecond line")

        assert result.success is True
        assert result.message_id.startswith("local-")
        assert provider.sent == [("+15551234567", "First line\nSecond line")]
        assert "***4567" in caplog.text
        assert "+15551234567" not in caplog.text
        assert "Second line" not in caplog.text

    def test_satisfies_protocol(self):
        assert isinstance(LoggingProvider(), MessagingProvider)


class TestBuildProvider:
    def test_empty_url_selects_logging_provider(self):
        assert isinstance(build_provider(APISettings(provider_url="")), LoggingProvider)

    @pytest.mark.asyncio
    async def test_url_selects_http_provider(self):
        provider = build_provider(APISettings(provider_url="https://sms.example.com/", provider_token="t"))
        assert isinstance(provider, HTTPMessagingProvider)
        await provider.close()
