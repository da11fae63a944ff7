"""Tests for webhook alerting service."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from sessionguard.domain.entities import SecurityEvent, SecurityEventType, Severity
from sessionguard.services.webhook_alerting import (
    SecurityAlertSubscriber,
    _build_payload,
    send_alert,
)


def recording_client(status_code: int = 200) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
    """HTTP client whose transport records requests instead of sending them."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


class TestBuildPayload:
    """Tests for webhook payload formatting."""

    def test_discord_payload(self):
        """Test Discord webhook format."""
        payload = _build_payload(
            "Test Alert",
            "Something happened",
            "warning",
            None,
            "https://discord.com/api/webhooks/123/abc",
        )
        assert "content" in payload
        assert "**Test Alert**" in payload["content"]
        assert "Something happened" in payload["content"]

    def test_slack_payload(self):
        """Test Slack webhook format."""
        payload = _build_payload(
            "Test Alert",
            "Something happened",
            "critical",
            {"ip": "10.0.0.1"},
            "https://hooks.slack.com/services/T/B/x",
        )
        assert "*Test Alert*" in payload["text"]
        assert "[CRITICAL]" in payload["text"]
        assert "10.0.0.1" in payload["text"]

    def test_generic_payload(self):
        """Test generic webhook format."""
        payload = _build_payload(
            "Test Alert",
            "Something happened",
            "info",
            {"key": "value"},
            "https://example.com/webhook",
        )
        assert payload["title"] == "Test Alert"
        assert payload["severity"] == "info"
        assert payload["source"] == "sessionguard"
        assert payload["details"] == {"key": "value"}


class TestSendAlert:
    """Tests for send_alert function."""

    @pytest.mark.asyncio
    async def test_no_webhook_url_is_noop(self):
        assert await send_alert("", "Test", "Message") is False

    @pytest.mark.asyncio
    async def test_successful_delivery(self):
        client, requests = recording_client()
        async with client:
            assert await send_alert("https://example.com/hook", "Test", "Message", client=client)

        assert len(requests) == 1
        assert requests[0].method == "POST"

    @pytest.mark.asyncio
    async def test_http_error_status_returns_false(self):
        client, _ = recording_client(status_code=500)
        async with client:
            assert await send_alert("https://example.com/hook", "Test", "Message", client=client) is False

    @pytest.mark.asyncio
    async def test_webhook_failure_does_not_raise(self):
        """Test that network failures are logged, not raised."""
        with patch("httpx.AsyncClient") as mock_client_cls:
            mock_client = AsyncMock()
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            mock_client.post = AsyncMock(side_effect=httpx.ConnectError("Network error"))
            mock_client_cls.return_value = mock_client

            assert await send_alert("https://example.com/hook", "Test", "Message") is False


class TestSecurityAlertSubscriber:
    """Tests for forwarding security events."""

    @pytest.mark.asyncio
    async def test_high_severity_forwarded(self, clock):
        client, requests = recording_client()
        subscriber = SecurityAlertSubscriber("https://example.com/hook", client=client)

        subscriber(
            SecurityEvent(
                type=SecurityEventType.TOKEN_REUSE_ATTEMPT.value,
                severity=Severity.HIGH,
                timestamp=clock.now(),
                details={"endpoint": "/api/x"},
                user_id="user-1",
            )
        )
        await subscriber.drain()
        await client.aclose()

        assert len(requests) == 1
        assert b"token_reuse_attempt" in requests[0].content

    @pytest.mark.asyncio
    async def test_low_severity_ignored(self, clock):
        client, requests = recording_client()
        subscriber = SecurityAlertSubscriber("https://example.com/hook", client=client)

        subscriber(
            SecurityEvent(
                type=SecurityEventType.SESSION_CREATED.value,
                severity=Severity.LOW,
                timestamp=clock.now(),
            )
        )
        await subscriber.drain()
        await client.aclose()

        assert requests == []

    @pytest.mark.asyncio
    async def test_subscribed_to_event_sink(self, event_sink):
        """Events recorded through the sink reach the webhook."""
        client, requests = recording_client()
        subscriber = SecurityAlertSubscriber("https://example.com/hook", client=client)
        event_sink.subscribe(subscriber)

        await event_sink.record(SecurityEventType.PERMISSION_DENIED, Severity.HIGH, {"endpoint": "/api/audit"})
        await subscriber.drain()
        await client.aclose()

        assert len(requests) == 1
