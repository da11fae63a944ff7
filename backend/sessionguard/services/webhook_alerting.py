"""Webhook alerting for high and critical security events.

Sends alerts to external webhook URLs (Discord, Slack, generic HTTP).
Alerts are dispatched as background tasks with short timeouts so a slow
webhook never delays the access decision that produced the event.
"""

import asyncio
import json
from datetime import UTC, datetime

import httpx

from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import SecurityEvent, Severity

logger = get_logger("webhook_alerting")

_WEBHOOK_TIMEOUT = 5.0

ALERT_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


async def send_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str = "warning",
    details: dict | None = None,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """Send an alert to a webhook URL.

    Failures are logged, never raised.

    Args:
        webhook_url: Destination URL; empty disables alerting
        title: Short alert title
        message: Alert description
        severity: One of "info", "warning", "critical"
        details: Optional additional context
        client: Optional shared HTTP client

    Returns:
        True if the webhook accepted the alert
    """
    if not webhook_url:
        return False

    payload = _build_payload(title, message, severity, details, webhook_url)

    try:
        if client is not None:
            response = await client.post(webhook_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=_WEBHOOK_TIMEOUT) as own_client:
                response = await own_client.post(webhook_url, json=payload)
        if response.status_code >= 400:
            logger.warning("Webhook alert failed: HTTP %d", response.status_code)
            return False
        return True
    except httpx.HTTPError as e:
        logger.warning("Webhook alert failed: %s", e)
        return False


def _build_payload(
    title: str,
    message: str,
    severity: str,
    details: dict | None,
    webhook_url: str,
) -> dict:
    """Build webhook payload, adapting format for known services."""
    severity_prefix = {"info": "[info]", "warning": "[warning]", "critical": "[CRITICAL]"}.get(
        severity, "[alert]"
    )
    rendered_details = json.dumps(details, indent=2, default=str)[:1500] if details else ""

    if "discord.com/api/webhooks" in webhook_url:
        content = f"{severity_prefix} **{title}**\n{message}"
        if rendered_details:
            content += f"\n```json\n{rendered_details}\n```"
        return {"content": content}

    if "hooks.slack.com" in webhook_url:
        text = f"{severity_prefix} *{title}*\n{message}"
        if rendered_details:
            text += f"\n```{rendered_details}```"
        return {"text": text}

    return {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(UTC).isoformat(),
        "details": details or {},
        "source": "sessionguard",
    }


class SecurityAlertSubscriber:
    """Event sink subscriber that forwards high/critical events to a webhook."""

    def __init__(self, webhook_url: str, client: httpx.AsyncClient | None = None):
        self._webhook_url = webhook_url
        self._client = client
        self._pending: set[asyncio.Task] = set()

    def __call__(self, event: SecurityEvent) -> None:
        if not self._webhook_url or event.severity not in ALERT_SEVERITIES:
            return
        task = asyncio.create_task(
            send_alert(
                self._webhook_url,
                title=f"Security event: {event.type}",
                message=f"{event.severity.value} severity event for user {event.user_id or '-'}",
                severity="critical" if event.severity == Severity.CRITICAL else "warning",
                details={**event.details, "ip": event.ip, "timestamp": event.timestamp.isoformat()},
                client=self._client,
            ),
            name=f"security-alert-{event.type}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight alerts (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
