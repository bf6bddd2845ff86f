"""Outbound alert sinks: signed webhook and Telegram bot.

Every sink receives the same payload schema
  {ruleId, severity, subject, message, evidence, timestamp}
and raises SinkDispatchError on any delivery failure. The alert engine bounds
each send with its own timeout and records the per-sink outcome.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Protocol

import httpx

from chainpulse.config import SinkConfig
from chainpulse.exceptions import SinkDispatchError

SIGNATURE_HEADER = "X-Chainpulse-Signature"
TELEGRAM_API = "https://api.telegram.org"

_SEVERITY_ICONS = {"info": "ℹ️", "warning": "⚠️", "high": "🔶", "critical": "🚨"}


class AlertSink(Protocol):
    name: str

    async def send(self, payload: dict[str, Any]) -> None: ...


def sign_body(body: bytes, secret: str) -> str:
    """HMAC-SHA256 signature header value for a webhook body."""
    sig = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


class WebhookSink:
    """POST the alert payload as JSON, signed when a secret is configured."""

    name = "webhook"

    def __init__(self, url: str, secret: str = "", client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self.secret = secret
        self._client = client

    async def send(self, payload: dict[str, Any]) -> None:
        body = json.dumps(payload, sort_keys=True, default=str).encode()
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.secret:
            headers[SIGNATURE_HEADER] = sign_body(body, self.secret)

        status = await _post(self._client, self.url, content=body, headers=headers)
        if not 200 <= status < 300:
            raise SinkDispatchError(
                f"Webhook returned HTTP {status}", details={"sink": self.name, "status": status}
            )


class TelegramSink:
    """Send a Markdown message through the Telegram Bot API."""

    name = "telegram"

    def __init__(self, bot_token: str, chat_id: str, client: httpx.AsyncClient | None = None) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._client = client

    def format_message(self, payload: dict[str, Any]) -> str:
        severity = str(payload.get("severity", "info"))
        lines = [
            f"{_SEVERITY_ICONS.get(severity, '')} *{severity.upper()} Alert*",
            f"Rule: {payload.get('ruleId')}",
        ]
        if payload.get("subject"):
            lines.append(f"Subject: `{payload['subject']}`")
        lines.append(str(payload.get("message", "")))
        lines.append(f"Data: `{json.dumps(payload.get('evidence', {}), sort_keys=True, default=str)}`")
        lines.append(f"Time: {payload.get('timestamp')}")
        return "\n".join(lines)

    async def send(self, payload: dict[str, Any]) -> None:
        url = f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage"
        status = await _post(
            self._client,
            url,
            json={
                "chat_id": self.chat_id,
                "text": self.format_message(payload),
                "parse_mode": "Markdown",
            },
        )
        if not 200 <= status < 300:
            raise SinkDispatchError(
                f"Telegram returned HTTP {status}", details={"sink": self.name, "status": status}
            )


def build_sinks(config: SinkConfig, client: httpx.AsyncClient | None = None) -> list[AlertSink]:
    """Sinks enabled by configuration."""
    sinks: list[AlertSink] = []
    if config.webhook_url:
        sinks.append(WebhookSink(config.webhook_url, config.webhook_secret, client=client))
    if config.telegram_bot_token and config.telegram_chat_id:
        sinks.append(TelegramSink(config.telegram_bot_token, config.telegram_chat_id, client=client))
    return sinks


async def _post(client: httpx.AsyncClient | None, url: str, **kwargs: Any) -> int:
    try:
        if client is not None:
            resp = await client.post(url, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=15.0) as owned:
                resp = await owned.post(url, **kwargs)
    except httpx.TimeoutException as e:
        raise SinkDispatchError(f"Sink timeout: {e}") from e
    except httpx.HTTPError as e:
        raise SinkDispatchError(f"Sink delivery failed: {e}") from e
    return resp.status_code
