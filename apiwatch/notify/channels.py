"""Notification transports — mock and HTTP delivery per channel type.

Senders return a :class:`DeliveryOutcome` on success and raise
:class:`DeliveryError` on any failure (non-2xx, timeout, transport error).
Retry policy lives in the delivery worker, not here.
"""

from __future__ import annotations

import abc
import random
from typing import Any

import httpx
import structlog

from apiwatch.core.exceptions import DeliveryError
from apiwatch.core.types import Channel, DeliveryMode, NotificationRecord
from apiwatch.notify.formatters import (
    format_discord,
    format_slack,
    format_telegram,
    format_wechat,
)
from apiwatch.notify.types import DeliveryOutcome

logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Channel types with no network transport; they always report success.
_LOCAL_RESPONSES: dict[str, str] = {
    "email": "smtp_mock_sent",
    "sms": "sms_mock_sent",
}


def validate_channel_config(channel: Channel | None) -> str | None:
    """Return an error code if *channel* cannot be delivered to, else None."""
    if channel is None:
        return "channel_missing"
    config = channel.config
    kind = channel.type.lower()
    if kind in ("email", "sms"):
        if not config.recipients:
            return f"invalid_{kind}_recipients"
        return None
    if kind == "webhook":
        return None if config.url.strip() else "invalid_webhook_url"
    if kind in ("slack", "wechat", "discord"):
        return None if config.webhook_url.strip() else f"invalid_{kind}_webhook_url"
    if kind == "telegram":
        if not config.bot_token.get_secret_value() or not config.chat_id:
            return "invalid_telegram_config"
        return None
    return None


class ChannelSender(abc.ABC):
    """Base class for notification transports."""

    @abc.abstractmethod
    async def deliver(self, channel: Channel, record: NotificationRecord) -> DeliveryOutcome:
        """Deliver *record* to *channel*. Raises DeliveryError on failure."""

    async def close(self) -> None:
        """Release resources (HTTP clients, etc.)."""


class MockSender(ChannelSender):
    """In-process transport for tests and demos.

    Succeeds unless a coin flip falls under the channel's ``mockFailRate``.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def deliver(self, channel: Channel, record: NotificationRecord) -> DeliveryOutcome:
        rate = min(max(channel.config.mock_fail_rate, 0.0), 1.0)
        if rate > 0 and self._rng.random() < rate:
            raise DeliveryError("mock_failed")
        return DeliveryOutcome(response="mock_sent")


class HttpSender(ChannelSender):
    """Delivers over HTTP with ``httpx.AsyncClient`` and a per-channel timeout."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        default_timeout_ms: int = 8_000,
        min_timeout_ms: int = 1_000,
        telegram_api_base: str = TELEGRAM_API_BASE,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._default_timeout_ms = default_timeout_ms
        self._min_timeout_ms = min_timeout_ms
        self._telegram_api_base = telegram_api_base.rstrip("/")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    def _timeout(self, channel: Channel) -> float:
        timeout_ms = channel.config.timeout_ms or self._default_timeout_ms
        return max(timeout_ms, self._min_timeout_ms) / 1000.0

    def _request(
        self, channel: Channel, payload: dict[str, Any]
    ) -> tuple[str, str, dict[str, Any], dict[str, str]]:
        """Return (method, url, json body, headers) for *channel*."""
        config = channel.config
        kind = channel.type.lower()
        if kind == "webhook":
            headers = {"Content-Type": "application/json"}
            headers.update({k.strip(): str(v) for k, v in config.headers.items() if k.strip()})
            return (config.method or "POST").upper(), config.url.strip(), payload, headers
        if kind == "slack":
            return "POST", config.webhook_url.strip(), format_slack(payload), {}
        if kind == "wechat":
            return "POST", config.webhook_url.strip(), format_wechat(payload), {}
        if kind == "discord":
            return "POST", config.webhook_url.strip(), format_discord(payload), {}
        if kind == "telegram":
            token = config.bot_token.get_secret_value()
            url = f"{self._telegram_api_base}/bot{token}/sendMessage"
            return "POST", url, format_telegram(payload, config.chat_id), {}
        raise DeliveryError(f"unsupported_channel_type_{kind}")

    async def deliver(self, channel: Channel, record: NotificationRecord) -> DeliveryOutcome:
        kind = channel.type.lower()
        if kind in _LOCAL_RESPONSES:
            return DeliveryOutcome(response=_LOCAL_RESPONSES[kind])
        if kind not in ("webhook", "slack", "wechat", "discord", "telegram"):
            return DeliveryOutcome(response="custom_mock_sent")

        method, url, body, headers = self._request(channel, record.payload)
        try:
            resp = await self._get_client().request(
                method,
                url,
                json=body,
                headers=headers,
                timeout=self._timeout(channel),
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError("timeout") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"transport_error: {type(exc).__name__}") from exc

        if not resp.is_success:
            logger.warning(
                "channel_send_failed",
                channel_id=channel.id,
                channel_type=kind,
                status=resp.status_code,
                body=resp.text[:200],
            )
            raise DeliveryError(f"http_{resp.status_code}")
        return DeliveryOutcome(response=f"http_{resp.status_code}", status_code=resp.status_code)

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None


class ChannelRouter(ChannelSender):
    """Picks the mock or HTTP sender from the channel's ``deliveryMode``."""

    def __init__(
        self,
        mock: ChannelSender | None = None,
        http: ChannelSender | None = None,
    ) -> None:
        self._senders: dict[DeliveryMode, ChannelSender] = {
            DeliveryMode.MOCK: mock or MockSender(),
            DeliveryMode.HTTP: http or HttpSender(),
        }

    async def deliver(self, channel: Channel, record: NotificationRecord) -> DeliveryOutcome:
        return await self._senders[channel.config.mode].deliver(channel, record)

    async def close(self) -> None:
        for sender in self._senders.values():
            try:
                await sender.close()
            except Exception:
                logger.exception("sender_close_error", sender=type(sender).__name__)
