from __future__ import annotations

from dataclasses import asdict, dataclass
import logging
from typing import Any, Awaitable, Callable

import httpx

from tenantledger.core.config import get_settings
from tenantledger.core.errors import DeliveryFailure
from tenantledger.domain.vocab import CHANNEL_WEB, CHANNELS


logger = logging.getLogger(__name__)

_NON_TERMINAL_HTTP_4XX = {408, 429}


@dataclass(frozen=True)
class ChannelMessage:
    tenant_id: str
    notification_id: str
    delivery_id: str
    channel: str
    recipient: str
    recipient_kind: str
    title: str
    message: str
    category: str
    priority: int
    attempt_no: int
    rich_content: dict[str, Any] | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


ChannelSender = Callable[[ChannelMessage], Awaitable[None]]

_senders: dict[str, ChannelSender] = {}


def register_channel_sender(channel: str, sender: ChannelSender) -> None:
    # Overrides the built-in sender for one channel (integrations, tests).
    if channel not in CHANNELS:
        raise ValueError(f"unknown channel: {channel}")
    _senders[channel] = sender


def reset_channel_senders() -> None:
    _senders.clear()


def classify_http_status(status_code: int) -> bool:
    # Returns whether a receiver status is worth retrying.
    if status_code >= 500:
        return True
    return status_code in _NON_TERMINAL_HTTP_4XX


async def _post_json(channel: str, url: str, body: dict[str, Any]) -> None:
    timeout_s = max(0.2, get_settings().notify_relay_timeout_ms / 1000.0)
    try:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            response = await client.post(url, json=body)
    except httpx.HTTPError as exc:
        raise DeliveryFailure(f"{channel} relay unreachable: {exc.__class__.__name__}", channel=channel) from exc
    if response.status_code >= 400:
        raise DeliveryFailure(
            f"{channel} relay rejected delivery (http_{response.status_code})",
            channel=channel,
            retriable=classify_http_status(response.status_code),
        )


async def _send_web(message: ChannelMessage) -> None:
    # The persisted notification row is the in-app inbox entry.
    return None


def _relay_sender(channel: str, setting_name: str) -> ChannelSender:
    async def _send(message: ChannelMessage) -> None:
        url = getattr(get_settings(), setting_name)
        if not url:
            raise DeliveryFailure(f"{channel} relay is not configured", channel=channel, retriable=False)
        await _post_json(channel, url, message.as_payload())

    return _send


async def _send_webhook(message: ChannelMessage) -> None:
    url = (message.rich_content or {}).get("webhook_url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        raise DeliveryFailure("webhook channel requires rich_content.webhook_url", channel="webhook", retriable=False)
    body = message.as_payload()
    body["rich_content"] = {k: v for k, v in (message.rich_content or {}).items() if k != "webhook_url"}
    await _post_json("webhook", url, body)


_DEFAULT_SENDERS: dict[str, ChannelSender] = {
    CHANNEL_WEB: _send_web,
    "email": _relay_sender("email", "notify_email_relay_url"),
    "sms": _relay_sender("sms", "notify_sms_relay_url"),
    "push": _relay_sender("push", "notify_push_relay_url"),
    "webhook": _send_webhook,
}


def get_channel_sender(channel: str) -> ChannelSender:
    sender = _senders.get(channel) or _DEFAULT_SENDERS.get(channel)
    if sender is None:
        raise DeliveryFailure(f"no sender for channel {channel}", channel=channel, retriable=False)
    return sender
