"""Notifiers — delivery of rendered messages to external channels."""

from __future__ import annotations

import abc
import asyncio
import smtplib
from datetime import UTC, datetime
from email.mime.text import MIMEText
from typing import Any

import aiohttp
import structlog

from src.core.config import (
    ChannelConfig,
    DiscordChannelConfig,
    EmailChannelConfig,
    PagerDutyChannelConfig,
    SlackChannelConfig,
    SmsChannelConfig,
    TeamsChannelConfig,
    WebhookChannelConfig,
)
from src.core.types import NotificationEvent
from src.notify.types import DeliveryResult, RenderedMessage

logger = structlog.get_logger(__name__)

# Colours keyed by severity value (alert and incident vocabularies).
_COLORS: dict[str, int] = {
    "info": 0x2ECC71,      # green
    "low": 0x2ECC71,
    "warning": 0xF39C12,   # orange
    "medium": 0xF39C12,
    "error": 0xE67E22,     # dark orange
    "high": 0xE67E22,
    "critical": 0xE74C3C,  # red
}
_DEFAULT_COLOR = 0x95A5A6

# PagerDuty Events v2 only knows these four severities.
_PAGERDUTY_SEVERITY: dict[str, str] = {
    "critical": "critical",
    "high": "error",
    "error": "error",
    "medium": "warning",
    "warning": "warning",
    "low": "info",
    "info": "info",
}

_PAGERDUTY_ACTIONS: dict[NotificationEvent, str] = {
    NotificationEvent.ALERT_ACKNOWLEDGED: "acknowledge",
    NotificationEvent.ALERT_RESOLVED: "resolve",
    NotificationEvent.INCIDENT_RESOLVED: "resolve",
}

_SMS_MAX_CHARS = 1600


class Notifier(abc.ABC):
    """Uniform delivery contract for one channel type."""

    @abc.abstractmethod
    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        """Deliver *message* through *channel*."""

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


def _wrong_channel(notifier: Notifier, channel: ChannelConfig) -> DeliveryResult:
    name = type(notifier).__name__
    logger.error("channel_type_mismatch", notifier=name, channel=channel.id, type=channel.type)
    return DeliveryResult(ok=False, reason=f"{name} cannot deliver to {channel.type} channels")


class HttpNotifier(Notifier):
    """Shared aiohttp session handling for webhook-style notifiers."""

    ok_statuses: tuple[int, ...] = (200, 201, 202, 204)

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post(self, url: str, log_name: str, **kwargs: Any) -> DeliveryResult:
        if not url:
            return DeliveryResult(ok=False, reason="no url configured")
        try:
            session = self._get_session()
            async with session.post(url, **kwargs) as resp:
                if resp.status in self.ok_statuses:
                    return DeliveryResult(ok=True)
                body = await resp.text()
                logger.warning(
                    f"{log_name}_send_failed",
                    status=resp.status,
                    body=body[:200],
                )
                return DeliveryResult(ok=False, reason=f"HTTP {resp.status}")
        except Exception as exc:
            logger.exception(f"{log_name}_send_error")
            return DeliveryResult(ok=False, reason=str(exc) or type(exc).__name__)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class SlackNotifier(HttpNotifier):
    """Slack incoming webhook with a colour-coded attachment."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, SlackChannelConfig):
            return _wrong_channel(self, channel)
        text = f"*{message.title}*\n{message.body}"
        if message.recipient:
            text = f"{message.recipient} {text}"
        payload: dict[str, Any] = {
            "text": text,
            "attachments": [
                {
                    "color": f"#{_COLORS.get(message.severity, _DEFAULT_COLOR):06x}",
                    "fields": [
                        {"title": k, "value": v, "short": True}
                        for k, v in message.fields.items()
                    ],
                    "ts": int(message.timestamp),
                }
            ],
        }
        if channel.channel:
            payload["channel"] = channel.channel
        return await self._post(
            channel.webhook_url.get_secret_value(), "slack", json=payload,
        )


class DiscordNotifier(HttpNotifier):
    """Discord webhook with a colour-coded embed."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, DiscordChannelConfig):
            return _wrong_channel(self, channel)
        embed: dict[str, Any] = {
            "title": message.title[:256],
            "color": _COLORS.get(message.severity, _DEFAULT_COLOR),
        }
        if message.body:
            embed["description"] = message.body[:4096]
        if message.fields:
            embed["fields"] = [
                {"name": k, "value": v or "-", "inline": True}
                for k, v in message.fields.items()
            ]
        payload: dict[str, Any] = {"embeds": [embed]}
        if message.recipient:
            payload["content"] = message.recipient
        return await self._post(
            channel.webhook_url.get_secret_value(), "discord", json=payload,
        )


class TeamsNotifier(HttpNotifier):
    """Microsoft Teams incoming webhook (MessageCard)."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, TeamsChannelConfig):
            return _wrong_channel(self, channel)
        payload = {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "themeColor": f"{_COLORS.get(message.severity, _DEFAULT_COLOR):06X}",
            "summary": message.title,
            "title": message.title,
            "text": message.body.replace("\n", "<br>"),
            "sections": [
                {"facts": [{"name": k, "value": v} for k, v in message.fields.items()]}
            ],
        }
        return await self._post(
            channel.webhook_url.get_secret_value(), "teams", json=payload,
        )


class WebhookNotifier(HttpNotifier):
    """Generic JSON webhook carrying the full rendered message."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, WebhookChannelConfig):
            return _wrong_channel(self, channel)
        return await self._post(
            channel.url.get_secret_value(),
            "webhook",
            json=message.model_dump(mode="json"),
            headers=channel.headers,
        )


class PagerDutyNotifier(HttpNotifier):
    """PagerDuty Events API v2 (trigger / acknowledge / resolve)."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, PagerDutyChannelConfig):
            return _wrong_channel(self, channel)
        action = _PAGERDUTY_ACTIONS.get(message.event, "trigger")
        payload: dict[str, Any] = {
            "routing_key": channel.integration_key.get_secret_value(),
            "event_action": action,
            "dedup_key": message.subject_id,
        }
        if action == "trigger":
            payload["payload"] = {
                "summary": message.title[:1024],
                "source": message.fields.get("service") or "incident-response-engine",
                "severity": channel.severity
                or _PAGERDUTY_SEVERITY.get(message.severity, "error"),
                "timestamp": datetime.fromtimestamp(message.timestamp, tz=UTC).isoformat(),
                "custom_details": {"body": message.body, **message.fields},
            }
        return await self._post(channel.events_url, "pagerduty", json=payload)


class SmsNotifier(HttpNotifier):
    """HTTP SMS gateway: one form-encoded POST per recipient, basic auth."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, SmsChannelConfig):
            return _wrong_channel(self, channel)
        numbers = [message.recipient] if message.recipient else channel.to_numbers
        if not numbers:
            return DeliveryResult(ok=False, reason="no recipients")
        auth = aiohttp.BasicAuth(channel.account_sid, channel.auth_token.get_secret_value())
        text = f"{message.title}\n{message.body}"[:_SMS_MAX_CHARS]
        failures: list[str] = []
        for number in numbers:
            result = await self._post(
                channel.gateway_url,
                "sms",
                data={"To": number, "From": channel.from_number, "Body": text},
                auth=auth,
            )
            if not result.ok:
                failures.append(f"{number}: {result.reason}")
        if failures:
            return DeliveryResult(ok=False, reason="; ".join(failures))
        return DeliveryResult(ok=True)


class EmailNotifier(Notifier):
    """SMTP delivery. The blocking send runs in a worker thread."""

    async def send(self, message: RenderedMessage, channel: ChannelConfig) -> DeliveryResult:
        if not isinstance(channel, EmailChannelConfig):
            return _wrong_channel(self, channel)
        to = [message.recipient] if message.recipient else list(channel.to)
        if not to:
            return DeliveryResult(ok=False, reason="no recipients")
        try:
            await asyncio.to_thread(self._send_sync, channel, to, message)
            logger.info("email_sent", to=to, subject=message.title)
            return DeliveryResult(ok=True)
        except Exception as exc:
            logger.exception("email_send_error", to=to)
            return DeliveryResult(ok=False, reason=str(exc) or type(exc).__name__)

    @staticmethod
    def _send_sync(channel: EmailChannelConfig, to: list[str], message: RenderedMessage) -> None:
        lines = [message.body]
        if message.fields:
            lines.append("")
            lines.extend(f"{k}: {v}" for k, v in message.fields.items())
        mime = MIMEText("\n".join(lines), "plain", "utf-8")
        mime["Subject"] = message.title
        mime["From"] = channel.from_addr
        mime["To"] = ", ".join(to)

        with smtplib.SMTP(channel.smtp_host, channel.smtp_port, timeout=30) as server:
            server.ehlo()
            if channel.use_tls:
                server.starttls()
                server.ehlo()
            password = channel.password.get_secret_value()
            if channel.username and password:
                server.login(channel.username, password)
            server.sendmail(channel.from_addr, to, mime.as_string())


def default_notifiers() -> dict[str, Notifier]:
    """One notifier instance per channel type."""
    return {
        "email": EmailNotifier(),
        "slack": SlackNotifier(),
        "sms": SmsNotifier(),
        "webhook": WebhookNotifier(),
        "pagerduty": PagerDutyNotifier(),
        "teams": TeamsNotifier(),
        "discord": DiscordNotifier(),
    }
