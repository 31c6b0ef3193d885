"""Notification dispatcher — best-effort fan-out to configured channels."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from src.core.config import ChannelConfig, MessageTemplate
from src.core.types import Alert, Incident, NotificationEvent
from src.notify.channels import Notifier
from src.notify.formatters import render_alert, render_incident
from src.notify.rate_limiter import RateLimiterRegistry
from src.notify.types import ChannelOutcome, DeliveryStatus, DispatchReport, RenderedMessage

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

Renderer = Callable[[ChannelConfig], RenderedMessage]


class NotificationDispatcher:
    """Renders and delivers messages to channels.

    - Channels are delivered concurrently; one channel's failure, timeout or
      rate limit never affects the others.
    - Unknown or disabled channels are skipped.
    - Rate-limited channels are skipped and recorded in the decision log.
    - Each send is bounded by ``send_timeout_secs``.
    """

    def __init__(
        self,
        channels: list[ChannelConfig],
        notifiers: dict[str, Notifier],
        templates: dict[NotificationEvent, MessageTemplate] | None = None,
        send_timeout_secs: float = 10.0,
        environment: str = "",
        service: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._channels: dict[str, ChannelConfig] = {c.id: c for c in channels}
        self._notifiers = notifiers
        self._templates = templates or {}
        self._send_timeout = send_timeout_secs
        self._environment = environment
        self._service = service
        self._limiters = RateLimiterRegistry(clock)

    @property
    def channels(self) -> dict[str, ChannelConfig]:
        return dict(self._channels)

    # ── Entry points ────────────────────────────────────────────

    async def dispatch_alert(
        self,
        alert: Alert,
        channel_ids: list[str],
        event: NotificationEvent = NotificationEvent.ALERT_TRIGGERED,
    ) -> DispatchReport:
        def render(channel: ChannelConfig) -> RenderedMessage:
            return render_alert(
                alert, channel, event, self._templates, self._environment, self._service,
            )

        return await self._fan_out(event, channel_ids, render, subject_id=alert.id)

    async def dispatch_incident(
        self,
        incident: Incident,
        channel_ids: list[str],
        event: NotificationEvent,
    ) -> DispatchReport:
        def render(channel: ChannelConfig) -> RenderedMessage:
            return render_incident(incident, channel, event, self._templates)

        return await self._fan_out(event, channel_ids, render, subject_id=incident.id)

    async def notify_event(self, incident: Incident, event: NotificationEvent) -> DispatchReport:
        """Send an incident event to the channels its template names."""
        tmpl = self._templates.get(event)
        channel_ids = list(tmpl.channels) if tmpl is not None else []
        if not channel_ids:
            return DispatchReport(event=event)
        return await self.dispatch_incident(incident, channel_ids, event)

    async def send_to_channel(self, channel_id: str, message: RenderedMessage) -> ChannelOutcome:
        """Deliver a pre-rendered message to a single channel (responder paging)."""
        return await self._deliver(channel_id, lambda _channel: message, message.event)

    # ── Internal routing ────────────────────────────────────────

    async def _fan_out(
        self,
        event: NotificationEvent,
        channel_ids: list[str],
        render: Renderer,
        subject_id: str = "",
    ) -> DispatchReport:
        unique = list(dict.fromkeys(channel_ids))
        outcomes = await asyncio.gather(
            *(self._deliver(cid, render, event) for cid in unique)
        )
        report = DispatchReport(event=event, outcomes=list(outcomes))
        logger.info(
            "notification_dispatched",
            notification_event=event.value,
            subject_id=subject_id,
            sent=report.sent,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    async def _deliver(
        self,
        channel_id: str,
        render: Renderer,
        event: NotificationEvent,
    ) -> ChannelOutcome:
        channel = self._channels.get(channel_id)
        if channel is None:
            logger.warning("unknown_channel", channel=channel_id)
            return ChannelOutcome(
                channel_id=channel_id, status=DeliveryStatus.SKIPPED, reason="unknown channel",
            )
        if not channel.enabled:
            return ChannelOutcome(
                channel_id=channel_id, status=DeliveryStatus.SKIPPED, reason="disabled",
            )
        notifier = self._notifiers.get(channel.type)
        if notifier is None:
            logger.warning("no_notifier_for_channel", channel=channel_id, type=channel.type)
            return ChannelOutcome(
                channel_id=channel_id,
                status=DeliveryStatus.FAILED,
                reason=f"no notifier for channel type {channel.type!r}",
            )

        limiter = self._limiters.get(channel_id, channel.rate_limiting)
        if not await limiter.acquire():
            decision_logger.info(
                "channel_rate_limited",
                channel=channel_id,
                notification_event=event.value,
                muted_until=limiter.muted_until,
            )
            return ChannelOutcome(
                channel_id=channel_id, status=DeliveryStatus.SKIPPED, reason="rate limited",
            )

        try:
            message = render(channel)
            result = await asyncio.wait_for(
                notifier.send(message, channel), timeout=self._send_timeout,
            )
        except TimeoutError:
            logger.warning("channel_send_timeout", channel=channel_id, timeout=self._send_timeout)
            return ChannelOutcome(
                channel_id=channel_id, status=DeliveryStatus.FAILED, reason="timeout",
            )
        except Exception as exc:
            logger.exception("channel_dispatch_error", channel=channel_id)
            return ChannelOutcome(
                channel_id=channel_id,
                status=DeliveryStatus.FAILED,
                reason=str(exc) or type(exc).__name__,
            )

        if not result.ok:
            logger.warning("channel_delivery_failed", channel=channel_id, reason=result.reason)
            return ChannelOutcome(
                channel_id=channel_id, status=DeliveryStatus.FAILED, reason=result.reason,
            )
        return ChannelOutcome(channel_id=channel_id, status=DeliveryStatus.SENT)

    # ── Lifecycle ───────────────────────────────────────────────

    async def close(self) -> None:
        for name, notifier in self._notifiers.items():
            try:
                await notifier.close()
            except Exception:
                logger.exception("notifier_close_error", notifier=name)
