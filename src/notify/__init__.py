"""Notification rendering, delivery and status page integration."""

from src.notify.channels import (
    DiscordNotifier,
    EmailNotifier,
    HttpNotifier,
    Notifier,
    PagerDutyNotifier,
    SlackNotifier,
    SmsNotifier,
    TeamsNotifier,
    WebhookNotifier,
    default_notifiers,
)
from src.notify.dispatcher import NotificationDispatcher
from src.notify.exceptions import NotificationError, UnsupportedChannelError
from src.notify.rate_limiter import ChannelRateLimiter, RateLimiterRegistry
from src.notify.statuspage import HttpStatusPage, NullStatusPage, StatusPage
from src.notify.types import (
    ChannelOutcome,
    DeliveryResult,
    DeliveryStatus,
    DispatchReport,
    RenderedMessage,
)

__all__ = [
    "ChannelOutcome",
    "ChannelRateLimiter",
    "DeliveryResult",
    "DeliveryStatus",
    "DiscordNotifier",
    "DispatchReport",
    "EmailNotifier",
    "HttpNotifier",
    "HttpStatusPage",
    "NotificationDispatcher",
    "NotificationError",
    "Notifier",
    "NullStatusPage",
    "PagerDutyNotifier",
    "RateLimiterRegistry",
    "RenderedMessage",
    "SlackNotifier",
    "SmsNotifier",
    "StatusPage",
    "TeamsNotifier",
    "UnsupportedChannelError",
    "WebhookNotifier",
    "default_notifiers",
]
