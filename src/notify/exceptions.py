"""Notification exceptions."""

from __future__ import annotations


class NotificationError(Exception):
    """Base exception for notification delivery errors."""


class UnsupportedChannelError(NotificationError):
    """No notifier is registered for a channel type."""
