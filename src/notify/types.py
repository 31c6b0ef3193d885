"""Domain types for the notification subsystem."""

from __future__ import annotations

import time
from enum import StrEnum

from pydantic import BaseModel, Field

from src.core.types import NotificationEvent


class RenderedMessage(BaseModel):
    """Channel-ready message rendered from an alert or incident."""

    event: NotificationEvent
    severity: str
    title: str
    body: str = ""
    fields: dict[str, str] = Field(default_factory=dict)
    subject_id: str = ""
    timestamp: float = Field(default_factory=time.time)
    recipient: str | None = None


class DeliveryResult(BaseModel):
    """Outcome reported by a notifier for one send."""

    ok: bool
    reason: str = ""


class DeliveryStatus(StrEnum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class ChannelOutcome(BaseModel):
    channel_id: str
    status: DeliveryStatus
    reason: str = ""


class DispatchReport(BaseModel):
    """Per-channel outcomes of one fan-out."""

    event: NotificationEvent
    outcomes: list[ChannelOutcome] = Field(default_factory=list)

    def _with(self, status: DeliveryStatus) -> list[str]:
        return [o.channel_id for o in self.outcomes if o.status == status]

    @property
    def sent(self) -> list[str]:
        return self._with(DeliveryStatus.SENT)

    @property
    def failed(self) -> list[str]:
        return self._with(DeliveryStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._with(DeliveryStatus.SKIPPED)

    @property
    def success_count(self) -> int:
        return len(self.sent)

    @property
    def failure_count(self) -> int:
        return len(self.failed)
