"""Append-only, timestamp-ordered incident timeline."""

from __future__ import annotations

from typing import Any

from src.core.types import Incident, IncidentEvent, IncidentEventType


class Timeline:
    """Appends events to an incident's timeline.

    Timestamps never go backwards: an event stamped earlier than the last
    entry (clock skew, an explicit sweep time) is stamped with the last
    entry's timestamp instead. Events are never reordered or removed.
    """

    def __init__(self, incident: Incident) -> None:
        self._incident = incident

    def append(
        self,
        type: IncidentEventType,
        actor: str,
        description: str,
        at: float,
        metadata: dict[str, Any] | None = None,
    ) -> IncidentEvent:
        events = self._incident.timeline
        if events and at < events[-1].timestamp:
            at = events[-1].timestamp
        event = IncidentEvent(
            timestamp=at,
            type=type,
            actor=actor,
            description=description,
            metadata=metadata or {},
        )
        events.append(event)
        return event

    def last(self) -> IncidentEvent | None:
        events = self._incident.timeline
        return events[-1] if events else None

    def of_type(self, type: IncidentEventType) -> list[IncidentEvent]:
        return [e for e in self._incident.timeline if e.type == type]
