"""Incident lifecycle management."""

from src.incidents.manager import IncidentManager, alert_key, incident_key
from src.incidents.timeline import Timeline

__all__ = [
    "IncidentManager",
    "Timeline",
    "alert_key",
    "incident_key",
]
