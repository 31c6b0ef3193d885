"""Status page integration — component status on incident create/resolve."""

from __future__ import annotations

import abc
from typing import Any

import aiohttp
import structlog

from src.core.config import StatusPageConfig
from src.core.types import Incident, IncidentSeverity

logger = structlog.get_logger(__name__)

_IMPACT: dict[IncidentSeverity, str] = {
    IncidentSeverity.CRITICAL: "critical",
    IncidentSeverity.HIGH: "major",
    IncidentSeverity.MEDIUM: "minor",
    IncidentSeverity.LOW: "none",
}

_COMPONENT_STATUS: dict[IncidentSeverity, str] = {
    IncidentSeverity.CRITICAL: "major_outage",
    IncidentSeverity.HIGH: "partial_outage",
    IncidentSeverity.MEDIUM: "degraded_performance",
    IncidentSeverity.LOW: "degraded_performance",
}


class StatusPage(abc.ABC):
    """Public status page collaborator."""

    @abc.abstractmethod
    async def update_component_status(self, incident: Incident) -> bool:
        """Publish an open incident. Returns True on success."""

    @abc.abstractmethod
    async def resolve_component_status(self, incident: Incident) -> bool:
        """Mark the incident's components operational again."""

    async def close(self) -> None:
        """Release resources."""


class NullStatusPage(StatusPage):
    """Used when no status page is configured."""

    async def update_component_status(self, incident: Incident) -> bool:
        return True

    async def resolve_component_status(self, incident: Incident) -> bool:
        return True


class HttpStatusPage(StatusPage):
    """JSON status page API: ``PUT {url}/incidents/{incident_id}``."""

    def __init__(self, config: StatusPageConfig) -> None:
        self._base_url = config.url.rstrip("/")
        self._api_key = config.api_key.get_secret_value()
        self._components = config.components
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
            self._session = aiohttp.ClientSession(headers=headers)
        return self._session

    def _component_ids(self, incident: Incident) -> list[str]:
        ids: list[str] = []
        for service in incident.affected_services:
            ids.extend(self._components.get(service, []))
        return list(dict.fromkeys(ids))

    async def _put(self, incident: Incident, payload: dict[str, Any]) -> bool:
        url = f"{self._base_url}/incidents/{incident.id}"
        try:
            session = self._get_session()
            async with session.put(url, json=payload) as resp:
                if resp.status < 300:
                    return True
                body = await resp.text()
                logger.warning(
                    "status_page_update_failed",
                    incident_id=incident.id,
                    status=resp.status,
                    body=body[:200],
                )
                return False
        except Exception:
            logger.exception("status_page_update_error", incident_id=incident.id)
            return False

    async def update_component_status(self, incident: Incident) -> bool:
        component_status = _COMPONENT_STATUS[incident.severity]
        return await self._put(incident, {
            "name": incident.title,
            "status": incident.status.value,
            "impact": _IMPACT[incident.severity],
            "body": incident.description,
            "components": {cid: component_status for cid in self._component_ids(incident)},
        })

    async def resolve_component_status(self, incident: Incident) -> bool:
        return await self._put(incident, {
            "name": incident.title,
            "status": "resolved",
            "body": incident.resolution or "",
            "components": {cid: "operational" for cid in self._component_ids(incident)},
        })

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
