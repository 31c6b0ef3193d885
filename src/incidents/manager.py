"""IncidentManager — incident lifecycle, timeline, automation and escalation hooks."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from src.core.concurrency import BackgroundTasks, EntityLocks
from src.core.config import Settings
from src.core.types import (
    INCIDENT_SEVERITY_PRIORITY,
    INCIDENT_STATUS_ORDER,
    Alert,
    AlertSeverity,
    AutomatedRunbook,
    Incident,
    IncidentEventType,
    IncidentLink,
    IncidentSeverity,
    IncidentStatus,
    IncidentUpdate,
    NotificationEvent,
    PostMortem,
    RunbookResult,
)
from src.escalation.policies import find_policy
from src.escalation.scheduler import EscalationScheduler
from src.incidents.timeline import Timeline
from src.notify.dispatcher import NotificationDispatcher
from src.notify.statuspage import StatusPage
from src.postmortem.exceptions import PostMortemError
from src.postmortem.generator import PostMortemGenerator
from src.runbooks.executor import RunbookExecutor

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

AlertLookup = Callable[[str], Alert | None]


def incident_key(incident_id: str) -> str:
    return f"incident:{incident_id}"


def alert_key(alert_id: str) -> str:
    return f"alert:{alert_id}"


def _minutes_between(start: float, end: float) -> int:
    return max(0, math.floor((end - start) / 60.0))


class IncidentManager:
    """Owns every incident and is the only writer of incident state.

    Mutations happen under the incident's entity lock; notifications,
    status-page calls and runbook steps run after the lock is released.
    Operations on unknown or already-resolved incidents return ``False``
    (or ``None``) instead of raising.
    """

    def __init__(
        self,
        settings: Settings,
        dispatcher: NotificationDispatcher,
        scheduler: EscalationScheduler,
        executor: RunbookExecutor,
        status_page: StatusPage,
        locks: EntityLocks,
        background: BackgroundTasks,
        alert_lookup: AlertLookup | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._config = settings.incident_management
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._executor = executor
        self._status_page = status_page
        self._locks = locks
        self._background = background
        self._alert_lookup = alert_lookup
        self._clock = clock
        self._generator = PostMortemGenerator(settings.post_mortem)
        self._runbooks: dict[str, AutomatedRunbook] = {r.id: r for r in settings.runbooks}
        self._incidents: dict[str, Incident] = {}
        self._active: dict[str, Incident] = {}

    # ── Queries ─────────────────────────────────────────────────

    def get(self, incident_id: str) -> Incident | None:
        """Any incident, active or resolved."""
        return self._incidents.get(incident_id)

    def get_active(self, incident_id: str) -> Incident | None:
        return self._active.get(incident_id)

    def active_incidents(self) -> list[Incident]:
        return list(self._active.values())

    @property
    def runbooks(self) -> dict[str, AutomatedRunbook]:
        return dict(self._runbooks)

    def stats(self) -> dict[str, Any]:
        resolved = [
            i.metrics.resolution_time
            for i in self._incidents.values()
            if i.metrics.resolution_time is not None
        ]
        return {
            "active_incidents": len(self._active),
            "total_incidents": len(self._incidents),
            "avg_resolution_minutes": sum(resolved) / len(resolved) if resolved else 0.0,
            "post_mortems": sum(1 for i in self._incidents.values() if i.post_mortem),
            "runbooks": len(self._runbooks),
            "escalation_policies": len(self._settings.escalation_policies),
        }

    # ── Creation ────────────────────────────────────────────────

    async def create_incident(
        self,
        title: str,
        description: str,
        severity: IncidentSeverity,
        affected_services: Iterable[str] = (),
        detected_by: str = "system",
        tags: Iterable[str] = (),
        occurred_at: float | None = None,
        commander: str | None = None,
    ) -> Incident:
        """Open a new incident in ``investigating`` and run its side effects."""
        incident = self._open(
            title=title,
            description=description,
            severity=severity,
            affected_services=affected_services,
            detected_by=detected_by,
            tags=tags,
            occurred_at=occurred_at,
            commander=commander,
        )
        await self._after_open(incident)
        return incident

    async def create_incident_from_alert(
        self,
        alert: Alert,
        created_by: str = "system",
        severity: IncidentSeverity | None = None,
    ) -> Incident:
        """Open (or return the already linked) incident for *alert*."""
        async with self._locks.get(alert_key(alert.id)):
            if alert.incident is not None:
                existing = self._incidents.get(alert.incident.incident_id)
                if existing is not None:
                    logger.debug(
                        "incident_already_linked",
                        alert_id=alert.id,
                        incident_id=existing.id,
                    )
                    return existing
            service = alert.context.get("service")
            incident = self._open(
                title=f"{alert.severity.value.upper()}: {alert.rule_name}",
                description=alert.message or alert.description,
                severity=severity or self.map_severity(alert.severity),
                affected_services=[service] if service else [],
                detected_by=created_by,
                tags=alert.tags,
                occurred_at=alert.triggered_at,
                commander=self._commander_for(alert),
                alert_ids=[alert.id],
            )
            alert.incident = IncidentLink(
                incident_id=incident.id,
                status=incident.status.value,
                commander=incident.commander,
            )
        await self._after_open(incident)
        return incident

    def map_severity(self, severity: AlertSeverity) -> IncidentSeverity:
        return self._config.severity_mapping.get(severity, IncidentSeverity.MEDIUM)

    def _commander_for(self, alert: Alert) -> str:
        for rule in self._config.assignment_rules:
            if rule.severity is not None and rule.severity != alert.severity:
                continue
            if rule.tag is not None and rule.tag not in alert.tags:
                continue
            return rule.assign_to
        return self._config.default_commander

    def _open(
        self,
        title: str,
        description: str,
        severity: IncidentSeverity,
        affected_services: Iterable[str],
        detected_by: str,
        tags: Iterable[str],
        occurred_at: float | None,
        commander: str | None,
        alert_ids: list[str] | None = None,
    ) -> Incident:
        now = self._clock()
        incident = Incident(
            title=title,
            description=description,
            severity=severity,
            priority=INCIDENT_SEVERITY_PRIORITY[severity],
            created_at=now,
            detected_at=now,
            commander=commander or self._config.default_commander,
            affected_services=list(dict.fromkeys(affected_services)),
            tags=list(dict.fromkeys(tags)),
            alert_ids=alert_ids or [],
        )
        if occurred_at is not None:
            incident.metrics.detection_time = _minutes_between(occurred_at, now)
        Timeline(incident).append(
            IncidentEventType.CREATED,
            detected_by,
            f"Incident created: {title}",
            now,
            {"severity": severity.value, "alert_ids": list(incident.alert_ids)},
        )
        self._incidents[incident.id] = incident
        self._active[incident.id] = incident
        decision_logger.info(
            "incident_created",
            incident_id=incident.id,
            severity=severity.value,
            commander=incident.commander,
            alert_ids=incident.alert_ids,
        )
        return incident

    async def _after_open(self, incident: Incident) -> None:
        page = self._settings.status_page
        if page.enabled and page.auto_update:
            self._background.spawn(
                self._status_page.update_component_status(incident),
                name=f"statuspage:update:{incident.id}",
            )
        await self._dispatcher.notify_event(incident, NotificationEvent.INCIDENT_CREATED)
        await self._automated_response(incident)
        self._start_escalation(incident)

    def _start_escalation(self, incident: Incident) -> bool:
        if incident.status == IncidentStatus.RESOLVED:
            return False
        policy = find_policy(
            self._settings.escalation_policies,
            incident.severity.value,
            incident.tags,
            incident.affected_services,
            self._clock(),
        )
        if policy is None:
            logger.debug("no_escalation_policy", incident_id=incident.id)
            return False
        self._scheduler.start(incident_key(incident.id), policy)
        decision_logger.info(
            "incident_escalation_started", incident_id=incident.id, policy_id=policy.id,
        )
        return True

    # ── Automated response ──────────────────────────────────────

    def applicable_runbooks(self, incident: Incident) -> list[AutomatedRunbook]:
        subject = set(incident.affected_services) | set(incident.tags) | {incident.severity.value}
        return [
            rb for rb in self._runbooks.values()
            if rb.enabled and subject & set(rb.triggers)
        ]

    async def _automated_response(self, incident: Incident) -> None:
        automation = self._settings.automation
        if not automation.enabled:
            return
        for runbook in self.applicable_runbooks(incident):
            if automation.approval_required and incident.severity != IncidentSeverity.CRITICAL:
                decision_logger.info(
                    "runbook_awaiting_approval",
                    incident_id=incident.id,
                    runbook_id=runbook.id,
                )
                continue
            await self.execute_runbook(runbook.id, incident.id, "system")

    async def execute_runbook(
        self,
        runbook_id: str,
        incident_id: str,
        executed_by: str = "system",
        parameters: dict[str, Any] | None = None,
    ) -> RunbookResult:
        """Run a runbook against an active incident and record the outcome."""
        runbook = self._runbooks.get(runbook_id)
        incident = self._active.get(incident_id)
        if runbook is None or incident is None:
            now = self._clock()
            return RunbookResult(
                runbook_id=runbook_id,
                incident_id=incident_id,
                success=False,
                errors=["Runbook or incident not found"],
                started_at=now,
                finished_at=now,
            )

        async with self._locks.get(incident_key(incident_id)):
            incident.automation.runbooks_executed.append(runbook_id)
            Timeline(incident).append(
                IncidentEventType.ACTION_TAKEN,
                executed_by,
                f"Executing runbook: {runbook.name}",
                self._clock(),
                {"runbook_id": runbook_id},
            )

        result = await self._executor.run(runbook, incident, parameters)

        async with self._locks.get(incident_key(incident_id)):
            if result.rolled_back:
                incident.automation.rollbacks_performed.append(runbook_id)
            if incident.status == IncidentStatus.RESOLVED:
                logger.warning(
                    "runbook_finished_after_resolution",
                    incident_id=incident_id,
                    runbook_id=runbook_id,
                )
            Timeline(incident).append(
                IncidentEventType.ACTION_TAKEN,
                executed_by,
                f"Runbook {'completed' if result.success else 'failed'}: {runbook.name}",
                self._clock(),
                {"result": result.model_dump(mode="json")},
            )
        if incident.status == IncidentStatus.RESOLVED:
            self._locks.discard(incident_key(incident_id))
        return result

    # ── Updates ─────────────────────────────────────────────────

    async def update_incident(
        self,
        incident_id: str,
        update: IncidentUpdate,
        updated_by: str = "system",
    ) -> bool:
        """Apply a partial update.

        Returns False for unknown or resolved incidents and for a status
        that would move backwards (nothing is applied in that case). A
        status of ``resolved`` goes through ``resolve_incident``.
        """
        incident = self._active.get(incident_id)
        if incident is None:
            return False

        severity_raised = False
        resolve = False
        async with self._locks.get(incident_key(incident_id)):
            if incident.status == IncidentStatus.RESOLVED:
                return False
            if update.status is not None and (
                INCIDENT_STATUS_ORDER[update.status] < INCIDENT_STATUS_ORDER[incident.status]
            ):
                decision_logger.info(
                    "incident_status_regression_rejected",
                    incident_id=incident_id,
                    current=incident.status.value,
                    requested=update.status.value,
                )
                return False

            now = self._clock()
            timeline = Timeline(incident)
            changes: dict[str, Any] = {}

            if update.status is not None and update.status != incident.status:
                if update.status == IncidentStatus.RESOLVED:
                    resolve = True
                else:
                    changes["status"] = [incident.status.value, update.status.value]
                    incident.status = update.status
                    logger.info(
                        "incident_status_changed",
                        incident_id=incident_id,
                        status=update.status.value,
                    )
            if update.severity is not None and update.severity != incident.severity:
                old_priority = incident.priority
                changes["severity"] = [incident.severity.value, update.severity.value]
                incident.severity = update.severity
                incident.priority = INCIDENT_SEVERITY_PRIORITY[update.severity]
                severity_raised = incident.priority < old_priority
            if update.description is not None and update.description != incident.description:
                changes["description"] = update.description
                incident.description = update.description
            if update.root_cause is not None and update.root_cause != incident.root_cause:
                changes["root_cause"] = update.root_cause
                incident.root_cause = update.root_cause
            impact = incident.metrics.customer_impact
            if update.users_affected is not None:
                changes["users_affected"] = update.users_affected
                impact.users_affected = update.users_affected
            if update.revenue_impact is not None:
                changes["revenue_impact"] = update.revenue_impact
                impact.revenue_impact = update.revenue_impact

            if changes:
                timeline.append(
                    IncidentEventType.UPDATED,
                    updated_by,
                    "Incident updated: " + ", ".join(changes),
                    now,
                    {"changes": changes},
                )
            if severity_raised:
                timeline.append(
                    IncidentEventType.ESCALATED,
                    updated_by,
                    f"Severity raised to {incident.severity.value}",
                    now,
                    {"severity": incident.severity.value},
                )
            self._sync_links(incident)

        if resolve:
            await self.resolve_incident(
                incident_id, update.description or "Resolved", updated_by,
            )
            return True

        if severity_raised:
            decision_logger.info(
                "incident_severity_raised",
                incident_id=incident_id,
                severity=incident.severity.value,
            )
            self._start_escalation(incident)
        await self._dispatcher.notify_event(incident, NotificationEvent.INCIDENT_UPDATED)
        return True

    async def acknowledge_incident(self, incident_id: str, acknowledged_by: str) -> bool:
        """Record the first acknowledgement (response time) and the responder."""
        incident = self._active.get(incident_id)
        if incident is None:
            return False
        async with self._locks.get(incident_key(incident_id)):
            if incident.status == IncidentStatus.RESOLVED:
                return False
            if incident.acknowledged_at is not None:
                return True
            now = self._clock()
            incident.acknowledged_at = now
            incident.metrics.response_time = _minutes_between(incident.detected_at, now)
            if acknowledged_by not in incident.responders:
                incident.responders.append(acknowledged_by)
            Timeline(incident).append(
                IncidentEventType.UPDATED,
                acknowledged_by,
                f"Incident acknowledged by {acknowledged_by}",
                now,
                {"acknowledged": True},
            )
        logger.info("incident_acknowledged", incident_id=incident_id, by=acknowledged_by)
        return True

    async def assign_responder(self, incident_id: str, responder: str, actor: str) -> bool:
        incident = self._active.get(incident_id)
        if incident is None:
            return False
        async with self._locks.get(incident_key(incident_id)):
            if incident.status == IncidentStatus.RESOLVED:
                return False
            if responder not in incident.responders:
                incident.responders.append(responder)
            Timeline(incident).append(
                IncidentEventType.ASSIGNED,
                actor,
                f"{responder} assigned",
                self._clock(),
                {"responder": responder},
            )
        return True

    async def append_event(
        self,
        incident_id: str,
        event_type: IncidentEventType,
        actor: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Append a timeline event to an open incident."""
        incident = self._active.get(incident_id)
        if incident is None:
            return False
        async with self._locks.get(incident_key(incident_id)):
            if incident.status == IncidentStatus.RESOLVED:
                return False
            Timeline(incident).append(event_type, actor, description, self._clock(), metadata)
        return True

    async def add_comment(self, incident_id: str, actor: str, message: str) -> bool:
        return await self.append_event(
            incident_id, IncidentEventType.COMMUNICATION, actor, message,
        )

    # ── Resolution ──────────────────────────────────────────────

    async def resolve_incident(
        self,
        incident_id: str,
        resolution: str,
        resolved_by: str = "system",
    ) -> bool:
        incident = self._active.get(incident_id)
        if incident is None:
            return False

        async with self._locks.get(incident_key(incident_id)):
            if incident.status == IncidentStatus.RESOLVED:
                return False
            now = self._clock()
            incident.status = IncidentStatus.RESOLVED
            incident.resolved_at = now
            incident.resolution = resolution
            minutes = _minutes_between(incident.detected_at, now)
            incident.metrics.resolution_time = minutes
            incident.metrics.mttr = minutes
            Timeline(incident).append(
                IncidentEventType.RESOLVED,
                resolved_by,
                f"Incident resolved: {resolution}",
                now,
                {"resolution_time": minutes},
            )
            self._active.pop(incident_id, None)
            self._scheduler.cancel(incident_key(incident_id))
            self._sync_links(incident)

        decision_logger.info(
            "incident_resolved",
            incident_id=incident_id,
            resolved_by=resolved_by,
            resolution_time=minutes,
        )
        await self._dispatcher.notify_event(incident, NotificationEvent.INCIDENT_RESOLVED)
        if self._settings.status_page.enabled:
            self._background.spawn(
                self._status_page.resolve_component_status(incident),
                name=f"statuspage:resolve:{incident_id}",
            )
        if self._generator.should_generate(incident):
            await self.generate_post_mortem(incident_id)
        self._locks.discard(incident_key(incident_id))
        return True

    async def generate_post_mortem(self, incident_id: str) -> PostMortem | None:
        """Attach a post-mortem; None if the incident is unknown, open or already has one."""
        incident = self._incidents.get(incident_id)
        if incident is None:
            return None
        async with self._locks.get(incident_key(incident_id)):
            try:
                post_mortem = self._generator.generate(incident, self._clock())
            except PostMortemError as exc:
                logger.info(
                    "post_mortem_rejected",
                    incident_id=incident_id,
                    reason=type(exc).__name__,
                )
                return None
            incident.post_mortem = post_mortem
        return post_mortem

    def _sync_links(self, incident: Incident) -> None:
        if self._alert_lookup is None:
            return
        for alert_id in incident.alert_ids:
            alert = self._alert_lookup(alert_id)
            if alert is not None and alert.incident is not None:
                alert.incident.status = incident.status.value
                alert.incident.commander = incident.commander

    # ── Background sweep ────────────────────────────────────────

    async def sweep(self, now: float | None = None) -> list[str]:
        """Flag stale investigations and emit periodic status updates.

        Returns the ids of incidents newly flagged as stale.
        """
        now = self._clock() if now is None else now
        stale_secs = self._settings.engine.stale_incident_minutes * 60.0
        updates = self._config.status_updates
        flagged: list[str] = []
        due_updates: list[Incident] = []

        for incident in list(self._active.values()):
            async with self._locks.get(incident_key(incident.id)):
                if incident.status == IncidentStatus.RESOLVED:
                    continue
                if (
                    incident.status == IncidentStatus.INVESTIGATING
                    and not incident.stale_flagged
                    and now - incident.created_at > stale_secs
                ):
                    incident.stale_flagged = True
                    Timeline(incident).append(
                        IncidentEventType.UPDATED,
                        "system",
                        "Incident still investigating past the stale threshold",
                        now,
                        {"stale": True},
                    )
                    flagged.append(incident.id)
                    decision_logger.info(
                        "incident_stale",
                        incident_id=incident.id,
                        age_minutes=_minutes_between(incident.created_at, now),
                    )
                if updates.enabled:
                    last = incident.last_status_update_at or incident.created_at
                    if now - last >= updates.frequency_minutes * 60.0:
                        incident.last_status_update_at = now
                        due_updates.append(incident)

        for incident in due_updates:
            await self._dispatcher.notify_event(incident, NotificationEvent.STATUS_UPDATE)
        return flagged
