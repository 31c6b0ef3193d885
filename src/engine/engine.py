"""IncidentResponseEngine — wires intake, alerts, escalation, incidents and runbooks."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.alerting.exceptions import RuleDisabledError, UnknownRuleError
from src.alerting.intake import RuleFiring, SignalIntake
from src.alerting.store import AlertStore
from src.alerting.throttle import ThrottleGate
from src.core.concurrency import BackgroundTasks, EntityLocks
from src.core.config import ChannelConfig, Settings
from src.core.types import (
    Alert,
    AlertRule,
    AlertSeverity,
    AlertStatus,
    CreateIncidentAction,
    EscalationAction,
    EscalationPolicy,
    ExecuteRunbookAction,
    Incident,
    IncidentEventType,
    IncidentSeverity,
    IncidentStatus,
    IncidentUpdate,
    NotificationEvent,
    NotifyAction,
    PostMortem,
    Responder,
    RollbackAction,
    RunbookResult,
    RunScriptAction,
    ScaleServiceAction,
    ScriptStepAction,
    SuppressionRecord,
    UpdateStatusAction,
)
from src.escalation.actions import InfrastructureOperator, LoggingOperator
from src.escalation.policies import find_policy
from src.escalation.scheduler import EscalationHandler, EscalationScheduler
from src.incidents.manager import IncidentManager, alert_key, incident_key
from src.incidents.timeline import Timeline
from src.notify.channels import Notifier
from src.notify.dispatcher import NotificationDispatcher
from src.notify.formatters import render_alert, render_incident
from src.notify.statuspage import NullStatusPage, StatusPage
from src.notify.types import DeliveryStatus, RenderedMessage
from src.runbooks.executor import RunbookExecutor
from src.runbooks.steps import DefaultStepRunner, StepRunner

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

AlertCallback = Callable[[Alert], Awaitable[None] | None]


def _split_key(key: str) -> tuple[str, str]:
    kind, _, entity_id = key.partition(":")
    return kind, entity_id


class IncidentResponseEngine(EscalationHandler):
    """Alert & incident response engine.

    Owns every store and collaborator; nothing is process-global.

    Usage::

        engine = create_engine(settings)
        async with engine:
            await engine.record_metric("error_rate", 7.0, "percent")
    """

    def __init__(
        self,
        settings: Settings,
        notifiers: dict[str, Notifier],
        step_runner: StepRunner | None = None,
        status_page: StatusPage | None = None,
        operator: InfrastructureOperator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._clock = clock
        engine_cfg = settings.engine

        self._locks = EntityLocks()
        self._background = BackgroundTasks()
        self._rules: dict[str, AlertRule] = {r.id: r for r in settings.alert_rules}
        self._policies: dict[str, EscalationPolicy] = {
            p.id: p for p in settings.escalation_policies
        }

        self._store = AlertStore()
        self._throttle = ThrottleGate()
        self._intake = SignalIntake(
            settings.alert_rules,
            buffer_size=engine_cfg.metric_buffer_size,
            default_tags={
                "environment": engine_cfg.environment,
                "service": engine_cfg.service,
            },
            clock=clock,
        )
        self._dispatcher = NotificationDispatcher(
            settings.channels,
            notifiers,
            templates=settings.templates,
            send_timeout_secs=engine_cfg.send_timeout_secs,
            environment=engine_cfg.environment,
            service=engine_cfg.service,
            clock=clock,
        )
        self._scheduler = EscalationScheduler(self, engine_cfg.minute_secs, clock)
        self._step_runner = step_runner or DefaultStepRunner(notify=self._notify_humans)
        self._executor = RunbookExecutor(self._step_runner, clock)
        self._status_page = status_page or NullStatusPage()
        self._operator = operator or LoggingOperator()
        self._incidents = IncidentManager(
            settings,
            self._dispatcher,
            self._scheduler,
            self._executor,
            self._status_page,
            self._locks,
            self._background,
            alert_lookup=self._store.get,
            clock=clock,
        )

        self._callbacks: list[AlertCallback] = []
        self._sweep_task: asyncio.Task[None] | None = None
        self._running = False

    # ── Accessors ───────────────────────────────────────────────

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def store(self) -> AlertStore:
        return self._store

    @property
    def throttle(self) -> ThrottleGate:
        return self._throttle

    @property
    def intake(self) -> SignalIntake:
        return self._intake

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def scheduler(self) -> EscalationScheduler:
        return self._scheduler

    @property
    def incidents(self) -> IncidentManager:
        return self._incidents

    @property
    def running(self) -> bool:
        return self._running

    def on_alert(self, callback: AlertCallback) -> None:
        """Register a callback invoked for every newly created alert."""
        self._callbacks.append(callback)

    async def _emit(self, alert: Alert) -> None:
        for cb in self._callbacks:
            try:
                result = cb(alert)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("alert_callback_error", alert_id=alert.id)

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic incident sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="incident-sweep")
        logger.info(
            "engine_started",
            rules=len(self._rules),
            policies=len(self._policies),
            channels=len(self._settings.channels),
        )

    async def shutdown(self) -> None:
        """Stop the sweep, cancel escalation timers, flush in-flight work, close I/O."""
        self._running = False
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self._scheduler.shutdown()
        await self._background.drain()
        await self._dispatcher.close()
        for closer in (self._step_runner.close, self._status_page.close):
            try:
                await closer()
            except Exception:
                logger.exception("engine_close_error")
        logger.info("engine_stopped", status=self.status())

    async def __aenter__(self) -> IncidentResponseEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    async def _sweep_loop(self) -> None:
        interval = self._settings.engine.sweep_interval_secs
        while self._running:
            try:
                await self._incidents.sweep()
            except asyncio.CancelledError:
                return
            except Exception:
                logger.exception("incident_sweep_error")
            await asyncio.sleep(interval)

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "alerts": self._store.stats(),
            "incidents": self._incidents.stats(),
            "pending_escalations": len(self._scheduler.pending_keys()),
            "buffered_samples": len(self._intake.buffer),
        }

    # ── Signal intake ───────────────────────────────────────────

    async def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "count",
        tags: dict[str, str] | None = None,
        dimensions: dict[str, str] | None = None,
    ) -> list[Alert]:
        """Record a metric sample; returns alerts created or (when throttled) returned."""
        return await self._handle_firings(
            self._intake.record_metric(name, value, unit, tags, dimensions)
        )

    async def record_response_time(
        self, endpoint: str, duration_ms: float, status_code: int,
    ) -> list[Alert]:
        return await self._handle_firings(
            self._intake.record_response_time(endpoint, duration_ms, status_code)
        )

    async def record_error(
        self, error: BaseException, context: dict[str, str] | None = None,
    ) -> list[Alert]:
        return await self._handle_firings(self._intake.record_error(error, context))

    async def record_business_metric(
        self,
        event: str,
        value: float = 1,
        user_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> list[Alert]:
        return await self._handle_firings(
            self._intake.record_business_metric(event, value, user_id, metadata)
        )

    async def _handle_firings(self, firings: list[RuleFiring]) -> list[Alert]:
        alerts: list[Alert] = []
        for firing in firings:
            tags = firing.sample.tags
            context = {k: tags[k] for k in ("environment", "service") if k in tags}
            alert = await self._fire_rule(firing.rule, firing.metrics, context=context)
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def trigger_alert(
        self,
        rule_id: str,
        message: str = "",
        severity: AlertSeverity | None = None,
        metrics: dict[str, float] | None = None,
        context: dict[str, str] | None = None,
    ) -> Alert | None:
        """Fire a rule directly with a pre-classified event.

        Raises:
            UnknownRuleError: *rule_id* is not configured.
            RuleDisabledError: the rule is disabled.
        """
        rule = self._rules.get(rule_id)
        if rule is None:
            raise UnknownRuleError(rule_id)
        if not rule.enabled:
            raise RuleDisabledError(rule_id)
        return await self._fire_rule(rule, metrics or {}, message, context, severity)

    # ── Alert lifecycle ─────────────────────────────────────────

    async def _fire_rule(
        self,
        rule: AlertRule,
        metrics: dict[str, float],
        message: str = "",
        context: dict[str, str] | None = None,
        severity: AlertSeverity | None = None,
    ) -> Alert | None:
        now = self._clock()
        if not self._throttle.admit(rule, now):
            latest = self._store.latest_for_rule(rule.id)
            self._store.record_suppression(SuppressionRecord(
                rule_id=rule.id,
                alert_id=latest.id if latest else None,
                at=now,
            ))
            decision_logger.info(
                "alert_suppressed",
                rule_id=rule.id,
                alert_id=latest.id if latest else None,
                recent=self._throttle.count(rule, now),
                max_alerts=rule.throttling.max_alerts,
            )
            return latest

        engine_cfg = self._settings.engine
        runbook_url = rule.metadata.runbook_url
        if not runbook_url and engine_cfg.runbook_base_url:
            runbook_url = f"{engine_cfg.runbook_base_url.rstrip('/')}/{rule.id}"
        alert = Alert(
            rule_id=rule.id,
            rule_name=rule.name,
            severity=severity or rule.severity,
            category=rule.category,
            triggered_at=now,
            message=message or self._describe_firing(rule, metrics),
            description=rule.description,
            metrics=dict(metrics),
            tags=list(rule.tags),
            context={
                "environment": engine_cfg.environment,
                "service": engine_cfg.service,
                **(context or {}),
            },
            runbook_url=runbook_url,
        )
        self._store.add(alert)
        decision_logger.info(
            "alert_created",
            alert_id=alert.id,
            rule_id=rule.id,
            severity=alert.severity.value,
            metrics=alert.metrics,
        )
        await self._emit(alert)

        await self._dispatcher.dispatch_alert(
            alert, rule.channels, NotificationEvent.ALERT_TRIGGERED,
        )

        policy = self._policy_for(rule, alert, now)
        if policy is not None:
            alert.escalation.policy_id = policy.id
            self._scheduler.start(alert_key(alert.id), policy)
            decision_logger.info("alert_escalation_started", alert_id=alert.id, policy_id=policy.id)

        incident_cfg = self._settings.incident_management
        if (
            incident_cfg.enabled
            and incident_cfg.auto_create_incidents
            and alert.severity == AlertSeverity.CRITICAL
        ):
            await self._incidents.create_incident_from_alert(alert, "system")
        return alert

    @staticmethod
    def _describe_firing(rule: AlertRule, metrics: dict[str, float]) -> str:
        parts = []
        for c in rule.conditions:
            value = metrics.get(c.metric)
            shown = "n/a" if value is None else f"{value:g}"
            parts.append(
                f"{c.metric} {c.aggregation.value}={shown} {c.operator.value} {c.threshold:g}"
            )
        return f"{rule.name}: " + "; ".join(parts)

    def _policy_for(self, rule: AlertRule, alert: Alert, now: float) -> EscalationPolicy | None:
        if rule.escalation_policy:
            policy = self._policies.get(rule.escalation_policy)
            return policy if policy is not None and policy.enabled else None
        return find_policy(
            self._policies.values(),
            alert.severity.value,
            alert.tags,
            [alert.context["service"]] if alert.context.get("service") else [],
            now,
        )

    def _rule_channels(self, alert: Alert) -> list[str]:
        rule = self._rules.get(alert.rule_id)
        return list(rule.channels) if rule is not None else []

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> bool:
        alert = self._store.get_active(alert_id)
        if alert is None:
            return False
        async with self._locks.get(alert_key(alert_id)):
            if alert.status != AlertStatus.ACTIVE:
                return False
            alert.status = AlertStatus.ACKNOWLEDGED
            alert.acknowledged_at = self._clock()
            alert.acknowledged_by = acknowledged_by
            alert.escalation.next_escalation_at = None
            self._scheduler.cancel(alert_key(alert_id))
        decision_logger.info("alert_acknowledged", alert_id=alert_id, by=acknowledged_by)
        await self._dispatcher.dispatch_alert(
            alert, self._rule_channels(alert), NotificationEvent.ALERT_ACKNOWLEDGED,
        )
        return True

    async def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        alert = self._store.get_active(alert_id)
        if alert is None:
            return False
        async with self._locks.get(alert_key(alert_id)):
            if alert.status not in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED):
                return False
            alert.status = AlertStatus.RESOLVED
            alert.resolved_at = self._clock()
            alert.resolved_by = resolved_by
            alert.escalation.next_escalation_at = None
            self._scheduler.cancel(alert_key(alert_id))
            self._store.move_to_history(alert_id)
        self._locks.discard(alert_key(alert_id))
        decision_logger.info("alert_resolved", alert_id=alert_id, by=resolved_by)
        await self._dispatcher.dispatch_alert(
            alert, self._rule_channels(alert), NotificationEvent.ALERT_RESOLVED,
        )
        if alert.incident is not None:
            await self._incidents.append_event(
                alert.incident.incident_id,
                IncidentEventType.UPDATED,
                resolved_by,
                f"Linked alert resolved: {alert.rule_name}",
                {"alert_id": alert_id},
            )
        return True

    async def suppress_alert(self, alert_id: str, reason: str = "manual") -> bool:
        alert = self._store.get_active(alert_id)
        if alert is None:
            return False
        async with self._locks.get(alert_key(alert_id)):
            if alert.status not in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED):
                return False
            alert.status = AlertStatus.SUPPRESSED
            alert.escalation.next_escalation_at = None
            self._scheduler.cancel(alert_key(alert_id))
            self._store.move_to_history(alert_id)
            self._store.record_suppression(SuppressionRecord(
                rule_id=alert.rule_id, alert_id=alert_id, at=self._clock(), reason=reason,
            ))
        self._locks.discard(alert_key(alert_id))
        decision_logger.info("alert_suppressed_manually", alert_id=alert_id, reason=reason)
        return True

    # ── Incident operations ─────────────────────────────────────

    async def create_incident(
        self,
        title: str,
        description: str,
        severity: IncidentSeverity,
        affected_services: list[str] | None = None,
        detected_by: str = "manual",
        tags: list[str] | None = None,
    ) -> Incident:
        return await self._incidents.create_incident(
            title, description, severity, affected_services or [], detected_by, tags or [],
        )

    async def update_incident(
        self, incident_id: str, update: IncidentUpdate, updated_by: str = "system",
    ) -> bool:
        return await self._incidents.update_incident(incident_id, update, updated_by)

    async def acknowledge_incident(self, incident_id: str, acknowledged_by: str) -> bool:
        return await self._incidents.acknowledge_incident(incident_id, acknowledged_by)

    async def resolve_incident(
        self, incident_id: str, resolution: str, resolved_by: str = "system",
    ) -> bool:
        return await self._incidents.resolve_incident(incident_id, resolution, resolved_by)

    async def generate_post_mortem(self, incident_id: str) -> PostMortem | None:
        return await self._incidents.generate_post_mortem(incident_id)

    async def execute_runbook(
        self,
        runbook_id: str,
        incident_id: str,
        executed_by: str = "system",
        parameters: dict[str, Any] | None = None,
    ) -> RunbookResult:
        return await self._incidents.execute_runbook(
            runbook_id, incident_id, executed_by, parameters,
        )

    async def _notify_humans(self, incident: Incident, event: NotificationEvent, text: str) -> None:
        """Manual-action and approval requests raised by runbook steps."""
        await self._incidents.add_comment(incident.id, "runbook", text)
        await self._dispatcher.notify_event(incident, event)

    # ── EscalationHandler ───────────────────────────────────────

    def is_active(self, key: str) -> bool:
        kind, entity_id = _split_key(key)
        if kind == "alert":
            alert = self._store.get(entity_id)
            return alert is not None and alert.status == AlertStatus.ACTIVE
        incident = self._incidents.get(entity_id)
        return incident is not None and incident.status != IncidentStatus.RESOLVED

    def on_scheduled(
        self, key: str, policy: EscalationPolicy, index: int, fire_at: float,
    ) -> None:
        kind, entity_id = _split_key(key)
        if kind == "alert":
            alert = self._store.get(entity_id)
            if alert is not None:
                alert.escalation.policy_id = policy.id
                alert.escalation.next_escalation_at = fire_at

    async def on_finished(self, key: str, policy: EscalationPolicy, reason: str) -> None:
        kind, entity_id = _split_key(key)
        if kind == "alert":
            alert = self._store.get(entity_id)
            if alert is not None:
                alert.escalation.next_escalation_at = None
        decision_logger.info("escalation_stopped", key=key, policy_id=policy.id, reason=reason)

    async def execute_level(self, key: str, policy: EscalationPolicy, index: int) -> bool:
        kind, entity_id = _split_key(key)
        level = policy.levels[index]
        alert: Alert | None = None
        incident: Incident | None = None

        # Checked before taking the lock so a stale level does not recreate it.
        if not self.is_active(key):
            decision_logger.info(
                "escalation_level_skipped", key=key, policy_id=policy.id, level=level.level,
            )
            return False
        async with self._locks.get(key):
            if not self.is_active(key):
                decision_logger.info(
                    "escalation_level_skipped", key=key, policy_id=policy.id, level=level.level,
                )
                return False
            if kind == "alert":
                alert = self._store.get(entity_id)
            else:
                incident = self._incidents.get(entity_id)
            subject: Alert | Incident | None = alert if alert is not None else incident
            if subject is None:
                return False
            if alert is not None:
                alert.escalation.level = min(index + 1, len(policy.levels))
                alert.escalation.next_escalation_at = None
            if incident is not None:
                Timeline(incident).append(
                    IncidentEventType.ESCALATED,
                    "system",
                    f"Escalated to level {level.level}: {level.name or policy.name}",
                    self._clock(),
                    {"policy_id": policy.id, "level": level.level},
                )

        decision_logger.info(
            "escalation_level_executed",
            key=key,
            policy_id=policy.id,
            level=level.level,
            channels=level.channels,
        )
        if isinstance(subject, Alert):
            event = NotificationEvent.ALERT_ESCALATED
            await self._dispatcher.dispatch_alert(subject, level.channels, event)
        else:
            event = NotificationEvent.INCIDENT_ESCALATED
            await self._dispatcher.dispatch_incident(subject, level.channels, event)

        for responder in level.responders:
            await self._page_responder(responder, event, subject)
        for action in level.actions:
            await self._run_action(action, alert, incident)
        return True

    def _render(
        self,
        channel: ChannelConfig,
        event: NotificationEvent,
        subject: Alert | Incident,
    ) -> RenderedMessage:
        if isinstance(subject, Alert):
            engine_cfg = self._settings.engine
            return render_alert(
                subject, channel, event, self._settings.templates,
                engine_cfg.environment, engine_cfg.service,
            )
        return render_incident(subject, channel, event, self._settings.templates)

    async def _page_responder(
        self,
        responder: Responder,
        event: NotificationEvent,
        subject: Alert | Incident,
    ) -> bool:
        """Try the responder's contact methods in priority order; stop at the first success."""
        channels = self._dispatcher.channels
        for method in sorted(responder.contact_methods, key=lambda m: m.priority):
            channel = channels.get(method.channel)
            if channel is None:
                continue
            message = self._render(channel, event, subject).model_copy(
                update={"recipient": method.address or responder.identifier},
            )
            outcome = await self._dispatcher.send_to_channel(method.channel, message)
            if outcome.status == DeliveryStatus.SENT:
                logger.info(
                    "responder_paged", responder=responder.identifier, channel=method.channel,
                )
                return True
        logger.warning("responder_unreachable", responder=responder.identifier)
        return False

    async def _run_action(
        self,
        action: EscalationAction,
        alert: Alert | None,
        incident: Incident | None,
    ) -> bool:
        attempts = action.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.wait_for(
                    self._perform(action, alert, incident), timeout=action.timeout_secs,
                )
            except TimeoutError:
                logger.warning("escalation_action_timeout", action=action.type, attempt=attempt)
            except Exception:
                logger.exception("escalation_action_error", action=action.type, attempt=attempt)
            else:
                if incident is not None:
                    async with self._locks.get(incident_key(incident.id)):
                        incident.automation.actions_performed.append(action.type)
                return True
        decision_logger.info(
            "escalation_action_failed",
            action=action.type,
            alert_id=alert.id if alert else None,
            incident_id=incident.id if incident else None,
            attempts=attempts,
        )
        return False

    def _linked_incident(self, alert: Alert | None, incident: Incident | None) -> Incident | None:
        if incident is not None:
            return incident
        if alert is not None and alert.incident is not None:
            return self._incidents.get(alert.incident.incident_id)
        return None

    async def _perform(
        self,
        action: EscalationAction,
        alert: Alert | None,
        incident: Incident | None,
    ) -> None:
        if isinstance(action, NotifyAction):
            if alert is not None:
                await self._dispatcher.dispatch_alert(
                    alert, action.channels, NotificationEvent.ALERT_ESCALATED,
                )
            elif incident is not None:
                await self._dispatcher.dispatch_incident(
                    incident, action.channels, NotificationEvent.INCIDENT_ESCALATED,
                )
        elif isinstance(action, CreateIncidentAction):
            if alert is not None:
                await self._incidents.create_incident_from_alert(
                    alert, "escalation", severity=action.severity,
                )
        elif isinstance(action, ExecuteRunbookAction):
            target = self._linked_incident(alert, incident)
            if target is None:
                logger.warning("runbook_action_without_incident", runbook_id=action.runbook_id)
                return
            await self._incidents.execute_runbook(
                action.runbook_id, target.id, "escalation", action.parameters,
            )
        elif isinstance(action, RunScriptAction):
            subject_id = alert.id if alert is not None else incident.id if incident else ""
            await self._step_runner.execute_script(
                ScriptStepAction(command=action.command), {"subject_id": subject_id},
            )
        elif isinstance(action, ScaleServiceAction):
            await self._operator.scale_service(action.service, action.instances)
        elif isinstance(action, RollbackAction):
            await self._operator.rollback(action.service, action.version)
        elif isinstance(action, UpdateStatusAction):
            target = self._linked_incident(alert, incident)
            if target is not None and self._settings.status_page.enabled:
                self._background.spawn(
                    self._status_page.update_component_status(target),
                    name=f"statuspage:update:{target.id}",
                )
