"""Domain types for alerting, escalation, incidents, runbooks and post-mortems."""

from __future__ import annotations

import re
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def new_id(prefix: str) -> str:
    """Short unique identifier with a readable prefix (e.g. ``alert_3f9c...``)."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ── Alert Types ─────────────────────────────────────────────────


class AlertSeverity(StrEnum):
    """Severity attached to an alert rule and the alerts it produces."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertCategory(StrEnum):
    """Broad classification of an alert rule."""

    PERFORMANCE = "performance"
    AVAILABILITY = "availability"
    SECURITY = "security"
    BUSINESS = "business"
    INFRASTRUCTURE = "infrastructure"


class AlertStatus(StrEnum):
    """Lifecycle state of an alert."""

    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    SUPPRESSED = "suppressed"


class ComparisonOperator(StrEnum):
    """Operator applied between the aggregated metric and the threshold."""

    GT = "gt"
    LT = "lt"
    EQ = "eq"
    NE = "ne"
    GTE = "gte"
    LTE = "lte"


class Aggregation(StrEnum):
    """Aggregation over the samples inside a condition's time window."""

    AVG = "avg"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


ALERT_SEVERITY_PRIORITY: dict[AlertSeverity, int] = {
    AlertSeverity.CRITICAL: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.WARNING: 3,
    AlertSeverity.INFO: 4,
}


class IncidentSeverity(StrEnum):
    """Incident severity, highest first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


INCIDENT_SEVERITY_PRIORITY: dict[IncidentSeverity, int] = {
    IncidentSeverity.CRITICAL: 1,
    IncidentSeverity.HIGH: 2,
    IncidentSeverity.MEDIUM: 3,
    IncidentSeverity.LOW: 4,
}


class MetricSample(BaseModel):
    """A single recorded metric value."""

    name: str
    value: float
    unit: str = "count"
    timestamp: float = 0.0
    tags: dict[str, str] = Field(default_factory=dict)
    dimensions: dict[str, str] = Field(default_factory=dict)


class AlertCondition(BaseModel):
    """Threshold condition evaluated over a rolling window of one metric."""

    metric: str
    operator: ComparisonOperator
    threshold: float
    time_window_minutes: float = Field(default=5.0, gt=0)
    aggregation: Aggregation = Aggregation.AVG
    filters: dict[str, str] = Field(default_factory=dict)


class ThrottlingPolicy(BaseModel):
    """At most ``max_alerts`` alerts per ``period_minutes`` for one rule."""

    enabled: bool = True
    period_minutes: float = Field(default=15.0, gt=0)
    max_alerts: int = Field(default=3, ge=1)


class RuleMetadata(BaseModel):
    """Ownership metadata of an alert rule."""

    owner: str = ""
    team: str = ""
    runbook_url: str = ""
    documentation: str = ""


class AlertRule(BaseModel):
    """Declarative rule turning metric conditions into alerts."""

    id: str
    name: str
    description: str = ""
    enabled: bool = True
    severity: AlertSeverity
    category: AlertCategory = AlertCategory.PERFORMANCE
    conditions: list[AlertCondition] = Field(min_length=1)
    throttling: ThrottlingPolicy = Field(default_factory=ThrottlingPolicy)
    tags: list[str] = Field(default_factory=list)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)
    channels: list[str] = Field(default_factory=list)
    escalation_policy: str | None = None

    @property
    def metrics(self) -> set[str]:
        return {c.metric for c in self.conditions}


class EscalationCursor(BaseModel):
    """Position of an alert inside its escalation policy."""

    level: int = 0
    next_escalation_at: float | None = None
    policy_id: str | None = None


class IncidentLink(BaseModel):
    """Back-reference from an alert to the incident it opened."""

    incident_id: str
    status: str
    commander: str


class Alert(BaseModel):
    """A single firing of an alert rule."""

    id: str = Field(default_factory=lambda: new_id("alert"))
    rule_id: str
    rule_name: str
    severity: AlertSeverity
    category: AlertCategory
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_at: float = 0.0
    acknowledged_at: float | None = None
    acknowledged_by: str | None = None
    resolved_at: float | None = None
    resolved_by: str | None = None
    message: str = ""
    description: str = ""
    metrics: dict[str, float] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    context: dict[str, str] = Field(default_factory=dict)
    escalation: EscalationCursor = Field(default_factory=EscalationCursor)
    incident: IncidentLink | None = None
    runbook_url: str = ""


class SuppressionRecord(BaseModel):
    """Decision record for a throttled (suppressed) rule firing."""

    rule_id: str
    alert_id: str | None = None
    at: float
    reason: str = "throttled"


class NotificationEvent(StrEnum):
    """Event type a rendered notification is about (selects the template)."""

    ALERT_TRIGGERED = "alert_triggered"
    ALERT_ESCALATED = "alert_escalated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"
    ALERT_RESOLVED = "alert_resolved"
    INCIDENT_CREATED = "incident_created"
    INCIDENT_UPDATED = "incident_updated"
    INCIDENT_ESCALATED = "incident_escalated"
    INCIDENT_RESOLVED = "incident_resolved"
    STATUS_UPDATE = "status_update"
    MANUAL_ACTION = "manual_action"
    APPROVAL_REQUEST = "approval_request"


# ── Escalation Types ────────────────────────────────────────────


class ResponderType(StrEnum):
    USER = "user"
    TEAM = "team"
    ONCALL = "oncall"


class ContactMethod(BaseModel):
    """A way to reach a responder through one configured channel."""

    channel: str
    address: str = ""
    priority: int = 1


class Responder(BaseModel):
    """Person, team or on-call rotation paged by an escalation level."""

    type: ResponderType = ResponderType.USER
    identifier: str
    contact_methods: list[ContactMethod] = Field(default_factory=list)


class _ActionBase(BaseModel):
    timeout_secs: float = Field(default=300.0, gt=0)
    retries: int = Field(default=0, ge=0)


class NotifyAction(_ActionBase):
    type: Literal["notify"] = "notify"
    channels: list[str] = Field(default_factory=list)


class CreateIncidentAction(_ActionBase):
    type: Literal["create_incident"] = "create_incident"
    severity: IncidentSeverity | None = None


class ExecuteRunbookAction(_ActionBase):
    type: Literal["execute_runbook"] = "execute_runbook"
    runbook_id: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class RunScriptAction(_ActionBase):
    type: Literal["run_script"] = "run_script"
    command: list[str] = Field(min_length=1)


class ScaleServiceAction(_ActionBase):
    type: Literal["scale_service"] = "scale_service"
    service: str
    instances: int = Field(ge=0)


class RollbackAction(_ActionBase):
    type: Literal["rollback"] = "rollback"
    service: str
    version: str


class UpdateStatusAction(_ActionBase):
    type: Literal["update_status"] = "update_status"


EscalationAction = Annotated[
    NotifyAction
    | CreateIncidentAction
    | ExecuteRunbookAction
    | RunScriptAction
    | ScaleServiceAction
    | RollbackAction
    | UpdateStatusAction,
    Field(discriminator="type"),
]


class TimeWindow(BaseModel):
    """Daily UTC window; ``start > end`` wraps past midnight."""

    start: str = "00:00"
    end: str = "23:59"

    @field_validator("start", "end")
    @classmethod
    def _check_hhmm(cls, v: str) -> str:
        if not _HHMM_RE.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v


class PolicyConditions(BaseModel):
    """Applicability conditions of an escalation policy.

    ``severity`` holds alert severities and/or incident severities (both
    vocabularies are accepted; matching is by value).
    """

    severity: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    time_of_day: TimeWindow | None = None
    days_of_week: list[int] | None = None

    @field_validator("severity")
    @classmethod
    def _check_severity(cls, v: list[str]) -> list[str]:
        known = {s.value for s in AlertSeverity} | {s.value for s in IncidentSeverity}
        unknown = [s for s in v if s not in known]
        if unknown:
            raise ValueError(f"unknown severities: {unknown}")
        return v

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, v: list[int] | None) -> list[int] | None:
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError("days_of_week entries must be 0 (Sunday) .. 6 (Saturday)")
        return v


class EscalationLevel(BaseModel):
    """One tier of an escalation policy."""

    level: int
    name: str = ""
    delay_minutes: float = Field(default=0.0, ge=0)
    channels: list[str] = Field(default_factory=list)
    responders: list[Responder] = Field(default_factory=list)
    actions: list[EscalationAction] = Field(default_factory=list)
    timeout_minutes: float = Field(default=30.0, gt=0)


class EscalationPolicy(BaseModel):
    """Ordered, timed escalation tiers plus applicability conditions."""

    id: str
    name: str
    description: str = ""
    enabled: bool = True
    levels: list[EscalationLevel] = Field(min_length=1)
    conditions: PolicyConditions = Field(default_factory=PolicyConditions)


# ── Incident Types ──────────────────────────────────────────────


class IncidentStatus(StrEnum):
    """Incident lifecycle; transitions only move forward."""

    INVESTIGATING = "investigating"
    IDENTIFIED = "identified"
    MONITORING = "monitoring"
    RESOLVED = "resolved"


INCIDENT_STATUS_ORDER: dict[IncidentStatus, int] = {
    IncidentStatus.INVESTIGATING: 0,
    IncidentStatus.IDENTIFIED: 1,
    IncidentStatus.MONITORING: 2,
    IncidentStatus.RESOLVED: 3,
}


class IncidentEventType(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    ESCALATED = "escalated"
    ASSIGNED = "assigned"
    ACTION_TAKEN = "action_taken"
    RESOLVED = "resolved"
    COMMUNICATION = "communication"


class IncidentEvent(BaseModel):
    """Append-only timeline entry."""

    id: str = Field(default_factory=lambda: new_id("evt"))
    timestamp: float
    type: IncidentEventType
    actor: str
    description: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CustomerImpact(BaseModel):
    users_affected: int = 0
    services_down: list[str] = Field(default_factory=list)
    revenue_impact: float = 0.0


class IncidentMetrics(BaseModel):
    """Timings in whole minutes."""

    detection_time: int = 0
    response_time: int | None = None
    resolution_time: int | None = None
    mttr: int | None = None
    customer_impact: CustomerImpact = Field(default_factory=CustomerImpact)


class AutomationRecord(BaseModel):
    runbooks_executed: list[str] = Field(default_factory=list)
    actions_performed: list[str] = Field(default_factory=list)
    rollbacks_performed: list[str] = Field(default_factory=list)


class IncidentUpdate(BaseModel):
    """Partial update applied by ``update_incident``."""

    status: IncidentStatus | None = None
    severity: IncidentSeverity | None = None
    description: str | None = None
    root_cause: str | None = None
    users_affected: int | None = Field(default=None, ge=0)
    revenue_impact: float | None = Field(default=None, ge=0)


class Incident(BaseModel):
    """Human-tracked operational problem."""

    id: str = Field(default_factory=lambda: new_id("inc"))
    title: str
    description: str = ""
    severity: IncidentSeverity
    status: IncidentStatus = IncidentStatus.INVESTIGATING
    priority: int = 4
    created_at: float = 0.0
    detected_at: float = 0.0
    acknowledged_at: float | None = None
    resolved_at: float | None = None
    commander: str = "system"
    responders: list[str] = Field(default_factory=list)
    affected_services: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    alert_ids: list[str] = Field(default_factory=list)
    root_cause: str | None = None
    resolution: str | None = None
    timeline: list[IncidentEvent] = Field(default_factory=list)
    metrics: IncidentMetrics = Field(default_factory=IncidentMetrics)
    automation: AutomationRecord = Field(default_factory=AutomationRecord)
    war_room_url: str | None = None
    post_mortem: PostMortem | None = None
    stale_flagged: bool = False
    last_status_update_at: float | None = None


# ── Runbook Types ───────────────────────────────────────────────


class RunbookStepType(StrEnum):
    SCRIPT = "script"
    API_CALL = "api_call"
    MANUAL = "manual"
    APPROVAL = "approval"
    WAIT = "wait"


class ScriptStepAction(BaseModel):
    type: Literal["script"] = "script"
    command: list[str] = Field(min_length=1)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None


class ApiCallStepAction(BaseModel):
    type: Literal["api_call"] = "api_call"
    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    expected_status: list[int] = Field(default_factory=lambda: [200, 201, 202, 204])


class ManualStepAction(BaseModel):
    type: Literal["manual"] = "manual"
    instructions: str = ""
    assignee: str | None = None


class ApprovalStepAction(BaseModel):
    type: Literal["approval"] = "approval"
    approvers: list[str] = Field(default_factory=list)
    prompt: str = ""


class WaitStepAction(BaseModel):
    type: Literal["wait"] = "wait"
    duration_secs: float = Field(default=60.0, ge=0)


StepAction = Annotated[
    ScriptStepAction
    | ApiCallStepAction
    | ManualStepAction
    | ApprovalStepAction
    | WaitStepAction,
    Field(discriminator="type"),
]


class RunbookStep(BaseModel):
    """One automated remediation step."""

    id: str
    name: str
    description: str = ""
    action: StepAction
    timeout_secs: float = Field(default=300.0, gt=0)
    retries: int = Field(default=0, ge=0)
    continue_on_failure: bool = False
    rollback_on_failure: bool = False

    @property
    def type(self) -> RunbookStepType:
        return RunbookStepType(self.action.type)


class AutomatedRunbook(BaseModel):
    """Ordered remediation procedure with its rollback sequence."""

    id: str
    name: str
    description: str = ""
    enabled: bool = True
    triggers: list[str] = Field(default_factory=list)
    steps: list[RunbookStep] = Field(min_length=1)
    rollback_steps: list[RunbookStep] = Field(default_factory=list)
    rollback_on_failure: bool = False
    owner: str = ""


class StepStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    step_id: str
    name: str
    status: StepStatus
    attempts: int = 0
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None


class RunbookResult(BaseModel):
    """Aggregate outcome of one runbook execution."""

    runbook_id: str
    incident_id: str
    success: bool
    step_results: list[StepResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    rolled_back: bool = False
    rollback_results: list[StepResult] = Field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0


# ── Post-Mortem Types ───────────────────────────────────────────


class PostMortemStatus(StrEnum):
    DRAFT = "draft"
    REVIEW = "review"
    APPROVED = "approved"
    PUBLISHED = "published"


class ActionItemPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ActionItemStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ActionItemCategory(StrEnum):
    PREVENTION = "prevention"
    DETECTION = "detection"
    RESPONSE = "response"
    RECOVERY = "recovery"


class ActionItem(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ai"))
    description: str
    assignee: str
    due_at: float
    priority: ActionItemPriority = ActionItemPriority.MEDIUM
    status: ActionItemStatus = ActionItemStatus.OPEN
    category: ActionItemCategory = ActionItemCategory.PREVENTION


class PostMortemEvent(BaseModel):
    timestamp: float
    description: str
    source: str


class PostMortemImpact(BaseModel):
    duration_minutes: int = 0
    users_affected: int = 0
    services_affected: list[str] = Field(default_factory=list)
    business_impact: str = ""


class PostMortem(BaseModel):
    """Retrospective derived from a resolved incident."""

    id: str = Field(default_factory=lambda: new_id("pm"))
    incident_id: str
    title: str
    summary: str = ""
    timeline: list[PostMortemEvent] = Field(default_factory=list)
    root_cause_primary: str = "To be determined"
    contributing_factors: list[str] = Field(default_factory=list)
    impact: PostMortemImpact = Field(default_factory=PostMortemImpact)
    what_went_well: list[str] = Field(default_factory=list)
    what_went_poorly: list[str] = Field(default_factory=list)
    lessons_learned: list[str] = Field(default_factory=list)
    action_items: list[ActionItem] = Field(default_factory=list)
    created_at: float = 0.0
    status: PostMortemStatus = PostMortemStatus.DRAFT


# Incident embeds PostMortem, declared after it.
Incident.model_rebuild()
