"""PostMortemGenerator — derives a draft retrospective from a resolved incident."""

from __future__ import annotations

import datetime

import structlog

from src.core.config import PostMortemConfig
from src.core.types import (
    ActionItem,
    ActionItemCategory,
    ActionItemPriority,
    Incident,
    IncidentEventType,
    IncidentStatus,
    PostMortem,
    PostMortemEvent,
    PostMortemImpact,
    PostMortemStatus,
)
from src.postmortem.exceptions import (
    IncidentNotResolvedError,
    InvalidStatusTransitionError,
    PostMortemExistsError,
)

logger = structlog.get_logger(__name__)

_STATUS_ORDER: dict[PostMortemStatus, int] = {
    PostMortemStatus.DRAFT: 0,
    PostMortemStatus.REVIEW: 1,
    PostMortemStatus.APPROVED: 2,
    PostMortemStatus.PUBLISHED: 3,
}

_DAY_SECS = 86400.0

# Response within this many minutes counts as prompt.
_PROMPT_RESPONSE_MINUTES = 15


def business_impact(users_affected: int) -> str:
    """Coarse business-impact bucket from the number of affected users."""
    if users_affected > 1000:
        return "high"
    if users_affected > 100:
        return "medium"
    return "low"


class PostMortemGenerator:
    """Pure derivation of a PostMortem; the caller attaches it to the incident."""

    def __init__(self, config: PostMortemConfig | None = None) -> None:
        self._config = config or PostMortemConfig()

    def should_generate(self, incident: Incident) -> bool:
        """Eligibility for automatic generation on resolution."""
        if not self._config.enabled or incident.status != IncidentStatus.RESOLVED:
            return False
        if incident.severity.value in ("critical", "high"):
            return True
        resolution = incident.metrics.resolution_time or 0
        return resolution > self._config.min_duration_minutes

    def generate(self, incident: Incident, now: float) -> PostMortem:
        """Build a draft post-mortem for *incident*.

        Raises:
            IncidentNotResolvedError: the incident is still open.
            PostMortemExistsError: one was already generated.
        """
        if incident.status != IncidentStatus.RESOLVED:
            raise IncidentNotResolvedError(incident.id)
        if incident.post_mortem is not None:
            raise PostMortemExistsError(incident.id)

        impact = incident.metrics.customer_impact
        occurred = datetime.datetime.fromtimestamp(incident.created_at, tz=datetime.UTC)
        post_mortem = PostMortem(
            incident_id=incident.id,
            title=f"Post-Mortem: {incident.title}",
            summary=(
                f"Analysis of incident {incident.id} that occurred on "
                f"{occurred.date().isoformat()}"
            ),
            timeline=[
                PostMortemEvent(
                    timestamp=event.timestamp,
                    description=event.description,
                    source=event.actor,
                )
                for event in incident.timeline
            ],
            root_cause_primary=incident.root_cause or "To be determined",
            contributing_factors=self._contributing_factors(incident),
            impact=PostMortemImpact(
                duration_minutes=incident.metrics.resolution_time or 0,
                users_affected=impact.users_affected,
                services_affected=list(incident.affected_services),
                business_impact=business_impact(impact.users_affected),
            ),
            what_went_well=self._went_well(incident),
            what_went_poorly=self._went_poorly(incident),
            lessons_learned=self._lessons(incident),
            action_items=self._seed_action_items(now),
            created_at=now,
            status=PostMortemStatus.DRAFT,
        )
        logger.info("post_mortem_generated", incident_id=incident.id, post_mortem_id=post_mortem.id)
        return post_mortem

    def advance_status(self, post_mortem: PostMortem, status: PostMortemStatus) -> PostMortem:
        """Move *post_mortem* forward (draft -> review -> approved -> published)."""
        if _STATUS_ORDER[status] <= _STATUS_ORDER[post_mortem.status]:
            raise InvalidStatusTransitionError(
                f"{post_mortem.status.value} -> {status.value}"
            )
        post_mortem.status = status
        return post_mortem

    # ── Derived sections ────────────────────────────────────────

    @staticmethod
    def _contributing_factors(incident: Incident) -> list[str]:
        factors: list[str] = []
        if incident.automation.rollbacks_performed:
            factors.append(
                "Automated remediation failed and was rolled back: "
                + ", ".join(incident.automation.rollbacks_performed)
            )
        if incident.stale_flagged:
            factors.append("Incident remained in investigation beyond the stale threshold")
        return factors

    @staticmethod
    def _went_well(incident: Incident) -> list[str]:
        items: list[str] = []
        if incident.alert_ids:
            items.append("Incident was detected automatically")
        response = incident.metrics.response_time
        if response is not None and response <= _PROMPT_RESPONSE_MINUTES:
            items.append("Response team was notified promptly")
        executed = incident.automation.runbooks_executed
        rolled_back = set(incident.automation.rollbacks_performed)
        if executed and not rolled_back:
            items.append("Automated runbooks executed successfully")
        return items

    @staticmethod
    def _went_poorly(incident: Incident) -> list[str]:
        items: list[str] = []
        if incident.root_cause is None:
            items.append("Root cause was not identified during the incident")
        if incident.acknowledged_at is None:
            items.append("Incident was never acknowledged by a responder")
        elif (incident.metrics.response_time or 0) > _PROMPT_RESPONSE_MINUTES:
            items.append("Time to acknowledge exceeded expectations")
        if incident.automation.rollbacks_performed:
            items.append("Automated remediation required rollback")
        escalations = sum(1 for e in incident.timeline if e.type == IncidentEventType.ESCALATED)
        if escalations > 1:
            items.append(f"Incident escalated {escalations} times before resolution")
        return items

    @staticmethod
    def _lessons(incident: Incident) -> list[str]:
        lessons: list[str] = []
        if not incident.alert_ids:
            lessons.append("Need better monitoring for early detection")
        if incident.automation.rollbacks_performed:
            lessons.append("Improve runbook documentation")
        return lessons

    def _seed_action_items(self, now: float) -> list[ActionItem]:
        if not self._config.seed_action_items:
            return []
        return [
            ActionItem(
                description="Improve monitoring alerting for similar issues",
                assignee=self._config.default_assignee,
                due_at=now + self._config.action_item_due_days * _DAY_SECS,
                priority=ActionItemPriority.HIGH,
                category=ActionItemCategory.PREVENTION,
            )
        ]
