"""AlertStore — active alerts, append-only history, suppression records."""

from __future__ import annotations

from collections import Counter

from src.core.types import Alert, AlertSeverity, AlertStatus, SuppressionRecord


class AlertStore:
    """Single source of truth for alert state.

    ``history`` keeps every alert ever created in creation order; ``active``
    holds alerts until they are resolved. Alert objects are shared between
    the two views, so a mutation is visible from both.
    """

    def __init__(self) -> None:
        self._active: dict[str, Alert] = {}
        self._all: dict[str, Alert] = {}
        self._history: list[Alert] = []
        self._latest_by_rule: dict[str, Alert] = {}
        self._suppressions: list[SuppressionRecord] = []

    # ── Mutation ──────────────────────────────────────────────────

    def add(self, alert: Alert) -> None:
        self._active[alert.id] = alert
        self._all[alert.id] = alert
        self._history.append(alert)
        self._latest_by_rule[alert.rule_id] = alert

    def move_to_history(self, alert_id: str) -> Alert | None:
        """Drop *alert_id* from the active set (it stays in history)."""
        return self._active.pop(alert_id, None)

    def record_suppression(self, record: SuppressionRecord) -> None:
        self._suppressions.append(record)

    # ── Queries ───────────────────────────────────────────────────

    def get(self, alert_id: str) -> Alert | None:
        """Look up any alert, active or historical."""
        return self._all.get(alert_id)

    def get_active(self, alert_id: str) -> Alert | None:
        return self._active.get(alert_id)

    def latest_for_rule(self, rule_id: str) -> Alert | None:
        return self._latest_by_rule.get(rule_id)

    def active_alerts(self, severity: AlertSeverity | None = None) -> list[Alert]:
        alerts = list(self._active.values())
        if severity is not None:
            alerts = [a for a in alerts if a.severity == severity]
        return alerts

    @property
    def history(self) -> list[Alert]:
        return list(self._history)

    def suppressions(self, rule_id: str | None = None) -> list[SuppressionRecord]:
        if rule_id is None:
            return list(self._suppressions)
        return [s for s in self._suppressions if s.rule_id == rule_id]

    def stats(self) -> dict[str, object]:
        by_status = Counter(a.status.value for a in self._history)
        return {
            "active_alerts": len(self._active),
            "total_alerts": len(self._history),
            "suppressed_firings": len(self._suppressions),
            "acknowledged": by_status.get(AlertStatus.ACKNOWLEDGED.value, 0),
            "resolved": by_status.get(AlertStatus.RESOLVED.value, 0),
        }
