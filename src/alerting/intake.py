"""SignalIntake — records metrics and finds the alert rules they fire."""

from __future__ import annotations

import time
from collections.abc import Callable

import structlog

from src.alerting.conditions import (
    MetricBuffer,
    aggregate,
    evaluate_condition,
    percentile,
)
from src.core.types import Aggregation, AlertRule, MetricSample

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class RuleFiring:
    """A rule whose conditions all hold, plus the values that satisfied them."""

    __slots__ = ("rule", "metrics", "sample")

    def __init__(self, rule: AlertRule, metrics: dict[str, float], sample: MetricSample) -> None:
        self.rule = rule
        self.metrics = metrics
        self.sample = sample

    def __repr__(self) -> str:
        return f"RuleFiring(rule={self.rule.id!r}, metrics={self.metrics!r})"


class SignalIntake:
    """Producer-facing metric entry point.

    Samples are kept in a bounded per-metric buffer. After each sample every
    enabled rule with a condition on that metric is evaluated; a rule fires
    only when *all* of its conditions hold over their windows. Metrics no
    rule refers to are stored and otherwise ignored.
    """

    def __init__(
        self,
        rules: list[AlertRule],
        buffer_size: int = 1000,
        default_tags: dict[str, str] | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._rules = list(rules)
        self._buffer = MetricBuffer(buffer_size)
        self._default_tags = dict(default_tags or {})
        self._clock = clock
        self._rules_by_metric: dict[str, list[AlertRule]] = {}
        for rule in self._rules:
            for metric in rule.metrics:
                self._rules_by_metric.setdefault(metric, []).append(rule)

    @property
    def buffer(self) -> MetricBuffer:
        return self._buffer

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules)

    def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "count",
        tags: dict[str, str] | None = None,
        dimensions: dict[str, str] | None = None,
    ) -> list[RuleFiring]:
        """Store one sample and return the rules it fires."""
        now = self._clock()
        sample = MetricSample(
            name=name,
            value=value,
            unit=unit,
            timestamp=now,
            tags={**self._default_tags, **(tags or {})},
            dimensions=dict(dimensions or {}),
        )
        self._buffer.add(sample)
        logger.debug("metric_recorded", metric=name, value=value, unit=unit)
        return self._evaluate(sample, now)

    def _evaluate(self, sample: MetricSample, now: float) -> list[RuleFiring]:
        fired: list[RuleFiring] = []
        for rule in self._rules_by_metric.get(sample.name, []):
            if not rule.enabled:
                continue
            values: dict[str, float] = {}
            for condition in rule.conditions:
                value = evaluate_condition(condition, self._buffer, now)
                if value is None:
                    break
                values[condition.metric] = value
            else:
                fired.append(RuleFiring(rule, values, sample))
        return fired

    # ── Convenience producers ───────────────────────────────────

    def record_response_time(
        self, endpoint: str, duration_ms: float, status_code: int,
    ) -> list[RuleFiring]:
        tags = {
            "endpoint": endpoint,
            "status_code": str(status_code),
            "status_class": f"{status_code // 100}xx",
        }
        fired = self.record_metric("http_request_duration", duration_ms, "ms", tags)
        fired.extend(self.record_metric("http_requests_total", 1, "count", tags))
        return fired

    def record_error(
        self, error: BaseException, context: dict[str, str] | None = None,
    ) -> list[RuleFiring]:
        tags = {
            "error_type": type(error).__name__,
            "error_message": str(error)[:100],
            **(context or {}),
        }
        return self.record_metric("errors_total", 1, "count", tags)

    def record_business_metric(
        self,
        event: str,
        value: float = 1,
        user_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> list[RuleFiring]:
        tags = {"user_id": user_id or "anonymous", **(metadata or {})}
        return self.record_metric(f"business_{event}", value, "count", tags)

    # ── Queries ─────────────────────────────────────────────────

    def metric_summary(self, name: str, window_minutes: float = 60.0) -> dict[str, float]:
        """Count/avg/min/max/p50/p95/p99 of *name* over the trailing window."""
        since = self._clock() - window_minutes * 60.0
        values = [s.value for s in self._buffer.window(name, since)]
        return {
            "count": float(len(values)),
            "avg": aggregate(values, Aggregation.AVG) or 0.0,
            "min": aggregate(values, Aggregation.MIN) or 0.0,
            "max": aggregate(values, Aggregation.MAX) or 0.0,
            "p50": percentile(values, 0.50),
            "p95": percentile(values, 0.95),
            "p99": percentile(values, 0.99),
        }
