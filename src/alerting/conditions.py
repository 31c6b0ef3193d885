"""Metric buffering and rule-condition evaluation (pure helpers + MetricBuffer)."""

from __future__ import annotations

import math
from collections import deque

from src.core.types import Aggregation, AlertCondition, ComparisonOperator, MetricSample


def aggregate(values: list[float], aggregation: Aggregation) -> float | None:
    """Aggregate *values*; ``None`` when there is nothing to aggregate.

    ``count`` is the one aggregation defined on an empty list (0).
    """
    if aggregation == Aggregation.COUNT:
        return float(len(values))
    if not values:
        return None
    if aggregation == Aggregation.AVG:
        return sum(values) / len(values)
    if aggregation == Aggregation.SUM:
        return float(sum(values))
    if aggregation == Aggregation.MIN:
        return min(values)
    if aggregation == Aggregation.MAX:
        return max(values)
    raise ValueError(f"unsupported aggregation: {aggregation}")


def compare(value: float, operator: ComparisonOperator, threshold: float) -> bool:
    if operator == ComparisonOperator.GT:
        return value > threshold
    if operator == ComparisonOperator.LT:
        return value < threshold
    if operator == ComparisonOperator.GTE:
        return value >= threshold
    if operator == ComparisonOperator.LTE:
        return value <= threshold
    if operator == ComparisonOperator.EQ:
        return math.isclose(value, threshold)
    if operator == ComparisonOperator.NE:
        return not math.isclose(value, threshold)
    raise ValueError(f"unsupported operator: {operator}")


def percentile(values: list[float], p: float) -> float:
    """Nearest-rank percentile of *values* (``p`` in 0..1)."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = math.ceil(len(ordered) * p) - 1
    return ordered[max(0, min(index, len(ordered) - 1))]


class MetricBuffer:
    """Bounded rolling buffer of samples, one deque per metric name."""

    def __init__(self, max_samples: int = 1000) -> None:
        self._max_samples = max_samples
        self._samples: dict[str, deque[MetricSample]] = {}

    def add(self, sample: MetricSample) -> None:
        buf = self._samples.get(sample.name)
        if buf is None:
            buf = deque(maxlen=self._max_samples)
            self._samples[sample.name] = buf
        buf.append(sample)

    def window(
        self,
        name: str,
        since: float,
        filters: dict[str, str] | None = None,
    ) -> list[MetricSample]:
        """Samples for *name* with ``timestamp >= since`` whose tags match *filters*."""
        buf = self._samples.get(name)
        if not buf:
            return []
        out: list[MetricSample] = []
        for s in buf:
            if s.timestamp < since:
                continue
            if filters and any(s.tags.get(k) != v for k, v in filters.items()):
                continue
            out.append(s)
        return out

    def latest(self, name: str) -> MetricSample | None:
        buf = self._samples.get(name)
        return buf[-1] if buf else None

    def __len__(self) -> int:
        return sum(len(b) for b in self._samples.values())

    @property
    def names(self) -> list[str]:
        return list(self._samples)


def evaluate_condition(
    condition: AlertCondition,
    buffer: MetricBuffer,
    now: float,
) -> float | None:
    """Return the aggregated value if *condition* holds at *now*, else None."""
    since = now - condition.time_window_minutes * 60.0
    samples = buffer.window(condition.metric, since, condition.filters)
    if not samples:
        return None
    value = aggregate([s.value for s in samples], condition.aggregation)
    if value is None:
        return None
    return value if compare(value, condition.operator, condition.threshold) else None
