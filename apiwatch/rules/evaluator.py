"""Rule evaluator — pure functions deciding match / no-match for a target.

Every rule type is evaluated against the samples in a
:class:`~apiwatch.metrics.store.MetricWindowStore` relative to a reference
time. Bad rules and thin data never raise out of :func:`evaluate`; they come
back as an :class:`Evaluation` with ``evaluable=False`` and a ``reason``.
"""

from __future__ import annotations

import datetime
import math
import operator as op
from collections.abc import Callable
from dataclasses import dataclass

from apiwatch.core.exceptions import ConfigurationError, DataInsufficiencyError
from apiwatch.core.types import (
    Aggregation,
    BurnRateRule,
    Condition,
    ConditionLogic,
    ConsecutiveFailuresRule,
    Evaluation,
    MetricSample,
    MissingDataRule,
    Operator,
    Rule,
    ThresholdRule,
)
from apiwatch.metrics.store import MetricWindowStore

MetricSelector = Callable[[MetricSample], float]

METRIC_SELECTORS: dict[str, MetricSelector] = {
    "qps": lambda s: s.qps,
    "errorRate": lambda s: s.error_rate,
    "latencyP95": lambda s: s.latency_p95,
    "latencyP99": lambda s: s.latency_p99,
    "availability": lambda s: s.availability,
    "statusCode5xx": lambda s: s.status_code_5xx,
}

_COMPARATORS: dict[Operator, Callable[[float, float], bool]] = {
    Operator.GT: op.gt,
    Operator.GE: op.ge,
    Operator.LT: op.lt,
    Operator.LE: op.le,
    Operator.EQ: op.eq,
    Operator.NE: op.ne,
}


# ── Primitives ──────────────────────────────────────────────────


def select_metric(metric: str) -> MetricSelector:
    """Return the selector for *metric* or raise ConfigurationError."""
    selector = METRIC_SELECTORS.get(metric)
    if selector is None:
        raise ConfigurationError(f"unsupported metric {metric!r}", reason="unsupported_metric")
    return selector


def aggregate(values: list[float], aggregation: Aggregation) -> float:
    """Reduce a non-empty list. ``latest`` is the last inserted value."""
    if aggregation == Aggregation.AVG:
        return sum(values) / len(values)
    if aggregation == Aggregation.MAX:
        return max(values)
    if aggregation == Aggregation.MIN:
        return min(values)
    return values[-1]


def compare(value: float, operator: Operator, threshold: float) -> bool:
    return _COMPARATORS[Operator(operator)](value, threshold)


def _fmt(value: float, digits: int = 3) -> str:
    rounded = round(value, digits)
    return str(int(rounded)) if float(rounded).is_integer() else str(rounded)


def _window_start(reference: datetime.datetime, minutes: float) -> datetime.datetime:
    return reference - datetime.timedelta(minutes=minutes)


# ── Threshold (single + composite) ──────────────────────────────


@dataclass(frozen=True)
class ThresholdSpec:
    """A fully-resolved threshold check (rule fields overlaid by a condition)."""

    metric: str
    operator: Operator
    threshold: float
    aggregation: Aggregation
    window_minutes: float
    min_samples: int

    @classmethod
    def resolve(cls, rule: ThresholdRule, condition: Condition | None = None) -> ThresholdSpec:
        c = condition or Condition()
        return cls(
            metric=c.metric or rule.metric,
            operator=c.operator or rule.operator,
            threshold=c.threshold if c.threshold is not None else rule.threshold,
            aggregation=c.aggregation or rule.aggregation,
            window_minutes=max(
                c.window_minutes if c.window_minutes is not None else rule.window_minutes,
                1.0,
            ),
            min_samples=max(
                c.min_samples if c.min_samples is not None else rule.min_samples,
                1,
            ),
        )


def _check_threshold(
    store: MetricWindowStore,
    target_id: str,
    reference: datetime.datetime,
    spec: ThresholdSpec,
) -> Evaluation:
    selector = select_metric(spec.metric)
    samples = store.query_window(
        target_id, _window_start(reference, spec.window_minutes), reference
    )
    values = [v for v in (selector(s) for s in samples) if math.isfinite(v)]

    if len(values) < spec.min_samples:
        raise DataInsufficiencyError(
            f"insufficient_samples({len(values)}/{spec.min_samples})",
            sample_count=len(values),
        )

    value = aggregate(values, spec.aggregation)
    return Evaluation(
        evaluable=True,
        matched=compare(value, spec.operator, spec.threshold),
        value=value,
        sample_count=len(values),
        metric=spec.metric,
        operator=spec.operator.value,
        threshold=spec.threshold,
        aggregation=spec.aggregation.value,
        message=(
            f"{spec.aggregation.value} {spec.metric} {_fmt(value)}"
            f" {spec.operator.value} {_fmt(spec.threshold)}"
        ),
    )


def _check_threshold_leg(
    store: MetricWindowStore,
    target_id: str,
    reference: datetime.datetime,
    spec: ThresholdSpec,
) -> Evaluation:
    """Like _check_threshold but folds errors into a non-evaluable result."""
    try:
        return _check_threshold(store, target_id, reference, spec)
    except (ConfigurationError, DataInsufficiencyError) as exc:
        return _not_evaluable(
            exc,
            metric=spec.metric,
            operator=spec.operator.value,
            threshold=spec.threshold,
            aggregation=spec.aggregation.value,
        )


def _check_composite(
    store: MetricWindowStore,
    rule: ThresholdRule,
    target_id: str,
    reference: datetime.datetime,
) -> Evaluation:
    legs = [
        _check_threshold_leg(store, target_id, reference, ThresholdSpec.resolve(rule, c))
        for c in rule.conditions
    ]
    logic = rule.condition_logic
    total = len(legs)
    evaluable = sum(1 for leg in legs if leg.evaluable)
    matched = sum(1 for leg in legs if leg.evaluable and leg.matched)
    samples = sum(leg.sample_count for leg in legs)
    detail = " | ".join(leg.message for leg in legs)
    label = f"composite({logic.value})"

    if logic == ConditionLogic.ANY:
        if matched == 0 and evaluable == 0:
            raise DataInsufficiencyError(f"{label} insufficient_samples", sample_count=samples)
        is_match = matched > 0
    else:
        if evaluable < total:
            raise DataInsufficiencyError(
                f"{label} insufficient_samples: {detail}", sample_count=samples
            )
        is_match = matched == total

    return Evaluation(
        evaluable=True,
        matched=is_match,
        value=float(matched),
        sample_count=samples,
        metric=rule.metric,
        operator=rule.operator.value,
        threshold=1.0 if logic == ConditionLogic.ANY else float(total),
        aggregation=f"composite:{logic.value}",
        message=f"{label} matched {matched}/{total}: {detail}",
    )


# ── Other rule types ────────────────────────────────────────────


def _check_consecutive_failures(
    store: MetricWindowStore,
    rule: ConsecutiveFailuresRule,
    target_id: str,
    reference: datetime.datetime,
) -> Evaluation:
    selector = select_metric(rule.metric)
    required = rule.failure_count
    window = max(rule.window_minutes, 1.0)
    samples = sorted(
        store.query_window(target_id, _window_start(reference, window), reference),
        key=lambda s: s.timestamp,
    )

    if len(samples) < required:
        raise DataInsufficiencyError(
            f"insufficient_samples({len(samples)}/{required})",
            sample_count=len(samples),
        )

    values = [selector(s) for s in samples[-required:]]
    failures = sum(1 for v in values if compare(v, rule.operator, rule.threshold))

    return Evaluation(
        evaluable=True,
        matched=failures == required,
        value=values[-1],
        sample_count=len(values),
        metric=rule.metric,
        operator=rule.operator.value,
        threshold=rule.threshold,
        aggregation=Aggregation.LATEST.value,
        message=(
            f"consecutive_failures {failures}/{required} on {rule.metric}"
            f" {rule.operator.value} {_fmt(rule.threshold)}"
        ),
    )


def _check_missing_data(
    store: MetricWindowStore,
    rule: MissingDataRule,
    target_id: str,
    reference: datetime.datetime,
) -> Evaluation:
    window = max(rule.window_minutes, 1.0)
    latest = store.latest(target_id)

    if latest is None:
        return Evaluation(
            evaluable=True,
            matched=True,
            value=window + 1,
            sample_count=0,
            threshold=window,
            aggregation=Aggregation.LATEST.value,
            message=f"missing_data no metric in {_fmt(window)}m window",
        )

    gap = (reference - latest.timestamp).total_seconds() / 60.0
    return Evaluation(
        evaluable=True,
        matched=gap > window,
        value=round(gap, 3),
        sample_count=1,
        threshold=window,
        aggregation=Aggregation.LATEST.value,
        message=f"missing_data gap={_fmt(gap, 2)}m > {_fmt(window)}m",
    )


def _check_burn_rate(
    store: MetricWindowStore,
    rule: BurnRateRule,
    target_id: str,
    reference: datetime.datetime,
) -> Evaluation:
    selector = select_metric(rule.metric)
    short = store.query_window(
        target_id, _window_start(reference, rule.short_window_minutes), reference
    )
    long = store.query_window(
        target_id, _window_start(reference, rule.long_window_minutes), reference
    )

    if not short or not long:
        raise DataInsufficiencyError(
            "insufficient_samples", sample_count=len(short) + len(long)
        )

    short_rate = sum(selector(s) for s in short) / len(short)
    long_rate = sum(selector(s) for s in long) / len(long)
    error_budget = max(100.0 - rule.slo_target, 0.001)
    short_burn = short_rate / error_budget
    long_burn = long_rate / error_budget
    limit = rule.burn_rate_threshold

    return Evaluation(
        evaluable=True,
        matched=short_burn >= limit and long_burn >= limit,
        value=round(max(short_burn, long_burn), 3),
        sample_count=len(short) + len(long),
        metric=rule.metric,
        operator=Operator.GE.value,
        threshold=limit,
        aggregation=Aggregation.MAX.value,
        message=(
            f"burn_rate short={_fmt(short_burn)} long={_fmt(long_burn)}"
            f" threshold={_fmt(limit)} slo={_fmt(rule.slo_target)}%"
        ),
    )


# ── Entry point ─────────────────────────────────────────────────


def _not_evaluable(
    exc: ConfigurationError | DataInsufficiencyError, **fields: object
) -> Evaluation:
    return Evaluation(
        evaluable=False,
        matched=False,
        value=None,
        sample_count=getattr(exc, "sample_count", 0),
        reason=exc.reason,
        message=str(exc) if isinstance(exc, DataInsufficiencyError) else exc.reason,
        **fields,  # type: ignore[arg-type]
    )


def evaluate(
    store: MetricWindowStore,
    rule: Rule,
    target_id: str,
    reference_time: datetime.datetime,
) -> Evaluation:
    """Evaluate *rule* for *target_id* at *reference_time*.

    Never raises for a misconfigured rule or missing data; those come back
    with ``evaluable=False``.
    """
    try:
        if isinstance(rule, ConsecutiveFailuresRule):
            return _check_consecutive_failures(store, rule, target_id, reference_time)
        if isinstance(rule, MissingDataRule):
            return _check_missing_data(store, rule, target_id, reference_time)
        if isinstance(rule, BurnRateRule):
            return _check_burn_rate(store, rule, target_id, reference_time)
        if rule.conditions:
            return _check_composite(store, rule, target_id, reference_time)
        return _check_threshold(
            store, target_id, reference_time, ThresholdSpec.resolve(rule)
        )
    except (ConfigurationError, DataInsufficiencyError) as exc:
        return _not_evaluable(
            exc,
            metric=getattr(rule, "metric", None),
            operator=_operator_of(rule),
            threshold=_threshold_of(rule),
            aggregation=_aggregation_of(rule),
        )


def _operator_of(rule: Rule) -> str | None:
    operator = getattr(rule, "operator", None)
    return operator.value if operator is not None else None


def _threshold_of(rule: Rule) -> float | None:
    if isinstance(rule, BurnRateRule):
        return rule.burn_rate_threshold
    if isinstance(rule, MissingDataRule):
        return rule.window_minutes
    return rule.threshold


def _aggregation_of(rule: Rule) -> str:
    if isinstance(rule, ThresholdRule):
        if rule.conditions:
            return f"composite:{rule.condition_logic.value}"
        return rule.aggregation.value
    if isinstance(rule, BurnRateRule):
        return Aggregation.AVG.value
    return Aggregation.LATEST.value
