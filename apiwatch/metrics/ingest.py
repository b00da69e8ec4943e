"""Normalise raw metric payloads into MetricSample objects."""

from __future__ import annotations

import datetime
import math
from typing import Any

from pydantic import TypeAdapter, ValidationError

from apiwatch.core.types import MetricSample, Target, new_id

_DATETIME = TypeAdapter(datetime.datetime)


def _number(value: Any, fallback: float) -> float:
    """Coerce *value* to a finite float, else *fallback*."""
    if value is None or isinstance(value, bool):
        return fallback
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    return parsed if math.isfinite(parsed) else fallback


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def parse_timestamp(value: Any, now: datetime.datetime) -> datetime.datetime:
    """Parse an ISO string / datetime / epoch-ms value, defaulting to *now*."""
    if value is None or value == "":
        return now
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.datetime.fromtimestamp(value / 1000.0, datetime.UTC)
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        return now
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed.astimezone(datetime.UTC)


def target_id_of(raw: dict[str, Any]) -> str | None:
    value = _first(raw, "targetId", "target_id")
    return str(value) if value else None


def build_sample(
    target: Target,
    raw: dict[str, Any],
    now: datetime.datetime,
    p99_min_gap_ms: float = 30.0,
) -> MetricSample:
    """Build a clamped sample, filling missing fields from the target baseline.

    - ``qps``, ``latencyP95``, ``latencyP99`` and ``statusCode5xx`` are
      non-negative integers.
    - ``latencyP99`` is at least ``latencyP95 + p99_min_gap_ms``.
    - ``availability`` is clamped to [0, 100].
    - ``statusCode5xx`` defaults to ``qps * errorRate / 1000``.
    """
    base = target.baseline

    qps = round(max(_number(_first(raw, "qps"), base.qps), 0.0))
    error_rate = round(
        max(_number(_first(raw, "errorRate", "error_rate"), base.error_rate), 0.0), 3
    )
    latency_p95 = round(
        max(_number(_first(raw, "latencyP95", "latency_p95"), base.latency_p95), 0.0)
    )
    latency_p99 = round(
        max(
            _number(_first(raw, "latencyP99", "latency_p99"), base.latency_p99),
            latency_p95 + p99_min_gap_ms,
        )
    )
    availability = round(
        min(
            max(_number(_first(raw, "availability"), base.availability), 0.0),
            100.0,
        ),
        3,
    )
    status_5xx = round(
        max(
            _number(
                _first(raw, "statusCode5xx", "status_code_5xx"),
                qps * error_rate / 1000.0,
            ),
            0.0,
        )
    )

    return MetricSample(
        id=new_id("metric"),
        target_id=target.id,
        timestamp=parse_timestamp(raw.get("timestamp"), now),
        qps=float(qps),
        error_rate=error_rate,
        latency_p95=float(latency_p95),
        latency_p99=float(latency_p99),
        availability=availability,
        status_code_5xx=float(status_5xx),
    )
