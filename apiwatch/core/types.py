"""Domain types for the alert engine — metrics, rules, alerts, notifications.

Python attributes are snake_case; JSON (``model_dump(by_alias=True)``) uses
the camelCase names the dashboard UI reads.
"""

from __future__ import annotations

import datetime
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from apiwatch.core.exceptions import ConfigurationError


def utc_now() -> datetime.datetime:
    """Current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.UTC)


def new_id(prefix: str) -> str:
    """Short prefixed identifier, e.g. ``alert_3f9a1c0b2d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Enums ────────────────────────────────────────────────────────


class MetricName(StrEnum):
    """Metric fields a rule may select."""

    QPS = "qps"
    ERROR_RATE = "errorRate"
    LATENCY_P95 = "latencyP95"
    LATENCY_P99 = "latencyP99"
    AVAILABILITY = "availability"
    STATUS_CODE_5XX = "statusCode5xx"


class Operator(StrEnum):
    """Comparison operator between an observed value and a threshold."""

    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    EQ = "=="
    NE = "!="


class Aggregation(StrEnum):
    """How a window of values is reduced to one number."""

    AVG = "avg"
    MAX = "max"
    MIN = "min"
    LATEST = "latest"


class ConditionLogic(StrEnum):
    ALL = "all"
    ANY = "any"


class Priority(StrEnum):
    """Alert priority — P1 is the most severe."""

    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


class ScopeType(StrEnum):
    GLOBAL = "global"
    SERVICE = "service"
    TARGET = "target"


class RuleType(StrEnum):
    THRESHOLD = "threshold"
    CONSECUTIVE_FAILURES = "consecutive_failures"
    MISSING_DATA = "missing_data"
    BURN_RATE = "burn_rate"


class AlertStatus(StrEnum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    CLOSED = "closed"


ACTIVE_ALERT_STATUSES = frozenset({AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED})


class TargetStatus(StrEnum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class NotificationStatus(StrEnum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class NotificationEventType(StrEnum):
    TRIGGER = "trigger"
    RECOVERY = "recovery"
    ESCALATION = "escalation"
    TEST = "test"


class DeliveryMode(StrEnum):
    """``mock`` never leaves the process and exists for tests and demos."""

    MOCK = "mock"
    HTTP = "http"


# ── Targets & metrics ────────────────────────────────────────────


class TargetBaseline(CamelModel):
    """Typical values used to fill gaps in incoming samples."""

    qps: float = 0.0
    error_rate: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    availability: float = 100.0


class Target(CamelModel):
    """A monitored HTTP API."""

    id: str
    name: str = ""
    path: str = ""
    method: str = "GET"
    service: str = ""
    owner: str = ""
    environment: str = "production"
    baseline: TargetBaseline = Field(default_factory=TargetBaseline)
    status: TargetStatus = TargetStatus.UNKNOWN
    updated_at: datetime.datetime | None = None


class MetricSample(CamelModel):
    """One observation for one target. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("metric"))
    target_id: str
    timestamp: datetime.datetime
    qps: float = 0.0
    error_rate: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    availability: float = 100.0
    status_code_5xx: float = Field(default=0.0, alias="statusCode5xx")


# ── Rules ────────────────────────────────────────────────────────


class RuleScope(CamelModel):
    type: ScopeType = ScopeType.GLOBAL
    value: str | None = None


class RuleBase(CamelModel):
    """Fields shared by every rule variant."""

    id: str = Field(default_factory=lambda: new_id("rule"))
    name: str = ""
    enabled: bool = True
    scope: RuleScope = Field(default_factory=RuleScope)
    priority: Priority = Priority.P2
    actions: list[str] = Field(default_factory=list)
    cooldown_minutes: float = 0.0
    last_triggered_by_target: dict[str, datetime.datetime] = Field(default_factory=dict)
    updated_at: datetime.datetime | None = None

    @field_validator("cooldown_minutes")
    @classmethod
    def _non_negative_cooldown(cls, v: float) -> float:
        return max(v, 0.0)

    def applies_to(self, target: Target) -> bool:
        """Whether *target* falls inside this rule's scope."""
        if self.scope.type == ScopeType.GLOBAL:
            return True
        if self.scope.type == ScopeType.TARGET:
            return self.scope.value == target.id
        if self.scope.type == ScopeType.SERVICE:
            return self.scope.value == target.service
        return False


class Condition(CamelModel):
    """One leg of a composite threshold rule; unset fields inherit from the rule."""

    metric: str | None = None
    operator: Operator | None = None
    threshold: float | None = None
    aggregation: Aggregation | None = None
    window_minutes: float | None = None
    min_samples: int | None = None


class ThresholdRule(RuleBase):
    rule_type: Literal["threshold"] = "threshold"
    metric: str = MetricName.ERROR_RATE.value
    operator: Operator = Operator.GT
    threshold: float = 0.0
    aggregation: Aggregation = Aggregation.LATEST
    window_minutes: float = 5.0
    min_samples: int = 1
    conditions: list[Condition] = Field(default_factory=list)
    condition_logic: ConditionLogic = ConditionLogic.ALL


class ConsecutiveFailuresRule(RuleBase):
    rule_type: Literal["consecutive_failures"] = "consecutive_failures"
    metric: str = MetricName.ERROR_RATE.value
    operator: Operator = Operator.GT
    threshold: float = 0.0
    window_minutes: float = 10.0
    failure_count: int = 3

    @field_validator("failure_count")
    @classmethod
    def _at_least_two(cls, v: int) -> int:
        return max(v, 2)


class MissingDataRule(RuleBase):
    rule_type: Literal["missing_data"] = "missing_data"
    window_minutes: float = 5.0


class BurnRateRule(RuleBase):
    rule_type: Literal["burn_rate"] = "burn_rate"
    metric: str = MetricName.ERROR_RATE.value
    slo_target: float = 99.9
    burn_rate_threshold: float = 2.0
    short_window_minutes: float = 5.0
    long_window_minutes: float = 60.0

    @field_validator("slo_target")
    @classmethod
    def _clamp_slo(cls, v: float) -> float:
        return min(max(v, 90.0), 100.0)

    @field_validator("burn_rate_threshold")
    @classmethod
    def _clamp_burn(cls, v: float) -> float:
        return max(v, 1.0)

    @field_validator("short_window_minutes")
    @classmethod
    def _clamp_short(cls, v: float) -> float:
        return max(v, 1.0)

    @model_validator(mode="after")
    def _long_exceeds_short(self) -> BurnRateRule:
        if self.long_window_minutes < self.short_window_minutes + 1:
            self.long_window_minutes = self.short_window_minutes + 1
        return self


Rule = Annotated[
    ThresholdRule | ConsecutiveFailuresRule | MissingDataRule | BurnRateRule,
    Field(discriminator="rule_type"),
]

_RULE_ADAPTER: TypeAdapter[Rule] = TypeAdapter(Rule)


def parse_rule(data: dict[str, Any]) -> Rule:
    """Validate a rule document; a missing ``ruleType`` means threshold.

    Raises:
        ConfigurationError: if the document does not describe a valid rule.
    """
    payload = dict(data)
    if "rule_type" in payload:
        payload.setdefault("ruleType", payload.pop("rule_type"))
    payload.setdefault("ruleType", RuleType.THRESHOLD.value)
    try:
        return _RULE_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid rule {payload.get('id', '<unnamed>')}: {exc.error_count()} error(s)"
        ) from exc


# ── Evaluation ───────────────────────────────────────────────────


class Evaluation(CamelModel):
    """Outcome of evaluating one rule for one target at one point in time."""

    evaluable: bool
    matched: bool = False
    value: float | None = None
    sample_count: int = 0
    message: str = ""
    reason: str | None = None
    metric: str | None = None
    operator: str | None = None
    threshold: float | None = None
    aggregation: str | None = None


class RuleHit(CamelModel):
    """Audit record of one evaluable rule evaluation."""

    id: str = Field(default_factory=lambda: new_id("hit"))
    rule_id: str
    target_id: str
    metric: str | None = None
    aggregation: str | None = None
    operator: str | None = None
    threshold: float | None = None
    value: float
    matched: bool
    evaluated_at: datetime.datetime


# ── Alerts ───────────────────────────────────────────────────────


class AlertEvent(CamelModel):
    id: str = Field(default_factory=lambda: new_id("event"))
    type: str
    by: str = "system"
    note: str = ""
    at: datetime.datetime


class EscalationMark(CamelModel):
    """When an escalation level last fired for an alert."""

    level: str
    last_sent_at: datetime.datetime


class Alert(CamelModel):
    """One incident for a (rule, target) pair."""

    id: str = Field(default_factory=lambda: new_id("alert"))
    rule_id: str
    target_id: str
    level: Priority
    title: str = ""
    message: str = ""
    status: AlertStatus = AlertStatus.OPEN
    metric: str | None = None
    operator: str | None = None
    threshold: float | None = None
    observed_value: float = 0.0
    aggregation: str | None = None
    window_minutes: float | None = None
    source: str = "api"
    triggered_at: datetime.datetime
    updated_at: datetime.datetime
    resolved_at: datetime.datetime | None = None
    acknowledged_by: str | None = None
    events: list[AlertEvent] = Field(default_factory=list)
    notifications: list[str] = Field(default_factory=list)
    escalations: list[EscalationMark] = Field(default_factory=list)
    last_notification_status: str | None = None
    last_notification_reason: str | None = None
    last_notified_at: datetime.datetime | None = None
    last_escalation_level: str | None = None

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.rule_id, self.target_id)

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_ALERT_STATUSES

    def add_event(
        self, event_type: str, at: datetime.datetime, by: str = "system", note: str = ""
    ) -> None:
        self.events.append(AlertEvent(type=event_type, by=by, note=note, at=at))


def fingerprint(rule_id: str, target_id: str) -> str:
    """Key identifying one recurring incident line."""
    return f"{rule_id}:{target_id}"


class NoiseFingerprintState(CamelModel):
    """Per-fingerprint debounce state shared by lifecycle and dispatcher."""

    last_opened_at: datetime.datetime | None = None
    previous_opened_at: datetime.datetime | None = None
    last_resolved_at: datetime.datetime | None = None
    opened_at_history: list[datetime.datetime] = Field(default_factory=list)
    last_notified_at: datetime.datetime | None = None
    last_recovery_notified_at: datetime.datetime | None = None
    silenced_until: datetime.datetime | None = None


# ── Channels & notifications ─────────────────────────────────────


class ChannelConfig(CamelModel):
    """Per-type delivery settings. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow")

    delivery_mode: str = DeliveryMode.MOCK.value
    mock_fail_rate: float = 0.0
    timeout_ms: int | None = None
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    webhook_url: str = ""
    recipients: list[str] = Field(default_factory=list)
    bot_token: SecretStr = SecretStr("")
    chat_id: str = ""

    @property
    def mode(self) -> DeliveryMode:
        try:
            return DeliveryMode(self.delivery_mode.lower())
        except ValueError:
            return DeliveryMode.MOCK


class Channel(CamelModel):
    """A notification destination, supplied by external configuration."""

    id: str
    name: str = ""
    type: str
    enabled: bool = True
    config: ChannelConfig = Field(default_factory=ChannelConfig)


class NotificationRecord(CamelModel):
    """One delivery unit. Created by the dispatcher, mutated by the worker."""

    id: str = Field(default_factory=lambda: new_id("notify"))
    alert_id: str | None = None
    rule_id: str | None = None
    target_id: str | None = None
    channel_type: str
    channel_id: str | None = None
    status: NotificationStatus = NotificationStatus.QUEUED
    response: str = "queued"
    event_type: NotificationEventType
    created_at: datetime.datetime
    attempts: int = 0
    max_attempts: int = 4
    next_retry_at: datetime.datetime | None = None
    last_attempt_at: datetime.datetime | None = None
    sent_at: datetime.datetime | None = None
    last_error: str | None = None
    last_latency_ms: float | None = None
    delivery_mode: DeliveryMode = DeliveryMode.MOCK
    payload: dict[str, Any] = Field(default_factory=dict)


# ── Operation results ────────────────────────────────────────────


class EvaluationResult(CamelModel):
    """Alerts opened and resolved during one ingest or sweep."""

    timestamp: datetime.datetime
    evaluated_targets: int = 0
    evaluated_rules: int = 0
    created_alerts: list[Alert] = Field(default_factory=list)
    resolved_alerts: list[Alert] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class IngestResult(CamelModel):
    metric: MetricSample
    created_alerts: list[Alert] = Field(default_factory=list)
    resolved_alerts: list[Alert] = Field(default_factory=list)
    evaluated_rules: int = 0


class BatchIngestSummary(CamelModel):
    ingested: int = 0
    created_alerts: int = 0
    resolved_alerts: int = 0
    errors: list[str] = Field(default_factory=list)
