"""AlertLifecycleManager — turns rule evaluations into alert state transitions."""

from __future__ import annotations

import datetime
from typing import Protocol

import structlog

from apiwatch.alerts.noise import NoiseController
from apiwatch.core.exceptions import AlertNotFoundError, InvalidTransitionError
from apiwatch.core.state import EngineState
from apiwatch.core.types import (
    Alert,
    AlertStatus,
    Evaluation,
    EvaluationResult,
    Priority,
    Rule,
    RuleHit,
    Target,
    TargetStatus,
    fingerprint,
    utc_now,
)
from apiwatch.rules.evaluator import evaluate

logger = structlog.stdlib.get_logger()

# Latest-sample thresholds for a target with no active alert.
_WARN_ERROR_RATE = 4.0
_WARN_AVAILABILITY = 99.0
_WARN_LATENCY_P95 = 900.0


class AlertHooks(Protocol):
    """Receives alert transitions. Implemented by the notification dispatcher."""

    def on_alert_created(self, alert: Alert, rule: Rule, target: Target) -> None: ...

    def on_alert_resolved(self, alert: Alert, rule: Rule, target: Target) -> None: ...


class AlertLifecycleManager:
    """Owns the open → acknowledged → resolved/closed state machine.

    At most one active (open or acknowledged) alert exists per
    ``(rule_id, target_id)``. Terminal alerts never reopen; a later match
    creates a new alert.
    """

    def __init__(
        self,
        state: EngineState,
        noise: NoiseController,
        hooks: AlertHooks | None = None,
    ) -> None:
        self._state = state
        self._noise = noise
        self.hooks = hooks

    # ── Evaluation ──────────────────────────────────────────────

    def preview(
        self, rule: Rule, target_id: str, reference_time: datetime.datetime | None = None
    ) -> Evaluation:
        """Evaluate without recording hits or touching alerts."""
        return evaluate(self._state.store, rule, target_id, reference_time or utc_now())

    def apply_rule(
        self,
        rule: Rule,
        target: Target,
        now: datetime.datetime,
        result: EvaluationResult,
        source: str = "api",
    ) -> None:
        """Evaluate one rule for one target and apply the resulting transition."""
        evaluation = evaluate(self._state.store, rule, target.id, now)
        if not evaluation.evaluable:
            return

        result.evaluated_rules += 1
        value = round(evaluation.value or 0.0, 3)
        self._state.record_hit(
            RuleHit(
                rule_id=rule.id,
                target_id=target.id,
                metric=evaluation.metric,
                aggregation=evaluation.aggregation,
                operator=evaluation.operator,
                threshold=evaluation.threshold,
                value=value,
                matched=evaluation.matched,
                evaluated_at=now,
            )
        )

        active = self._state.active_alert(rule.id, target.id)

        if evaluation.matched:
            if active is not None:
                active.observed_value = value
                active.message = evaluation.message
                active.updated_at = now
                return
            if self._in_cooldown(rule, target.id, now):
                logger.debug(
                    "alert_open_skipped", rule_id=rule.id, target_id=target.id, reason="cooldown"
                )
                return
            fp = fingerprint(rule.id, target.id)
            decision = self._noise.check_open(fp, now)
            if not decision.allowed:
                logger.info(
                    "alert_open_skipped",
                    rule_id=rule.id,
                    target_id=target.id,
                    reason=decision.reason,
                )
                return
            alert = self._open(rule, target, evaluation, now, source)
            result.created_alerts.append(alert)
            self._notify("on_alert_created", alert, rule, target)
            return

        if active is not None:
            self._resolve(active, now)
            result.resolved_alerts.append(active)
            self._notify("on_alert_resolved", active, rule, target)

    def evaluate_target(
        self, target: Target, now: datetime.datetime, source: str = "api"
    ) -> EvaluationResult:
        """Run every enabled in-scope rule for *target* and refresh its status."""
        result = EvaluationResult(timestamp=now, evaluated_targets=1)
        self._evaluate_rules(target, now, result, source)
        return result

    def sweep(self, now: datetime.datetime, source: str = "rule-sweep") -> EvaluationResult:
        """Evaluate every target against every enabled rule in its scope."""
        result = EvaluationResult(timestamp=now)
        for target in list(self._state.targets.values()):
            result.evaluated_targets += 1
            self._evaluate_rules(target, now, result, source)
        logger.info(
            "sweep_completed",
            targets=result.evaluated_targets,
            rules=result.evaluated_rules,
            created=len(result.created_alerts),
            resolved=len(result.resolved_alerts),
            errors=len(result.errors),
        )
        return result

    def _evaluate_rules(
        self,
        target: Target,
        now: datetime.datetime,
        result: EvaluationResult,
        source: str,
    ) -> None:
        for rule in list(self._state.rules):
            if not rule.enabled or not rule.applies_to(target):
                continue
            try:
                self.apply_rule(rule, target, now, result, source)
            except Exception as exc:
                logger.exception("rule_evaluation_failed", rule_id=rule.id, target_id=target.id)
                result.errors.append(f"{rule.id}@{target.id}: {exc}")
        target.status = self.compute_target_status(target.id)
        target.updated_at = now

    # ── Target status ───────────────────────────────────────────

    def compute_target_status(self, target_id: str) -> TargetStatus:
        active = [a for a in self._state.active_alerts() if a.target_id == target_id]
        if any(a.level == Priority.P1 for a in active):
            return TargetStatus.CRITICAL
        if active:
            return TargetStatus.WARNING

        latest = self._state.store.latest(target_id)
        if latest is None:
            return TargetStatus.UNKNOWN
        if (
            latest.error_rate > _WARN_ERROR_RATE
            or latest.availability < _WARN_AVAILABILITY
            or latest.latency_p95 > _WARN_LATENCY_P95
        ):
            return TargetStatus.WARNING
        return TargetStatus.HEALTHY

    # ── Manual transitions ──────────────────────────────────────

    def acknowledge(
        self, alert_id: str, by: str, note: str = "", now: datetime.datetime | None = None
    ) -> Alert:
        alert = self._require(alert_id)
        if alert.status != AlertStatus.OPEN:
            raise InvalidTransitionError(f"Cannot acknowledge alert in status {alert.status}")
        now = now or utc_now()
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_by = by
        alert.updated_at = now
        alert.add_event("acknowledged", now, by=by, note=note)
        logger.info("alert_acknowledged", alert_id=alert.id, by=by)
        return alert

    def unacknowledge(
        self, alert_id: str, by: str, note: str = "", now: datetime.datetime | None = None
    ) -> Alert:
        alert = self._require(alert_id)
        if alert.status != AlertStatus.ACKNOWLEDGED:
            raise InvalidTransitionError(f"Cannot unacknowledge alert in status {alert.status}")
        now = now or utc_now()
        alert.status = AlertStatus.OPEN
        alert.acknowledged_by = None
        alert.updated_at = now
        alert.add_event("unacknowledged", now, by=by, note=note)
        return alert

    def close(
        self, alert_id: str, by: str, note: str = "", now: datetime.datetime | None = None
    ) -> Alert:
        alert = self._require(alert_id)
        if alert.status == AlertStatus.CLOSED:
            raise InvalidTransitionError("Alert is already closed")
        now = now or utc_now()
        alert.status = AlertStatus.CLOSED
        alert.updated_at = now
        alert.add_event("closed", now, by=by, note=note)
        self._state.release(alert)
        target = self._state.targets.get(alert.target_id)
        if target is not None:
            target.status = self.compute_target_status(target.id)
            target.updated_at = now
        logger.info("alert_closed", alert_id=alert.id, by=by)
        return alert

    # ── Internals ───────────────────────────────────────────────

    def _require(self, alert_id: str) -> Alert:
        alert = self._state.find_alert(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert not found: {alert_id}")
        return alert

    @staticmethod
    def _in_cooldown(rule: Rule, target_id: str, now: datetime.datetime) -> bool:
        if rule.cooldown_minutes <= 0:
            return False
        last = rule.last_triggered_by_target.get(target_id)
        if last is None:
            return False
        return (now - last).total_seconds() < rule.cooldown_minutes * 60

    def _open(
        self,
        rule: Rule,
        target: Target,
        evaluation: Evaluation,
        now: datetime.datetime,
        source: str,
    ) -> Alert:
        alert = Alert(
            rule_id=rule.id,
            target_id=target.id,
            level=rule.priority,
            title=rule.name or rule.id,
            message=evaluation.message,
            metric=evaluation.metric or getattr(rule, "metric", None),
            operator=evaluation.operator or _operator_value(rule),
            threshold=evaluation.threshold,
            observed_value=round(evaluation.value or 0.0, 3),
            aggregation=evaluation.aggregation,
            window_minutes=getattr(rule, "window_minutes", None),
            source=source,
            triggered_at=now,
            updated_at=now,
        )
        alert.add_event("created", now, note="Alert created by rule engine.")
        self._state.add_alert(alert)
        self._noise.record_open(alert.fingerprint, now)
        rule.last_triggered_by_target[target.id] = now
        rule.updated_at = now
        logger.info(
            "alert_opened",
            alert_id=alert.id,
            rule_id=rule.id,
            target_id=target.id,
            level=alert.level.value,
            value=alert.observed_value,
        )
        return alert

    def _resolve(self, alert: Alert, now: datetime.datetime) -> None:
        alert.status = AlertStatus.RESOLVED
        alert.updated_at = now
        alert.resolved_at = now
        alert.add_event("auto_resolved", now, note="Rule condition recovered.")
        self._state.release(alert)
        self._noise.record_resolved(alert.fingerprint, now)
        logger.info(
            "alert_resolved",
            alert_id=alert.id,
            rule_id=alert.rule_id,
            target_id=alert.target_id,
        )

    def _notify(self, hook: str, alert: Alert, rule: Rule, target: Target) -> None:
        if self.hooks is None:
            return
        try:
            getattr(self.hooks, hook)(alert, rule, target)
        except Exception:
            logger.exception("alert_hook_failed", hook=hook, alert_id=alert.id)


def _operator_value(rule: Rule) -> str | None:
    operator = getattr(rule, "operator", None)
    return operator.value if operator is not None else None
