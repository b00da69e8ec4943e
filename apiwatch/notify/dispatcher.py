"""Notification dispatcher — turns alert transitions into queued delivery records.

The dispatcher never performs I/O. It decides *whether* to notify (through
the noise controller), resolves rule actions to channels and appends
``queued`` :class:`NotificationRecord` objects for the delivery worker.
"""

from __future__ import annotations

import datetime
from typing import Any

import structlog

from apiwatch.alerts.noise import NoiseController
from apiwatch.core.config import EscalationLevel
from apiwatch.core.state import EngineState
from apiwatch.core.types import (
    Alert,
    Channel,
    EscalationMark,
    NotificationEventType,
    NotificationRecord,
    NotificationStatus,
    Rule,
    Target,
    utc_now,
)
from apiwatch.notify.channels import validate_channel_config
from apiwatch.notify.formatters import (
    alert_payload,
    channel_test_payload,
    escalation_payload,
)
from apiwatch.notify.types import EscalationSummary

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger("decision_log")

logger = structlog.get_logger(__name__)

UNMAPPED_ACTION = "action_not_mapped_to_channel"
CHANNEL_DISABLED = "channel_disabled"


class NotificationDispatcher:
    """Creates notification records for triggers, recoveries, escalations and tests.

    - Trigger: flap detection, then the trigger gate. Suppressed triggers
      only stamp ``lastNotificationStatus``/``Reason`` on the alert.
    - Recovery: sent only after a trigger went out and recovery is enabled.
    - Escalation: driven by :meth:`process_escalation_tick`.

    Implements the lifecycle manager's ``AlertHooks`` protocol.
    """

    def __init__(
        self,
        state: EngineState,
        noise: NoiseController,
        max_attempts: int = 4,
    ) -> None:
        self._state = state
        self._noise = noise
        self._max_attempts = max(max_attempts, 1)

    # ── Hook entry points ───────────────────────────────────────

    def on_alert_created(self, alert: Alert, rule: Rule, target: Target) -> None:
        self.dispatch_trigger(alert, rule, target)

    def on_alert_resolved(self, alert: Alert, rule: Rule, target: Target) -> None:
        self.dispatch_recovery(alert, rule, target)

    # ── Dispatch ────────────────────────────────────────────────

    def dispatch_trigger(
        self,
        alert: Alert,
        rule: Rule,
        target: Target | None,
        now: datetime.datetime | None = None,
    ) -> list[NotificationRecord]:
        now = now or alert.updated_at
        fp = alert.fingerprint
        self._noise.register_flap(fp, now)
        decision = self._noise.admit_trigger(fp, now)

        if not decision.allowed:
            alert.last_notification_status = "suppressed"
            alert.last_notification_reason = decision.reason
            logger.info(
                "notification_suppressed", alert_id=alert.id, reason=decision.reason
            )
            self._log_decision(
                "suppressed", alert, NotificationEventType.TRIGGER, reason=decision.reason
            )
            return []

        alert.last_notification_status = "sent"
        alert.last_notification_reason = None
        alert.last_notified_at = now
        records = self._dispatch_actions(
            rule.actions,
            alert,
            NotificationEventType.TRIGGER,
            alert_payload(alert, target),
            now,
        )
        self._log_decision(
            "dispatched", alert, NotificationEventType.TRIGGER, records=len(records)
        )
        return records

    def dispatch_recovery(
        self,
        alert: Alert,
        rule: Rule,
        target: Target | None,
        now: datetime.datetime | None = None,
    ) -> list[NotificationRecord]:
        now = now or alert.resolved_at or alert.updated_at
        fp = alert.fingerprint
        self._noise.record_resolved(fp, now)
        decision = self._noise.admit_recovery(fp, now)

        if not decision.allowed:
            self._log_decision(
                "suppressed", alert, NotificationEventType.RECOVERY, reason=decision.reason
            )
            return []

        records = self._dispatch_actions(
            rule.actions,
            alert,
            NotificationEventType.RECOVERY,
            alert_payload(alert, target),
            now,
        )
        self._log_decision(
            "dispatched", alert, NotificationEventType.RECOVERY, records=len(records)
        )
        return records

    def dispatch_channel_test(
        self,
        channel: Channel,
        operator: str = "manual",
        now: datetime.datetime | None = None,
    ) -> NotificationRecord:
        """Queue a standalone ``test`` record for *channel*."""
        now = now or utc_now()
        blocked = CHANNEL_DISABLED if not channel.enabled else validate_channel_config(channel)
        record = self._make_record(
            channel=channel,
            action=channel.type,
            alert=None,
            event_type=NotificationEventType.TEST,
            payload=channel_test_payload(channel, operator),
            blocked=blocked,
            now=now,
        )
        self._state.add_notification(record)
        logger.info(
            "channel_test_queued",
            channel_id=channel.id,
            status=record.status.value,
            response=record.response,
        )
        return record

    # ── Escalation ──────────────────────────────────────────────

    def process_escalation_tick(self, now: datetime.datetime | None = None) -> EscalationSummary:
        """Fire escalation levels for long-running active alerts."""
        summary = EscalationSummary()
        policy = self._noise.policy
        if not policy.enabled or not policy.escalation_enabled:
            return summary
        levels = policy.ordered_escalations()
        if not levels:
            return summary

        now = now or utc_now()
        for alert in self._state.active_alerts():
            if policy.escalate_requires_primary and alert.last_notified_at is None:
                continue
            rule = self._state.find_rule(alert.rule_id)
            if rule is None:
                continue
            target = self._state.targets.get(alert.target_id)
            summary.processed += 1
            age_minutes = (now - alert.triggered_at).total_seconds() / 60.0

            for level in levels:
                if age_minutes < level.after_minutes:
                    continue
                if not self._escalation_due(alert, level, now):
                    continue
                records = self._dispatch_actions(
                    level.actions,
                    alert,
                    NotificationEventType.ESCALATION,
                    escalation_payload(alert, target, level),
                    now,
                )
                if not records:
                    continue
                self._mark_escalated(alert, level.level, now)
                summary.sent += len(records)
                self._log_decision(
                    "escalated",
                    alert,
                    NotificationEventType.ESCALATION,
                    escalation_level=level.level,
                    records=len(records),
                )

        return summary

    @staticmethod
    def _escalation_due(alert: Alert, level: EscalationLevel, now: datetime.datetime) -> bool:
        mark = next((m for m in alert.escalations if m.level == level.level), None)
        if mark is None:
            return True
        if level.repeat_minutes == 0:
            return False
        return (now - mark.last_sent_at).total_seconds() >= level.repeat_minutes * 60

    @staticmethod
    def _mark_escalated(alert: Alert, level: str, now: datetime.datetime) -> None:
        mark = next((m for m in alert.escalations if m.level == level), None)
        if mark is None:
            alert.escalations.append(EscalationMark(level=level, last_sent_at=now))
        else:
            mark.last_sent_at = now
        alert.last_escalation_level = level

    # ── Channel resolution ──────────────────────────────────────

    def resolve_channels(self, actions: list[str]) -> list[tuple[str, Channel | None]]:
        """Map rule actions to channels.

        An action matches a channel id exactly, else every channel of that
        type. Channels are deduplicated by id; an unmapped action yields a
        single ``(action, None)`` entry.
        """
        resolved: list[tuple[str, Channel | None]] = []
        seen: set[str] = set()
        for action in actions:
            exact = self._state.find_channel(action)
            channels = [exact] if exact is not None else [
                c for c in self._state.channels if c.type == action
            ]
            if not channels:
                key = f"missing:{action}"
                if key not in seen:
                    seen.add(key)
                    resolved.append((action, None))
                continue
            for channel in channels:
                key = f"channel:{channel.id}"
                if key in seen:
                    continue
                seen.add(key)
                resolved.append((action, channel))
        return resolved

    # ── Internal ────────────────────────────────────────────────

    def _dispatch_actions(
        self,
        actions: list[str],
        alert: Alert,
        event_type: NotificationEventType,
        payload: dict[str, Any],
        now: datetime.datetime,
    ) -> list[NotificationRecord]:
        records = []
        for action, channel in self.resolve_channels(actions):
            if channel is None:
                blocked: str | None = UNMAPPED_ACTION
            elif not channel.enabled:
                blocked = CHANNEL_DISABLED
            else:
                blocked = validate_channel_config(channel)
            record = self._make_record(
                channel=channel,
                action=action,
                alert=alert,
                event_type=event_type,
                payload=dict(payload),
                blocked=blocked,
                now=now,
            )
            self._state.add_notification(record)
            records.append(record)
        alert.notifications.extend(r.id for r in records)
        return records

    def _make_record(
        self,
        channel: Channel | None,
        action: str,
        alert: Alert | None,
        event_type: NotificationEventType,
        payload: dict[str, Any],
        blocked: str | None,
        now: datetime.datetime,
    ) -> NotificationRecord:
        return NotificationRecord(
            alert_id=alert.id if alert else None,
            rule_id=alert.rule_id if alert else None,
            target_id=alert.target_id if alert else None,
            channel_type=channel.type if channel else action,
            channel_id=channel.id if channel else None,
            status=NotificationStatus.FAILED if blocked else NotificationStatus.QUEUED,
            response=blocked or "queued",
            event_type=event_type,
            created_at=now,
            max_attempts=self._max_attempts,
            next_retry_at=None if blocked else now,
            last_error=blocked,
            delivery_mode=channel.config.mode if channel else "mock",
            payload=payload,
        )

    def _log_decision(
        self,
        decision: str,
        alert: Alert,
        event_type: NotificationEventType,
        **fields: Any,
    ) -> None:
        decision_logger.info(
            "notification_decision",
            decision=decision,
            event_type=event_type.value,
            alert_id=alert.id,
            fingerprint=alert.fingerprint,
            level=alert.level.value,
            **fields,
        )
