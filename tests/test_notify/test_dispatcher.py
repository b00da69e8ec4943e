"""Tests for NotificationDispatcher — channel resolution, gating, escalation."""

from __future__ import annotations

import datetime
from typing import Any
from unittest.mock import patch

from apiwatch.alerts.noise import (
    DEDUPLICATED,
    NO_TRIGGER_SENT,
    RECOVERY_DISABLED,
    SILENCED_BY_FLAPPING,
    NoiseController,
)
from apiwatch.core.config import AlertPolicy
from apiwatch.core.state import EngineState
from apiwatch.core.types import (
    Alert,
    AlertStatus,
    Channel,
    ChannelConfig,
    NotificationEventType,
    NotificationStatus,
    Priority,
    Target,
    parse_rule,
)
from apiwatch.notify.dispatcher import (
    CHANNEL_DISABLED,
    UNMAPPED_ACTION,
    NotificationDispatcher,
)

T0 = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.UTC)


def _at(minutes: float) -> datetime.datetime:
    return T0 + datetime.timedelta(minutes=minutes)


def _channels() -> list[Channel]:
    return [
        Channel(
            id="ch_slack",
            type="slack",
            config=ChannelConfig(webhook_url="https://hooks.slack.test/x"),
        ),
        Channel(
            id="ch_ops_hook",
            type="webhook",
            config=ChannelConfig(url="https://ops.test/hook", delivery_mode="http"),
        ),
        Channel(id="ch_broken", type="webhook"),
        Channel(
            id="ch_sms_off",
            type="sms",
            enabled=False,
            config=ChannelConfig(recipients=["+15550100"]),
        ),
    ]


def _rule(**kw: Any):
    defaults: dict[str, Any] = {"id": "r1", "name": "Errors", "actions": ["slack"]}
    defaults.update(kw)
    return parse_rule(defaults)


def _setup(
    policy: AlertPolicy | None = None, rules: list[Any] | None = None
) -> tuple[NotificationDispatcher, EngineState, Target]:
    target = Target(id="api_a", path="/v1/orders", method="POST")
    state = EngineState(
        targets={target.id: target},
        rules=rules if rules is not None else [_rule()],
        channels=_channels(),
        policy=policy or AlertPolicy(),
    )
    noise = NoiseController(state.noise, state.policy)
    return NotificationDispatcher(state, noise, max_attempts=4), state, target


def _alert(state: EngineState | None = None, **kw: Any) -> Alert:
    defaults: dict[str, Any] = {
        "rule_id": "r1",
        "target_id": "api_a",
        "level": Priority.P1,
        "title": "Errors",
        "message": "latest errorRate 9 > 5",
        "triggered_at": T0,
        "updated_at": T0,
    }
    defaults.update(kw)
    alert = Alert(**defaults)
    if state is not None:
        state.add_alert(alert)
    return alert


# ── Channel resolution ──────────────────────────────────────────


class TestResolveChannels:
    def test_exact_id(self) -> None:
        dispatcher, _, _ = _setup()
        resolved = dispatcher.resolve_channels(["ch_ops_hook"])
        assert [(a, c.id) for a, c in resolved if c] == [("ch_ops_hook", "ch_ops_hook")]

    def test_by_type_matches_all(self) -> None:
        dispatcher, _, _ = _setup()
        resolved = dispatcher.resolve_channels(["webhook"])
        assert [c.id for _, c in resolved if c] == ["ch_ops_hook", "ch_broken"]

    def test_dedup_by_channel_id(self) -> None:
        dispatcher, _, _ = _setup()
        resolved = dispatcher.resolve_channels(["slack", "ch_slack", "webhook", "ch_broken"])
        assert [c.id for _, c in resolved if c] == ["ch_slack", "ch_ops_hook", "ch_broken"]

    def test_unmapped_action(self) -> None:
        dispatcher, _, _ = _setup()
        assert dispatcher.resolve_channels(["pagerduty", "pagerduty"]) == [("pagerduty", None)]


# ── Trigger ─────────────────────────────────────────────────────


class TestDispatchTrigger:
    def test_queues_one_record_per_channel(self) -> None:
        dispatcher, state, target = _setup()
        alert = _alert(state)
        rule = _rule(actions=["slack", "ch_ops_hook"])

        records = dispatcher.dispatch_trigger(alert, rule, target)

        assert [r.channel_id for r in records] == ["ch_slack", "ch_ops_hook"]
        for record in records:
            assert record.status == NotificationStatus.QUEUED
            assert record.event_type == NotificationEventType.TRIGGER
            assert record.next_retry_at == T0
            assert record.max_attempts == 4
            assert record.alert_id == alert.id
            assert record.payload["targetPath"] == "/v1/orders"
        assert records[1].delivery_mode == "http"
        assert state.notifications == records
        assert alert.notifications == [r.id for r in records]
        assert alert.last_notification_status == "sent"
        assert alert.last_notified_at == T0

    def test_blocked_channels_recorded_as_failed(self) -> None:
        dispatcher, state, target = _setup()
        alert = _alert(state)
        rule = _rule(actions=["pagerduty", "sms", "ch_broken"])

        records = dispatcher.dispatch_trigger(alert, rule, target)

        assert [r.status for r in records] == [NotificationStatus.FAILED] * 3
        assert [r.response for r in records] == [
            UNMAPPED_ACTION,
            CHANNEL_DISABLED,
            "invalid_webhook_url",
        ]
        assert records[0].channel_type == "pagerduty"
        assert records[0].channel_id is None
        assert all(r.next_retry_at is None for r in records)
        assert all(r.attempts == 0 for r in records)

    def test_repeat_trigger_deduplicated(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(dedup_window_seconds=180))
        rule = _rule()
        dispatcher.dispatch_trigger(_alert(state), rule, target)

        second = _alert(triggered_at=_at(1), updated_at=_at(1))
        assert dispatcher.dispatch_trigger(second, rule, target) == []
        assert second.last_notification_status == "suppressed"
        assert second.last_notification_reason == DEDUPLICATED
        assert second.last_notified_at is None

    def test_flapping_silences(self) -> None:
        policy = AlertPolicy(
            dedup_window_seconds=0,
            suppress_window_seconds=0,
            flap_threshold=2,
            auto_silence_minutes=30,
        )
        dispatcher, _, target = _setup(policy)
        rule = _rule()
        assert dispatcher.dispatch_trigger(_alert(), rule, target)

        second = _alert(updated_at=_at(2))
        assert dispatcher.dispatch_trigger(second, rule, target) == []
        assert second.last_notification_reason == SILENCED_BY_FLAPPING

    def test_policy_disabled_always_sends(self) -> None:
        dispatcher, _, target = _setup(AlertPolicy(enabled=False))
        rule = _rule()
        assert dispatcher.dispatch_trigger(_alert(), rule, target)
        assert dispatcher.dispatch_trigger(_alert(updated_at=_at(0.1)), rule, target)

    def test_hook_entry_point(self) -> None:
        dispatcher, state, target = _setup()
        alert = _alert(state)
        dispatcher.on_alert_created(alert, _rule(), target)
        assert len(state.notifications) == 1


# ── Recovery ────────────────────────────────────────────────────


class TestDispatchRecovery:
    def test_recovery_after_trigger(self) -> None:
        dispatcher, state, target = _setup()
        rule = _rule()
        alert = _alert(state)
        dispatcher.dispatch_trigger(alert, rule, target)
        alert.resolved_at = _at(5)

        records = dispatcher.dispatch_recovery(alert, rule, target)

        assert len(records) == 1
        assert records[0].event_type == NotificationEventType.RECOVERY
        assert records[0].created_at == _at(5)
        assert dispatcher._noise.state_for(alert.fingerprint).last_resolved_at == _at(5)

    def test_no_recovery_without_trigger(self) -> None:
        dispatcher, state, target = _setup()
        alert = _alert(state, resolved_at=_at(5))
        assert dispatcher.dispatch_recovery(alert, _rule(), target) == []

    def test_recovery_disabled(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(send_recovery=False))
        rule = _rule()
        alert = _alert(state)
        dispatcher.dispatch_trigger(alert, rule, target)
        assert dispatcher.on_alert_resolved(alert, rule, target) is None
        assert len(state.notifications) == 1

    def test_disabled_policy_without_trigger_sends_nothing(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(enabled=False, send_recovery=False))
        alert = _alert(state, resolved_at=_at(5))
        with patch("apiwatch.notify.dispatcher.decision_logger") as mock_log:
            assert dispatcher.dispatch_recovery(alert, _rule(), target) == []
        assert mock_log.info.call_args.kwargs["reason"] == RECOVERY_DISABLED
        assert state.notifications == []

    def test_disabled_policy_still_requires_trigger(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(enabled=False))
        alert = _alert(state, resolved_at=_at(5))
        with patch("apiwatch.notify.dispatcher.decision_logger") as mock_log:
            assert dispatcher.dispatch_recovery(alert, _rule(), target) == []
        assert mock_log.info.call_args.kwargs["reason"] == NO_TRIGGER_SENT

    def test_disabled_policy_honours_send_recovery(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(enabled=False, send_recovery=False))
        rule = _rule()
        alert = _alert(state)
        dispatcher.dispatch_trigger(alert, rule, target)
        alert.resolved_at = _at(5)

        assert dispatcher.dispatch_recovery(alert, rule, target) == []
        fp_state = dispatcher._noise.state_for(alert.fingerprint)
        assert fp_state.last_recovery_notified_at is None
        assert len(state.notifications) == 1

    def test_disabled_policy_recovery_after_trigger(self) -> None:
        dispatcher, state, target = _setup(AlertPolicy(enabled=False))
        rule = _rule()
        alert = _alert(state)
        dispatcher.dispatch_trigger(alert, rule, target)
        alert.resolved_at = _at(5)
        assert len(dispatcher.dispatch_recovery(alert, rule, target)) == 1


# ── Channel test ────────────────────────────────────────────────


class TestChannelTest:
    def test_valid_channel_queued(self) -> None:
        dispatcher, state, _ = _setup()
        record = dispatcher.dispatch_channel_test(state.channels[0], operator="alice", now=T0)
        assert record.status == NotificationStatus.QUEUED
        assert record.event_type == NotificationEventType.TEST
        assert record.alert_id is None
        assert record.payload["operator"] == "alice"
        assert state.notifications == [record]

    def test_disabled_channel_fails(self) -> None:
        dispatcher, state, _ = _setup()
        record = dispatcher.dispatch_channel_test(state.channels[3], now=T0)
        assert record.status == NotificationStatus.FAILED
        assert record.response == CHANNEL_DISABLED

    def test_misconfigured_channel_fails(self) -> None:
        dispatcher, state, _ = _setup()
        record = dispatcher.dispatch_channel_test(state.channels[2], now=T0)
        assert record.response == "invalid_webhook_url"


# ── Escalation ──────────────────────────────────────────────────


def _escalation_policy(**kw: Any) -> AlertPolicy:
    defaults: dict[str, Any] = {
        "escalations": [
            {"level": "E2", "after_minutes": 30, "repeat_minutes": 30, "actions": ["slack"]},
            {"level": "E1", "after_minutes": 10, "actions": ["ch_ops_hook"]},
        ]
    }
    defaults.update(kw)
    return AlertPolicy(**defaults)


class TestEscalation:
    def test_levels_fire_in_order(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        alert = _alert(state, last_notified_at=T0)

        early = dispatcher.process_escalation_tick(_at(5))
        assert (early.processed, early.sent) == (1, 0)

        first = dispatcher.process_escalation_tick(_at(10))
        assert first.sent == 1
        assert alert.last_escalation_level == "E1"
        assert state.notifications[-1].channel_id == "ch_ops_hook"
        assert state.notifications[-1].event_type == NotificationEventType.ESCALATION
        assert state.notifications[-1].payload["escalationLevel"] == "E1"

        assert dispatcher.process_escalation_tick(_at(20)).sent == 0

        second = dispatcher.process_escalation_tick(_at(30))
        assert second.sent == 1
        assert alert.last_escalation_level == "E2"

    def test_one_tick_escalates_every_due_alert(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        state.targets["api_b"] = Target(id="api_b", path="/v1/search")
        first = _alert(state, last_notified_at=T0)
        second = _alert(state, target_id="api_b", last_notified_at=T0)

        summary = dispatcher.process_escalation_tick(_at(11))

        assert (summary.processed, summary.sent) == (2, 2)
        assert first.last_escalation_level == "E1"
        assert second.last_escalation_level == "E1"
        assert {n.alert_id for n in state.notifications} == {first.id, second.id}

    def test_escalation_decision_logged(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        alert = _alert(state, last_notified_at=T0)

        with patch("apiwatch.notify.dispatcher.decision_logger") as mock_log:
            dispatcher.process_escalation_tick(_at(11))

        kwargs = mock_log.info.call_args.kwargs
        assert kwargs["decision"] == "escalated"
        assert kwargs["alert_id"] == alert.id
        assert kwargs["level"] == "P1"
        assert kwargs["escalation_level"] == "E1"
        assert kwargs["records"] == 1

    def test_repeat_interval(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        alert = _alert(state, last_notified_at=T0)
        dispatcher.process_escalation_tick(_at(30))
        assert dispatcher.process_escalation_tick(_at(45)).sent == 0
        assert dispatcher.process_escalation_tick(_at(60)).sent == 1
        marks = {m.level: m.last_sent_at for m in alert.escalations}
        assert marks == {"E1": _at(30), "E2": _at(60)}

    def test_escalation_does_not_touch_updated_at(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        alert = _alert(state, last_notified_at=T0)
        dispatcher.process_escalation_tick(_at(30))
        assert alert.updated_at == T0

    def test_requires_primary_notification(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        _alert(state)
        summary = dispatcher.process_escalation_tick(_at(60))
        assert (summary.processed, summary.sent) == (0, 0)

    def test_primary_not_required(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy(escalate_requires_primary=False))
        _alert(state)
        assert dispatcher.process_escalation_tick(_at(60)).sent == 2

    def test_escalation_disabled(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy(escalation_enabled=False))
        _alert(state, last_notified_at=T0)
        assert dispatcher.process_escalation_tick(_at(60)).processed == 0

    def test_policy_disabled(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy(enabled=False))
        _alert(state, last_notified_at=T0)
        assert dispatcher.process_escalation_tick(_at(60)).processed == 0

    def test_missing_rule_skipped(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy(), rules=[])
        _alert(state, last_notified_at=T0)
        assert dispatcher.process_escalation_tick(_at(60)).processed == 0

    def test_resolved_alerts_ignored(self) -> None:
        dispatcher, state, _ = _setup(_escalation_policy())
        alert = _alert(state, last_notified_at=T0)
        alert.status = AlertStatus.RESOLVED
        state.release(alert)
        assert dispatcher.process_escalation_tick(_at(60)).processed == 0
