"""Tests for domain types — rule parsing, clamps, camelCase serialisation."""

from __future__ import annotations

import datetime

import pytest

from apiwatch.core.exceptions import ConfigurationError
from apiwatch.core.types import (
    Aggregation,
    Alert,
    AlertStatus,
    BurnRateRule,
    Channel,
    ChannelConfig,
    ConsecutiveFailuresRule,
    DeliveryMode,
    MetricSample,
    MissingDataRule,
    Operator,
    Priority,
    Target,
    ThresholdRule,
    fingerprint,
    parse_rule,
)

T0 = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.UTC)


# ── Rule parsing ────────────────────────────────────────────────


class TestParseRule:
    def test_missing_rule_type_means_threshold(self) -> None:
        rule = parse_rule({"id": "r1", "name": "Errors"})
        assert isinstance(rule, ThresholdRule)
        assert rule.metric == "errorRate"
        assert rule.operator == Operator.GT
        assert rule.aggregation == Aggregation.LATEST
        assert rule.window_minutes == 5.0
        assert rule.min_samples == 1
        assert rule.priority == Priority.P2

    def test_snake_case_rule_type(self) -> None:
        rule = parse_rule({"id": "r1", "rule_type": "missing_data"})
        assert isinstance(rule, MissingDataRule)
        assert not hasattr(rule, "conditions")

    def test_burn_rate_clamps(self) -> None:
        rule = parse_rule(
            {
                "id": "r1",
                "ruleType": "burn_rate",
                "sloTarget": 80,
                "burnRateThreshold": 0.5,
                "shortWindowMinutes": 10,
                "longWindowMinutes": 5,
            }
        )
        assert isinstance(rule, BurnRateRule)
        assert rule.slo_target == 90.0
        assert rule.burn_rate_threshold == 1.0
        assert rule.long_window_minutes == 11.0

    def test_slo_upper_clamp(self) -> None:
        rule = parse_rule({"id": "r1", "ruleType": "burn_rate", "sloTarget": 120})
        assert rule.slo_target == 100.0

    def test_consecutive_failure_count_at_least_two(self) -> None:
        rule = parse_rule({"id": "r1", "rule_type": "consecutive_failures", "failure_count": 1})
        assert isinstance(rule, ConsecutiveFailuresRule)
        assert rule.failure_count == 2

    def test_negative_cooldown_clamped(self) -> None:
        rule = parse_rule({"id": "r1", "cooldownMinutes": -3})
        assert rule.cooldown_minutes == 0.0

    def test_unknown_rule_type_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_rule({"id": "r1", "ruleType": "anomaly"})

    def test_bad_operator_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_rule({"id": "r1", "operator": "~"})

    def test_conditions_parsed(self) -> None:
        rule = parse_rule(
            {
                "id": "r1",
                "conditionLogic": "any",
                "conditions": [{"metric": "latencyP95", "threshold": 900}],
            }
        )
        assert rule.conditions[0].metric == "latencyP95"
        assert rule.conditions[0].operator is None


class TestScope:
    def _target(self) -> Target:
        return Target(id="api_a", service="billing")

    def test_global(self) -> None:
        assert parse_rule({"id": "r"}).applies_to(self._target())

    def test_service(self) -> None:
        rule = parse_rule({"id": "r", "scope": {"type": "service", "value": "billing"}})
        other = parse_rule({"id": "r", "scope": {"type": "service", "value": "search"}})
        assert rule.applies_to(self._target())
        assert not other.applies_to(self._target())

    def test_target(self) -> None:
        rule = parse_rule({"id": "r", "scope": {"type": "target", "value": "api_a"}})
        other = parse_rule({"id": "r", "scope": {"type": "target", "value": "api_b"}})
        assert rule.applies_to(self._target())
        assert not other.applies_to(self._target())


# ── Serialisation ───────────────────────────────────────────────


class TestCamelCase:
    def test_metric_sample_dump(self) -> None:
        sample = MetricSample(target_id="api_a", timestamp=T0, status_code_5xx=3)
        data = sample.model_dump(by_alias=True)
        assert data["targetId"] == "api_a"
        assert data["statusCode5xx"] == 3
        assert "latencyP95" in data
        assert "errorRate" in data

    def test_metric_sample_is_frozen(self) -> None:
        sample = MetricSample(target_id="api_a", timestamp=T0)
        with pytest.raises(ValueError):
            sample.qps = 5  # type: ignore[misc]

    def test_channel_from_camel_case(self) -> None:
        channel = Channel.model_validate(
            {
                "id": "c1",
                "type": "slack",
                "config": {"webhookUrl": "https://hooks", "deliveryMode": "http"},
            }
        )
        assert channel.config.webhook_url == "https://hooks"
        assert channel.config.mode == DeliveryMode.HTTP


class TestChannelConfig:
    def test_mode_case_insensitive(self) -> None:
        assert ChannelConfig(delivery_mode="HTTP").mode == DeliveryMode.HTTP

    def test_unknown_mode_is_mock(self) -> None:
        assert ChannelConfig(delivery_mode="smtp").mode == DeliveryMode.MOCK

    def test_extra_keys_kept(self) -> None:
        cfg = ChannelConfig.model_validate({"region": "eu"})
        assert cfg.model_extra == {"region": "eu"}


class TestAlert:
    def _alert(self, **kw: object) -> Alert:
        defaults: dict[str, object] = {
            "rule_id": "r1",
            "target_id": "api_a",
            "level": Priority.P1,
            "triggered_at": T0,
            "updated_at": T0,
        }
        defaults.update(kw)
        return Alert(**defaults)  # type: ignore[arg-type]

    def test_fingerprint(self) -> None:
        assert self._alert().fingerprint == fingerprint("r1", "api_a") == "r1:api_a"

    def test_active_statuses(self) -> None:
        assert self._alert(status=AlertStatus.OPEN).active
        assert self._alert(status=AlertStatus.ACKNOWLEDGED).active
        assert not self._alert(status=AlertStatus.RESOLVED).active
        assert not self._alert(status=AlertStatus.CLOSED).active

    def test_add_event(self) -> None:
        alert = self._alert()
        alert.add_event("acknowledged", T0, by="alice", note="looking")
        assert alert.events[0].type == "acknowledged"
        assert alert.events[0].by == "alice"
        assert alert.events[0].id.startswith("event_")
