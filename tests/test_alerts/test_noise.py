"""Tests for NoiseController — open gating, flap silencing, notification gates."""

from __future__ import annotations

import datetime

from apiwatch.alerts.noise import (
    DEDUPLICATED,
    NO_TRIGGER_SENT,
    RECOVERY_DISABLED,
    SILENCED_BY_FLAPPING,
    SUPPRESSED_BY_WINDOW,
    NoiseController,
)
from apiwatch.core.config import AlertPolicy

T0 = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.UTC)
FP = "r1:api_a"


def _secs(seconds: float) -> datetime.datetime:
    return T0 + datetime.timedelta(seconds=seconds)


def _noise(**kw: object) -> NoiseController:
    return NoiseController({}, AlertPolicy(**kw))


# ── Opens ───────────────────────────────────────────────────────


class TestCheckOpen:
    def test_fresh_fingerprint_allowed(self) -> None:
        decision = _noise().check_open(FP, T0)
        assert decision.allowed
        assert decision.reason is None

    def test_deduplicated_after_resolve(self) -> None:
        noise = _noise(dedup_window_seconds=180)
        noise.record_resolved(FP, T0)
        decision = noise.check_open(FP, _secs(179))
        assert not decision.allowed
        assert decision.reason == DEDUPLICATED
        assert noise.check_open(FP, _secs(180)).allowed

    def test_suppressed_after_recent_open(self) -> None:
        noise = _noise(dedup_window_seconds=0, suppress_window_seconds=120)
        noise.record_open(FP, T0)
        assert noise.check_open(FP, _secs(60)).reason == SUPPRESSED_BY_WINDOW
        assert noise.check_open(FP, _secs(121)).allowed

    def test_disabled_policy_allows(self) -> None:
        noise = _noise(enabled=False)
        noise.record_resolved(FP, T0)
        noise.record_open(FP, T0)
        assert noise.check_open(FP, _secs(1)).allowed

    def test_record_open_keeps_previous(self) -> None:
        noise = _noise()
        noise.record_open(FP, T0)
        noise.record_open(FP, _secs(30))
        state = noise.state_for(FP)
        assert state.previous_opened_at == T0
        assert state.last_opened_at == _secs(30)


# ── Flapping ────────────────────────────────────────────────────


class TestRegisterFlap:
    def test_silences_at_threshold(self) -> None:
        noise = _noise(flap_threshold=3, flap_window_minutes=20, auto_silence_minutes=30)
        assert noise.register_flap(FP, T0) is False
        assert noise.register_flap(FP, _secs(60)) is False
        assert noise.register_flap(FP, _secs(120)) is True
        assert noise.state_for(FP).silenced_until == _secs(120 + 30 * 60)

    def test_old_opens_pruned(self) -> None:
        noise = _noise(flap_threshold=3, flap_window_minutes=5)
        noise.register_flap(FP, T0)
        noise.register_flap(FP, _secs(60))
        assert noise.register_flap(FP, _secs(600)) is False
        assert noise.state_for(FP).opened_at_history == [_secs(600)]

    def test_zero_silence_never_silences(self) -> None:
        noise = _noise(flap_threshold=2, auto_silence_minutes=0)
        noise.register_flap(FP, T0)
        assert noise.register_flap(FP, _secs(1)) is False
        assert noise.state_for(FP).silenced_until is None

    def test_disabled_policy_records_history_without_silencing(self) -> None:
        noise = _noise(enabled=False, flap_threshold=2)
        assert noise.register_flap(FP, T0) is False
        assert noise.register_flap(FP, _secs(60)) is False
        assert noise.state_for(FP).opened_at_history == [T0, _secs(60)]
        assert noise.state_for(FP).silenced_until is None

    def test_reenabled_policy_counts_earlier_opens(self) -> None:
        noise = _noise(enabled=False, flap_threshold=3)
        noise.register_flap(FP, T0)
        noise.register_flap(FP, _secs(60))
        noise.policy = AlertPolicy(flap_threshold=3)
        assert noise.register_flap(FP, _secs(120)) is True
        assert noise.state_for(FP).silenced_until == _secs(120 + 30 * 60)


# ── Notification gates ──────────────────────────────────────────


class TestAdmitTrigger:
    def test_first_trigger_allowed_and_stamped(self) -> None:
        noise = _noise()
        assert noise.admit_trigger(FP, T0).allowed
        assert noise.state_for(FP).last_notified_at == T0

    def test_repeat_within_dedup_window(self) -> None:
        noise = _noise(dedup_window_seconds=180)
        noise.admit_trigger(FP, T0)
        decision = noise.admit_trigger(FP, _secs(100))
        assert decision.reason == DEDUPLICATED
        assert noise.state_for(FP).last_notified_at == T0

    def test_silenced_fingerprint(self) -> None:
        noise = _noise()
        noise.state_for(FP).silenced_until = _secs(600)
        assert noise.admit_trigger(FP, _secs(10)).reason == SILENCED_BY_FLAPPING
        assert noise.admit_trigger(FP, _secs(600)).allowed

    def test_suppressed_when_previous_open_recent(self) -> None:
        noise = _noise(dedup_window_seconds=0, suppress_window_seconds=120)
        noise.record_open(FP, T0)
        noise.record_open(FP, _secs(90))
        assert noise.admit_trigger(FP, _secs(90)).reason == SUPPRESSED_BY_WINDOW

    def test_single_open_not_suppressed(self) -> None:
        noise = _noise(suppress_window_seconds=120)
        noise.record_open(FP, T0)
        assert noise.admit_trigger(FP, T0).allowed

    def test_disabled_policy_still_stamps(self) -> None:
        noise = _noise(enabled=False)
        noise.state_for(FP).silenced_until = _secs(600)
        assert noise.admit_trigger(FP, T0).allowed
        assert noise.state_for(FP).last_notified_at == T0


class TestAdmitRecovery:
    def test_requires_prior_trigger(self) -> None:
        assert _noise().admit_recovery(FP, T0).reason == NO_TRIGGER_SENT

    def test_recovery_disabled(self) -> None:
        noise = _noise(send_recovery=False)
        noise.admit_trigger(FP, T0)
        assert noise.admit_recovery(FP, _secs(10)).reason == RECOVERY_DISABLED

    def test_disabled_policy_still_requires_prior_trigger(self) -> None:
        noise = _noise(enabled=False)
        assert noise.admit_recovery(FP, T0).reason == NO_TRIGGER_SENT

    def test_disabled_policy_honours_send_recovery(self) -> None:
        noise = _noise(enabled=False, send_recovery=False)
        noise.admit_trigger(FP, T0)
        assert noise.admit_recovery(FP, _secs(10)).reason == RECOVERY_DISABLED

    def test_allowed_after_trigger(self) -> None:
        noise = _noise()
        noise.admit_trigger(FP, T0)
        assert noise.admit_recovery(FP, _secs(10)).allowed
        assert noise.state_for(FP).last_recovery_notified_at == _secs(10)


class TestPolicyReplacement:
    def test_new_policy_applies_to_existing_state(self) -> None:
        noise = _noise(dedup_window_seconds=180)
        noise.record_resolved(FP, T0)
        noise.policy = AlertPolicy(dedup_window_seconds=0, suppress_window_seconds=0)
        assert noise.check_open(FP, _secs(10)).allowed
