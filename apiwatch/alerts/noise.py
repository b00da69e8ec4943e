"""Notification noise control — dedup, suppression windows and flap silencing.

All decisions are keyed by the alert fingerprint ``"<ruleId>:<targetId>"``.
The per-fingerprint state is shared with the lifecycle manager (which gates
alert *opens*) and the dispatcher (which gates *notifications*).
"""

from __future__ import annotations

import datetime

import structlog
from pydantic import BaseModel

from apiwatch.core.config import AlertPolicy
from apiwatch.core.types import NoiseFingerprintState

logger = structlog.stdlib.get_logger()

DEDUPLICATED = "deduplicated"
SUPPRESSED_BY_WINDOW = "suppressed_by_window"
SILENCED_BY_FLAPPING = "silenced_by_flapping"
RECOVERY_DISABLED = "recovery_disabled"
NO_TRIGGER_SENT = "no_trigger_sent"


class NoiseDecision(BaseModel):
    """Result of a noise gate."""

    allowed: bool
    reason: str | None = None


_ALLOW = NoiseDecision(allowed=True)


def _within(
    now: datetime.datetime, since: datetime.datetime | None, seconds: float
) -> bool:
    if since is None or seconds <= 0:
        return False
    return (now - since).total_seconds() < seconds


class NoiseController:
    """Applies an :class:`AlertPolicy` to per-fingerprint noise state.

    Args:
        states: Mutable fingerprint → state map, usually owned by the engine.
        policy: Process-wide alert policy. May be replaced at runtime.
    """

    def __init__(
        self,
        states: dict[str, NoiseFingerprintState],
        policy: AlertPolicy | None = None,
    ) -> None:
        self.states = states
        self.policy = policy or AlertPolicy()

    def state_for(self, fingerprint: str) -> NoiseFingerprintState:
        state = self.states.get(fingerprint)
        if state is None:
            state = NoiseFingerprintState()
            self.states[fingerprint] = state
        return state

    # ── Alert opens ─────────────────────────────────────────────

    def check_open(self, fingerprint: str, now: datetime.datetime) -> NoiseDecision:
        """Gate for creating a new alert on *fingerprint*."""
        if not self.policy.enabled:
            return _ALLOW
        state = self.state_for(fingerprint)
        if _within(now, state.last_resolved_at, self.policy.dedup_window_seconds):
            return NoiseDecision(allowed=False, reason=DEDUPLICATED)
        if _within(now, state.last_opened_at, self.policy.suppress_window_seconds):
            return NoiseDecision(allowed=False, reason=SUPPRESSED_BY_WINDOW)
        return _ALLOW

    def record_open(self, fingerprint: str, now: datetime.datetime) -> None:
        state = self.state_for(fingerprint)
        state.previous_opened_at = state.last_opened_at
        state.last_opened_at = now

    def record_resolved(self, fingerprint: str, now: datetime.datetime) -> None:
        self.state_for(fingerprint).last_resolved_at = now

    # ── Notifications ───────────────────────────────────────────

    def register_flap(self, fingerprint: str, now: datetime.datetime) -> bool:
        """Count an open towards flap detection. Returns True if silence was applied.

        The open history is kept even while the policy is disabled; only the
        silence itself depends on ``policy.enabled``.
        """
        state = self.state_for(fingerprint)
        horizon = now - datetime.timedelta(minutes=self.policy.flap_window_minutes)
        history = [t for t in state.opened_at_history if t >= horizon]
        history.append(now)
        state.opened_at_history = history

        if not self.policy.enabled:
            return False
        threshold = max(self.policy.flap_threshold, 2)
        if len(history) >= threshold and self.policy.auto_silence_minutes > 0:
            state.silenced_until = now + datetime.timedelta(
                minutes=self.policy.auto_silence_minutes
            )
            logger.warning(
                "fingerprint_silenced",
                fingerprint=fingerprint,
                opens=len(history),
                silenced_until=state.silenced_until.isoformat(),
            )
            return True
        return False

    def admit_trigger(self, fingerprint: str, now: datetime.datetime) -> NoiseDecision:
        """Gate for a trigger notification. Stamps ``last_notified_at`` when allowed."""
        state = self.state_for(fingerprint)
        if self.policy.enabled:
            if state.silenced_until is not None and now < state.silenced_until:
                return NoiseDecision(allowed=False, reason=SILENCED_BY_FLAPPING)
            if _within(now, state.last_notified_at, self.policy.dedup_window_seconds):
                return NoiseDecision(allowed=False, reason=DEDUPLICATED)
            if _within(
                now, state.previous_opened_at, self.policy.suppress_window_seconds
            ):
                return NoiseDecision(allowed=False, reason=SUPPRESSED_BY_WINDOW)
        state.last_notified_at = now
        return _ALLOW

    def admit_recovery(self, fingerprint: str, now: datetime.datetime) -> NoiseDecision:
        """Gate for a recovery notification. Applies whether or not the policy is enabled."""
        state = self.state_for(fingerprint)
        if not self.policy.send_recovery:
            return NoiseDecision(allowed=False, reason=RECOVERY_DISABLED)
        if state.last_notified_at is None:
            return NoiseDecision(allowed=False, reason=NO_TRIGGER_SENT)
        state.last_recovery_notified_at = now
        return _ALLOW
