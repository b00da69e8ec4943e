"""In-memory engine state — the single mutable aggregate behind the engine lock."""

from __future__ import annotations

import copy
from collections import deque
from dataclasses import dataclass, field

from apiwatch.core.config import AlertPolicy
from apiwatch.core.types import (
    Alert,
    Channel,
    NoiseFingerprintState,
    NotificationRecord,
    Rule,
    RuleHit,
    Target,
    fingerprint,
)
from apiwatch.metrics.store import MetricWindowStore


@dataclass
class EngineState:
    """Targets, rules, alerts, channels, notifications and noise state.

    Alerts and notifications are kept oldest first and trimmed from the front
    once over their cap. Rule hits are kept newest first.
    """

    targets: dict[str, Target] = field(default_factory=dict)
    rules: list[Rule] = field(default_factory=list)
    channels: list[Channel] = field(default_factory=list)
    policy: AlertPolicy = field(default_factory=AlertPolicy)
    store: MetricWindowStore = field(default_factory=MetricWindowStore)
    alerts: list[Alert] = field(default_factory=list)
    notifications: list[NotificationRecord] = field(default_factory=list)
    noise: dict[str, NoiseFingerprintState] = field(default_factory=dict)
    max_alerts: int = 10_000
    max_notifications: int = 5_000
    max_rule_hits: int = 5_000
    rule_hits: deque[RuleHit] = field(init=False)
    _active: dict[str, Alert] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.rule_hits = deque(maxlen=max(self.max_rule_hits, 1))
        self._active = {a.fingerprint: a for a in self.alerts if a.active}

    # ── Alerts ──────────────────────────────────────────────────

    def active_alert(self, rule_id: str, target_id: str) -> Alert | None:
        alert = self._active.get(fingerprint(rule_id, target_id))
        if alert is not None and not alert.active:
            self._active.pop(alert.fingerprint, None)
            return None
        return alert

    def active_alerts(self) -> list[Alert]:
        return [a for a in self._active.values() if a.active]

    def add_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)
        if alert.active:
            self._active[alert.fingerprint] = alert
        overflow = len(self.alerts) - self.max_alerts
        if overflow > 0:
            for dropped in self.alerts[:overflow]:
                if self._active.get(dropped.fingerprint) is dropped:
                    del self._active[dropped.fingerprint]
            del self.alerts[:overflow]

    def release(self, alert: Alert) -> None:
        """Drop *alert* from the active index after a terminal transition."""
        if self._active.get(alert.fingerprint) is alert:
            del self._active[alert.fingerprint]

    def find_alert(self, alert_id: str) -> Alert | None:
        return next((a for a in reversed(self.alerts) if a.id == alert_id), None)

    # ── Rules, targets, channels ────────────────────────────────

    def find_rule(self, rule_id: str) -> Rule | None:
        return next((r for r in self.rules if r.id == rule_id), None)

    def find_channel(self, channel_id: str) -> Channel | None:
        return next((c for c in self.channels if c.id == channel_id), None)

    # ── Notifications & audit ───────────────────────────────────

    def add_notification(self, record: NotificationRecord) -> None:
        self.notifications.append(record)
        overflow = len(self.notifications) - self.max_notifications
        if overflow > 0:
            del self.notifications[:overflow]

    def record_hit(self, hit: RuleHit) -> None:
        self.rule_hits.appendleft(hit)

    def copy(self) -> EngineState:
        """Deep copy for readers outside the engine lock."""
        return copy.deepcopy(self)
