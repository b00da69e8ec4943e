"""AlertEngine — the serialized facade over metrics, rules, alerts and notifications."""

from __future__ import annotations

import asyncio
import contextlib
import datetime
from collections.abc import AsyncIterator, Callable
from typing import Any

import structlog

from apiwatch.alerts.lifecycle import AlertLifecycleManager
from apiwatch.alerts.noise import NoiseController
from apiwatch.core.config import AlertPolicy
from apiwatch.core.exceptions import ConfigurationError, EngineError, UnknownTargetError
from apiwatch.core.state import EngineState
from apiwatch.core.types import (
    Alert,
    BatchIngestSummary,
    Channel,
    Evaluation,
    EvaluationResult,
    IngestResult,
    NotificationRecord,
    Rule,
    parse_rule,
    utc_now,
)
from apiwatch.engine.persistence import NullPersister, StatePersister
from apiwatch.metrics.ingest import build_sample, target_id_of
from apiwatch.metrics.queue import MetricQueue
from apiwatch.notify.channels import ChannelSender
from apiwatch.notify.dispatcher import NotificationDispatcher
from apiwatch.notify.types import DeliverySummary, EscalationSummary
from apiwatch.notify.worker import DEFAULT_RETRY_DELAYS_SECS, DeliveryWorker

logger = structlog.stdlib.get_logger()

MISSING_TARGET_ID = "Missing targetId in one metric item."

Clock = Callable[[], datetime.datetime]


class AlertEngine:
    """Owns an :class:`EngineState` and serializes every write to it.

    All public operations run inside :meth:`mutate`, one ``asyncio.Lock``
    guarding the whole state. Alert transitions reach the dispatcher via
    the lifecycle hooks; the delivery worker and escalation tick are driven
    externally (see :class:`~apiwatch.engine.scheduler.EngineRunner`).

    Usage::

        engine = AlertEngine(state)
        result = await engine.ingest_metric({"targetId": "api_orders", "errorRate": 7.5})
        await engine.process_notification_queue_tick()
        snap = await engine.snapshot()
    """

    def __init__(
        self,
        state: EngineState,
        *,
        sender: ChannelSender | None = None,
        persister: StatePersister | None = None,
        retry_delays_secs: list[float] | tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECS,
        p99_min_gap_ms: float = 30.0,
        metric_queue: MetricQueue | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._state = state
        self._lock = asyncio.Lock()
        self._persister: StatePersister = persister or NullPersister()
        self._p99_min_gap_ms = p99_min_gap_ms
        self._clock = clock

        self.noise = NoiseController(state.noise, state.policy)
        self.dispatcher = NotificationDispatcher(
            state, self.noise, max_attempts=len(retry_delays_secs) + 1
        )
        self.lifecycle = AlertLifecycleManager(state, self.noise, hooks=self.dispatcher)
        self.worker = DeliveryWorker(state, sender, retry_delays_secs)
        self.queue = metric_queue if metric_queue is not None else MetricQueue()

    @property
    def state(self) -> EngineState:
        """Live state. Only touch it inside :meth:`mutate`."""
        return self._state

    @contextlib.asynccontextmanager
    async def mutate(self) -> AsyncIterator[EngineState]:
        """Exclusive write access to the state; schedules a persist afterwards."""
        async with self._lock:
            try:
                yield self._state
            finally:
                self._persister.schedule(self._state)

    # ── Ingestion ───────────────────────────────────────────────

    async def ingest_metric(
        self,
        raw: dict[str, Any],
        now: datetime.datetime | None = None,
        source: str = "api",
    ) -> IngestResult:
        """Store one sample and evaluate the owning target's rules.

        Raises:
            UnknownTargetError: if ``targetId`` is missing or unknown.
        """
        async with self.mutate():
            return self._ingest(raw, now or self._clock(), source)

    async def ingest_metrics_batch(
        self,
        items: list[dict[str, Any]],
        now: datetime.datetime | None = None,
        source: str = "api",
    ) -> BatchIngestSummary:
        """Ingest many samples under one lock; failures are collected, not raised."""
        summary = BatchIngestSummary()
        async with self.mutate():
            now = now or self._clock()
            for raw in items:
                if not target_id_of(raw):
                    summary.errors.append(MISSING_TARGET_ID)
                    continue
                try:
                    result = self._ingest(raw, now, source)
                except EngineError as exc:
                    summary.errors.append(str(exc))
                    continue
                except Exception as exc:
                    logger.exception("metric_ingest_failed", target_id=target_id_of(raw))
                    summary.errors.append(str(exc))
                    continue
                summary.ingested += 1
                summary.created_alerts += len(result.created_alerts)
                summary.resolved_alerts += len(result.resolved_alerts)
        return summary

    async def drain_metric_queue(self, limit: int = 500) -> BatchIngestSummary:
        """Feed up to *limit* queued payloads through batch ingestion."""
        items = self.queue.drain(limit)
        if not items:
            return BatchIngestSummary()
        summary = await self.ingest_metrics_batch(items, source="queue")
        logger.info(
            "metric_queue_drained",
            drained=len(items),
            ingested=summary.ingested,
            errors=len(summary.errors),
            remaining=len(self.queue),
        )
        return summary

    def _ingest(self, raw: dict[str, Any], now: datetime.datetime, source: str) -> IngestResult:
        target_id = target_id_of(raw)
        if not target_id:
            raise UnknownTargetError(MISSING_TARGET_ID)
        target = self._state.targets.get(target_id)
        if target is None:
            raise UnknownTargetError(f"Target not found: {target_id}")

        sample = self._state.store.ingest(
            build_sample(target, raw, now, p99_min_gap_ms=self._p99_min_gap_ms)
        )
        evaluation = self.lifecycle.evaluate_target(target, sample.timestamp, source=source)
        return IngestResult(
            metric=sample,
            created_alerts=evaluation.created_alerts,
            resolved_alerts=evaluation.resolved_alerts,
            evaluated_rules=evaluation.evaluated_rules,
        )

    # ── Evaluation ──────────────────────────────────────────────

    async def run_rule_evaluation_sweep(
        self, now: datetime.datetime | None = None
    ) -> EvaluationResult:
        async with self.mutate():
            return self.lifecycle.sweep(now or self._clock())

    async def preview_rule_evaluation(
        self,
        rule: Rule | dict[str, Any],
        target_id: str,
        reference_time: datetime.datetime | None = None,
    ) -> Evaluation:
        """Dry-run *rule* for *target_id*. No hits, alerts or notifications."""
        if isinstance(rule, dict):
            rule = parse_rule(rule)
        async with self._lock:
            return self.lifecycle.preview(rule, target_id, reference_time or self._clock())

    # ── Notifications ───────────────────────────────────────────

    async def process_notification_queue_tick(
        self, now: datetime.datetime | None = None, limit: int = 20
    ) -> DeliverySummary:
        async with self.mutate():
            return await self.worker.process_tick(now or self._clock(), limit)

    async def process_escalation_tick(
        self, now: datetime.datetime | None = None
    ) -> EscalationSummary:
        async with self.mutate():
            return self.dispatcher.process_escalation_tick(now or self._clock())

    async def test_channel(
        self, channel: Channel | str, operator: str = "manual"
    ) -> NotificationRecord:
        """Queue a test notification for a channel (object or id)."""
        async with self.mutate():
            if isinstance(channel, str):
                found = self._state.find_channel(channel)
                if found is None:
                    raise ConfigurationError(
                        f"Channel not found: {channel}", reason="channel_missing"
                    )
                channel = found
            record = self.dispatcher.dispatch_channel_test(channel, operator, self._clock())
            return record.model_copy(deep=True)

    # ── Manual alert transitions ────────────────────────────────

    async def acknowledge_alert(self, alert_id: str, by: str, note: str = "") -> Alert:
        async with self.mutate():
            alert = self.lifecycle.acknowledge(alert_id, by, note, self._clock())
            return alert.model_copy(deep=True)

    async def unacknowledge_alert(self, alert_id: str, by: str, note: str = "") -> Alert:
        async with self.mutate():
            alert = self.lifecycle.unacknowledge(alert_id, by, note, self._clock())
            return alert.model_copy(deep=True)

    async def close_alert(self, alert_id: str, by: str, note: str = "") -> Alert:
        async with self.mutate():
            alert = self.lifecycle.close(alert_id, by, note, self._clock())
            return alert.model_copy(deep=True)

    # ── Policy ──────────────────────────────────────────────────

    async def update_alert_policy(self, policy: AlertPolicy | dict[str, Any]) -> AlertPolicy:
        if isinstance(policy, dict):
            policy = AlertPolicy.model_validate(policy)
        async with self.mutate() as state:
            state.policy = policy
            self.noise.policy = policy
        logger.info("alert_policy_updated", enabled=policy.enabled)
        return policy

    # ── Readers & lifecycle ─────────────────────────────────────

    async def snapshot(self) -> EngineState:
        """Deep copy of the last committed state."""
        async with self._lock:
            return self._state.copy()

    async def shutdown(self) -> None:
        """Flush the persister and release transports."""
        async with self._lock:
            await self._persister.flush(self._state)
        await self.worker.close()
        logger.info("engine_shutdown")
