"""Convenience factory for wiring the engine from settings."""

from __future__ import annotations

from apiwatch.core.config import Settings
from apiwatch.core.state import EngineState
from apiwatch.core.types import parse_rule
from apiwatch.engine.core import AlertEngine
from apiwatch.engine.persistence import StatePersister
from apiwatch.engine.probes import ProbePool
from apiwatch.engine.scheduler import EngineRunner
from apiwatch.metrics.queue import MetricQueue
from apiwatch.metrics.store import MetricWindowStore
from apiwatch.notify.channels import ChannelRouter, ChannelSender, HttpSender


def build_state(settings: Settings) -> EngineState:
    """Build an EngineState from the seed data and caps in *settings*.

    Raises:
        ConfigurationError: if a seed rule is malformed.
    """
    caps = settings.engine
    return EngineState(
        targets={t.id: t.model_copy(deep=True) for t in settings.targets},
        rules=[parse_rule(r) for r in settings.rules],
        channels=[c.model_copy(deep=True) for c in settings.channels],
        policy=settings.alert_policy.model_copy(deep=True),
        store=MetricWindowStore(capacity=caps.metric_capacity),
        max_alerts=caps.max_alerts,
        max_notifications=caps.max_notifications,
        max_rule_hits=caps.max_rule_hits,
    )


def create_engine(
    settings: Settings,
    sender: ChannelSender | None = None,
    persister: StatePersister | None = None,
) -> AlertEngine:
    """Build a ready-to-run AlertEngine.

    Returns:
        The engine; pass it to :func:`create_runner` to schedule its ticks.
    """
    delivery = settings.delivery
    if sender is None:
        sender = ChannelRouter(
            http=HttpSender(
                default_timeout_ms=delivery.default_timeout_ms,
                min_timeout_ms=delivery.min_timeout_ms,
            )
        )
    return AlertEngine(
        build_state(settings),
        sender=sender,
        persister=persister,
        retry_delays_secs=delivery.retry_delays_secs,
        p99_min_gap_ms=settings.engine.p99_min_gap_ms,
        metric_queue=MetricQueue(max_size=settings.workers.metric_queue_max_size),
    )


def create_runner(engine: AlertEngine, settings: Settings) -> EngineRunner:
    """Build the periodic task runner for *engine*."""
    return EngineRunner(engine, settings.workers)


def create_probe_pool(engine: AlertEngine, settings: Settings) -> ProbePool:
    """Build a probe pool sized by ``workers.probe_concurrency``.

    Only needed when an external prober pushes pull-check results.
    """
    return ProbePool(engine, concurrency=settings.workers.probe_concurrency)
