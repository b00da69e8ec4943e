"""Periodic background tasks and the runner that owns them."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import structlog

from apiwatch.core.config import WorkersConfig

if TYPE_CHECKING:
    from apiwatch.engine.core import AlertEngine

logger = structlog.stdlib.get_logger()

TickFn = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """Runs *tick* every *interval_secs* on a background task.

    A tick that is still running when the next one is due is not overlapped:
    :meth:`run_once` returns False and counts a skip instead. Tick errors
    are logged and the loop continues.

    Usage::

        task = PeriodicTask("rule_sweep", 15.0, engine.run_rule_evaluation_sweep)
        await task.start()
        # ...
        await task.stop()
    """

    def __init__(self, name: str, interval_secs: float, tick: TickFn) -> None:
        self._name = name
        self._interval_secs = max(interval_secs, 0.01)
        self._tick = tick
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._in_flight = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._runs = 0
        self._skipped = 0
        self._errors = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {"runs": self._runs, "skipped": self._skipped, "errors": self._errors}

    async def run_once(self) -> bool:
        """Run one tick now. Returns False if a tick was already in flight."""
        if self._in_flight:
            self._skipped += 1
            logger.debug("periodic_task_skipped", task=self._name)
            return False
        self._in_flight = True
        self._idle.clear()
        try:
            await self._tick()
            self._runs += 1
        except Exception:
            self._errors += 1
            logger.exception("periodic_task_error", task=self._name)
        finally:
            self._in_flight = False
            self._idle.set()
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self._name}")
        logger.info("periodic_task_started", task=self._name, interval_secs=self._interval_secs)

    async def stop(self) -> None:
        """Stop scheduling and wait for an in-flight tick to finish."""
        self._running = False
        await self._idle.wait()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("periodic_task_stopped", task=self._name, **self.stats)

    async def _loop(self) -> None:
        while self._running:
            await self.run_once()
            try:
                await asyncio.sleep(self._interval_secs)
            except asyncio.CancelledError:
                break


class EngineRunner:
    """Starts and stops the engine's periodic tasks.

    On :meth:`stop` scheduling halts, in-flight ticks finish, then the engine
    flushes its persister and closes its transports.
    """

    def __init__(self, engine: AlertEngine, config: WorkersConfig | None = None) -> None:
        self._engine = engine
        self._config = config or WorkersConfig()
        self._tasks = self._build_tasks()

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def _build_tasks(self) -> list[PeriodicTask]:
        cfg = self._config
        engine = self._engine
        tasks = []
        if cfg.rule_sweep_enabled:
            tasks.append(
                PeriodicTask(
                    "rule_sweep",
                    cfg.rule_sweep_interval_secs,
                    engine.run_rule_evaluation_sweep,
                )
            )
        if cfg.delivery_enabled:
            tasks.append(
                PeriodicTask(
                    "delivery",
                    cfg.delivery_interval_secs,
                    lambda: engine.process_notification_queue_tick(
                        limit=cfg.delivery_batch_size
                    ),
                )
            )
        if cfg.escalation_enabled:
            tasks.append(
                PeriodicTask(
                    "escalation",
                    cfg.escalation_interval_secs,
                    engine.process_escalation_tick,
                )
            )
        if cfg.metric_queue_enabled:
            tasks.append(
                PeriodicTask(
                    "metric_queue",
                    cfg.metric_queue_interval_secs,
                    lambda: engine.drain_metric_queue(limit=cfg.metric_queue_batch_size),
                )
            )
        return tasks

    async def start(self) -> None:
        for task in self._tasks:
            await task.start()
        logger.info("engine_runner_started", tasks=[t.name for t in self._tasks])

    async def stop(self) -> None:
        for task in self._tasks:
            try:
                await task.stop()
            except Exception:
                logger.exception("periodic_task_stop_error", task=task.name)
        await self._engine.shutdown()
        logger.info("engine_runner_stopped")
