"""Tests for PeriodicTask and EngineRunner."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from apiwatch.core.config import WorkersConfig
from apiwatch.engine.scheduler import EngineRunner, PeriodicTask


class TestPeriodicTask:
    async def test_run_once_counts(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("t", 1.0, tick)
        assert await task.run_once() is True
        assert task.stats == {"runs": 1, "skipped": 0, "errors": 0}
        tick.assert_awaited_once()

    async def test_overlapping_tick_skipped(self) -> None:
        gate = asyncio.Event()

        async def slow() -> None:
            await gate.wait()

        task = PeriodicTask("t", 1.0, slow)
        first = asyncio.create_task(task.run_once())
        await asyncio.sleep(0)

        assert await task.run_once() is False
        gate.set()
        assert await first is True
        assert task.stats == {"runs": 1, "skipped": 1, "errors": 0}

    async def test_errors_logged_and_counted(self) -> None:
        task = PeriodicTask("t", 1.0, AsyncMock(side_effect=RuntimeError("boom")))
        assert await task.run_once() is True
        assert task.stats["errors"] == 1
        assert await task.run_once() is True
        assert task.stats["errors"] == 2

    async def test_loop_runs_until_stopped(self) -> None:
        tick = AsyncMock()
        task = PeriodicTask("t", 0.01, tick)
        await task.start()
        assert task.running
        await asyncio.sleep(0.05)
        await task.stop()
        assert not task.running
        assert tick.await_count >= 2
        count = tick.await_count
        await asyncio.sleep(0.03)
        assert tick.await_count == count

    async def test_stop_waits_for_in_flight_tick(self) -> None:
        finished = []

        async def slow() -> None:
            await asyncio.sleep(0.05)
            finished.append(True)

        task = PeriodicTask("t", 10.0, slow)
        await task.start()
        await asyncio.sleep(0.01)
        await task.stop()
        assert finished == [True]

    async def test_start_is_idempotent(self) -> None:
        task = PeriodicTask("t", 10.0, AsyncMock())
        await task.start()
        await task.start()
        await asyncio.sleep(0.01)
        await task.stop()
        assert task.stats["runs"] == 1


class TestEngineRunner:
    def test_tasks_follow_config(self) -> None:
        runner = EngineRunner(AsyncMock(), WorkersConfig())
        assert [t.name for t in runner.tasks] == [
            "rule_sweep",
            "delivery",
            "escalation",
            "metric_queue",
        ]

    def test_disabled_tasks_omitted(self) -> None:
        config = WorkersConfig(delivery_enabled=False, metric_queue_enabled=False)
        runner = EngineRunner(AsyncMock(), config)
        assert [t.name for t in runner.tasks] == ["rule_sweep", "escalation"]

    async def test_batch_sizes_passed_through(self) -> None:
        engine = AsyncMock()
        config = WorkersConfig(delivery_batch_size=7, metric_queue_batch_size=90)
        tasks = {t.name: t for t in EngineRunner(engine, config).tasks}

        await tasks["delivery"].run_once()
        await tasks["metric_queue"].run_once()

        engine.process_notification_queue_tick.assert_awaited_once_with(limit=7)
        engine.drain_metric_queue.assert_awaited_once_with(limit=90)

    async def test_stop_shuts_engine_down(self) -> None:
        engine = AsyncMock()
        config = WorkersConfig(
            rule_sweep_interval_secs=10,
            delivery_interval_secs=10,
            escalation_interval_secs=10,
            metric_queue_interval_secs=10,
        )
        runner = EngineRunner(engine, config)
        await runner.start()
        assert all(t.running for t in runner.tasks)
        await asyncio.sleep(0.01)
        await runner.stop()
        assert not any(t.running for t in runner.tasks)
        engine.shutdown.assert_awaited_once()
        engine.run_rule_evaluation_sweep.assert_awaited()
