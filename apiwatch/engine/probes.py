"""ProbePool — bounded-concurrency runner for outbound health probes."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Any

import structlog

from apiwatch.core.exceptions import EngineError
from apiwatch.core.types import BatchIngestSummary

if TYPE_CHECKING:
    from apiwatch.engine.core import AlertEngine

logger = structlog.stdlib.get_logger()

# A probe performs one check and returns a raw metric payload with ``targetId``.
ProbeFn = Callable[[], Awaitable[dict[str, Any]]]


class ProbePool:
    """Runs probes with at most ``concurrency`` in flight.

    Each completed probe's payload goes through ``engine.ingest_metric``,
    which takes the engine lock, so probe I/O overlaps but state writes
    stay serialized.
    """

    def __init__(self, engine: AlertEngine, concurrency: int = 6) -> None:
        self._engine = engine
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def run(self, probes: Iterable[ProbeFn]) -> BatchIngestSummary:
        summary = BatchIngestSummary()
        await asyncio.gather(*(self._run_one(probe, summary) for probe in probes))
        return summary

    async def _run_one(self, probe: ProbeFn, summary: BatchIngestSummary) -> None:
        async with self._semaphore:
            try:
                raw = await probe()
            except Exception as exc:
                logger.warning("probe_failed", error=str(exc))
                summary.errors.append(f"probe_failed: {exc}")
                return

        try:
            result = await self._engine.ingest_metric(raw, source="pull-check")
        except EngineError as exc:
            summary.errors.append(str(exc))
            return
        summary.ingested += 1
        summary.created_alerts += len(result.created_alerts)
        summary.resolved_alerts += len(result.resolved_alerts)
