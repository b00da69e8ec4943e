"""Bounded FIFO buffer between push producers and the ingestion task."""

from __future__ import annotations

from collections import deque
from typing import Any

import structlog

logger = structlog.stdlib.get_logger()


class MetricQueue:
    """Accepts raw metric payloads and drops overflow beyond ``max_size``."""

    def __init__(self, max_size: int = 50_000) -> None:
        self._max_size = max(max_size, 1)
        self._items: deque[dict[str, Any]] = deque()
        self._dropped_total = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def dropped_total(self) -> int:
        return self._dropped_total

    def enqueue(self, items: list[dict[str, Any]]) -> dict[str, int]:
        """Queue as many *items* as fit. Returns ``{"queued", "dropped"}``."""
        free = max(self._max_size - len(self._items), 0)
        accepted = items[:free]
        dropped = len(items) - len(accepted)
        self._items.extend(accepted)
        if dropped:
            self._dropped_total += dropped
            logger.warning("metric_queue_full", dropped=dropped, size=len(self._items))
        return {"queued": len(accepted), "dropped": dropped}

    def drain(self, limit: int = 1_000) -> list[dict[str, Any]]:
        """Remove and return up to *limit* items, oldest first."""
        size = min(max(limit, 1), len(self._items))
        return [self._items.popleft() for _ in range(size)]
