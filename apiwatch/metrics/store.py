"""MetricWindowStore — bounded, append-only log of samples per target."""

from __future__ import annotations

import datetime
from collections import deque

from apiwatch.core.types import MetricSample


class MetricWindowStore:
    """Capacity-bounded sample log with per-target indexing.

    Samples are kept in one global FIFO log; once ``capacity`` is exceeded
    the oldest samples are evicted regardless of target. A per-target deque
    mirrors the global order, so the globally-oldest sample is always the
    head of its target's deque and ``latest()`` is O(1).

    Usage::

        store = MetricWindowStore(capacity=30_000)
        store.ingest(sample)
        recent = store.query_window("api_orders", start, end)
    """

    def __init__(self, capacity: int = 30_000) -> None:
        self._capacity = max(capacity, 1)
        self._log: deque[MetricSample] = deque()
        self._by_target: dict[str, deque[MetricSample]] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._log)

    def ingest(self, sample: MetricSample) -> MetricSample:
        """Append *sample*, evicting the oldest entries beyond capacity."""
        self._log.append(sample)
        self._by_target.setdefault(sample.target_id, deque()).append(sample)

        while len(self._log) > self._capacity:
            evicted = self._log.popleft()
            bucket = self._by_target[evicted.target_id]
            bucket.popleft()
            if not bucket:
                del self._by_target[evicted.target_id]

        return sample

    def query_window(
        self,
        target_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
    ) -> list[MetricSample]:
        """Samples for *target_id* with ``start <= timestamp <= end``, insertion order."""
        bucket = self._by_target.get(target_id)
        if not bucket:
            return []
        return [s for s in bucket if start <= s.timestamp <= end]

    def latest(self, target_id: str) -> MetricSample | None:
        """Most recently ingested sample for *target_id*."""
        bucket = self._by_target.get(target_id)
        return bucket[-1] if bucket else None

    def count(self, target_id: str) -> int:
        bucket = self._by_target.get(target_id)
        return len(bucket) if bucket else 0

    def target_ids(self) -> list[str]:
        return list(self._by_target)

    def samples(self) -> list[MetricSample]:
        """Snapshot of the full log, oldest first."""
        return list(self._log)
