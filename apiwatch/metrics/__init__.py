"""Metric storage and ingestion."""

from apiwatch.metrics.ingest import build_sample, parse_timestamp
from apiwatch.metrics.queue import MetricQueue
from apiwatch.metrics.store import MetricWindowStore

__all__ = [
    "MetricQueue",
    "MetricWindowStore",
    "build_sample",
    "parse_timestamp",
]
