"""Delivery worker — drains queued notification records with bounded retry."""

from __future__ import annotations

import datetime
import time

import structlog

from apiwatch.core.exceptions import DeliveryError
from apiwatch.core.state import EngineState
from apiwatch.core.types import NotificationRecord, NotificationStatus, utc_now
from apiwatch.notify.channels import ChannelRouter, ChannelSender, validate_channel_config
from apiwatch.notify.dispatcher import CHANNEL_DISABLED
from apiwatch.notify.types import DeliverySummary

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_DELAYS_SECS: tuple[float, ...] = (15.0, 60.0, 300.0)
MAX_BATCH = 200


class DeliveryWorker:
    """Sends queued records whose ``next_retry_at`` has passed.

    Per record: a missing, disabled or misconfigured channel fails the
    record without consuming an attempt. Otherwise the attempt counter is
    bumped and the sender called; a failure below ``max_attempts`` is
    rescheduled with the next backoff delay, at the cap it is final.
    """

    def __init__(
        self,
        state: EngineState,
        sender: ChannelSender | None = None,
        retry_delays_secs: list[float] | tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECS,
    ) -> None:
        self._state = state
        self._sender = sender or ChannelRouter()
        self._retry_delays = [max(float(d), 0.0) for d in retry_delays_secs] or [0.0]

    def retry_delay(self, attempts: int) -> float:
        """Backoff after the *attempts*-th failure (clamped to the last delay)."""
        index = min(max(attempts - 1, 0), len(self._retry_delays) - 1)
        return self._retry_delays[index]

    def due(self, now: datetime.datetime, limit: int) -> list[NotificationRecord]:
        return [
            r
            for r in self._state.notifications
            if r.status == NotificationStatus.QUEUED
            and r.channel_id
            and (r.next_retry_at is None or r.next_retry_at <= now)
        ][:limit]

    async def process_tick(
        self, now: datetime.datetime | None = None, limit: int = 20
    ) -> DeliverySummary:
        now = now or utc_now()
        limit = min(max(int(limit), 1), MAX_BATCH)
        summary = DeliverySummary()

        for record in self.due(now, limit):
            await self._process(record, now, summary)
            summary.processed += 1

        if summary.processed:
            logger.info(
                "delivery_tick_completed",
                processed=summary.processed,
                sent=summary.sent,
                failed=summary.failed,
                retried=summary.retried,
            )
        return summary

    async def _process(
        self,
        record: NotificationRecord,
        now: datetime.datetime,
        summary: DeliverySummary,
    ) -> None:
        channel = self._state.find_channel(record.channel_id or "")
        if channel is None:
            blocked: str | None = "channel_missing"
        elif not channel.enabled:
            blocked = CHANNEL_DISABLED
        else:
            blocked = validate_channel_config(channel)
        if blocked or channel is None:
            record.status = NotificationStatus.FAILED
            record.last_error = blocked
            record.response = blocked or "channel_missing"
            record.next_retry_at = None
            summary.failed += 1
            return

        record.attempts += 1
        record.last_attempt_at = now
        started = time.monotonic()

        try:
            outcome = await self._sender.deliver(channel, record)
        except DeliveryError as exc:
            record.last_latency_ms = round((time.monotonic() - started) * 1000, 1)
            self._on_failure(record, now, summary, error=str(exc), final_response=exc.response)
            return
        except Exception as exc:
            logger.exception("delivery_exception", notification_id=record.id)
            record.last_latency_ms = round((time.monotonic() - started) * 1000, 1)
            self._on_failure(
                record,
                now,
                summary,
                error=str(exc) or "delivery_exception",
                final_response="delivery_exception",
            )
            return

        record.last_latency_ms = round((time.monotonic() - started) * 1000, 1)
        record.status = NotificationStatus.SENT
        record.response = outcome.response or "accepted"
        record.last_error = None
        record.sent_at = now
        record.next_retry_at = None
        summary.sent += 1

    def _on_failure(
        self,
        record: NotificationRecord,
        now: datetime.datetime,
        summary: DeliverySummary,
        error: str,
        final_response: str,
    ) -> None:
        record.last_error = error
        if record.attempts < record.max_attempts:
            delay = self.retry_delay(record.attempts)
            record.status = NotificationStatus.QUEUED
            record.response = f"retry_in_{delay:g}s"
            record.next_retry_at = now + datetime.timedelta(seconds=delay)
            summary.retried += 1
            logger.info(
                "delivery_retry_scheduled",
                notification_id=record.id,
                attempts=record.attempts,
                delay_secs=delay,
                error=error,
            )
            return

        record.status = NotificationStatus.FAILED
        record.response = final_response
        record.next_retry_at = None
        summary.failed += 1
        logger.warning(
            "delivery_failed",
            notification_id=record.id,
            attempts=record.attempts,
            error=error,
        )

    async def close(self) -> None:
        await self._sender.close()
