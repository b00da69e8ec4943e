"""Notification dispatch, channel transports and the delivery worker."""

from apiwatch.notify.channels import (
    ChannelRouter,
    ChannelSender,
    HttpSender,
    MockSender,
    validate_channel_config,
)
from apiwatch.notify.dispatcher import NotificationDispatcher
from apiwatch.notify.types import DeliveryOutcome, DeliverySummary, EscalationSummary
from apiwatch.notify.worker import DeliveryWorker

__all__ = [
    "ChannelRouter",
    "ChannelSender",
    "DeliveryOutcome",
    "DeliverySummary",
    "DeliveryWorker",
    "EscalationSummary",
    "HttpSender",
    "MockSender",
    "NotificationDispatcher",
    "validate_channel_config",
]
