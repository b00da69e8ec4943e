"""Result types for the notification subsystem."""

from __future__ import annotations

from pydantic import BaseModel


class DeliveryOutcome(BaseModel):
    """A successful transport call. Failures raise DeliveryError instead."""

    response: str
    status_code: int | None = None


class DeliverySummary(BaseModel):
    """Counters for one delivery worker tick."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0


class EscalationSummary(BaseModel):
    """Counters for one escalation tick."""

    processed: int = 0
    sent: int = 0
