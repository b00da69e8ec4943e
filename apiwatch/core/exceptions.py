"""Exception hierarchy for the alert engine."""

from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""


class ConfigurationError(EngineError):
    """A rule or channel definition is malformed (unknown metric, bad shape)."""

    def __init__(self, message: str, reason: str = "invalid_configuration") -> None:
        super().__init__(message)
        self.reason = reason


class DataInsufficiencyError(EngineError):
    """Too few samples in the evaluation window to decide."""

    reason = "insufficient_samples"

    def __init__(self, message: str, sample_count: int = 0) -> None:
        super().__init__(message)
        self.sample_count = sample_count


class DeliveryError(EngineError):
    """A notification delivery attempt failed (network, timeout, non-2xx)."""

    def __init__(self, message: str, response: str | None = None) -> None:
        super().__init__(message)
        self.response = response or message


class UnknownTargetError(EngineError):
    """A metric references a target that does not exist."""


class AlertNotFoundError(EngineError):
    """No alert with the requested id exists."""


class InvalidTransitionError(EngineError):
    """A manual alert transition is not allowed from the current status."""
