"""Core module — config, types, errors, logging."""

from apiwatch.core.config import (
    AlertPolicy,
    EscalationLevel,
    Settings,
    get_settings,
    load_settings,
    reset_settings,
)
from apiwatch.core.exceptions import (
    AlertNotFoundError,
    ConfigurationError,
    DataInsufficiencyError,
    DeliveryError,
    EngineError,
    InvalidTransitionError,
    UnknownTargetError,
)
from apiwatch.core.logging import setup_logging
from apiwatch.core.types import (
    Alert,
    AlertStatus,
    Channel,
    Evaluation,
    MetricSample,
    NotificationRecord,
    Rule,
    Target,
    parse_rule,
)

__all__ = [
    "Alert",
    "AlertNotFoundError",
    "AlertPolicy",
    "AlertStatus",
    "Channel",
    "ConfigurationError",
    "DataInsufficiencyError",
    "DeliveryError",
    "EngineError",
    "EscalationLevel",
    "Evaluation",
    "InvalidTransitionError",
    "MetricSample",
    "NotificationRecord",
    "Rule",
    "Settings",
    "Target",
    "UnknownTargetError",
    "get_settings",
    "load_settings",
    "parse_rule",
    "reset_settings",
    "setup_logging",
]
