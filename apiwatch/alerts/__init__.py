"""Alert lifecycle and notification noise control."""

from apiwatch.alerts.lifecycle import AlertHooks, AlertLifecycleManager
from apiwatch.alerts.noise import NoiseController, NoiseDecision

__all__ = [
    "AlertHooks",
    "AlertLifecycleManager",
    "NoiseController",
    "NoiseDecision",
]
