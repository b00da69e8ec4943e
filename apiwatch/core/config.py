"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from apiwatch.core.types import CamelModel, Channel, Target

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


def _clamp_int(value: Any, fallback: int, lo: int, hi: int) -> int:
    try:
        normalized = int(float(value))
    except (TypeError, ValueError):
        return fallback
    return min(max(normalized, lo), hi)


class EscalationLevel(CamelModel):
    """One follow-up notification tier."""

    level: str = ""
    after_minutes: int = 15
    repeat_minutes: int = 0
    actions: list[str] = Field(default_factory=list)

    @field_validator("after_minutes", mode="before")
    @classmethod
    def _clamp_after(cls, v: Any) -> int:
        return _clamp_int(v, 15, 1, 43_200)

    @field_validator("repeat_minutes", mode="before")
    @classmethod
    def _clamp_repeat(cls, v: Any) -> int:
        return _clamp_int(v, 0, 0, 43_200)


class AlertPolicy(CamelModel):
    """Process-wide noise control and escalation policy."""

    enabled: bool = True
    dedup_window_seconds: int = 180
    suppress_window_seconds: int = 120
    flap_window_minutes: int = 20
    flap_threshold: int = 3
    auto_silence_minutes: int = 30
    send_recovery: bool = True
    escalation_enabled: bool = True
    escalate_requires_primary: bool = True
    escalations: list[EscalationLevel] = Field(default_factory=list)

    @field_validator("dedup_window_seconds", mode="before")
    @classmethod
    def _clamp_dedup(cls, v: Any) -> int:
        return _clamp_int(v, 180, 0, 86_400)

    @field_validator("suppress_window_seconds", mode="before")
    @classmethod
    def _clamp_suppress(cls, v: Any) -> int:
        return _clamp_int(v, 120, 0, 86_400)

    @field_validator("flap_window_minutes", mode="before")
    @classmethod
    def _clamp_flap_window(cls, v: Any) -> int:
        return _clamp_int(v, 20, 1, 1_440)

    @field_validator("flap_threshold", mode="before")
    @classmethod
    def _clamp_flap_threshold(cls, v: Any) -> int:
        return _clamp_int(v, 3, 2, 100)

    @field_validator("auto_silence_minutes", mode="before")
    @classmethod
    def _clamp_silence(cls, v: Any) -> int:
        return _clamp_int(v, 30, 0, 43_200)

    @field_validator("escalations")
    @classmethod
    def _normalize_escalations(cls, v: list[EscalationLevel]) -> list[EscalationLevel]:
        levels = []
        for index, item in enumerate(v):
            if not item.actions:
                continue
            if not item.level:
                item = item.model_copy(update={"level": f"E{index + 1}"})
            levels.append(item)
        return levels

    def ordered_escalations(self) -> list[EscalationLevel]:
        """Escalation levels in processing order (ascending ``after_minutes``)."""
        return sorted(self.escalations, key=lambda e: e.after_minutes)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    decision_log_path: str | None = None


class EngineConfig(BaseModel):
    """In-memory capacity caps and ingestion tuning."""

    metric_capacity: int = 30_000
    max_alerts: int = 10_000
    max_notifications: int = 5_000
    max_rule_hits: int = 5_000
    p99_min_gap_ms: float = 30.0


class WorkersConfig(BaseModel):
    """Periodic task intervals and batch sizes."""

    rule_sweep_enabled: bool = True
    rule_sweep_interval_secs: float = 15.0
    delivery_enabled: bool = True
    delivery_interval_secs: float = 3.0
    delivery_batch_size: int = 20
    escalation_enabled: bool = True
    escalation_interval_secs: float = 30.0
    metric_queue_enabled: bool = True
    metric_queue_interval_secs: float = 2.0
    metric_queue_batch_size: int = 500
    metric_queue_max_size: int = 50_000
    probe_concurrency: int = 6


class DeliveryConfig(BaseModel):
    """Notification retry schedule and HTTP timeouts."""

    retry_delays_secs: list[float] = [15.0, 60.0, 300.0]
    default_timeout_ms: int = 8_000
    min_timeout_ms: int = 1_000

    @property
    def max_attempts(self) -> int:
        return len(self.retry_delays_secs) + 1


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    engine: EngineConfig = EngineConfig()
    workers: WorkersConfig = WorkersConfig()
    delivery: DeliveryConfig = DeliveryConfig()
    alert_policy: AlertPolicy = AlertPolicy()
    targets: list[Target] = []
    rules: list[dict[str, Any]] = []
    channels: list[Channel] = []


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
