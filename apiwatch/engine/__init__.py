"""Engine facade, periodic scheduling and probe execution."""

from apiwatch.core.state import EngineState
from apiwatch.engine.core import AlertEngine
from apiwatch.engine.factory import (
    build_state,
    create_engine,
    create_probe_pool,
    create_runner,
)
from apiwatch.engine.persistence import NullPersister, StatePersister
from apiwatch.engine.probes import ProbePool
from apiwatch.engine.scheduler import EngineRunner, PeriodicTask

__all__ = [
    "AlertEngine",
    "EngineRunner",
    "EngineState",
    "NullPersister",
    "PeriodicTask",
    "ProbePool",
    "StatePersister",
    "build_state",
    "create_engine",
    "create_probe_pool",
    "create_runner",
]
