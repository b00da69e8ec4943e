"""State persistence contract. Writing state to disk lives outside the engine."""

from __future__ import annotations

from typing import Protocol

from apiwatch.core.state import EngineState


class StatePersister(Protocol):
    """Receives engine state after mutations and on shutdown."""

    def schedule(self, state: EngineState) -> None:
        """Called after every committed mutation; implementations debounce."""
        ...

    async def flush(self, state: EngineState) -> None:
        """Write *state* immediately. Called once during shutdown."""
        ...


class NullPersister:
    """Default persister that keeps state in memory only."""

    def schedule(self, state: EngineState) -> None:
        return None

    async def flush(self, state: EngineState) -> None:
        return None
