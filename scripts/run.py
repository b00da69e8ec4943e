#!/usr/bin/env python3
"""Engine entrypoint — builds the alert engine from config and runs its workers.

Usage::

    # Run with default config
    python scripts/run.py

    # Custom config file
    python scripts/run.py --config config/settings.yaml

    # Override log level
    python scripts/run.py --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog

from apiwatch.core.config import load_settings
from apiwatch.core.exceptions import ConfigurationError
from apiwatch.core.logging import setup_logging
from apiwatch.engine.factory import create_engine, create_runner

logger = structlog.get_logger(__name__)


async def run(args: argparse.Namespace) -> int:
    """Start the engine's periodic tasks and run until interrupted."""
    settings = load_settings(args.config)
    setup_logging(level=args.log_level)

    try:
        engine = create_engine(settings)
    except ConfigurationError as exc:
        logger.error("invalid_configuration", error=str(exc))
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1

    runner = create_runner(engine, settings)

    if not settings.targets:
        logger.warning("no_targets_configured")

    logger.info(
        "engine_starting",
        targets=len(settings.targets),
        rules=len(settings.rules),
        channels=len(settings.channels),
        policy_enabled=settings.alert_policy.enabled,
    )

    # ── Initial sweep, then start the workers ────────────────────
    await engine.run_rule_evaluation_sweep()
    await runner.start()

    # ── Wait for shutdown signal ─────────────────────────────────
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("shutdown_signal_received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows: signal handlers not supported on ProactorEventLoop
            pass

    try:
        await stop_event.wait()
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")

    # ── Graceful shutdown ────────────────────────────────────────
    logger.info("engine_shutting_down")
    await runner.stop()

    snap = await engine.snapshot()
    logger.info(
        "engine_stopped",
        metrics=len(snap.store),
        alerts=len(snap.alerts),
        active_alerts=len(snap.active_alerts()),
        notifications=len(snap.notifications),
        queued_metrics_dropped=engine.queue.dropped_total,
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="API health alert engine")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to settings YAML (default: config/settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override log level (DEBUG, INFO, WARNING, ERROR)",
    )
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
