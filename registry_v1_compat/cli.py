"""Argument parsing, configuration loading, and event replay bootstrap."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from types import FrameType

from .aggregator import RegistrySnapshot, SnapshotAggregator
from .config import AppConfig, load_config
from .exceptions import BridgeError, ConfigError, UpstreamStreamTerminated
from .logging_config import configure_logging
from .registry.replay import ReplayNotificationSource

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="v1-compat",
        description="Replay v2 registry change events into v1-shaped registry snapshots",
    )
    parser.add_argument(
        "-c", "--config",
        required=True,
        help="Path to the YAML configuration file",
    )
    parser.add_argument(
        "--events",
        help="YAML events file to replay (overrides replay.path)",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the configuration file and exit",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load config (minimal logging until config is loaded)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    configure_logging(config.logging)

    if args.validate:
        logger.info("Configuration is valid")
        return 0

    events_path = args.events or (config.replay.path if config.replay else "")
    if not events_path:
        logger.error("No events file given (use --events or replay.path)")
        return 1

    try:
        return _replay(config, events_path)
    except BridgeError as exc:
        logger.error("Fatal error: %s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0


def _replay(config: AppConfig, events_path: str) -> int:
    source = ReplayNotificationSource.from_file(events_path)
    aggregator = SnapshotAggregator(
        source,
        interest=config.interest.build(),
        digest_batch_size=config.aggregator.digest_batch_size,
        lease=config.lease.build(),
    )

    start = time.monotonic()
    previous = _install_signal_handlers(aggregator, config.aggregator.shutdown_timeout_seconds)
    try:
        aggregator.start()
        aggregator.wait()
        logger.info("Replay interrupted by shutdown signal")
    except UpstreamStreamTerminated as exc:
        if exc.__cause__ is not None:
            raise
        logger.info(
            "Replay complete",
            extra={"elapsed_seconds": round(time.monotonic() - start, 2)},
        )
    finally:
        _restore_signal_handlers(previous)
        aggregator.shutdown(config.aggregator.shutdown_timeout_seconds)

    _report(aggregator.snapshot())
    return 0


def _report(snapshot: RegistrySnapshot) -> None:
    for key in sorted(snapshot.applications):
        group = snapshot.applications[key]
        logger.info(
            "Application %s: %d instances, digest %s", group.name, len(group), group.digest,
            extra={"app": key, "total_instances": len(group)},
        )
    logger.info(
        "Snapshot version %d, apps hash code %s", snapshot.version, snapshot.apps_hash_code,
        extra={"version": snapshot.version, "total_instances": snapshot.total_instances},
    )


def _install_signal_handlers(aggregator: SnapshotAggregator, timeout: float) -> dict:
    def _handle_shutdown(signum: int, frame: FrameType | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, shutting down", sig_name)
        aggregator.shutdown(timeout)

    return {
        sig: signal.signal(sig, _handle_shutdown)
        for sig in (signal.SIGTERM, signal.SIGINT)
    }


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        if handler is not None:
            signal.signal(sig, handler)
