"""Metagraph watchdog entry point.

Usage:
    metagraph-watchdog                # Single check
    metagraph-watchdog --once         # Single check (explicit)
    metagraph-watchdog --daemon       # Continuous monitoring
    metagraph-watchdog --daemon --config watchdog.yaml --metrics-port 9108

Exit codes: 0 ok, 1 unexpected error, 2 configuration error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from metagraph_watchdog.config import WatchdogConfig, load_config
from metagraph_watchdog.errors import ConfigurationError
from metagraph_watchdog.logging_config import setup_logging
from metagraph_watchdog.metrics import start_metrics_server
from metagraph_watchdog.watchdog import Watchdog

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Self-healing watchdog for a metagraph cluster",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--daemon", action="store_true", help="Run health checks continuously")
    mode.add_argument("--once", action="store_true", help="Run a single health check and exit (default)")
    parser.add_argument("--config", help="YAML config file (default: environment variables)")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--metrics-port", type=int, help="Serve Prometheus metrics on this port")
    parser.add_argument("--alerts", action="store_true", help="Evaluate resource and cluster alert rules")
    parser.add_argument("--dry-run", action="store_true", help="Log remote commands instead of running them")
    return parser


def build_config(args: argparse.Namespace) -> WatchdogConfig:
    """Load configuration and apply command-line overrides.

    Raises:
        ConfigurationError: if the configuration is invalid
    """
    config = load_config(args.config)
    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    if args.alerts:
        config.alerts_enabled = True
    if args.dry_run:
        config.dry_run = True
    config.validate()
    return config


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run(config: WatchdogConfig, daemon: bool) -> int:
    watchdog = Watchdog(config)

    logger.info("Metagraph Watchdog starting")
    logger.info(f"Nodes: {', '.join(f'{n.name}({n.ip})' for n in config.nodes)}")
    logger.info(f"Mode: {'daemon' if daemon else 'single check'}{' (dry run)' if config.dry_run else ''}")
    logger.info(f"Interval: {config.health_check_interval_seconds}s")
    logger.info(f"Health data stale threshold: {config.health_data_stale_seconds}s")

    if daemon:
        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await watchdog.run_forever(stop_event)
    else:
        await watchdog.run_once()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = create_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = build_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    start_metrics_server(config.metrics_port)

    try:
        return asyncio.run(run(config, daemon=args.daemon))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK
    except Exception:
        logger.exception("Fatal error")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
