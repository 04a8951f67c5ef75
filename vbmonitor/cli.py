"""
Command line entry point.

Usage:
    vbmonitor --config config/config.yaml
    python -m vbmonitor --host 127.0.0.1 --port 9332 --window 8064 --once
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from vbmonitor.core.chain import TransportError
from vbmonitor.core.tally import FetchError
from vbmonitor.monitor import VersionMonitor
from vbmonitor.rpc.client import NodeRPCClient
from vbmonitor.utils.config import ConfigError, MonitorConfig, load_config
from vbmonitor.utils.reporter import VersionReporter

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vbmonitor",
        description="Track block-version signalling over a trailing window of the chain",
    )
    parser.add_argument("--config", type=str, help="Path to a YAML configuration file")

    rpc = parser.add_argument_group("node RPC")
    rpc.add_argument("--host", dest="rpc_host", type=str, help="RPC host")
    rpc.add_argument("--port", dest="rpc_port", type=int, help="RPC port")
    rpc.add_argument("--user", dest="rpc_user", type=str, help="RPC username")
    rpc.add_argument("--password", dest="rpc_password", type=str, help="RPC password")
    rpc.add_argument("--timeout", dest="rpc_timeout", type=float, help="RPC timeout in seconds")

    monitor = parser.add_argument_group("monitor")
    monitor.add_argument("--window", dest="window_size", type=int, help="Number of blocks tallied")
    monitor.add_argument("--retarget-interval", type=int, help="Blocks between retargets")
    monitor.add_argument("--poll-interval", type=float, help="Seconds between height polls")
    monitor.add_argument("--workers", dest="fetch_workers", type=int,
                         help="Threads used to fetch block versions")
    monitor.add_argument("--max-failures", dest="max_consecutive_failures", type=int,
                         help="Consecutive failures tolerated before exiting")
    monitor.add_argument("--threshold", type=float,
                         help="Fraction of the window a bit needs to activate")
    monitor.add_argument("--once", action="store_true",
                         help="Build the window, report it and exit")

    parser.add_argument("--log-level", type=str, help="Logging level (DEBUG, INFO, ...)")
    parser.add_argument("--log-file", type=str, help="Also write the log to this file")
    return parser


def setup_logging(config: MonitorConfig) -> None:
    """Configure the root logger from the configuration."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_file:
        log_file = Path(config.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def resolve_config(args: argparse.Namespace) -> MonitorConfig:
    """Load the configuration file (if any) and apply command line overrides."""
    config = load_config(args.config)
    return config.override(
        rpc_host=args.rpc_host,
        rpc_port=args.rpc_port,
        rpc_user=args.rpc_user,
        rpc_password=args.rpc_password,
        rpc_timeout=args.rpc_timeout,
        window_size=args.window_size,
        retarget_interval=args.retarget_interval,
        poll_interval=args.poll_interval,
        fetch_workers=args.fetch_workers,
        max_consecutive_failures=args.max_consecutive_failures,
        threshold=args.threshold,
        log_level=args.log_level,
        log_file=args.log_file,
    )


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = resolve_config(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(config)
    logger.info("Connecting to node at %s", config.rpc_url)

    client = NodeRPCClient.from_config(config)
    monitor = VersionMonitor(client, config, VersionReporter(threshold=config.threshold))
    try:
        if args.once:
            monitor.start()
        else:
            monitor.run()
    except (TransportError, FetchError) as e:
        logger.error("Monitor failed: %s", e)
        return 1
    except ValueError as e:
        logger.error("%s", e)
        return 1
    finally:
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
