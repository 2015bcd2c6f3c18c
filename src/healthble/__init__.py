from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Awaitable

from .config import AppConfig, load_config
from .drivers.omron import OMRON_COMPANY_ID
from .errors import ConfigError, HealthBleError
from .scheduler import pair_device, run_daemon, sync_device_time
from .transport import scan_devices

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


def run(coro: Awaitable[None]) -> int:
    """Run ``coro`` to completion and map the result to a process exit code.

    Returns:
        int: 0 on success, 1 on a classified or unexpected failure,
            130 on keyboard interrupt.
    """
    try:
        asyncio.run(coro)
        return 0
    except KeyboardInterrupt:
        return 130
    except HealthBleError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


async def print_scan(timeout: float) -> None:
    """Print the Omron units currently advertising nearby."""
    devices = await scan_devices(timeout, company_id=OMRON_COMPANY_ID)
    if not devices:
        print("No Omron devices found")
        return
    for dev in devices:
        print(f"{dev.address}  rssi={dev.rssi}  name={dev.name or '-'}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="healthble",
        description="Read Omron blood-pressure monitors and scales over BLE and forward the readings to InfluxDB.",
    )
    parser.add_argument("-c", "--config", help="YAML configuration file")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "-p",
        "--pair",
        metavar="DEVICE_ID",
        help="Pair with the configured device and register its secret, then exit",
    )
    mode.add_argument(
        "--sync-time",
        metavar="DEVICE_ID",
        help="Set the clock of the configured device, then exit",
    )
    mode.add_argument(
        "--scan",
        action="store_true",
        help="List advertising Omron devices, then exit (no configuration needed)",
    )
    parser.add_argument(
        "--scan-timeout",
        type=float,
        default=10.0,
        help="Scan duration in seconds for --scan (default: 10)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write the log to this file (default: stderr only)",
    )

    args = parser.parse_args()

    level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if args.log_file:
        try:
            handlers.append(logging.FileHandler(args.log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Unable to open log file {args.log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    if args.scan:
        raise SystemExit(run(print_scan(args.scan_timeout)))

    if not args.config:
        parser.error("--config is required unless --scan is given")

    try:
        config: AppConfig = load_config(args.config)
        if args.pair:
            config.device(args.pair)
        if args.sync_time:
            config.device(args.sync_time)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise SystemExit(1)

    if args.pair:
        code = run(pair_device(config, args.pair))
    elif args.sync_time:
        code = run(sync_device_time(config, args.sync_time))
    else:
        code = run(run_daemon(config))
    raise SystemExit(code)
