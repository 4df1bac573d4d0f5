#!/usr/bin/env python3
"""
Stream heart rate readings from any BLE Heart Rate Service sensor. Outputs JSON lines to stdout.

Usage:
  python -m hrmonitor.hr_stream [--device "POLAR H10 XXXXXXXX"]

Stdout: "# connecting", "# connected HH:MM:SS", "# disconnected" status lines, then JSON lines.
Filter status with e.g. grep -v '^# '
One line per notification: {"hr": 72, "contact": "contact", "energy_expended": null, "rr_ms": [850.59], "ts": ...}

The sensor is looked up again every --reconnect-delay seconds (default 5) until found,
and the stream reconnects by itself whenever the BLE link drops.
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime

try:
    from hrmonitor.bleak_gateway import BleakGateway
except ImportError:
    print("Install bleak: pip install bleak", file=sys.stderr)
    sys.exit(1)

from hrmonitor.connection import DEFAULT_RETRY_DELAY, ConnectionController, ConnectionState
from hrmonitor.gatt_hrm import HeartRateReading

logger = logging.getLogger("hrmonitor.hr_stream")


def _setup_logging(quiet: bool, verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s", datefmt="%H:%M:%S"))
    root = logging.getLogger("hrmonitor")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # bleak is chatty at DEBUG; only let it through with -v
    logging.getLogger("bleak").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _emit(s: str) -> None:
    """Print to stdout; exit cleanly if downstream closed the pipe."""
    try:
        print(s, flush=True)
    except BrokenPipeError:
        sys.exit(0)


def reading_to_json(reading: HeartRateReading, ts: float) -> str:
    return json.dumps(
        {
            "hr": reading.bpm,
            "contact": reading.contact_status.name.lower(),
            "energy_expended": reading.energy_expended,
            "rr_ms": [round(rr, 2) for rr in reading.rr_ms],
            "ts": ts,
        }
    )


def status_line(state: ConnectionState) -> str:
    if state is ConnectionState.CONNECTED:
        return f"# connected {datetime.now().strftime('%H:%M:%S')}"
    return f"# {state.value}"


async def _run(
    device_name: str | None,
    name_filter: str | None,
    scan_timeout: float,
    connect_timeout: float,
    reconnect_delay: float,
) -> int:
    gateway = BleakGateway(
        device_name=device_name,
        name_filter=name_filter,
        scan_timeout=scan_timeout,
        connect_timeout=connect_timeout,
    )
    first_reading = []

    def on_reading(reading: HeartRateReading) -> None:
        if not first_reading:
            first_reading.append(True)
            logger.info("Received first HRM packet.")
        _emit(reading_to_json(reading, time.time()))

    def on_status(state: ConnectionState) -> None:
        _emit(status_line(state))
        if state is ConnectionState.CONNECTED:
            logger.info("Streaming heart rate (Ctrl+C to stop). Reconnects on drop.")

    controller = ConnectionController(
        gateway,
        on_reading,
        on_status,
        retry_delay=reconnect_delay,
        logger_instance=logger,
    )
    await controller.run()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Stream BLE heart rate sensor readings as JSON lines")
    parser.add_argument("--device", "-d", type=str, default=None, help='Exact device name, e.g. "POLAR H10 0A3BA92B"')
    parser.add_argument(
        "--name-filter", "-n",
        type=str,
        default=None,
        help='Use the first device whose name contains this text (e.g. "Polar"). Default: any device advertising the Heart Rate service.',
    )
    parser.add_argument(
        "--scan-timeout", "-s",
        type=float,
        default=10.0,
        help="Seconds to scan per connect attempt (default 10).",
    )
    parser.add_argument(
        "--connect-timeout", "-t",
        type=float,
        default=30.0,
        help="BLE connection timeout in seconds (default 30).",
    )
    parser.add_argument(
        "--reconnect-delay", "-r",
        type=float,
        default=DEFAULT_RETRY_DELAY,
        help=f"Seconds to wait after a failed connect attempt before retrying (default {DEFAULT_RETRY_DELAY:.0f}).",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging, including bleak.")
    args = parser.parse_args()
    if args.reconnect_delay < 0:
        parser.error("--reconnect-delay must be >= 0")
    _setup_logging(args.quiet, args.verbose)
    try:
        sys.exit(asyncio.run(_run(
            args.device, args.name_filter, args.scan_timeout, args.connect_timeout, args.reconnect_delay,
        )))
    except KeyboardInterrupt:
        logger.info("Stopped.")
        sys.exit(0)


if __name__ == "__main__":
    main()
