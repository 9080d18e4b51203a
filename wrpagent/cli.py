"""Command-line test agent that keeps a websocket connection to a server."""

from __future__ import annotations

import argparse
import sys
import time
from typing import Any, Dict, List, Optional

from .retry import RetryConfig
from .websocket import Websocket
from .wrp import WrpError, parse_device_id

DEFAULT_ID = "mac:112233445566"
DEFAULT_URL = "https://fabric.example.com/api/v2/device"
DEFAULT_DURATION = 60.0

_RETRY = RetryConfig(
    interval=1.0,
    multiplier=2.0,
    jitter=1.0 / 3.0,
    max_interval=341.333,
)


def build_parser() -> argparse.ArgumentParser:
    """Return the parser for the command's arguments."""
    parser = argparse.ArgumentParser(
        prog="example",
        description="The test agent for websocket service.",
    )
    parser.add_argument("--id", default=DEFAULT_ID, help="The id of the device.")
    parser.add_argument(
        "--url", default=DEFAULT_URL, help="The URL for the WS connection."
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("-4", dest="v4", action="store_true", help="Only use IPv4")
    modes.add_argument("-6", dest="v6", action="store_true", help="Only use IPv6")
    parser.add_argument(
        "--once", action="store_true", help="Only attempt to connect once."
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=DEFAULT_DURATION,
        help="Seconds to keep the connection running.",
    )
    return parser


def _websocket_options(args: argparse.Namespace) -> Dict[str, Any]:
    """Turn parsed arguments into keyword arguments for Websocket."""
    return {
        "device_id": parse_device_id(args.id),
        "url": args.url,
        "with_ipv4": not args.v6,
        "with_ipv6": not args.v4,
        "once": args.once,
        "retry_policy": _RETRY,
    }


def _show(event: Any) -> None:
    print(event, flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the test agent; return the process exit status."""
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:
        return 0 if not exc.code else 1

    try:
        options = _websocket_options(args)
    except WrpError as exc:
        print(exc, file=sys.stderr)
        return 1

    ws = Websocket(**options)
    ws.add_connect_listener(_show)
    ws.add_disconnect_listener(_show)

    ws.start()
    try:
        time.sleep(max(args.duration, 0.0))
    except KeyboardInterrupt:
        pass
    finally:
        ws.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())