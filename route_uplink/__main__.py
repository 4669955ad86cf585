#!/usr/bin/env python3
"""
Route Uplink command-line runner.

Usage:
    python -m route_uplink login --access-token T --refresh-token R
    python -m route_uplink enqueue points.ndjson
    cat points.ndjson | python -m route_uplink enqueue -
    python -m route_uplink flush
    python -m route_uplink status

Each input line of `enqueue` is one JSON point:
    {"latitude": 55.75, "longitude": 37.61, "recordedAt": "2024-05-01T10:00:00Z"}

Environment Variables:
    ROUTE_UPLINK_API_BASE_URL - Backend base URL
    ROUTE_UPLINK_DB_PATH      - SQLite file for queue and credentials
    ROUTE_UPLINK_LOG_LEVEL    - Logging level (default: INFO)
"""
import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional, TextIO

import structlog
from pydantic import ValidationError

from route_uplink.config import UplinkSettings
from route_uplink.log_config import configure_logging
from route_uplink.schemas import TelemetryPoint
from route_uplink.service import UplinkService

logger = structlog.get_logger("route_uplink")


def read_points(stream: TextIO) -> List[TelemetryPoint]:
    """Parse newline-delimited JSON points, skipping bad lines."""
    points = []
    for line_no, line in enumerate(stream, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            points.append(TelemetryPoint.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("skipping invalid point", line=line_no, error=str(e))
    return points


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="route_uplink",
        description="Durable tracking point uploader",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", help="SQLite file (overrides ROUTE_UPLINK_DB_PATH)")
    parser.add_argument("--api-url", help="Backend base URL (overrides ROUTE_UPLINK_API_BASE_URL)")
    parser.add_argument("--log-level", help="Logging level")

    sub = parser.add_subparsers(dest="command", required=True)

    enqueue = sub.add_parser("enqueue", help="Queue points from an NDJSON file and upload them")
    enqueue.add_argument("file", help="NDJSON file, or - for stdin")

    sub.add_parser("flush", help="Upload the persisted queue once")
    sub.add_parser("status", help="Print queue length and route id")
    sub.add_parser("clear-route", help="Forget the route id if the queue is empty")

    login = sub.add_parser("login", help="Store a credential")
    login.add_argument("--access-token", required=True)
    login.add_argument("--refresh-token", required=True)

    logout = sub.add_parser("logout", help="Clear the stored credential")
    logout.add_argument("--discard-queue", action="store_true", help="Also delete queued points")

    return parser


def load_settings(args: argparse.Namespace) -> UplinkSettings:
    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.api_url:
        overrides["api_base_url"] = args.api_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    return UplinkSettings(**overrides)


async def run(args: argparse.Namespace, settings: UplinkSettings) -> int:
    service = UplinkService(settings)

    loop = asyncio.get_running_loop()
    current = asyncio.current_task()

    def signal_handler():
        logger.info("Received shutdown signal")
        current.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    try:
        if args.command == "enqueue":
            if args.file == "-":
                points = read_points(sys.stdin)
            else:
                with open(args.file, "r", encoding="utf-8") as f:
                    points = read_points(f)
            if not points:
                logger.warning("no points to enqueue")
            else:
                pending = await service.enqueue(points)
                if pending is not None:
                    await pending
        elif args.command == "flush":
            await service.flush()
        elif args.command == "clear-route":
            cleared = await service.clear_route_if_idle()
            print(json.dumps({"cleared": cleared}))
        elif args.command == "login":
            await service.login(args.access_token, args.refresh_token)
        elif args.command == "logout":
            await service.logout(discard_queue=args.discard_queue)

        if args.command in ("enqueue", "flush", "status"):
            print(json.dumps(await service.status()))
        return 0
    except asyncio.CancelledError:
        return 130
    finally:
        await service.stop()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args)
    configure_logging(settings.log_level, settings.log_json)
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
