"""Run the tracker: ``python -m tracklink`` or the ``tracklink`` console script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

from aiohttp import web

from tracklink.config import TrackerConfig
from tracklink.exceptions import TrackerError
from tracklink.service import TrackerService
from tracklink.web import build_app

_logger = logging.getLogger("tracklink")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="tracklink",
        description="Device session & telemetry coordinator (MQTT ingest + HTTP API).",
    )
    parser.add_argument("--host", help="HTTP bind address (TRACKER_HTTP_HOST).")
    parser.add_argument("--port", type=int, help="HTTP port (TRACKER_HTTP_PORT / PORT).")
    parser.add_argument("--database", help="SQLite database path (TRACKER_DATABASE_PATH).")
    parser.add_argument("--broker", help="MQTT broker URL (TRACKER_MQTT_BROKER).")
    parser.add_argument(
        "--no-mqtt",
        action="store_true",
        help="Do not connect to the broker; HTTP ingest only.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level.",
    )
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if args.host is not None:
        overrides["http_host"] = args.host
    if args.port is not None:
        overrides["http_port"] = args.port
    if args.database is not None:
        overrides["database_path"] = args.database
    if args.broker is not None:
        overrides["mqtt_broker"] = args.broker
    if args.no_mqtt:
        overrides["mqtt_enabled"] = False
    return overrides


async def _serve(config: TrackerConfig) -> None:
    async with TrackerService(config) as service:
        runner = web.AppRunner(build_app(service), access_log=None)
        await runner.setup()
        try:
            site = web.TCPSite(runner, config.http_host, config.http_port)
            await site.start()
            _logger.info("HTTP API listening on %s:%s", config.http_host, config.http_port)
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = TrackerConfig.from_env(**_overrides(args))
    except TrackerError as exc:
        print(f"[tracklink] Configuration error: {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        _logger.info("Shutting down")
    except TrackerError as exc:
        _logger.error("Tracker stopped: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
