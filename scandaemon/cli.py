"""Command-line runner for the scan daemon.

    python -m scandaemon serve --port 8000        # HTTP API + workers
    python -m scandaemon serve --no-workers       # HTTP API only
    python -m scandaemon worker                   # headless worker process
    python -m scandaemon status                   # queue counts and tiers as JSON

Configuration comes from the environment (see :mod:`scandaemon.config`).
Several ``worker`` processes may share one Redis queue.  Progress and result
events reach ``serve --no-workers`` websocket clients over the Redis event
relay, so split deployments need ``REDIS_URL`` with ``EVENT_RELAY_CHANNEL``
left non-empty.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Sequence

import uvicorn

from scandaemon.config import Settings, get_settings
from scandaemon.daemon import ScanDaemon

log = logging.getLogger("scandaemon.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


def _run_serve(args: argparse.Namespace, settings: Settings) -> int:
    from scandaemon.main import app

    app.state.run_workers = not args.no_workers
    log.info("Starting API host=%s port=%d workers=%s", args.host, args.port, not args.no_workers)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
    return 0


async def _worker_main(settings: Settings) -> None:
    daemon = ScanDaemon.from_settings(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    await daemon.start()
    log.info("Worker process ready workers=%d", settings.worker_concurrency)
    try:
        await stop.wait()
        log.info("Stop requested, finishing in-flight jobs")
    finally:
        await daemon.shutdown()


def _run_worker(args: argparse.Namespace, settings: Settings) -> int:
    asyncio.run(_worker_main(settings))
    return 0


async def _status_main(settings: Settings) -> dict:
    daemon = ScanDaemon.from_settings(settings)
    try:
        queue_status = await daemon.get_queue_status()
        tiers = [
            {
                "name": policy.name,
                "allowed_scanners": list(policy.allowed_scanners),
                "max_file_size_bytes": policy.max_file_size_bytes,
                "max_jobs_per_day": policy.max_jobs_per_day,
                "base_priority": policy.base_priority,
            }
            for policy in daemon.gatekeeper.tiers
        ]
    finally:
        await daemon.shutdown()
    return {"queue": queue_status.to_dict(), "tiers": tiers}


def _run_status(args: argparse.Namespace, settings: Settings) -> int:
    print(json.dumps(asyncio.run(_status_main(settings)), indent=2))
    return 0


_COMMANDS = {
    "serve": _run_serve,
    "worker": _run_worker,
    "status": _run_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scandaemon",
        description="Tiered multi-engine file-scanning daemon",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API (and workers)")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", "-p", type=int, default=8000, help="Bind port")
    serve.add_argument(
        "--no-workers",
        action="store_true",
        help="Only accept submissions; leave scanning to worker processes "
        "(their events arrive over the Redis event relay)",
    )

    sub.add_parser("worker", help="Run scan workers without the HTTP API")
    sub.add_parser("status", help="Print queue counts and the tier table as JSON")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings.log_level)
    return _COMMANDS[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
