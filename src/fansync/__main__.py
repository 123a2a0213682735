"""Entry point for `python -m fansync` / `fansync`.

Subcommands:
    fansync serve               Run the engine behind the HTTP API (default)
    fansync roster CREATOR_ID   Print one creator's whale-priority roster
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys


async def _serve(port: int | None) -> None:
    from fansync.config import get_settings
    from fansync.engine import InboxEngine
    from fansync.gateway import HttpMessagingGateway
    from fansync.http_server import start_http_server
    from fansync.logger import logger, set_level

    s = get_settings()
    set_level(s.logging.level)
    gateway = HttpMessagingGateway.from_settings(s)
    engine = InboxEngine(gateway, settings=s)
    runner = await start_http_server(engine, s.server.host, port or s.server.port)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down")
        await runner.cleanup()
        await engine.close()
        await gateway.close()


async def _roster(creator_id: str) -> int:
    from fansync.config import get_settings
    from fansync.errors import GatewayError
    from fansync.gateway import HttpMessagingGateway
    from fansync.roster import TierThresholds, sort_roster

    s = get_settings()
    gateway = HttpMessagingGateway.from_settings(s)
    try:
        threads = await gateway.list_threads(creator_id)
    except GatewayError as exc:
        print(f"Error ({exc.kind}): {exc}", file=sys.stderr)
        return 1
    finally:
        await gateway.close()

    for entry in sort_roster(threads, TierThresholds(whale=s.tiers.whale_threshold)):
        fan = entry.thread.fan
        print(f"{entry.tier:<8} {entry.thread.unread_count:>4}  @{fan.handle}  {fan.display_name}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="fansync",
        description="Fan conversation sync and optimistic messaging engine",
    )
    sub = parser.add_subparsers(dest="command")
    serve = sub.add_parser("serve", help="Run the engine behind the HTTP API")
    serve.add_argument("--port", type=int, default=None, help="Override [server] port")
    roster = sub.add_parser("roster", help="Print a creator's roster, whales first")
    roster.add_argument("creator_id")

    args = parser.parse_args()

    match args.command:
        case "roster":
            sys.exit(asyncio.run(_roster(args.creator_id)))
        case _:
            asyncio.run(_serve(getattr(args, "port", None)))


if __name__ == "__main__":
    main()
