"""
ServerSync Command Line Interface

Provides command-line access to a fleet's synchronization state.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from serversync.config import SyncConfig, get_default_config
from serversync.errors import ServerSyncError
from serversync.main import setup_logging
from serversync.node import ServerSyncNode
from serversync.types import ServerRecord


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="serversync",
        description="ServerSync - fleet state synchronization CLI",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Announce a server and keep it heartbeating")
    run_parser.add_argument("server_id", help="Fleet-unique server id")
    run_parser.add_argument("--host", default="127.0.0.1", help="Address to advertise")
    run_parser.add_argument("--port", type=int, default=25565, help="Port to advertise")
    run_parser.add_argument("--max-players", type=int, default=0, help="Advertised capacity")

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Print the fleet periodically")
    watch_parser.add_argument("--interval", type=float, default=5.0, help="Seconds between prints")
    watch_parser.add_argument("--count", type=int, default=0, help="Stop after N prints (0 = forever)")

    # Status command
    subparsers.add_parser("status", help="Print the cached fleet snapshot as JSON")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    config = get_default_config()

    if args.command == "run":
        from serversync.main import run_server
        run_server(args.server_id, args.host, args.port, args.max_players)
        return 0

    setup_logging("WARNING")
    try:
        if args.command == "watch":
            asyncio.run(cmd_watch(config, args.interval, args.count))
        elif args.command == "status":
            asyncio.run(cmd_status(config))
    except ServerSyncError as exc:
        print(f"Error: {exc}")
        return 2
    return 0


def format_record(record: ServerRecord) -> str:
    return (
        f"{record.server_id:<20} {record.status.value:<9} {record.address:<22} "
        f"{record.online_count}/{record.max_players:<6} seq={record.sequence}"
    )


async def cmd_status(config: SyncConfig) -> None:
    """Print the cached snapshot."""
    node = ServerSyncNode(config)
    await node.cache.connect()
    try:
        snapshot = await node.cache.read_snapshot()
    finally:
        await node.cache.close()
    print(json.dumps(
        {server_id: record.to_dict() for server_id, record in sorted(snapshot.items())},
        indent=2,
    ))


async def cmd_watch(config: SyncConfig, interval: float, count: int) -> None:
    """Follow the fleet through a live registry."""
    printed = 0
    async with ServerSyncNode(config) as node:
        while count <= 0 or printed < count:
            records = node.registry.all()
            print(f"-- {len(records)} server(s), state={node.state.value}")
            for record in records:
                print(format_record(record))
            printed += 1
            if count <= 0 or printed < count:
                await asyncio.sleep(interval)


if __name__ == "__main__":
    sys.exit(main())
