"""
ServerSync Main Entry Point

Logging setup and the long-running node used by ``serversync run``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional

import structlog

from serversync.config import SyncConfig, get_default_config
from serversync.node import ServerSyncNode


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger(__name__)


async def serve(
    server_id: str,
    host: str,
    port: int = 25565,
    max_players: int = 0,
    config: Optional[SyncConfig] = None,
) -> None:
    """
    Announce one server and keep it heartbeating until SIGINT/SIGTERM.

    Args:
        server_id: Fleet-unique server id
        host: Address the proxy should route to
        port: Port the proxy should route to
        max_players: Advertised capacity
        config: Optional configuration override
    """
    config = config or get_default_config()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends the run.
            pass

    async with ServerSyncNode(config) as node:
        await node.announce(server_id, host, port, max_players)
        logger.info("serve.running", server_id=server_id, instance_id=node.instance_id)
        await stop.wait()


def run_server(
    server_id: str,
    host: str,
    port: int = 25565,
    max_players: int = 0,
) -> None:
    config = get_default_config()
    setup_logging(config.log_level)
    asyncio.run(serve(server_id, host, port, max_players, config))
