"""
Process entry point.

Starts the agent (store, stream restore, heartbeat, Telegram inbound) and
keeps it alive until interrupted. There is no HTTP surface; chat reaches the
agent through the messaging gateway or through `agent.get_agent()` in-process.
"""

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from agent import close_agent, get_agent
from runtime_state import configure_logging

logger = logging.getLogger(__name__)


def _extract_sqlite_file_path(database_url: Optional[str]) -> Optional[Path]:
    """Extract local file path from sqlite+aiosqlite URL."""
    if not database_url:
        return None
    prefix = "sqlite+aiosqlite:///"
    if not database_url.startswith(prefix):
        return None
    raw_path = database_url[len(prefix):]
    if not raw_path or raw_path == ":memory:":
        return None
    return Path(raw_path)


def _ensure_database_dir(database_url: Optional[str]) -> None:
    target_path = _extract_sqlite_file_path(database_url)
    if target_path is not None:
        target_path.parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan():
    logger.info("Memory Keep agent starting...")
    _ensure_database_dir(os.getenv("DATABASE_URL"))
    agent = get_agent()
    await agent.ensure_started()
    try:
        yield agent
    finally:
        logger.info("Memory Keep agent shutting down...")
        await close_agent()


async def serve() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops: fall back to KeyboardInterrupt.
            pass

    async with lifespan() as agent:
        status = await agent.get_status()
        logger.info(
            "Agent %s: %d turns in stream, %d graph nodes, heartbeat %s",
            status["status"],
            status["stream_messages"],
            status.get("graph_nodes", 0),
            "on" if status["heartbeat"]["enabled"] else "off",
        )
        await stop.wait()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
