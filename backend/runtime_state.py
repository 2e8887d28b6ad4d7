"""
Runtime state helpers for the agent core.

This module provides:
1) Environment readers shared by every component.
2) Process-wide logging setup.
3) Foreground activity tracking (used to keep the heartbeat quiet).
4) A tracked set of fire-and-forget background tasks.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, float(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class CollaboratorNotConfigured(RuntimeError):
    """An external collaborator is missing its endpoint or credentials."""

    def __init__(self, collaborator: str, missing: List[str]) -> None:
        self.collaborator = collaborator
        self.missing = list(missing)
        super().__init__(
            f"{collaborator} is not configured (missing: {', '.join(self.missing)})"
        )


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for the agent process.

    Args:
        level: Log level name. Falls back to LOG_LEVEL, then INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


class ActivityTracker:
    """Remembers when the last foreground (user-driven) turn happened."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._last_activity: Optional[float] = None

    def touch(self) -> None:
        self._last_activity = self._clock()

    def seconds_since_activity(self) -> Optional[float]:
        if self._last_activity is None:
            return None
        return self._clock() - self._last_activity

    def is_recent(self, window_seconds: float) -> bool:
        elapsed = self.seconds_since_activity()
        return elapsed is not None and elapsed < window_seconds


class BackgroundTasks:
    """
    Fire-and-forget task set.

    Tasks are kept referenced until they finish; their failures are logged
    and never propagate to whoever spawned them.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._spawned_total = 0
        self._failed_total = 0
        self._last_error: Optional[str] = None

    def spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        self._spawned_total += 1
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failed_total += 1
            self._last_error = f"{task.get_name()}: {exc}"
            logger.error(
                "Background task %s failed: %s", task.get_name(), exc, exc_info=exc
            )

    async def drain(self) -> None:
        """Wait for every pending task (used by tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def status(self) -> Dict[str, Any]:
        return {
            "pending": len(self._tasks),
            "spawned_total": self._spawned_total,
            "failed_total": self._failed_total,
            "last_error": self._last_error,
        }
