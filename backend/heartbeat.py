"""
Heartbeat cycle.

While the user is away the agent periodically wakes up, looks at its own
state, and may use an outward-looking subset of its tools. Any plain
thought it ends with is kept as an autonomous insight.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from db.sqlite_client import SQLiteClient
from graph_memory import GraphMemory
from inference_scheduler import InferenceScheduler
from runtime_state import ActivityTracker, _env_bool, _env_float, _utc_iso_now
from tool_loop import ToolLoop, ToolRegistry
from tools.builtin import tool_protocol

logger = logging.getLogger(__name__)

INSIGHT_PREFIX = "[Autonomous Insight] "

HEARTBEAT_INSTRUCTION = (
    "You are in AUTONOMOUS HEARTBEAT mode. The user is away.\n\n"
    "{tools}\n\n"
    "You have access to your full knowledge graph and memory. Use this time wisely:\n"
    "- Explore topics from your graph that interest you\n"
    "- Search for new information about things you've discussed\n"
    "- Send insightful findings via Telegram or email\n"
    "- Create tasks for follow-ups\n\n"
    "Respond with tool calls OR a brief internal thought to remember."
)


class HeartbeatCycle:
    def __init__(
        self,
        store: SQLiteClient,
        graph: GraphMemory,
        scheduler: InferenceScheduler,
        registry: ToolRegistry,
        activity: ActivityTracker,
        *,
        interval_minutes: Optional[float] = None,
        idle_seconds: Optional[float] = None,
        enabled: Optional[bool] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._graph = graph
        self._scheduler = scheduler
        self._activity = activity
        self._loop = ToolLoop(scheduler, registry, max_rounds=2, purpose="heartbeat")
        self.interval_minutes = (
            interval_minutes
            if interval_minutes is not None
            else _env_float("HEARTBEAT_MINUTES", 30.0, minimum=0.1)
        )
        self.idle_seconds = (
            idle_seconds
            if idle_seconds is not None
            else _env_float("HEARTBEAT_IDLE_SECONDS", 120.0)
        )
        self.enabled = enabled if enabled is not None else _env_bool("HEARTBEAT_ENABLED", True)
        self._now = now
        self._runner: Optional[asyncio.Task] = None
        self._running = False

        self._ticks_total = 0
        self._skipped_total = 0
        self._insights_total = 0
        self._last_result: Dict[str, Any] = {"ran": False, "reason": "not_started"}

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if not self.enabled:
            logger.info("Heartbeat disabled")
            return
        if self._runner is None or self._runner.done():
            logger.info("Heartbeat started (every %.1f min)", self.interval_minutes)
            self._runner = asyncio.create_task(self._run_loop(), name="agent-heartbeat")

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        logger.info("Heartbeat stopped")

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_minutes * 60.0)
            try:
                await self.tick()
            except Exception as exc:
                logger.error("Heartbeat cycle failed: %s", exc, exc_info=True)
                self._last_result = {"ran": False, "reason": "error", "error": str(exc)}

    # -- cycle ---------------------------------------------------------------

    def _skip_reason(self) -> Optional[str]:
        if self._running:
            return "previous_cycle_running"
        if self._scheduler.lock.held:
            return "inference_busy"
        if self._activity.is_recent(self.idle_seconds):
            return "recent_activity"
        return None

    async def build_digest(self) -> str:
        graph = await self._graph.digest()
        tasks = await self._store.get_task_stats()
        topics = ", ".join(node["label"] for node in graph["top_nodes"]) or "none yet"
        return (
            f"[HEARTBEAT] Time: {self._now().strftime('%Y-%m-%d %H:%M:%S')}\n\n"
            f"Graph: {graph['node_count']} nodes, {graph['edge_count']} edges. "
            f"Top topics: {topics}.\n"
            f"Tasks: {tasks['pending']} pending, {tasks['done']} done.\n\n"
            "What would you like to explore, learn, or do right now?"
        )

    async def tick(self) -> Dict[str, Any]:
        reason = self._skip_reason()
        if reason is not None:
            self._skipped_total += 1
            logger.info("Heartbeat skipped: %s", reason)
            return {"ran": False, "reason": reason}

        self._running = True
        self._ticks_total += 1
        try:
            logger.info("Heartbeat cycle starting")
            messages = [
                {
                    "role": "system",
                    "content": HEARTBEAT_INSTRUCTION.format(
                        tools=tool_protocol(self._loop.registry.names())
                    ),
                },
                {"role": "user", "content": await self.build_digest()},
            ]
            reply = await self._scheduler.schedule("heartbeat", messages)
            outcome = await self._loop.run(messages, reply)

            insight = outcome.text.strip()
            stored = False
            if (
                insight
                and not outcome.stripped
                and not outcome.raw_fallback
                and not self._loop.registry.parse(insight)
            ):
                await self._store.save_experience(f"{INSIGHT_PREFIX}{insight}")
                self._insights_total += 1
                stored = True
                logger.info("Heartbeat insight stored: %s", insight[:100])
            result = {
                "ran": True,
                "rounds": outcome.rounds,
                "insight_stored": stored,
                "finished_at": _utc_iso_now(),
            }
            self._last_result = result
            logger.info("Heartbeat cycle complete")
            return result
        finally:
            self._running = False

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self._runner is not None and not self._runner.done(),
            "interval_minutes": self.interval_minutes,
            "ticks_total": self._ticks_total,
            "skipped_total": self._skipped_total,
            "insights_total": self._insights_total,
            "last_result": dict(self._last_result),
        }
