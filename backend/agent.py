"""
Memory Keep agent facade.

Wires the store, scheduler, stream, graph, consolidation, tools and
heartbeat into the single interface the outside world talks to.

A user turn runs:
    capacity check -> (consolidation) -> graph recall -> primary inference
    -> tool loop -> append to stream
while the intake valve classifies the message in the background.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from consolidation import SNAPSHOT_FILENAME, ConsolidationEngine, ConsolidationResult
from db.sqlite_client import SQLiteClient, get_sqlite_client
from graph_memory import GraphMemory
from heartbeat import HeartbeatCycle
from inference_scheduler import InferenceScheduler, SchedulerConfig
from reasoning_client import IdentityContext, ImageInput, ReasoningClient, ReasoningService
from runtime_state import (
    ActivityTracker,
    BackgroundTasks,
    _env_bool,
    _env_int,
    _first_env,
)
from stream_manager import ConversationTurn, StreamManager
from tool_loop import ToolLoop
from tools.browser import PageAutomation
from tools.builtin import (
    FULL_TOOLSET,
    HEARTBEAT_TOOLSET,
    AgentToolbox,
    build_registry,
    tool_protocol,
)
from tools.mail import SmtpEmailTransport
from tools.messaging import TelegramGateway
from tools.web import DuckDuckGoSearch

logger = logging.getLogger(__name__)

STREAM_FILENAME = "stream.json"
VISION_DISABLED_REPLY = "Vision functionality is currently disabled."
DEFAULT_VISION_PROMPT = "What do you see in this image?"
VISION_TASK_NOTE = "[VISION TASK] Describe what you see in detail, then respond to the user's message."
INTAKE_INSTRUCTION = (
    "Classify if the following message contains important facts, preferences, "
    'or patterns to remember long-term. Respond ONLY with "YES" or "NO".'
)
RESET_MESSAGE = "Brain wiped. Memory + graph + tasks cleared."


class MemoryKeepAgent:
    def __init__(
        self,
        store: Optional[SQLiteClient] = None,
        service: Optional[ReasoningService] = None,
        *,
        data_dir: Optional[Path] = None,
        scheduler_config: Optional[SchedulerConfig] = None,
        identity: Optional[IdentityContext] = None,
        search: Optional[DuckDuckGoSearch] = None,
        email: Optional[SmtpEmailTransport] = None,
        telegram: Optional[TelegramGateway] = None,
        page_automation_factory: Optional[Callable[[], PageAutomation]] = None,
        heartbeat_enabled: Optional[bool] = None,
        vision_enabled: Optional[bool] = None,
        telegram_inbound_enabled: Optional[bool] = None,
        prompt_window_turns: Optional[int] = None,
        context_cap: Optional[int] = None,
    ) -> None:
        self.data_dir = Path(data_dir or _first_env(["AGENT_DATA_DIR"], ".")).resolve()
        self.store = store or get_sqlite_client()
        self.identity = identity or IdentityContext()
        self.scheduler = InferenceScheduler(
            service or ReasoningClient(),
            scheduler_config,
            system_context=self.identity.system_instruction,
        )
        self.stream = StreamManager(self.data_dir / STREAM_FILENAME, context_cap=context_cap)
        self.graph = GraphMemory(self.store, self.scheduler)
        self.consolidation = ConsolidationEngine(
            self.store, self.stream, self.scheduler, data_dir=self.data_dir
        )
        self.activity = ActivityTracker()
        self.background = BackgroundTasks()

        self.telegram = telegram or TelegramGateway()
        self.toolbox = AgentToolbox(
            self.store,
            self.graph,
            self.scheduler,
            files_root=Path(_first_env(["AGENT_FILES_ROOT"], str(self.data_dir))),
            search=search,
            email=email,
            telegram=self.telegram,
            page_automation_factory=page_automation_factory,
        )
        self.tools = build_registry(self.toolbox, FULL_TOOLSET)
        self.tool_loop = ToolLoop(self.scheduler, self.tools, max_rounds=2)
        self.heartbeat = HeartbeatCycle(
            self.store,
            self.graph,
            self.scheduler,
            build_registry(self.toolbox, HEARTBEAT_TOOLSET),
            self.activity,
            enabled=heartbeat_enabled,
        )

        self.vision_enabled = (
            vision_enabled
            if vision_enabled is not None
            else _env_bool("AGENT_VISION_ENABLED", True)
        )
        self.telegram_inbound_enabled = (
            telegram_inbound_enabled
            if telegram_inbound_enabled is not None
            else _env_bool("TELEGRAM_INBOUND_ENABLED", True)
        )
        self.prompt_window_turns = (
            prompt_window_turns
            if prompt_window_turns is not None
            else _env_int("AGENT_PROMPT_WINDOW_TURNS", 12, minimum=1)
        )

        self._guard = asyncio.Lock()
        self._consolidation_lock = asyncio.Lock()
        self._started = False
        self._telegram_task: Optional[asyncio.Task] = None
        self._consolidations_total = 0
        self._last_consolidation: Optional[ConsolidationResult] = None
        self._last_storage_error: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ensure_started(self) -> None:
        async with self._guard:
            if self._started:
                return
            await self.store.init_db()
            self.stream.load()
            self.heartbeat.start()
            if self.telegram_inbound_enabled and self.telegram.configured:
                self._telegram_task = asyncio.create_task(
                    self.telegram.run_inbound(self.handle_message),
                    name="agent-telegram-inbound",
                )
            self._started = True
            logger.info(
                "Agent started (%d turns restored, ~%d tokens)",
                len(self.stream),
                self.stream.estimate_tokens(),
            )

    async def shutdown(self) -> None:
        async with self._guard:
            await self.heartbeat.stop()
            if self._telegram_task is not None:
                self._telegram_task.cancel()
                try:
                    await self._telegram_task
                except asyncio.CancelledError:
                    pass
                except Exception as exc:
                    logger.error("Telegram inbound task had failed: %s", exc)
                self._telegram_task = None
            await self.telegram.close()
            await self.background.cancel_all()
            self._started = False

    # =========================================================================
    # Turns
    # =========================================================================

    def _note_storage_error(self, where: str, exc: Exception) -> None:
        self._last_storage_error = f"{where}: {exc}"
        logger.error("Storage error during %s: %s", where, exc)

    async def _intake_valve(self, text: str) -> None:
        decision = await self.scheduler.schedule(
            "classification",
            [
                {"role": "system", "content": INTAKE_INSTRUCTION},
                {"role": "user", "content": text},
            ],
        )
        if "YES" not in (decision or "").upper():
            return
        await self.store.save_experience(text)
        logger.info("Intake valve recorded a fact to experience memory")
        await self.graph.extract_and_store(text)

    async def _maybe_consolidate(self) -> None:
        if not self.stream.is_over_budget():
            return
        async with self._consolidation_lock:
            # Another turn may have consolidated while this one waited.
            if not self.stream.is_over_budget():
                return
            result = await self.consolidation.run()
            self._consolidations_total += 1
            self._last_consolidation = result

    async def _start_for_turn(self) -> None:
        try:
            await self.ensure_started()
        except SQLAlchemyError as exc:
            self._note_storage_error("startup", exc)

    async def _recall_context(self, user_text: str) -> str:
        try:
            recall = await self.graph.recall(user_text)
        except SQLAlchemyError as exc:
            self._note_storage_error("graph recall", exc)
            return ""
        if not recall.summary:
            return ""
        logger.info(
            "Graph recall: %d nodes, %d edges activated",
            len(recall.nodes),
            len(recall.edges),
        )
        return f"[GRAPH MEMORY] {recall.summary}"

    def _window(self) -> List[Dict[str, str]]:
        return self.stream.as_messages(self.stream.tail(self.prompt_window_turns))

    async def handle_message(self, user_text: str, identity_token: Optional[str] = None) -> str:
        await self._start_for_turn()
        self.activity.touch()
        if identity_token:
            logger.debug("Turn from %s", identity_token)

        self.background.spawn(self._intake_valve(user_text), name="intake-valve")
        await self._maybe_consolidate()

        graph_context = await self._recall_context(user_text)
        instructions = "\n\n".join(
            part for part in (graph_context, tool_protocol(self.tools.names())) if part
        )
        messages = [
            {"role": "system", "content": instructions},
            *self._window(),
            {"role": "user", "content": user_text},
        ]

        reply = await self.scheduler.schedule("inference", messages)
        outcome = await self.tool_loop.run(messages, reply)

        self.stream.extend(
            [
                ConversationTurn(role="user", content=user_text),
                ConversationTurn(role="assistant", content=outcome.text),
            ]
        )
        return outcome.text

    async def handle_image_message(
        self,
        image_bytes: bytes,
        user_text: Optional[str] = None,
        mime_type: str = "image/png",
    ) -> str:
        if not self.vision_enabled:
            logger.info("Vision is disabled")
            return VISION_DISABLED_REPLY
        await self._start_for_turn()
        self.activity.touch()

        prompt = (user_text or "").strip() or DEFAULT_VISION_PROMPT
        await self._maybe_consolidate()
        messages = [
            {"role": "system", "content": VISION_TASK_NOTE},
            *self._window(),
            {"role": "user", "content": prompt},
        ]
        logger.info("Processing image (%d KB)", round(len(image_bytes) / 1024))
        reply = await self.scheduler.schedule(
            "vision", messages, images=[ImageInput(data=image_bytes, mime_type=mime_type)]
        )

        self.stream.extend(
            [
                ConversationTurn(role="user", content=f"[Image attached] {prompt}"),
                ConversationTurn(role="assistant", content=reply),
            ]
        )
        if reply:
            self.background.spawn(
                self._intake_valve(
                    f"[Vision] User shared an image. AI described: {reply[:200]}"
                ),
                name="intake-valve-vision",
            )
        return reply

    # =========================================================================
    # Views
    # =========================================================================

    def _stream_status(self) -> Dict[str, Any]:
        return {
            "stream_messages": len(self.stream),
            "stream_tokens": self.stream.estimate_tokens(),
            "context_cap": self.stream.context_cap,
            "context_budget": self.stream.budget(),
        }

    async def get_status(self) -> Dict[str, Any]:
        await self._start_for_turn()
        base = {
            **self._stream_status(),
            "scheduler": self.scheduler.status(),
            "heartbeat": self.heartbeat.status(),
            "background": self.background.status(),
            "consolidations_total": self._consolidations_total,
            "last_consolidation": (
                {
                    "outcome": self._last_consolidation.outcome,
                    "reason": self._last_consolidation.reason,
                }
                if self._last_consolidation is not None
                else None
            ),
        }
        try:
            counts = await self.store.get_memory_counts()
            recent = await self.store.get_recent_experiences(limit=5)
            patterns = await self.store.get_sifter_patterns(limit=3)
            graph = await self.graph.digest()
            tasks = await self.store.get_task_stats()
        except SQLAlchemyError as exc:
            self._note_storage_error("status", exc)
            return {**base, "status": "degraded", "degraded": True, "reason": str(exc)}

        return {
            **base,
            **counts,
            "recent_experiences": [
                {
                    "content": (
                        item["content"][:70] + ".."
                        if len(item["content"]) > 70
                        else item["content"]
                    ),
                    "created_at": item["created_at"],
                }
                for item in recent
            ],
            "sifter_patterns": patterns,
            "graph_nodes": graph["node_count"],
            "graph_edges": graph["edge_count"],
            "graph_top_nodes": graph["top_nodes"],
            "graph_recent_edges": graph["recent_edges"],
            "tasks_pending": tasks["pending"],
            "tasks_done": tasks["done"],
            "tasks_recent": tasks["recent"],
            "last_storage_error": self._last_storage_error,
            "status": "active",
            "degraded": False,
        }

    async def get_graph_snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        await self.ensure_started()
        return await self.graph.snapshot()

    async def get_history(self) -> List[Dict[str, str]]:
        await self.ensure_started()
        return self.stream.as_messages()

    async def reset(self) -> Dict[str, str]:
        await self.ensure_started()
        await self.background.drain()
        await self.store.reset_all()
        self.stream.clear()
        (self.data_dir / SNAPSHOT_FILENAME).unlink(missing_ok=True)
        self._last_consolidation = None
        self._last_storage_error = None
        logger.info("Agent memory wiped (stream, experiences, graph, tasks)")
        return {"status": "success", "message": RESET_MESSAGE}


# =============================================================================
# Global Singleton
# =============================================================================

_agent: Optional[MemoryKeepAgent] = None


def get_agent() -> MemoryKeepAgent:
    """Get the global MemoryKeepAgent instance."""
    global _agent
    if _agent is None:
        _agent = MemoryKeepAgent()
    return _agent


async def close_agent() -> None:
    """Shut down the global agent and its store."""
    global _agent
    if _agent is not None:
        await _agent.shutdown()
        await _agent.store.close()
        _agent = None
