import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.exc import OperationalError

from agent import RESET_MESSAGE, VISION_DISABLED_REPLY, MemoryKeepAgent
from db.sqlite_client import SQLiteClient
from inference_scheduler import SchedulerConfig
from reasoning_client import GenerationResult, IdentityContext
from tools.messaging import TelegramGateway

SIFT_REPLY = json.dumps({"summary": "discussed travel plans", "patterns": ["likes hiking"]})
EXTRACTION_REPLY = json.dumps(
    {
        "entities": [{"label": "Luna", "type": "pet"}],
        "relationships": [{"source": "user", "target": "luna", "relationship": "owns"}],
    }
)


class _FakeReasoningService:
    """Answers like the three configured models would, keyed by call shape."""

    def __init__(self, *, classify: str = "NO", chat_replies: Optional[List[str]] = None) -> None:
        self.classify = classify
        self.chat_replies = list(chat_replies or ["Happy to help."])
        self.calls: List[Dict[str, Any]] = []

    def kinds(self) -> List[str]:
        return [call["kind"] for call in self.calls]

    def _kind(self, model: str, messages: List[Dict[str, str]]) -> str:
        first = messages[0]["content"] if messages else ""
        if model == "vision-model":
            return "vision"
        if model == "sifter-model":
            if first.startswith("Classify"):
                return "classify"
            if "The Sifter" in first:
                return "sift"
            if first.startswith("Extract"):
                return "extract"
            return "analytical"
        return "chat"

    async def generate(self, system_context, messages, *, model, temperature, max_output_tokens, images=None):
        kind = self._kind(model, messages)
        self.calls.append({"kind": kind, "model": model, "messages": list(messages), "images": images})
        if kind == "classify":
            text = self.classify
        elif kind == "sift":
            text = SIFT_REPLY
        elif kind == "extract":
            text = EXTRACTION_REPLY
        elif kind == "vision":
            text = "A tabby cat asleep on a windowsill."
        elif len(self.chat_replies) > 1:
            text = self.chat_replies.pop(0)
        else:
            text = self.chat_replies[0]
        return GenerationResult(text=text)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _agent(tmp_path: Path, service: _FakeReasoningService, **overrides: Any) -> MemoryKeepAgent:
    values: Dict[str, Any] = {
        "data_dir": tmp_path,
        "scheduler_config": SchedulerConfig(
            min_spacing_sec=0.0,
            dedup_window_sec=0.0,
            chat_model="chat-model",
            sifter_model="sifter-model",
            vision_model="vision-model",
        ),
        "identity": IdentityContext("", ""),
        "telegram": TelegramGateway(token="", chat_id=""),
        "heartbeat_enabled": False,
        "telegram_inbound_enabled": False,
        "context_cap": 64000,
    }
    values.update(overrides)
    return MemoryKeepAgent(SQLiteClient(_sqlite_url(tmp_path / "agent.db")), service, **values)


async def _close(agent: MemoryKeepAgent) -> None:
    await agent.background.drain()
    await agent.shutdown()
    await agent.store.close()


def _write_full_stream(tmp_path: Path) -> None:
    turns = []
    for index in range(100):
        role = "user" if index % 2 == 0 else "assistant"
        turns.append({"role": role, "content": f"{index:03d}" + "t" * 2637})
    (tmp_path / "stream.json").write_text(json.dumps(turns), encoding="utf-8")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("AGENT_FILES_ROOT", "AGENT_PROMPT_WINDOW_TURNS", "AGENT_ROLLING_OVERLAP"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.asyncio
async def test_full_stream_consolidates_before_answering(tmp_path: Path) -> None:
    _write_full_stream(tmp_path)
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service)

    reply = await agent.handle_message("Any ideas for the weekend?")
    await agent.background.drain()
    history = await agent.get_history()
    experiences = await agent.store.list_experiences()

    assert reply == "Happy to help."
    kinds = [kind for kind in service.kinds() if kind != "classify"]
    assert kinds == ["sift", "chat"]
    assert len(history) == 6
    assert history[0] == {"role": "system", "content": "[CONSOLIDATION SUMMARY] discussed travel plans"}
    assert history[1]["content"].startswith("097")
    assert history[-2:] == [
        {"role": "user", "content": "Any ideas for the weekend?"},
        {"role": "assistant", "content": "Happy to help."},
    ]
    assert "[Sifter Pattern] likes hiking" in [item["content"] for item in experiences]
    assert (tmp_path / "last_snapshot.txt").exists()

    await agent.handle_message("Thanks!")
    assert service.kinds().count("sift") == 1
    await _close(agent)


@pytest.mark.asyncio
async def test_prompt_carries_window_and_tool_protocol(tmp_path: Path) -> None:
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service, prompt_window_turns=2)

    for text in ("one", "two", "three"):
        await agent.handle_message(text)
    await agent.background.drain()

    chat_calls = [call for call in service.calls if call["kind"] == "chat"]
    last = chat_calls[-1]["messages"]
    assert last[0]["role"] == "system"
    assert last[0]["content"].startswith("[AGENTIC TOOLS]")
    assert [message["content"] for message in last[1:]] == ["two", "Happy to help.", "three"]
    await _close(agent)


@pytest.mark.asyncio
async def test_intake_valve_records_facts_and_graph(tmp_path: Path) -> None:
    service = _FakeReasoningService(classify="YES")
    agent = _agent(tmp_path, service)

    await agent.handle_message("My cat is called Luna")
    await agent.background.drain()
    experiences = await agent.store.list_experiences()
    luna = await agent.store.get_node("luna")
    edge = await agent.store.get_edge("user", "luna", "owns")

    assert [item["content"] for item in experiences] == ["My cat is called Luna"]
    assert luna is not None and luna["type"] == "pet"
    assert edge is not None
    await _close(agent)


@pytest.mark.asyncio
async def test_intake_valve_ignores_small_talk(tmp_path: Path) -> None:
    service = _FakeReasoningService(classify="NO")
    agent = _agent(tmp_path, service)

    await agent.handle_message("lol ok")
    await agent.background.drain()
    counts = await agent.store.get_memory_counts()

    assert counts["experience_count"] == 0
    assert "extract" not in service.kinds()
    await _close(agent)


@pytest.mark.asyncio
async def test_graph_recall_is_injected_into_prompt(tmp_path: Path) -> None:
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service)
    await agent.ensure_started()
    for _ in range(2):
        await agent.graph.upsert(
            [{"label": "luna", "type": "pet"}],
            [{"source": "luna", "target": "cat", "relationship": "is_a"}],
        )

    await agent.handle_message("How is Luna doing?")

    chat = [call for call in service.calls if call["kind"] == "chat"][0]
    assert chat["messages"][0]["content"].startswith("[GRAPH MEMORY] Graph recall (Active Nodes: luna)")
    await _close(agent)


@pytest.mark.asyncio
async def test_tool_directive_is_executed_before_replying(tmp_path: Path) -> None:
    service = _FakeReasoningService(chat_replies=["TASK_ADD: call mom on Sunday", "Added that to your list."])
    agent = _agent(tmp_path, service)

    reply = await agent.handle_message("Remind me to call mom on Sunday")
    tasks = await agent.store.list_tasks()
    history = await agent.get_history()

    assert reply == "Added that to your list."
    assert [task["description"] for task in tasks] == ["call mom on Sunday"]
    assert history[-1] == {"role": "assistant", "content": "Added that to your list."}
    follow_up = [call for call in service.calls if call["kind"] == "chat"][1]["messages"]
    assert follow_up[-1]["content"].startswith("TOOL RESULTS:\n[TOOL RESULT] TASK_ADD")
    await _close(agent)


@pytest.mark.asyncio
async def test_image_turns(tmp_path: Path) -> None:
    disabled_service = _FakeReasoningService()
    disabled = _agent(tmp_path / "off", disabled_service, vision_enabled=False)
    assert await disabled.handle_image_message(b"\x89PNG") == VISION_DISABLED_REPLY
    assert disabled_service.calls == []
    await disabled.store.close()

    service = _FakeReasoningService()
    agent = _agent(tmp_path, service, vision_enabled=True)
    reply = await agent.handle_image_message(b"\x89PNG", mime_type="image/png")
    await agent.background.drain()
    history = await agent.get_history()

    assert reply == "A tabby cat asleep on a windowsill."
    vision = [call for call in service.calls if call["kind"] == "vision"][0]
    assert vision["images"][0].data == b"\x89PNG"
    assert vision["messages"][0]["content"].startswith("[VISION TASK]")
    assert history == [
        {"role": "user", "content": "[Image attached] What do you see in this image?"},
        {"role": "assistant", "content": "A tabby cat asleep on a windowsill."},
    ]
    classify = [call for call in service.calls if call["kind"] == "classify"][0]
    assert classify["messages"][1]["content"].startswith("[Vision] User shared an image. AI described:")
    await _close(agent)


@pytest.mark.asyncio
async def test_status_reports_memory_graph_and_tasks(tmp_path: Path) -> None:
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service)
    await agent.ensure_started()
    await agent.store.save_experience("x" * 100)
    await agent.store.add_task("water plants")

    status = await agent.get_status()

    assert status["status"] == "active"
    assert status["degraded"] is False
    assert status["experience_count"] == 1
    assert status["recent_experiences"][0]["content"] == "x" * 70 + ".."
    assert status["tasks_pending"] == 1
    assert status["graph_nodes"] == 0
    assert status["context_cap"] == 64000
    assert status["context_budget"] == pytest.approx(54400.0)
    assert status["scheduler"]["busy"] is False
    assert status["heartbeat"]["enabled"] is False
    await _close(agent)


@pytest.mark.asyncio
async def test_status_degrades_when_store_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    agent = _agent(tmp_path, _FakeReasoningService())
    await agent.ensure_started()

    async def _broken_counts() -> Dict[str, int]:
        raise OperationalError("SELECT count(*)", {}, Exception("database is locked"))

    monkeypatch.setattr(agent.store, "get_memory_counts", _broken_counts)
    status = await agent.get_status()

    assert status["status"] == "degraded"
    assert status["degraded"] is True
    assert "database is locked" in status["reason"]
    assert "stream_messages" in status
    await _close(agent)


@pytest.mark.asyncio
async def test_reset_wipes_everything(tmp_path: Path) -> None:
    service = _FakeReasoningService(classify="YES")
    agent = _agent(tmp_path, service)
    await agent.handle_message("My cat is called Luna")
    (tmp_path / "last_snapshot.txt").write_text("old", encoding="utf-8")

    result = await agent.reset()
    counts = await agent.store.get_memory_counts()
    snapshot = await agent.get_graph_snapshot()
    history = await agent.get_history()

    assert result == {"status": "success", "message": RESET_MESSAGE}
    assert counts == {"experience_count": 0, "domain_count": 0}
    assert snapshot == {"nodes": [], "edges": []}
    assert history == []
    assert not (tmp_path / "last_snapshot.txt").exists()
    await _close(agent)


@pytest.mark.asyncio
async def test_long_message_is_not_mistaken_for_a_repeat_across_purposes(tmp_path: Path) -> None:
    service = _FakeReasoningService(classify="YES")
    config = SchedulerConfig(
        min_spacing_sec=0.0,
        dedup_window_sec=1.5,
        chat_model="chat-model",
        sifter_model="sifter-model",
        vision_model="vision-model",
    )
    agent = _agent(tmp_path, service, scheduler_config=config)
    text = "My cat Luna knocked every plant off the shelf again this morning. " * 4

    reply = await agent.handle_message(text)
    await agent.background.drain()
    luna = await agent.store.get_node("luna")

    assert reply == "Happy to help."
    assert {"classify", "chat", "extract"} <= set(service.kinds())
    assert luna is not None
    assert agent.scheduler.status()["deduped_total"] == 0
    await _close(agent)


@pytest.mark.asyncio
async def test_concurrent_turns_consolidate_once(tmp_path: Path) -> None:
    _write_full_stream(tmp_path)
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service)
    await agent.ensure_started()
    await agent.graph.upsert([{"label": "hiking"}], [])

    first, second = await asyncio.gather(
        agent.handle_message("Any ideas for the weekend?"),
        agent.handle_message("Maybe somewhere near the coast?"),
    )
    hiking = await agent.store.get_node("hiking")
    status = await agent.get_status()

    assert first == second == "Happy to help."
    assert service.kinds().count("sift") == 1
    assert status["consolidations_total"] == 1
    assert hiking is not None and hiking["strength"] == pytest.approx(0.95)
    await _close(agent)


@pytest.mark.asyncio
async def test_turn_still_answers_when_storage_cannot_start(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    service = _FakeReasoningService()
    agent = _agent(tmp_path, service)
    real_init_db = agent.store.init_db

    async def _broken_init_db() -> None:
        raise OperationalError("CREATE TABLE", {}, Exception("disk I/O error"))

    monkeypatch.setattr(agent.store, "init_db", _broken_init_db)
    reply = await agent.handle_message("Hello there")
    started_while_broken = agent._started
    error_while_broken = agent._last_storage_error

    monkeypatch.setattr(agent.store, "init_db", real_init_db)
    await agent.handle_message("Hello again")

    assert reply == "Happy to help."
    assert started_while_broken is False
    assert error_while_broken is not None
    assert agent._started is True
    history = await agent.get_history()
    assert [turn["content"] for turn in history if turn["role"] == "user"] == ["Hello there", "Hello again"]
    await _close(agent)


@pytest.mark.asyncio
async def test_shutdown_tolerates_a_failed_inbound_task(tmp_path: Path) -> None:
    agent = _agent(tmp_path, _FakeReasoningService())

    async def _crashed() -> None:
        raise ValueError("unexpected update payload")

    task = asyncio.create_task(_crashed())
    await asyncio.wait([task])
    agent._telegram_task = task

    await agent.shutdown()
    await agent.store.close()

    assert agent._telegram_task is None
