import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from consolidation import ConsolidationEngine
from db.sqlite_client import SQLiteClient
from stream_manager import ConversationTurn, StreamManager


class _FakeScheduler:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []

    async def schedule(self, purpose, messages, *, images=None) -> str:
        self.calls.append({"purpose": purpose, "messages": messages})
        return self.reply


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _full_stream(tmp_path: Path) -> StreamManager:
    stream = StreamManager(tmp_path / "stream.json", context_cap=64000, budget_ratio=0.85)
    turns = []
    for index in range(100):
        role = "user" if index % 2 == 0 else "assistant"
        prefix = f"turn-{index:03d} "
        turns.append(ConversationTurn(role=role, content=prefix + "t" * (2640 - len(prefix))))
    stream.extend(turns)
    return stream


async def _setup(tmp_path: Path, reply: str):
    client = SQLiteClient(_sqlite_url(tmp_path / "consolidation.db"))
    await client.init_db()
    stream = _full_stream(tmp_path)
    scheduler = _FakeScheduler(reply)
    engine = ConsolidationEngine(
        client,
        stream,
        scheduler,
        data_dir=tmp_path,
        rolling_overlap=3,
        fallback_keep_turns=15,
        decay_factor=0.95,
        forget_threshold=0.1,
    )
    return client, stream, scheduler, engine


@pytest.mark.asyncio
async def test_over_budget_stream_is_sifted_and_flushed(tmp_path: Path) -> None:
    reply = json.dumps({"summary": "discussed travel plans", "patterns": ["likes hiking"]})
    client, stream, scheduler, engine = await _setup(tmp_path, reply)
    assert stream.estimate_tokens() == 66000
    assert stream.is_over_budget() is True
    original_tail = stream.tail(3)
    transcript = stream.render_transcript()

    result = await engine.run()
    experiences = await client.list_experiences()
    outcome = await client.get_runtime_meta("consolidation.last_outcome")
    await client.close()

    assert result.outcome == "consolidated"
    assert scheduler.calls[0]["purpose"] == "analytical"
    assert "The Sifter" in scheduler.calls[0]["messages"][0]["content"]
    assert [item["content"] for item in experiences] == ["[Sifter Pattern] likes hiking"]

    turns = stream.turns()
    assert len(turns) == 4
    assert turns[0] == ConversationTurn(role="system", content="[CONSOLIDATION SUMMARY] discussed travel plans")
    assert turns[1:] == original_tail
    assert (tmp_path / "last_snapshot.txt").read_text(encoding="utf-8") == transcript
    assert outcome == "consolidated"


@pytest.mark.asyncio
async def test_blank_summary_uses_default_text(tmp_path: Path) -> None:
    client, stream, _, engine = await _setup(tmp_path, '{"patterns": []}')

    result = await engine.run()
    await client.close()

    assert result.consolidated
    assert stream.turns()[0].content == "[CONSOLIDATION SUMMARY] Conversation consolidated."


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        "",
        "I could not find any patterns.",
        '{"summary": "ok", "patterns": "not-a-list"}',
        '{"summary": "broken", "patterns": [}',
    ],
)
async def test_sift_failure_preserves_raw_snapshot(tmp_path: Path, reply: str) -> None:
    client, stream, _, engine = await _setup(tmp_path, reply)
    transcript = stream.render_transcript()
    expected_tail = stream.tail(15)

    result = await engine.run()
    experiences = await client.list_experiences()
    outcome = await client.get_runtime_meta("consolidation.last_outcome")
    await client.close()

    assert result.outcome == "fallback"
    assert result.reason
    assert len(experiences) == 1
    assert experiences[0]["content"] == transcript
    assert stream.turns() == expected_tail
    assert outcome == "fallback"


@pytest.mark.asyncio
async def test_consolidation_decays_graph(tmp_path: Path) -> None:
    reply = json.dumps({"summary": "s", "patterns": []})
    client, _, _, engine = await _setup(tmp_path, reply)
    await client.upsert_graph(
        entities=[{"label": "hiking"}],
        relationships=[{"source": "user", "target": "hiking", "relationship": "likes"}],
        node_delta=0.5,
        edge_delta=1.0,
    )

    await engine.run()
    node = await client.get_node("hiking")
    edge = await client.get_edge("user", "hiking", "likes")
    await client.close()

    assert node is not None and node["strength"] == pytest.approx(0.95)
    assert edge is not None and edge["weight"] == pytest.approx(0.95)
