from typing import Any, Dict, List

import pytest

from runtime_state import CollaboratorNotConfigured
from tool_loop import (
    ToolDirective,
    ToolLoop,
    ToolRegistry,
    format_results,
    parse_directives,
    strip_directives,
)

TOOL_NAMES = ["SEARCH", "TASK_ADD", "TASK_LIST", "TASK_DONE", "TIME"]


class _ScriptedScheduler:
    def __init__(self, replies: List[str]) -> None:
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []

    async def schedule(self, purpose, messages, *, images=None) -> str:
        self.calls.append({"purpose": purpose, "messages": list(messages)})
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def test_parse_directives_in_order_of_appearance() -> None:
    text = (
        "Let me check a few things.\n"
        "  search: weather in Lisbon\n"
        "TASK_LIST\n"
        "task_add: pack an umbrella\n"
        "TIME:"
    )

    assert parse_directives(text, TOOL_NAMES) == [
        ToolDirective("SEARCH", "weather in Lisbon"),
        ToolDirective("TASK_LIST", ""),
        ToolDirective("TASK_ADD", "pack an umbrella"),
        ToolDirective("TIME", ""),
    ]


def test_parse_directives_ignores_prose_mentions() -> None:
    text = "SEARCHING the web now\nI could SEARCH: later\nTIME flies"
    assert parse_directives(text, TOOL_NAMES) == []


def test_strip_directives_keeps_prose() -> None:
    text = "Here is what I found.\nSEARCH: more\nHope that helps."
    assert strip_directives(text, TOOL_NAMES) == "Here is what I found.\nHope that helps."


def test_format_results_block() -> None:
    assert format_results(["[TOOL RESULT] TIME\nnoon"]) == (
        "TOOL RESULTS:\n[TOOL RESULT] TIME\nnoon\n\n"
        "Now compose your final response to the user using these results. "
        "Do NOT call tools again unless absolutely necessary."
    )


@pytest.mark.asyncio
async def test_registry_reports_failures_as_results() -> None:
    def _broken(args: str) -> str:
        raise RuntimeError("disk on fire")

    async def _unconfigured(args: str) -> str:
        raise CollaboratorNotConfigured("email transport", ["AGENT_EMAIL_USER"])

    registry = ToolRegistry({"TIME": lambda args: "noon", "READ": _broken, "EMAIL": _unconfigured})

    assert await registry.execute(ToolDirective("time")) == "noon"
    assert await registry.execute(ToolDirective("FLY", "away")) == "Unknown tool: FLY"
    assert await registry.execute(ToolDirective("READ", "x")) == "[TOOL ERROR] READ: disk on fire"
    first = await registry.execute(ToolDirective("EMAIL", "a | b | c"))
    second = await registry.execute(ToolDirective("EMAIL", "a | b | c"))
    assert first.startswith("[TOOL ERROR] EMAIL: email transport is not configured")
    assert first == second


def test_registry_subset_keeps_only_named_tools() -> None:
    registry = ToolRegistry({name: (lambda args: "") for name in TOOL_NAMES})
    subset = registry.subset(["search", "TIME"])

    assert sorted(subset.names()) == ["SEARCH", "TIME"]
    assert "TASK_ADD" not in subset


@pytest.mark.asyncio
async def test_loop_executes_directives_and_reprompts() -> None:
    registry = ToolRegistry({"TIME": lambda args: "It is noon."})
    scheduler = _ScriptedScheduler(["It is noon where you are."])
    loop = ToolLoop(scheduler, registry)
    messages = [{"role": "user", "content": "what time is it?"}]

    result = await loop.run(messages, "TIME")

    assert result.text == "It is noon where you are."
    assert result.rounds == 1
    assert result.results == ["[TOOL RESULT] TIME\nIt is noon."]
    follow_up = scheduler.calls[0]["messages"]
    assert follow_up[-2] == {"role": "assistant", "content": "TIME"}
    assert follow_up[-1]["role"] == "system"
    assert follow_up[-1]["content"].startswith("TOOL RESULTS:\n[TOOL RESULT] TIME\nIt is noon.")
    assert messages == [{"role": "user", "content": "what time is it?"}]


@pytest.mark.asyncio
async def test_loop_without_directives_returns_reply_unchanged() -> None:
    scheduler = _ScriptedScheduler(["unused"])
    loop = ToolLoop(scheduler, ToolRegistry({"TIME": lambda args: "noon"}))

    result = await loop.run([], "Just chatting.")

    assert result.text == "Just chatting."
    assert result.rounds == 0
    assert scheduler.calls == []


@pytest.mark.asyncio
async def test_loop_stops_after_two_rounds_of_directives() -> None:
    calls = []

    def _search(args: str) -> str:
        calls.append(args)
        return f"results for {args}"

    scheduler = _ScriptedScheduler(["SEARCH: again"])
    loop = ToolLoop(scheduler, ToolRegistry({"SEARCH": _search}), max_rounds=2)

    result = await loop.run([{"role": "user", "content": "find"}], "SEARCH: first")

    assert len(scheduler.calls) == 2
    assert calls == ["first", "again"]
    assert result.rounds == 2
    assert result.stripped is True
    assert result.raw_fallback is True
    assert result.text == "[TOOL RESULT] SEARCH\nresults for first\n\n[TOOL RESULT] SEARCH\nresults for again"


@pytest.mark.asyncio
async def test_loop_strips_leftover_directives_from_final_prose() -> None:
    scheduler = _ScriptedScheduler(["Found it.\nSEARCH: more", "Here you go.\nSEARCH: even more"])
    loop = ToolLoop(scheduler, ToolRegistry({"SEARCH": lambda args: "hits"}), purpose="heartbeat")

    result = await loop.run([], "SEARCH: start")

    assert result.text == "Here you go."
    assert result.stripped is True
    assert result.raw_fallback is False
    assert [call["purpose"] for call in scheduler.calls] == ["heartbeat", "heartbeat"]
