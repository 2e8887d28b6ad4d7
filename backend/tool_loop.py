"""
Tool-orchestration loop.

Detection (`parse_directives`) only turns model text into typed
`ToolDirective`s. Dispatch (`ToolRegistry.execute`) only runs them. The
`ToolLoop` ties the two together for a bounded number of rounds.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from inference_scheduler import InferenceScheduler
from runtime_state import CollaboratorNotConfigured

logger = logging.getLogger(__name__)

ToolHandler = Callable[[str], Union[str, Awaitable[str]]]

RESULTS_HEADER = "TOOL RESULTS:"
RESULTS_FOOTER = (
    "Now compose your final response to the user using these results. "
    "Do NOT call tools again unless absolutely necessary."
)


@dataclass(frozen=True)
class ToolDirective:
    tool: str
    args: str = ""


def _match_line(line: str, names: List[str]) -> Optional[ToolDirective]:
    trimmed = line.strip()
    upper = trimmed.upper()
    for name in names:
        prefix = f"{name}:"
        if upper.startswith(prefix):
            return ToolDirective(tool=name, args=trimmed[len(prefix):].strip())
        if upper == name:
            return ToolDirective(tool=name)
    return None


def _ordered_names(tool_names: Iterable[str]) -> List[str]:
    return sorted({name.upper() for name in tool_names}, key=len, reverse=True)


def parse_directives(text: str, tool_names: Iterable[str]) -> List[ToolDirective]:
    """
    Every directive in `text`, in order of appearance.

    A directive is a line that, once trimmed, starts with `NAME:` or is
    exactly `NAME` (case-insensitive).
    """
    names = _ordered_names(tool_names)
    directives: List[ToolDirective] = []
    for line in (text or "").splitlines():
        directive = _match_line(line, names)
        if directive is not None:
            directives.append(directive)
    return directives


def strip_directives(text: str, tool_names: Iterable[str]) -> str:
    names = _ordered_names(tool_names)
    kept = [
        line for line in (text or "").splitlines() if _match_line(line, names) is None
    ]
    return "\n".join(kept).strip()


class ToolRegistry:
    """Name -> handler table. Handlers take the raw argument string."""

    def __init__(self, handlers: Optional[Dict[str, ToolHandler]] = None) -> None:
        self._handlers: Dict[str, ToolHandler] = {}
        self._warned_unconfigured: Set[str] = set()
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name.strip().upper()] = handler

    def names(self) -> List[str]:
        return list(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name.upper() in self._handlers

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        selected = {name.upper() for name in names}
        return ToolRegistry(
            {name: handler for name, handler in self._handlers.items() if name in selected}
        )

    def parse(self, text: str) -> List[ToolDirective]:
        return parse_directives(text, self.names())

    async def execute(self, directive: ToolDirective) -> str:
        name = directive.tool.upper()
        handler = self._handlers.get(name)
        if handler is None:
            return f"Unknown tool: {directive.tool}"
        logger.info(
            "Executing tool %s%s",
            name,
            f" -> {directive.args[:60]}" if directive.args else "",
        )
        try:
            result = handler(directive.args)
            if inspect.isawaitable(result):
                result = await result
        except CollaboratorNotConfigured as exc:
            if name not in self._warned_unconfigured:
                self._warned_unconfigured.add(name)
                logger.warning("Tool %s unavailable: %s", name, exc)
            return f"[TOOL ERROR] {name}: {exc}"
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return f"[TOOL ERROR] {name}: {exc}"
        return "" if result is None else str(result)


@dataclass
class ToolLoopResult:
    text: str
    rounds: int = 0
    results: List[str] = field(default_factory=list)
    stripped: bool = False
    raw_fallback: bool = False


def format_results(blocks: List[str]) -> str:
    return f"{RESULTS_HEADER}\n" + "\n\n".join(blocks) + f"\n\n{RESULTS_FOOTER}"


class ToolLoop:
    def __init__(
        self,
        scheduler: InferenceScheduler,
        registry: ToolRegistry,
        *,
        max_rounds: int = 2,
        purpose: str = "inference",
    ) -> None:
        self._scheduler = scheduler
        self.registry = registry
        self.max_rounds = max_rounds
        self.purpose = purpose

    async def run(self, messages: List[Dict[str, str]], reply: str) -> ToolLoopResult:
        conversation = list(messages)
        all_blocks: List[str] = []
        rounds = 0
        while rounds < self.max_rounds:
            directives = self.registry.parse(reply)
            if not directives:
                break
            blocks: List[str] = []
            for directive in directives:
                result = await self.registry.execute(directive)
                blocks.append(f"[TOOL RESULT] {directive.tool}\n{result}")
            all_blocks.extend(blocks)

            conversation.append({"role": "assistant", "content": reply})
            conversation.append({"role": "system", "content": format_results(blocks)})
            reply = await self._scheduler.schedule(self.purpose, conversation)
            rounds += 1

        text = reply or ""
        stripped = False
        raw_fallback = False
        if rounds and self.registry.parse(text):
            logger.info("Directives left after %d rounds; stripping them", rounds)
            text = strip_directives(text, self.registry.names())
            stripped = True
        if not text.strip() and all_blocks:
            text = "\n\n".join(all_blocks)
            raw_fallback = True
        return ToolLoopResult(
            text=text,
            rounds=rounds,
            results=all_blocks,
            stripped=stripped,
            raw_fallback=raw_fallback,
        )
