"""
Built-in agent tools.

`AgentToolbox` holds one handler per tool. `build_registry` wires a chosen
subset of them into a `ToolRegistry`: the foreground agent gets the full set,
the heartbeat gets the outward-looking subset.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from db.sqlite_client import SQLiteClient
from graph_memory import GraphMemory, format_edge
from inference_scheduler import InferenceScheduler
from tool_loop import ToolHandler, ToolRegistry
from tools.browser import PageAutomation, PlaywrightPageAutomation, run_browse_command
from tools.mail import SmtpEmailTransport
from tools.messaging import TelegramGateway
from tools.web import DuckDuckGoSearch, fetch_page_text

logger = logging.getLogger(__name__)

FULL_TOOLSET: Tuple[str, ...] = (
    "SEARCH",
    "REMEMBER",
    "TASK_ADD",
    "TASK_LIST",
    "TASK_DONE",
    "ANALYZE",
    "FETCH",
    "READ",
    "WRITE",
    "LIST_FILES",
    "TIME",
    "EMAIL",
    "BROWSE",
    "TELEGRAM",
)

HEARTBEAT_TOOLSET: Tuple[str, ...] = (
    "SEARCH",
    "REMEMBER",
    "TASK_ADD",
    "ANALYZE",
    "BROWSE",
    "EMAIL",
    "TELEGRAM",
)

TOOL_USAGE: Dict[str, str] = {
    "SEARCH": "SEARCH: <query> (search the web)",
    "REMEMBER": "REMEMBER: <key> = <value> (save a fact; without '=' it is saved as an experience)",
    "TASK_ADD": "TASK_ADD: <description> (create a task)",
    "TASK_LIST": "TASK_LIST (list tasks)",
    "TASK_DONE": "TASK_DONE: #<id> (complete a task)",
    "ANALYZE": "ANALYZE (analyze your knowledge graph)",
    "FETCH": "FETCH: <url> (fetch a page as text)",
    "READ": "READ: <path> (read a file)",
    "WRITE": "WRITE: <path> | <content> (write a file)",
    "LIST_FILES": "LIST_FILES: <dir> (list a directory)",
    "TIME": "TIME (current date and time)",
    "EMAIL": "EMAIL: <to> | <subject> | <body> (send an email)",
    "BROWSE": "BROWSE: <url> [extract | click <selector> | type <selector> | <text> | screenshot]",
    "TELEGRAM": "TELEGRAM: <message> (message the user on Telegram)",
}

READ_MAX_CHARS = 10000
LIST_MAX_ENTRIES = 50
TASK_LIST_LIMIT = 20


def tool_protocol(names: Iterable[str]) -> str:
    lines = "\n".join(f"  {TOOL_USAGE.get(name, name)}" for name in names)
    return (
        "[AGENTIC TOOLS] You have access to the following tools. "
        "Use them by writing the tool command on its own line:\n"
        f"{lines}"
    )


def _strip_quotes(value: str) -> str:
    cleaned = (value or "").strip()
    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] == '"':
        return cleaned[1:-1]
    return cleaned


class AgentToolbox:
    def __init__(
        self,
        store: SQLiteClient,
        graph: GraphMemory,
        scheduler: InferenceScheduler,
        *,
        files_root: Path,
        search: Optional[DuckDuckGoSearch] = None,
        email: Optional[SmtpEmailTransport] = None,
        telegram: Optional[TelegramGateway] = None,
        page_automation_factory: Optional[Callable[[], PageAutomation]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._graph = graph
        self._scheduler = scheduler
        self.files_root = Path(files_root).resolve()
        self._search = search or DuckDuckGoSearch()
        self._email = email or SmtpEmailTransport()
        self._telegram = telegram or TelegramGateway()
        self._page_automation_factory = page_automation_factory or PlaywrightPageAutomation
        self._clock = clock

    def handlers(self) -> Dict[str, ToolHandler]:
        return {
            "SEARCH": self.search,
            "REMEMBER": self.remember,
            "TASK_ADD": self.task_add,
            "TASK_LIST": self.task_list,
            "TASK_DONE": self.task_done,
            "ANALYZE": self.analyze,
            "FETCH": self.fetch,
            "READ": self.read,
            "WRITE": self.write,
            "LIST_FILES": self.list_files,
            "TIME": self.time,
            "EMAIL": self.email,
            "BROWSE": self.browse,
            "TELEGRAM": self.telegram,
        }

    # -- memory & tasks ------------------------------------------------------

    async def search(self, args: str) -> str:
        return await self._search.search_text(args)

    async def remember(self, args: str) -> str:
        key, sep, value = (args or "").partition("=")
        if not sep:
            content = (args or "").strip()
            if not content:
                return "Usage: REMEMBER: <key> = <value>"
            await self._store.save_experience(content)
            return f'Noted and saved to experience memory: "{content}"'
        key = key.strip()
        value = value.strip()
        if not key:
            return "Usage: REMEMBER: <key> = <value>"
        await self._store.save_domain(key, value)
        return f"Saved to domain memory: {key} = {value}"

    async def task_add(self, args: str) -> str:
        description = (args or "").strip()
        if not description:
            return "Usage: TASK_ADD: <description>"
        task = await self._store.add_task(description)
        return f'Task #{task["id"]} created: "{task["description"]}"'

    async def task_list(self, args: str = "") -> str:
        tasks = await self._store.list_tasks(limit=TASK_LIST_LIMIT)
        if not tasks:
            return "No tasks found. The task list is empty."
        lines = [
            f"#{task['id']} [{task['status'].upper()}] {task['description']} ({task['created_at']})"
            for task in tasks
        ]
        return "Current tasks:\n" + "\n".join(lines)

    async def task_done(self, args: str) -> str:
        raw = (args or "").replace("#", "").strip()
        try:
            task_id = int(raw)
        except ValueError:
            return "Invalid task ID."
        task = await self._store.complete_task(task_id)
        if task is None:
            return f"Task #{task_id} not found."
        return f"Task #{task_id} marked as done."

    async def analyze(self, args: str = "") -> str:
        digest = await self._graph.digest()
        if digest["node_count"] == 0:
            return "The knowledge graph is empty. Talk more to build connections."
        nodes = ", ".join(
            f"{node['label']} ({node['type']}, strength: {node['strength']})"
            for node in digest["top_nodes"]
        )
        edges = "; ".join(format_edge(edge) for edge in digest["recent_edges"])
        analysis = await self._scheduler.schedule(
            "analytical",
            [
                {
                    "role": "system",
                    "content": "[TASK] Analyze this knowledge graph for insights. Be concise and insightful.",
                },
                {
                    "role": "user",
                    "content": (
                        f"Nodes: {digest['node_count']}, Edges: {digest['edge_count']}.\n"
                        f"Top nodes: {nodes}\nRecent edges: {edges or 'none'}"
                    ),
                },
            ],
        )
        return (
            f"Graph Analysis ({digest['node_count']} nodes, {digest['edge_count']} edges):\n"
            f"{analysis or 'No analysis available.'}"
        )

    # -- web -----------------------------------------------------------------

    async def fetch(self, args: str) -> str:
        return await fetch_page_text(args)

    async def browse(self, args: str) -> str:
        return await run_browse_command(
            self._page_automation_factory(),
            args,
            screenshot_path=self.files_root / "screenshot.png",
        )

    # -- files ---------------------------------------------------------------

    def _resolve_path(self, raw: str) -> Path:
        cleaned = _strip_quotes(raw)
        if not cleaned:
            raise ValueError("path must not be empty")
        candidate = Path(cleaned)
        if not candidate.is_absolute():
            candidate = self.files_root / candidate
        resolved = candidate.resolve()
        if resolved != self.files_root and self.files_root not in resolved.parents:
            raise PermissionError(f"{cleaned} is outside {self.files_root}")
        return resolved

    async def read(self, args: str) -> str:
        path = self._resolve_path(args)
        content = path.read_text(encoding="utf-8")
        suffix = "\n...[truncated]" if len(content) > READ_MAX_CHARS else ""
        return f"Content of {path}:\n{content[:READ_MAX_CHARS]}{suffix}"

    async def write(self, args: str) -> str:
        target, sep, content = (args or "").partition("|")
        if not sep:
            return "Usage: WRITE: <path> | <content>"
        path = self._resolve_path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content.strip(), encoding="utf-8")
        return f"Successfully wrote to {path}"

    async def list_files(self, args: str = "") -> str:
        path = self._resolve_path(args) if (args or "").strip() else self.files_root
        entries = sorted(item.name for item in path.iterdir())
        more = "\n...and more" if len(entries) > LIST_MAX_ENTRIES else ""
        return f"Files in {path}:\n" + "\n".join(entries[:LIST_MAX_ENTRIES]) + more

    async def time(self, args: str = "") -> str:
        now = self._clock()
        return f"Current date and time: {now.strftime('%A, %B %d, %Y')} at {now.strftime('%I:%M:%S %p')}"

    # -- outbound ------------------------------------------------------------

    async def email(self, args: str) -> str:
        parts = [part.strip() for part in (args or "").split("|")]
        if len(parts) < 3:
            return "Email format: EMAIL: to@address.com | Subject | Body text"
        to, subject, body = parts[0], parts[1], "|".join(parts[2:])
        message_id = await self._email.send(to, subject, body)
        return f'Email sent to {to} with subject "{subject}". Message ID: {message_id}'

    async def telegram(self, args: str) -> str:
        message = (args or "").strip()
        if not message:
            return "Usage: TELEGRAM: <message>"
        await self._telegram.send_message(None, message)
        return "Telegram message sent to user."


def build_registry(
    toolbox: AgentToolbox, names: Iterable[str] = FULL_TOOLSET
) -> ToolRegistry:
    handlers = toolbox.handlers()
    registry = ToolRegistry()
    for name in names:
        handler: Any = handlers.get(name)
        if handler is None:
            raise KeyError(f"no built-in tool named {name}")
        registry.register(name, handler)
    return registry
