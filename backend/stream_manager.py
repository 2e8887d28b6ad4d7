"""
Stream & capacity manager.

Owns the active conversation buffer and its JSON snapshot on disk, and
answers the only capacity question the agent asks: is the buffer over
budget?
"""

from __future__ import annotations

import json
import logging
import math
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from filelock import FileLock, Timeout

from runtime_state import _env_float, _env_int

logger = logging.getLogger(__name__)

VALID_ROLES = frozenset({"user", "assistant", "system"})


@dataclass
class ConversationTurn:
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in VALID_ROLES:
            raise ValueError(f"invalid turn role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValueError("turn content must be a string")

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> "ConversationTurn":
        if not isinstance(payload, dict):
            raise ValueError("turn must be an object")
        return cls(role=payload.get("role"), content=payload.get("content"))


def estimate_tokens(text: Optional[str]) -> int:
    return math.ceil(len(text or "") / 4)


class StreamManager:
    """Ordered conversation buffer persisted as a JSON snapshot."""

    def __init__(
        self,
        snapshot_path: Path,
        *,
        context_cap: Optional[int] = None,
        budget_ratio: Optional[float] = None,
        lock_timeout_sec: float = 5.0,
    ) -> None:
        self.snapshot_path = Path(snapshot_path)
        self.context_cap = (
            context_cap
            if context_cap is not None
            else _env_int("AGENT_CONTEXT_CAP", 64000, minimum=1)
        )
        self.budget_ratio = (
            budget_ratio
            if budget_ratio is not None
            else _env_float("AGENT_CONTEXT_BUDGET_RATIO", 0.85, minimum=0.01)
        )
        self._lock = FileLock(f"{self.snapshot_path}.lock", timeout=lock_timeout_sec)
        self._turns: List[ConversationTurn] = []

    # -- persistence ---------------------------------------------------------

    def load(self) -> List[ConversationTurn]:
        """Rehydrate from disk; anything unreadable starts an empty buffer."""
        if not self.snapshot_path.exists():
            self._turns = []
            return self.turns()
        try:
            raw = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("snapshot is not a list")
            self._turns = [ConversationTurn.from_dict(item) for item in raw]
        except (OSError, ValueError, TypeError) as exc:
            logger.warning(
                "Stream snapshot %s unreadable, starting empty: %s",
                self.snapshot_path,
                exc,
            )
            self._turns = []
        return self.turns()

    def _persist(self) -> None:
        payload = json.dumps(
            [turn.to_dict() for turn in self._turns], ensure_ascii=False, indent=2
        )
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            with self._lock:
                fd, tmp_name = tempfile.mkstemp(
                    dir=str(self.snapshot_path.parent),
                    prefix=f".{self.snapshot_path.name}.",
                    suffix=".tmp",
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        handle.write(payload)
                    os.replace(tmp_name, self.snapshot_path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
        except (OSError, Timeout) as exc:
            logger.error("Failed to persist stream snapshot: %s", exc)

    # -- mutation ------------------------------------------------------------

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)
        self._persist()

    def extend(self, turns: Iterable[ConversationTurn]) -> None:
        self._turns.extend(turns)
        self._persist()

    def replace(self, turns: Iterable[ConversationTurn]) -> None:
        self._turns = list(turns)
        self._persist()

    def clear(self) -> None:
        self._turns = []
        self._persist()

    # -- views ---------------------------------------------------------------

    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def tail(self, count: int) -> List[ConversationTurn]:
        if count <= 0:
            return []
        return list(self._turns[-count:])

    def __len__(self) -> int:
        return len(self._turns)

    def as_messages(self, turns: Optional[List[ConversationTurn]] = None) -> List[Dict[str, str]]:
        return [turn.to_dict() for turn in (self._turns if turns is None else turns)]

    def render_transcript(self) -> str:
        return "\n".join(f"{turn.role}: {turn.content}" for turn in self._turns)

    def estimate_tokens(self) -> int:
        return sum(estimate_tokens(turn.content) for turn in self._turns)

    def budget(self, cap: Optional[int] = None) -> float:
        return self.budget_ratio * (cap if cap is not None else self.context_cap)

    def is_over_budget(self, cap: Optional[int] = None) -> bool:
        return self.estimate_tokens() > self.budget(cap)
