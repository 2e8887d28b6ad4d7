"""
Consolidation ("sleep") engine.

Snapshot -> Sift -> Persist & Decay -> Flush & Resume.

When sifting fails for any reason the raw transcript is stored verbatim
before the buffer is cut down, so nothing said in the conversation is lost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from db.sqlite_client import SIFTER_PATTERN_PREFIX, SQLiteClient
from inference_scheduler import InferenceScheduler
from reasoning_client import parse_json_object
from runtime_state import _env_float, _env_int, _utc_iso_now
from stream_manager import ConversationTurn, StreamManager

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[CONSOLIDATION SUMMARY] "
DEFAULT_SUMMARY = "Conversation consolidated."
SNAPSHOT_FILENAME = "last_snapshot.txt"

SIFTER_INSTRUCTION = (
    "You are 'The Sifter', an independent analytical observer. You are NOT the AI. "
    "Analyze this snapshot of raw conversation. Look for the 'Aha!' moments, "
    "structural behavioral patterns, and recurring themes. Respond ONLY with raw JSON: "
    '{"summary": "A high-level synthesis of what occurred", '
    '"patterns": ["Deep pattern 1", "Structural insight 2", ...]}'
)


class SiftReport(BaseModel):
    summary: str = ""
    patterns: List[str] = Field(default_factory=list)


class SiftFailed(Exception):
    """The sifter reply could not be turned into a SiftReport."""


@dataclass
class ConsolidationResult:
    outcome: str
    reason: str = ""
    summary: str = ""
    patterns: List[str] = field(default_factory=list)
    decay: Dict[str, Any] = field(default_factory=dict)
    turns_before: int = 0
    turns_after: int = 0

    @property
    def consolidated(self) -> bool:
        return self.outcome == "consolidated"


class ConsolidationEngine:
    def __init__(
        self,
        store: SQLiteClient,
        stream: StreamManager,
        scheduler: InferenceScheduler,
        *,
        data_dir: Path,
        rolling_overlap: Optional[int] = None,
        fallback_keep_turns: Optional[int] = None,
        decay_factor: Optional[float] = None,
        forget_threshold: Optional[float] = None,
    ) -> None:
        self._store = store
        self._stream = stream
        self._scheduler = scheduler
        self.snapshot_path = Path(data_dir) / SNAPSHOT_FILENAME
        self.rolling_overlap = (
            rolling_overlap
            if rolling_overlap is not None
            else _env_int("AGENT_ROLLING_OVERLAP", 3)
        )
        self.fallback_keep_turns = (
            fallback_keep_turns
            if fallback_keep_turns is not None
            else _env_int("AGENT_FALLBACK_KEEP_TURNS", 15)
        )
        self.decay_factor = (
            decay_factor
            if decay_factor is not None
            else _env_float("GRAPH_DECAY_FACTOR", 0.95, minimum=0.01)
        )
        self.forget_threshold = (
            forget_threshold
            if forget_threshold is not None
            else _env_float("GRAPH_FORGET_THRESHOLD", 0.1)
        )

    def _write_snapshot_file(self, transcript: str) -> None:
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            self.snapshot_path.write_text(transcript, encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not write %s: %s", self.snapshot_path, exc)

    async def _sift(self, transcript: str) -> SiftReport:
        reply = await self._scheduler.schedule(
            "analytical",
            [
                {"role": "system", "content": SIFTER_INSTRUCTION},
                {"role": "user", "content": f"SNAPSHOT FOR ANALYSIS:\n{transcript}"},
            ],
        )
        if not reply.strip():
            raise SiftFailed("empty sifter reply")
        start = reply.find("{")
        end = reply.rfind("}")
        if start < 0 or end <= start:
            raise SiftFailed("no JSON object in sifter reply")
        payload = parse_json_object(reply[start : end + 1])
        if payload is None:
            raise SiftFailed("sifter JSON did not parse")
        try:
            return SiftReport.model_validate(payload)
        except ValidationError as exc:
            raise SiftFailed(f"sifter JSON has the wrong shape: {exc.error_count()} error(s)") from exc

    async def _record_outcome(self, result: ConsolidationResult) -> None:
        try:
            await self._store.set_runtime_meta("consolidation.last_run_at", _utc_iso_now())
            await self._store.set_runtime_meta("consolidation.last_outcome", result.outcome)
            await self._store.set_runtime_meta("consolidation.last_reason", result.reason or "ok")
        except SQLAlchemyError as exc:
            logger.error("Could not record consolidation outcome: %s", exc)

    async def run(self) -> ConsolidationResult:
        turns_before = len(self._stream)
        logger.info("Consolidation started (%d turns, ~%d tokens)", turns_before, self._stream.estimate_tokens())

        # Snapshot
        transcript = self._stream.render_transcript()
        self._write_snapshot_file(transcript)

        try:
            # Sift
            report = await self._sift(transcript)

            # Persist & decay
            for pattern in report.patterns:
                await self._store.save_experience(f"{SIFTER_PATTERN_PREFIX}{pattern}")
            decay = await self._store.decay_graph(
                factor=self.decay_factor,
                threshold=self.forget_threshold,
                reason="consolidation",
            )
        except (SiftFailed, SQLAlchemyError, ValueError) as exc:
            return await self._fallback(transcript, turns_before, str(exc))

        # Flush & resume
        summary = report.summary.strip() or DEFAULT_SUMMARY
        overlap = self._stream.tail(self.rolling_overlap)
        self._stream.replace(
            [ConversationTurn(role="system", content=f"{SUMMARY_PREFIX}{summary}"), *overlap]
        )
        result = ConsolidationResult(
            outcome="consolidated",
            summary=summary,
            patterns=list(report.patterns),
            decay=decay,
            turns_before=turns_before,
            turns_after=len(self._stream),
        )
        logger.info(
            "Consolidation complete: %d patterns, %d nodes pruned, %d turns kept",
            len(report.patterns),
            decay.get("pruned_nodes", 0),
            result.turns_after,
        )
        await self._record_outcome(result)
        return result

    async def _fallback(
        self, transcript: str, turns_before: int, reason: str
    ) -> ConsolidationResult:
        logger.error("Sifting failed (%s); preserving raw snapshot", reason)
        if transcript:
            try:
                await self._store.save_experience(transcript)
            except SQLAlchemyError as exc:
                # Keep the buffer intact rather than truncating unsaved history.
                logger.error("Raw snapshot could not be stored: %s", exc)
                result = ConsolidationResult(
                    outcome="failed",
                    reason=f"{reason}; snapshot not stored",
                    turns_before=turns_before,
                    turns_after=turns_before,
                )
                await self._record_outcome(result)
                return result
        self._stream.replace(self._stream.tail(self.fallback_keep_turns))
        result = ConsolidationResult(
            outcome="fallback",
            reason=reason,
            turns_before=turns_before,
            turns_after=len(self._stream),
        )
        await self._record_outcome(result)
        return result
