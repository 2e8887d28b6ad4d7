"""
Associative graph memory.

Entities and relationships mentioned in conversation become weighted nodes
and edges. Re-mentions reinforce them, consolidation decays them, and
recall walks the strongest edges around whatever the user is talking about.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from db.sqlite_client import SQLiteClient
from inference_scheduler import InferenceScheduler
from reasoning_client import parse_json_object
from runtime_state import _env_float

logger = logging.getLogger(__name__)

RECALL_MIN_TERM_LENGTH = 3
RECALL_NODE_MIN_STRENGTH = 1.0
RECALL_NODE_LIMIT = 15
RECALL_EDGE_MIN_WEIGHT = 0.5

EXTRACTION_INSTRUCTION = (
    "Extract the entities and relationships from the user's message. "
    "Respond ONLY with raw JSON of the form "
    '{"entities": [{"label": "...", "type": "person|place|thing|concept|preference"}], '
    '"relationships": [{"source": "...", "target": "...", "relationship": "..."}]}. '
    "Use short lower-case labels and snake_case relationship names. "
    'Respond with {"entities": [], "relationships": []} if nothing is worth keeping.'
)


class EntityMention(BaseModel):
    label: str
    type: str = "entity"


class RelationshipMention(BaseModel):
    source: str
    target: str
    relationship: str


class GraphExtraction(BaseModel):
    entities: List[EntityMention] = Field(default_factory=list)
    relationships: List[RelationshipMention] = Field(default_factory=list)


@dataclass
class RecallResult:
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)
    summary: str = ""

    def __bool__(self) -> bool:
        return bool(self.summary)


def recall_terms(query: str) -> List[str]:
    terms: List[str] = []
    for token in re.findall(r"\w+", (query or "").lower()):
        if len(token) >= RECALL_MIN_TERM_LENGTH and token not in terms:
            terms.append(token)
    return terms


def format_edge(edge: Dict[str, Any]) -> str:
    return f"{edge['source_label']} —[{edge['relationship']}]→ {edge['target_label']}"


class GraphMemory:
    def __init__(
        self,
        store: SQLiteClient,
        scheduler: Optional[InferenceScheduler] = None,
        *,
        node_delta: Optional[float] = None,
        edge_delta: Optional[float] = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self.node_delta = (
            node_delta
            if node_delta is not None
            else _env_float("GRAPH_NODE_REINFORCE_DELTA", 0.5)
        )
        self.edge_delta = (
            edge_delta
            if edge_delta is not None
            else _env_float("GRAPH_EDGE_REINFORCE_DELTA", 1.0)
        )

    async def upsert(
        self,
        entities: List[Dict[str, Any]],
        relationships: List[Dict[str, Any]],
    ) -> Dict[str, int]:
        return await self._store.upsert_graph(
            entities=entities,
            relationships=relationships,
            node_delta=self.node_delta,
            edge_delta=self.edge_delta,
        )

    async def recall(self, query: str, limit: int = 8) -> RecallResult:
        """
        Associative lookup around the query.

        Only nodes with strength above 1.0 (mentioned more than once) take
        part, so one-off mentions never surface here.
        """
        terms = recall_terms(query)
        if not terms:
            return RecallResult()
        nodes = await self._store.find_active_nodes(
            terms,
            min_strength=RECALL_NODE_MIN_STRENGTH,
            limit=RECALL_NODE_LIMIT,
        )
        if not nodes:
            return RecallResult()
        labels = [node["label"] for node in nodes]
        edges = await self._store.find_edges_for_labels(
            labels, min_weight=RECALL_EDGE_MIN_WEIGHT, limit=limit
        )
        summary = ""
        if edges:
            facts = "; ".join(format_edge(edge) for edge in edges)
            summary = f"Graph recall (Active Nodes: {', '.join(labels)}): {facts}"
        return RecallResult(nodes=nodes, edges=edges, summary=summary)

    async def extract_and_store(self, text: str) -> Optional[Dict[str, int]]:
        """Ask the sifter model for graph mentions in `text` and upsert them."""
        if self._scheduler is None or not (text or "").strip():
            return None
        reply = await self._scheduler.schedule(
            "analytical",
            [
                {"role": "system", "content": EXTRACTION_INSTRUCTION},
                {"role": "user", "content": text},
            ],
        )
        payload = parse_json_object(reply)
        if payload is None:
            logger.warning("Graph extraction returned no JSON; skipping update")
            return None
        try:
            extraction = GraphExtraction.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Graph extraction payload rejected: %s", exc)
            return None
        counts = await self.upsert(
            [item.model_dump() for item in extraction.entities],
            [item.model_dump() for item in extraction.relationships],
        )
        logger.info(
            "Graph updated: %d node mentions, %d edge mentions",
            counts["nodes"],
            counts["edges"],
        )
        return counts

    async def digest(self, top_limit: int = 8, recent_limit: int = 5) -> Dict[str, Any]:
        return await self._store.get_graph_stats(
            top_limit=top_limit, recent_limit=recent_limit
        )

    async def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return await self._store.get_graph_snapshot()
