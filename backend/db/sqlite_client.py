"""
SQLite Client for the Memory Keep agent

This module implements the durable memory store with:
- Experience memory (append-only free-text records)
- Domain memory (append-only key/value history)
- Graph memory (weighted entity nodes and relationship edges)
- Agent tasks (pending -> done)

The store holds no policy: decay factors, thresholds and increments are
passed in by the callers that own them.
"""

import os
import sqlite3
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Float,
    Index,
    String,
    Text,
    DateTime,
    UniqueConstraint,
    select,
    update,
    delete,
    func,
    or_,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv, find_dotenv

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///memory_keep.db"
SIFTER_PATTERN_PREFIX = "[Sifter Pattern] "
TASK_PENDING = "pending"
TASK_DONE = "done"

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime for DB columns."""
    return _utc_now().replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_label(value: Any) -> str:
    """Graph labels are matched case-insensitively and whitespace-trimmed."""
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


# =============================================================================
# ORM Models
# =============================================================================


class ExperienceMemory(Base):
    """A durable fact or consolidated pattern. Never updated."""

    __tablename__ = "experience_memory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive, index=True)


class DomainMemory(Base):
    """Key/value fact. Rows sharing a key form a history, not an overwrite."""

    __tablename__ = "domain_memory"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), nullable=False, index=True)
    value = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


class GraphNode(Base):
    """An entity of the associative graph; label is the natural key."""

    __tablename__ = "graph_nodes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    label = Column(String(255), nullable=False, unique=True)
    type = Column(String(64), nullable=False, default="entity")
    strength = Column(Float, nullable=False, default=1.0, server_default=text("1.0"))
    first_seen = Column(DateTime, default=_utc_now_naive)
    last_seen = Column(DateTime, default=_utc_now_naive)

    __table_args__ = (Index("ix_graph_nodes_strength", "strength"),)


class GraphEdge(Base):
    """A weighted, directed relationship between two labels."""

    __tablename__ = "graph_edges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_label = Column(String(255), nullable=False)
    target_label = Column(String(255), nullable=False)
    relationship = Column(String(128), nullable=False)
    weight = Column(Float, nullable=False, default=1.0, server_default=text("1.0"))
    timestamp = Column(DateTime, default=_utc_now_naive)

    __table_args__ = (
        UniqueConstraint(
            "source_label",
            "target_label",
            "relationship",
            name="uq_graph_edges_triple",
        ),
        Index("ix_graph_edges_source", "source_label"),
        Index("ix_graph_edges_target", "target_label"),
    )


class AgentTask(Base):
    """Agent task list entry. Only transition: pending -> done."""

    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    description = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=TASK_PENDING)
    created_at = Column(DateTime, default=_utc_now_naive)
    completed_at = Column(DateTime, nullable=True)


class RuntimeMeta(Base):
    """Small key/value bookkeeping table (last consolidation, last decay)."""

    __tablename__ = "runtime_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(String(64), nullable=False)


class SQLiteClient:
    """
    Async SQLite client for agent memory.

    Core operations:
    - experiences: save / recent / sifter patterns
    - domain facts: save / history
    - graph: upsert, decay+prune (single transaction), recall queries, stats
    - tasks: add / list / complete / stats
    - reset: wipe every record family
    """

    def __init__(self, database_url: str):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory_keep.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create tables if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # =========================================================================
    # Runtime Meta
    # =========================================================================

    async def _set_runtime_meta(
        self, session: AsyncSession, key: str, value: str
    ) -> None:
        await session.execute(
            text(
                "INSERT INTO runtime_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_now_naive().isoformat()},
        )

    async def get_runtime_meta(self, key: str) -> Optional[str]:
        key_value = (key or "").strip()
        if not key_value:
            return None
        async with self.session() as session:
            result = await session.execute(
                select(RuntimeMeta.value).where(RuntimeMeta.key == key_value)
            )
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def set_runtime_meta(self, key: str, value: str) -> None:
        key_value = (key or "").strip()
        if not key_value:
            raise ValueError("key must not be empty")
        async with self.session() as session:
            await self._set_runtime_meta(session, key_value, value)

    # =========================================================================
    # Experience & Domain Memory
    # =========================================================================

    async def save_experience(self, content: str) -> Dict[str, Any]:
        """Append an experience record. Content is stored verbatim."""
        if not isinstance(content, str) or not content:
            raise ValueError("experience content must be a non-empty string")
        async with self.session() as session:
            row = ExperienceMemory(content=content, created_at=_utc_now_naive())
            session.add(row)
            await session.flush()
            return {
                "id": row.id,
                "content": row.content,
                "created_at": _iso(row.created_at),
            }

    async def save_domain(self, key: str, value: str) -> Dict[str, Any]:
        key_value = (key or "").strip()
        if not key_value:
            raise ValueError("domain key must not be empty")
        async with self.session() as session:
            row = DomainMemory(
                key=key_value, value=(value or "").strip(), created_at=_utc_now_naive()
            )
            session.add(row)
            await session.flush()
            return {
                "id": row.id,
                "key": row.key,
                "value": row.value,
                "created_at": _iso(row.created_at),
            }

    async def get_domain_history(self, key: str, limit: int = 10) -> List[Dict[str, Any]]:
        """All values recorded under a key, newest first."""
        async with self.session() as session:
            result = await session.execute(
                select(DomainMemory)
                .where(DomainMemory.key == (key or "").strip())
                .order_by(DomainMemory.created_at.desc(), DomainMemory.id.desc())
                .limit(max(1, int(limit)))
            )
            return [
                {
                    "id": row.id,
                    "key": row.key,
                    "value": row.value,
                    "created_at": _iso(row.created_at),
                }
                for row in result.scalars().all()
            ]

    async def get_recent_experiences(self, limit: int = 5) -> List[Dict[str, Any]]:
        """Most recent experiences, excluding sifter patterns."""
        async with self.session() as session:
            result = await session.execute(
                select(ExperienceMemory)
                .where(~ExperienceMemory.content.startswith(SIFTER_PATTERN_PREFIX))
                .order_by(ExperienceMemory.created_at.desc(), ExperienceMemory.id.desc())
                .limit(max(1, int(limit)))
            )
            return [
                {"id": row.id, "content": row.content, "created_at": _iso(row.created_at)}
                for row in result.scalars().all()
            ]

    async def get_sifter_patterns(self, limit: int = 3) -> List[str]:
        """Latest sifted patterns with the tag stripped."""
        async with self.session() as session:
            result = await session.execute(
                select(ExperienceMemory.content)
                .where(ExperienceMemory.content.startswith(SIFTER_PATTERN_PREFIX))
                .order_by(ExperienceMemory.created_at.desc(), ExperienceMemory.id.desc())
                .limit(max(1, int(limit)))
            )
            return [
                content[len(SIFTER_PATTERN_PREFIX):]
                for content in result.scalars().all()
            ]

    async def list_experiences(self) -> List[Dict[str, Any]]:
        """Every experience record in insertion order."""
        async with self.session() as session:
            result = await session.execute(
                select(ExperienceMemory).order_by(ExperienceMemory.id.asc())
            )
            return [
                {"id": row.id, "content": row.content, "created_at": _iso(row.created_at)}
                for row in result.scalars().all()
            ]

    async def get_memory_counts(self) -> Dict[str, int]:
        async with self.session() as session:
            experience_count = await session.scalar(
                select(func.count()).select_from(ExperienceMemory)
            )
            domain_count = await session.scalar(
                select(func.count()).select_from(DomainMemory)
            )
        return {
            "experience_count": int(experience_count or 0),
            "domain_count": int(domain_count or 0),
        }

    # =========================================================================
    # Graph Memory
    # =========================================================================

    async def upsert_graph(
        self,
        *,
        entities: Iterable[Dict[str, Any]],
        relationships: Iterable[Dict[str, Any]],
        node_delta: float,
        edge_delta: float,
    ) -> Dict[str, int]:
        """
        Insert-or-reinforce nodes and edges.

        Re-observed nodes gain `node_delta` strength, re-observed edges gain
        `edge_delta` weight. Both refresh their timestamps.
        """
        now_value = _utc_now_naive()
        node_count = 0
        edge_count = 0
        async with self.session() as session:
            for entity in entities or []:
                if not isinstance(entity, dict):
                    continue
                label = normalize_label(entity.get("label"))
                if not label:
                    continue
                node_type = normalize_label(entity.get("type")) or "entity"
                await session.execute(
                    text(
                        "INSERT INTO graph_nodes(label, type, strength, first_seen, last_seen) "
                        "VALUES (:label, :type, 1.0, :now, :now) "
                        "ON CONFLICT(label) DO UPDATE SET "
                        "strength = graph_nodes.strength + :delta, "
                        "last_seen = excluded.last_seen"
                    ),
                    {"label": label, "type": node_type, "now": now_value, "delta": node_delta},
                )
                node_count += 1

            for relation in relationships or []:
                if not isinstance(relation, dict):
                    continue
                source = normalize_label(relation.get("source"))
                target = normalize_label(relation.get("target"))
                relationship = normalize_label(relation.get("relationship"))
                if not (source and target and relationship):
                    continue
                await session.execute(
                    text(
                        "INSERT INTO graph_edges(source_label, target_label, relationship, weight, timestamp) "
                        "VALUES (:source, :target, :relationship, 1.0, :now) "
                        "ON CONFLICT(source_label, target_label, relationship) DO UPDATE SET "
                        "weight = graph_edges.weight + :delta, "
                        "timestamp = excluded.timestamp"
                    ),
                    {
                        "source": source,
                        "target": target,
                        "relationship": relationship,
                        "now": now_value,
                        "delta": edge_delta,
                    },
                )
                edge_count += 1

        return {"nodes": node_count, "edges": edge_count}

    async def decay_graph(
        self,
        *,
        factor: float,
        threshold: float,
        reason: str = "consolidation",
    ) -> Dict[str, Any]:
        """
        Decay every node and edge by `factor`, then prune those below
        `threshold`, all inside one transaction.

        Edges whose source or target node is pruned in the same pass are
        deleted with it. Edges that never had endpoint nodes are left alone.
        """
        if not 0.0 < factor <= 1.0:
            raise ValueError("decay factor must be in (0, 1]")
        async with self.session() as session:
            node_result = await session.execute(
                update(GraphNode)
                .values(strength=GraphNode.strength * factor)
                .execution_options(synchronize_session=False)
            )
            edge_result = await session.execute(
                update(GraphEdge)
                .values(weight=GraphEdge.weight * factor)
                .execution_options(synchronize_session=False)
            )

            pruned_labels = list(
                (
                    await session.execute(
                        select(GraphNode.label).where(GraphNode.strength < threshold)
                    )
                ).scalars().all()
            )
            await session.execute(
                delete(GraphNode)
                .where(GraphNode.strength < threshold)
                .execution_options(synchronize_session=False)
            )
            weak_edges = await session.execute(
                delete(GraphEdge)
                .where(GraphEdge.weight < threshold)
                .execution_options(synchronize_session=False)
            )
            cascaded = 0
            if pruned_labels:
                cascade_result = await session.execute(
                    delete(GraphEdge)
                    .where(
                        or_(
                            GraphEdge.source_label.in_(pruned_labels),
                            GraphEdge.target_label.in_(pruned_labels),
                        )
                    )
                    .execution_options(synchronize_session=False)
                )
                cascaded = int(cascade_result.rowcount or 0)

            await self._set_runtime_meta(
                session, "graph.last_decay_at", _utc_now_naive().isoformat()
            )
            await self._set_runtime_meta(
                session, "graph.last_decay_reason", (reason or "consolidation").strip()
            )

            return {
                "decayed_nodes": int(node_result.rowcount or 0),
                "decayed_edges": int(edge_result.rowcount or 0),
                "pruned_nodes": len(pruned_labels),
                "pruned_edges": int(weak_edges.rowcount or 0),
                "cascaded_edges": cascaded,
                "factor": factor,
                "threshold": threshold,
            }

    @staticmethod
    def _escape_like_pattern(value: str) -> str:
        return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

    @staticmethod
    def _node_to_dict(row: GraphNode) -> Dict[str, Any]:
        return {
            "label": row.label,
            "type": row.type,
            "strength": float(row.strength),
            "first_seen": _iso(row.first_seen),
            "last_seen": _iso(row.last_seen),
        }

    @staticmethod
    def _edge_to_dict(row: GraphEdge) -> Dict[str, Any]:
        return {
            "source_label": row.source_label,
            "target_label": row.target_label,
            "relationship": row.relationship,
            "weight": float(row.weight),
            "timestamp": _iso(row.timestamp),
        }

    async def find_active_nodes(
        self,
        terms: List[str],
        *,
        min_strength: float,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Nodes whose label contains any term and whose strength exceeds the floor."""
        clean_terms = [term for term in terms if term]
        if not clean_terms:
            return []
        conditions = [
            GraphNode.label.like(f"%{self._escape_like_pattern(term)}%", escape="\\")
            for term in clean_terms
        ]
        async with self.session() as session:
            result = await session.execute(
                select(GraphNode)
                .where(or_(*conditions))
                .where(GraphNode.strength > min_strength)
                .order_by(GraphNode.strength.desc(), GraphNode.id.asc())
                .limit(max(1, int(limit)))
            )
            return [self._node_to_dict(row) for row in result.scalars().all()]

    async def find_edges_for_labels(
        self,
        labels: List[str],
        *,
        min_weight: float,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Edges touching any of the labels, heaviest first."""
        if not labels:
            return []
        async with self.session() as session:
            result = await session.execute(
                select(GraphEdge)
                .where(
                    or_(
                        GraphEdge.source_label.in_(labels),
                        GraphEdge.target_label.in_(labels),
                    )
                )
                .where(GraphEdge.weight > min_weight)
                .order_by(GraphEdge.weight.desc(), GraphEdge.id.asc())
                .limit(max(1, int(limit)))
            )
            return [self._edge_to_dict(row) for row in result.scalars().all()]

    async def get_node(self, label: str) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(GraphNode).where(GraphNode.label == normalize_label(label))
            )
            row = result.scalar_one_or_none()
            return self._node_to_dict(row) if row is not None else None

    async def get_edge(
        self, source: str, target: str, relationship: str
    ) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(GraphEdge)
                .where(GraphEdge.source_label == normalize_label(source))
                .where(GraphEdge.target_label == normalize_label(target))
                .where(GraphEdge.relationship == normalize_label(relationship))
            )
            row = result.scalar_one_or_none()
            return self._edge_to_dict(row) if row is not None else None

    async def get_graph_stats(
        self, top_limit: int = 8, recent_limit: int = 5
    ) -> Dict[str, Any]:
        async with self.session() as session:
            node_count = await session.scalar(select(func.count()).select_from(GraphNode))
            edge_count = await session.scalar(select(func.count()).select_from(GraphEdge))
            top_nodes = await session.execute(
                select(GraphNode)
                .order_by(GraphNode.strength.desc(), GraphNode.id.asc())
                .limit(top_limit)
            )
            recent_edges = await session.execute(
                select(GraphEdge)
                .order_by(GraphEdge.timestamp.desc(), GraphEdge.id.desc())
                .limit(recent_limit)
            )
            return {
                "node_count": int(node_count or 0),
                "edge_count": int(edge_count or 0),
                "top_nodes": [
                    {"label": row.label, "type": row.type, "strength": round(float(row.strength), 4)}
                    for row in top_nodes.scalars().all()
                ],
                "recent_edges": [
                    {
                        "source_label": row.source_label,
                        "target_label": row.target_label,
                        "relationship": row.relationship,
                    }
                    for row in recent_edges.scalars().all()
                ],
            }

    async def get_graph_snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        async with self.session() as session:
            nodes = await session.execute(
                select(GraphNode).order_by(GraphNode.strength.desc(), GraphNode.id.asc())
            )
            edges = await session.execute(
                select(GraphEdge).order_by(GraphEdge.weight.desc(), GraphEdge.id.asc())
            )
            return {
                "nodes": [self._node_to_dict(row) for row in nodes.scalars().all()],
                "edges": [self._edge_to_dict(row) for row in edges.scalars().all()],
            }

    # =========================================================================
    # Tasks
    # =========================================================================

    @staticmethod
    def _task_to_dict(row: AgentTask) -> Dict[str, Any]:
        return {
            "id": row.id,
            "description": row.description,
            "status": row.status,
            "created_at": _iso(row.created_at),
            "completed_at": _iso(row.completed_at),
        }

    async def add_task(self, description: str) -> Dict[str, Any]:
        description_value = (description or "").strip()
        if not description_value:
            raise ValueError("task description must not be empty")
        async with self.session() as session:
            row = AgentTask(
                description=description_value,
                status=TASK_PENDING,
                created_at=_utc_now_naive(),
            )
            session.add(row)
            await session.flush()
            return self._task_to_dict(row)

    async def list_tasks(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(AgentTask)
                .order_by(AgentTask.created_at.desc(), AgentTask.id.desc())
                .limit(max(1, int(limit)))
            )
            return [self._task_to_dict(row) for row in result.scalars().all()]

    async def complete_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        """
        Mark a pending task done. Returns None when the id is unknown.

        Completing a task that is already done leaves it unchanged.
        """
        async with self.session() as session:
            row = await session.get(AgentTask, int(task_id))
            if row is None:
                return None
            if row.status != TASK_DONE:
                row.status = TASK_DONE
                row.completed_at = _utc_now_naive()
                session.add(row)
            return self._task_to_dict(row)

    async def get_task_stats(self, recent_limit: int = 5) -> Dict[str, Any]:
        async with self.session() as session:
            counts = await session.execute(
                select(AgentTask.status, func.count()).group_by(AgentTask.status)
            )
            by_status = {status: int(count) for status, count in counts.all()}
        pending = by_status.get(TASK_PENDING, 0)
        done = by_status.get(TASK_DONE, 0)
        return {
            "pending": pending,
            "done": done,
            "total": pending + done,
            "recent": await self.list_tasks(limit=recent_limit),
        }

    # =========================================================================
    # Reset
    # =========================================================================

    async def reset_all(self) -> Dict[str, int]:
        """Delete every record of every family."""
        removed: Dict[str, int] = {}
        async with self.session() as session:
            for model in (ExperienceMemory, DomainMemory, GraphNode, GraphEdge, AgentTask, RuntimeMeta):
                result = await session.execute(
                    delete(model).execution_options(synchronize_session=False)
                )
                removed[model.__tablename__] = int(result.rowcount or 0)
        return removed


# =============================================================================
# Global Singleton
# =============================================================================

_sqlite_client: Optional[SQLiteClient] = None


def get_sqlite_client() -> SQLiteClient:
    """Get the global SQLiteClient instance."""
    global _sqlite_client
    if _sqlite_client is None:
        database_url = (os.getenv("DATABASE_URL") or "").strip() or DEFAULT_DATABASE_URL
        _sqlite_client = SQLiteClient(database_url)
    return _sqlite_client


async def close_sqlite_client():
    """Close the global SQLiteClient connection."""
    global _sqlite_client
    if _sqlite_client:
        await _sqlite_client.close()
        _sqlite_client = None
