"""
Knowledge Graph
===============

Typed nodes and edges relating tasks, files, agents and failure patterns,
with multi-hop neighbor expansion and shortest-path search.

Edges are directed when stored but treated as undirected when looking for
neighbors: a node reachable only as an edge's target still counts as a
neighbor of the source, and vice versa.

Storage: Nodes and edges live in the kg_nodes / kg_edges tables of the
learning database.

Usage:
    from adaptive_learning.knowledge_graph import KnowledgeGraph, KnowledgeNode, NodeType

    graph = KnowledgeGraph(session)
    await graph.add_node(KnowledgeNode(id="task:1", node_type=NodeType.TASK))
    await graph.add_node(KnowledgeNode(id="agent:python-pro", node_type=NodeType.AGENT))
    await graph.record_task_agent_success("task:1", "agent:python-pro")

    related = await graph.get_related("task:1", hops=2)
    path = await graph.find_path("task:1", "agent:python-pro")
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from sqlalchemy import select, delete, or_, case, func
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_learning.db.models import KnowledgeNodeModel, KnowledgeEdgeModel, validate_json_bag
from adaptive_learning.errors import ValidationError, check_cancelled
from adaptive_learning.similarity import normalize_file_path
from adaptive_learning.store import as_utc, storage_operation

logger = logging.getLogger(__name__)

# Upper bound on BFS expansion depth.
MAX_HOPS = 10

DEFAULT_EDGE_WEIGHT = 1.0


class NodeType(Enum):
    """Kinds of entity a node can represent."""
    TASK = "task"
    FILE = "file"
    AGENT = "agent"
    PATTERN = "pattern"


class EdgeType(Enum):
    """Kinds of relationship between two nodes."""
    MODIFIES = "modifies"  # task -> file
    SUCCEEDED_WITH = "succeeded_with"  # task -> agent
    SIMILAR_TO = "similar_to"  # file -> file
    CAUSED_FAILURE = "caused_failure"  # pattern -> task
    DEPENDS_ON = "depends_on"  # task -> task
    USED_BY = "used_by"  # agent -> task


@dataclass
class KnowledgeNode:
    """A node in the knowledge graph."""
    node_type: NodeType
    id: str = ""
    properties: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "node_type": self.node_type.value,
            "properties": self.properties,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: KnowledgeNodeModel) -> "KnowledgeNode":
        return cls(
            id=row.id,
            node_type=NodeType(row.node_type),
            properties=dict(row.properties or {}),
            created_at=row.created_at,
        )


@dataclass
class KnowledgeEdge:
    """
    A directed relationship between two nodes.

    ``weight`` of None means "unset" and is stored as 1.0; an explicit 0.0
    is stored as given.
    """
    source_id: str
    target_id: str
    edge_type: EdgeType
    weight: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "edge_type": self.edge_type.value,
            "weight": self.weight,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: KnowledgeEdgeModel) -> "KnowledgeEdge":
        return cls(
            id=row.id,
            source_id=row.source_id,
            target_id=row.target_id,
            edge_type=EdgeType(row.edge_type),
            weight=row.weight,
            metadata=dict(row.edge_metadata or {}),
            created_at=row.created_at,
        )


def file_node_id(path: str) -> str:
    """Canonical node id for a file path: ``file:`` plus the cleaned, lower-cased path."""
    return f"file:{normalize_file_path(path.strip())}"


def parse_node_type(value) -> NodeType:
    """Coerce a string or enum to NodeType, raising ValidationError otherwise."""
    try:
        return NodeType(value)
    except ValueError:
        raise ValidationError(f"invalid node type: {value!r}") from None


def parse_edge_type(value) -> EdgeType:
    """Coerce a string or enum to EdgeType, raising ValidationError otherwise."""
    try:
        return EdgeType(value)
    except ValueError:
        raise ValidationError(f"invalid edge type: {value!r}") from None


def _edge_type_values(edge_types: Optional[Iterable[EdgeType]]) -> list[str]:
    if not edge_types:
        return []
    return [parse_edge_type(et).value for et in edge_types]


class KnowledgeGraph:
    """
    Knowledge graph over the learning database.

    Every operation is a short sequence of single statements; nothing spans
    a transaction, so a traversal may observe writes made concurrently by
    other sessions.
    """

    def __init__(self, session: AsyncSession):
        self._db_session = session

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def add_node(self, node: KnowledgeNode) -> KnowledgeNode:
        """
        Add a node, or overwrite the type and properties of an existing one.

        Generates a UUID id when ``node.id`` is empty and sets ``created_at``
        when unset. An existing node keeps its original ``created_at``.
        """
        if node is None:
            raise ValidationError("node cannot be None")
        if node.properties is None:
            node.properties = {}
        validate_json_bag(node.properties, "properties")

        if not node.id:
            node.id = str(uuid.uuid4())
        if node.created_at is None:
            node.created_at = datetime.now(timezone.utc)
        node_type = parse_node_type(node.node_type)

        async with storage_operation(self._db_session, "insert node"):
            existing = await self._db_session.get(KnowledgeNodeModel, node.id)
            if existing is not None:
                existing.node_type = node_type.value
                existing.properties = dict(node.properties)
                node.created_at = existing.created_at
                logger.debug("overwrote node %s", node.id)
            else:
                self._db_session.add(KnowledgeNodeModel(
                    id=node.id,
                    node_type=node_type.value,
                    properties=dict(node.properties),
                    created_at=as_utc(node.created_at),
                ))
            await self._db_session.commit()
        return node

    async def add_edge(self, edge: KnowledgeEdge) -> KnowledgeEdge:
        """
        Add a directed edge and assign its surrogate id.

        Parallel edges are allowed and endpoints are not required to exist.
        """
        if edge is None:
            raise ValidationError("edge cannot be None")
        if not edge.source_id or not edge.target_id:
            raise ValidationError("source_id and target_id are required")
        if edge.metadata is None:
            edge.metadata = {}
        validate_json_bag(edge.metadata, "metadata")

        if edge.weight is None:
            edge.weight = DEFAULT_EDGE_WEIGHT
        if edge.created_at is None:
            edge.created_at = datetime.now(timezone.utc)
        edge_type = parse_edge_type(edge.edge_type)

        row = KnowledgeEdgeModel(
            source_id=edge.source_id,
            target_id=edge.target_id,
            edge_type=edge_type.value,
            weight=float(edge.weight),
            edge_metadata=dict(edge.metadata),
            created_at=as_utc(edge.created_at),
        )
        async with storage_operation(self._db_session, "insert edge"):
            self._db_session.add(row)
            await self._db_session.commit()

        edge.id = row.id
        return edge

    async def delete_node(self, node_id: str) -> None:
        """Delete a node and every edge touching it. Missing nodes are ignored."""
        async with storage_operation(self._db_session, "delete edges"):
            await self._db_session.execute(
                delete(KnowledgeEdgeModel).where(
                    or_(KnowledgeEdgeModel.source_id == node_id, KnowledgeEdgeModel.target_id == node_id)
                )
            )
        async with storage_operation(self._db_session, "delete node"):
            await self._db_session.execute(delete(KnowledgeNodeModel).where(KnowledgeNodeModel.id == node_id))
            await self._db_session.commit()

    # -------------------------------------------------------------------------
    # Point lookups
    # -------------------------------------------------------------------------

    async def get_node(self, node_id: str) -> Optional[KnowledgeNode]:
        """Get a node by id, or None."""
        async with storage_operation(self._db_session, "scan node"):
            result = await self._db_session.execute(
                select(KnowledgeNodeModel).where(KnowledgeNodeModel.id == node_id)
            )
            row = result.scalar_one_or_none()
        return KnowledgeNode.from_row(row) if row else None

    async def get_edges(
        self,
        node_id: str,
        edge_types: Optional[Iterable[EdgeType]] = None,
    ) -> list[KnowledgeEdge]:
        """Every edge where ``node_id`` is the source or the target."""
        query = select(KnowledgeEdgeModel).where(
            or_(KnowledgeEdgeModel.source_id == node_id, KnowledgeEdgeModel.target_id == node_id)
        )
        types = _edge_type_values(edge_types)
        if types:
            query = query.where(KnowledgeEdgeModel.edge_type.in_(types))
        query = query.order_by(KnowledgeEdgeModel.id)

        async with storage_operation(self._db_session, "query edges"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [KnowledgeEdge.from_row(r) for r in rows]

    async def _neighbor_ids(self, node_id: str, edge_types: list[str]) -> list[str]:
        """Ids on the other end of every edge touching ``node_id``, in edge order."""
        neighbor = case(
            (KnowledgeEdgeModel.source_id == node_id, KnowledgeEdgeModel.target_id),
            else_=KnowledgeEdgeModel.source_id,
        ).label("neighbor_id")
        query = select(neighbor).where(
            or_(KnowledgeEdgeModel.source_id == node_id, KnowledgeEdgeModel.target_id == node_id)
        )
        if edge_types:
            query = query.where(KnowledgeEdgeModel.edge_type.in_(edge_types))
        query = query.group_by(neighbor).order_by(func.min(KnowledgeEdgeModel.id))

        async with storage_operation(self._db_session, "query neighbors"):
            result = await self._db_session.execute(query)
            return list(result.scalars().all())

    async def _load_nodes(self, node_ids: list[str]) -> list[KnowledgeNode]:
        """Fetch nodes in the given order, skipping ids with no node row."""
        nodes = []
        for node_id in node_ids:
            node = await self.get_node(node_id)
            if node is not None:
                nodes.append(node)
        return nodes

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    async def get_related(
        self,
        node_id: str,
        hops: int = 1,
        edge_types: Optional[Iterable[EdgeType]] = None,
        cancel_event=None,
    ) -> list[KnowledgeNode]:
        """
        Nodes reachable from ``node_id`` within ``hops`` edges.

        Breadth-first, one neighbor query per visited node. ``hops`` <= 0 is
        treated as 1 and values above MAX_HOPS are clamped. Each node appears
        once, at the hop where it was first discovered; the start node and
        dangling edge endpoints are excluded.
        """
        check_cancelled(cancel_event, "get related")
        if hops <= 0:
            hops = 1
        hops = min(hops, MAX_HOPS)
        types = _edge_type_values(edge_types)

        visited = {node_id}
        frontier = [node_id]
        discovered: list[str] = []

        for hop in range(hops):
            next_frontier = []
            for current in frontier:
                for neighbor in await self._neighbor_ids(current, types):
                    if neighbor not in visited:
                        visited.add(neighbor)
                        next_frontier.append(neighbor)
                        discovered.append(neighbor)
            logger.debug("get_related %s: hop %d found %d new nodes", node_id, hop + 1, len(next_frontier))
            if not next_frontier:
                break
            frontier = next_frontier

        return await self._load_nodes(discovered)

    async def find_path(self, from_id: str, to_id: str, cancel_event=None) -> Optional[list[KnowledgeNode]]:
        """
        Shortest path between two nodes, ignoring edge direction.

        Returns the node list from ``from_id`` to ``to_id`` inclusive, or None
        when no path exists.
        """
        check_cancelled(cancel_event, "find path")
        if from_id == to_id:
            node = await self.get_node(from_id)
            return [node] if node is not None else None

        parent: dict[str, Optional[str]] = {from_id: None}
        queue = deque([from_id])
        found = False

        while queue and not found:
            current = queue.popleft()
            for neighbor in await self._neighbor_ids(current, []):
                if neighbor in parent:
                    continue
                parent[neighbor] = current
                if neighbor == to_id:
                    found = True
                    break
                queue.append(neighbor)

        if not found:
            return None

        path_ids = []
        current: Optional[str] = to_id
        while current is not None:
            path_ids.append(current)
            current = parent[current]
        path_ids.reverse()

        path = await self._load_nodes(path_ids)
        if not path or path[-1].id != to_id:
            return None
        return path

    # -------------------------------------------------------------------------
    # Convenience recorders
    # -------------------------------------------------------------------------

    async def record_task_file_relation(
        self,
        task_id: str,
        file_id: str,
        weight: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> KnowledgeEdge:
        """Task modifies file."""
        return await self.add_edge(KnowledgeEdge(
            source_id=task_id, target_id=file_id, edge_type=EdgeType.MODIFIES,
            weight=weight, metadata=metadata or {},
        ))

    async def record_task_agent_success(
        self,
        task_id: str,
        agent_id: str,
        weight: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> KnowledgeEdge:
        """Task succeeded with agent."""
        return await self.add_edge(KnowledgeEdge(
            source_id=task_id, target_id=agent_id, edge_type=EdgeType.SUCCEEDED_WITH,
            weight=weight, metadata=metadata or {},
        ))

    async def record_file_similarity(
        self,
        file_a: str,
        file_b: str,
        similarity: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> KnowledgeEdge:
        """Two files are similar; the similarity becomes the edge weight."""
        return await self.add_edge(KnowledgeEdge(
            source_id=file_a, target_id=file_b, edge_type=EdgeType.SIMILAR_TO,
            weight=similarity, metadata=metadata or {},
        ))

    async def record_pattern_failure(
        self,
        pattern_id: str,
        task_id: str,
        weight: Optional[float] = None,
        metadata: Optional[dict] = None,
    ) -> KnowledgeEdge:
        """Failure pattern caused a task to fail."""
        return await self.add_edge(KnowledgeEdge(
            source_id=pattern_id, target_id=task_id, edge_type=EdgeType.CAUSED_FAILURE,
            weight=weight, metadata=metadata or {},
        ))

    async def find_agents_for_file(self, file_id: str, max_hops: int = 2, cancel_event=None) -> list[KnowledgeNode]:
        """Agent nodes reachable from a file over modifies/succeeded_with/similar_to edges."""
        related = await self.get_related(
            file_id,
            hops=max_hops,
            edge_types=[EdgeType.MODIFIES, EdgeType.SUCCEEDED_WITH, EdgeType.SIMILAR_TO],
            cancel_event=cancel_event,
        )
        return [n for n in related if n.node_type == NodeType.AGENT]

    async def export(self) -> dict[str, Any]:
        """Dump every node and edge as plain dictionaries."""
        async with storage_operation(self._db_session, "export graph"):
            nodes = (await self._db_session.execute(
                select(KnowledgeNodeModel).order_by(KnowledgeNodeModel.id)
            )).scalars().all()
            edges = (await self._db_session.execute(
                select(KnowledgeEdgeModel).order_by(KnowledgeEdgeModel.id)
            )).scalars().all()
        return {
            "nodes": [KnowledgeNode.from_row(n).to_dict() for n in nodes],
            "edges": [KnowledgeEdge.from_row(e).to_dict() for e in edges],
        }
