"""
Storage adapters consumed by the engine.

NodeProvider reads work-item snapshots owned by the external project system.
GraphStore owns relationship and dependency edges plus the derived records
the engine persists (master aggregates, programs).

Concrete stores implement the CRUD primitives; the bounded traversal is
shared and built on top of `successors` / `predecessors`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from ..models import (
    DependencyEdge,
    Direction,
    GraphType,
    MasterAggregate,
    Node,
    NodeStatus,
    Program,
    RelationshipEdge,
    RelationshipType,
)

logger = logging.getLogger(__name__)


@dataclass
class Reachability:
    """Result of a bounded walk: hop distance per reached node (start excluded)."""
    start_id: str
    depths: Dict[str, int] = field(default_factory=dict)
    truncated: bool = False

    @property
    def node_ids(self) -> List[str]:
        return list(self.depths.keys())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.depths


class NodeProvider(ABC):
    """Read access to work-item snapshots."""

    @abstractmethod
    def get_node(self, node_id: str) -> Optional[Node]:
        ...

    @abstractmethod
    def list_nodes(
        self,
        statuses: Optional[Iterable[NodeStatus]] = None,
        tenant_id: Optional[str] = None,
    ) -> List[Node]:
        ...

    def get_nodes(self, node_ids: Iterable[str]) -> Dict[str, Node]:
        """Batched fetch; missing ids are omitted."""
        found = {}
        for node_id in node_ids:
            node = self.get_node(node_id)
            if node is not None:
                found[node_id] = node
        return found


class GraphStore(ABC):
    """Relationship / dependency persistence plus bounded traversal."""

    # ── relationship edges ─────────────────────────────────────────────────

    @abstractmethod
    def add_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        ...

    @abstractmethod
    def save_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        ...

    @abstractmethod
    def get_relationship(self, edge_id: str) -> Optional[RelationshipEdge]:
        ...

    @abstractmethod
    def list_relationships(
        self,
        relationship_type: Optional[RelationshipType] = None,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[RelationshipEdge]:
        ...

    # ── dependency edges ───────────────────────────────────────────────────

    @abstractmethod
    def add_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        """Insert an edge; raises DuplicateEdgeError if the active pair exists."""

    @abstractmethod
    def save_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        ...

    @abstractmethod
    def get_dependency(self, edge_id: str) -> Optional[DependencyEdge]:
        ...

    @abstractmethod
    def delete_dependency(self, edge_id: str) -> bool:
        ...

    @abstractmethod
    def list_dependencies(
        self,
        predecessor_id: Optional[str] = None,
        successor_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[DependencyEdge]:
        ...

    def find_dependency(self, predecessor_id: str, successor_id: str) -> Optional[DependencyEdge]:
        edges = self.list_dependencies(predecessor_id=predecessor_id, successor_id=successor_id)
        return edges[0] if edges else None

    # ── derived records ────────────────────────────────────────────────────

    @abstractmethod
    def save_master_aggregate(self, aggregate: MasterAggregate) -> MasterAggregate:
        ...

    @abstractmethod
    def get_master_aggregate(self, master_id: str) -> Optional[MasterAggregate]:
        ...

    @abstractmethod
    def delete_master_aggregate(self, master_id: str) -> bool:
        ...

    @abstractmethod
    def save_program(self, program: Program) -> Program:
        ...

    @abstractmethod
    def get_program(self, program_id: str) -> Optional[Program]:
        ...

    @abstractmethod
    def list_programs(self, tenant_id: Optional[str] = None) -> List[Program]:
        ...

    # ── traversal primitives ───────────────────────────────────────────────

    def successors(self, graph_type: GraphType, node_id: str) -> List[str]:
        """Direct active neighbours following edge direction."""
        if graph_type == GraphType.DEPENDENCY:
            return [e.successor_id for e in self.list_dependencies(predecessor_id=node_id)]
        rel_type = RelationshipType(graph_type.value)
        return [e.target_id for e in self.list_relationships(rel_type, source_id=node_id)]

    def predecessors(self, graph_type: GraphType, node_id: str) -> List[str]:
        if graph_type == GraphType.DEPENDENCY:
            return [e.predecessor_id for e in self.list_dependencies(successor_id=node_id)]
        rel_type = RelationshipType(graph_type.value)
        return [e.source_id for e in self.list_relationships(rel_type, target_id=node_id)]

    def neighbours(self, graph_type: GraphType, node_id: str, direction: Direction) -> List[str]:
        if direction == Direction.DOWNSTREAM:
            return self.successors(graph_type, node_id)
        return self.predecessors(graph_type, node_id)

    def reachable(
        self,
        graph_type: GraphType,
        start_id: str,
        direction: Direction = Direction.DOWNSTREAM,
        max_depth: int = 20,
        stop_at: Optional[str] = None,
    ) -> Reachability:
        """
        All nodes reachable from start_id over active edges of graph_type
        within max_depth hops.

        Breadth first with an explicit queue and visited set, so malformed
        cyclic data terminates. `truncated` is set when unexplored nodes
        remained beyond the bound. With `stop_at` the walk ends as soon as
        that node is reached.
        """
        result = Reachability(start_id=start_id)
        visited = {start_id}
        queue = deque([(start_id, 0)])

        while queue:
            current, depth = queue.popleft()
            for nxt in self.neighbours(graph_type, current, direction):
                if nxt in visited:
                    continue
                if depth >= max_depth:
                    result.truncated = True
                    continue
                visited.add(nxt)
                result.depths[nxt] = depth + 1
                if stop_at is not None and nxt == stop_at:
                    return result
                queue.append((nxt, depth + 1))

        return result

    def component(self, graph_type: GraphType, start_id: str, max_depth: int = 20) -> Sequence[str]:
        """Weakly connected neighbourhood of start_id (start first), hop bounded."""
        ordered = [start_id]
        visited = {start_id}
        queue = deque([(start_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for nxt in self.successors(graph_type, current) + self.predecessors(graph_type, current):
                if nxt not in visited:
                    visited.add(nxt)
                    ordered.append(nxt)
                    queue.append((nxt, depth + 1))
        return ordered
