"""
In-memory adapters (single process, tests and embedded use).

Records are deep-copied on the way in and out so callers cannot mutate
stored state without going through save_*.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Dict, Iterable, List, Optional

from ..errors import DuplicateEdgeError
from ..models import (
    DependencyEdge,
    MasterAggregate,
    Node,
    Program,
    RelationshipEdge,
    RelationshipType,
)
from .base import GraphStore, NodeProvider

logger = logging.getLogger(__name__)


class InMemoryNodeProvider(NodeProvider):
    """Dictionary-backed node provider."""

    def __init__(self, nodes: Optional[Iterable[Node]] = None):
        self._nodes: Dict[str, Node] = {}
        self._lock = threading.Lock()
        for node in nodes or []:
            self.upsert(node)

    def upsert(self, node: Node) -> Node:
        with self._lock:
            self._nodes[node.node_id] = copy.deepcopy(node)
        return node

    def remove(self, node_id: str) -> None:
        with self._lock:
            self._nodes.pop(node_id, None)

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._lock:
            node = self._nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def list_nodes(self, statuses=None, tenant_id=None) -> List[Node]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            return [
                copy.deepcopy(n)
                for n in self._nodes.values()
                if (wanted is None or n.status in wanted)
                and (tenant_id is None or n.tenant_id == tenant_id)
            ]


class InMemoryGraphStore(GraphStore):
    """Dictionary-backed graph store enforcing the active-pair uniqueness rule."""

    def __init__(self):
        self._relationships: Dict[str, RelationshipEdge] = {}
        self._dependencies: Dict[str, DependencyEdge] = {}
        self._aggregates: Dict[str, MasterAggregate] = {}
        self._programs: Dict[str, Program] = {}
        self._lock = threading.RLock()

    # relationships

    def add_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        with self._lock:
            self._relationships[edge.edge_id] = copy.deepcopy(edge)
        return copy.deepcopy(edge)

    def save_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        return self.add_relationship(edge)

    def get_relationship(self, edge_id: str) -> Optional[RelationshipEdge]:
        with self._lock:
            edge = self._relationships.get(edge_id)
            return copy.deepcopy(edge) if edge else None

    def list_relationships(
        self,
        relationship_type: Optional[RelationshipType] = None,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[RelationshipEdge]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._relationships.values()
                if (relationship_type is None or e.relationship_type == relationship_type)
                and (source_id is None or e.source_id == source_id)
                and (target_id is None or e.target_id == target_id)
                and (not active_only or e.is_active)
            ]

    # dependencies

    def add_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        with self._lock:
            if edge.is_active:
                for existing in self._dependencies.values():
                    if (
                        existing.is_active
                        and existing.predecessor_id == edge.predecessor_id
                        and existing.successor_id == edge.successor_id
                    ):
                        raise DuplicateEdgeError(
                            f"Dependency {edge.predecessor_id} -> {edge.successor_id} already exists",
                            details={"existing_edge_id": existing.edge_id},
                        )
            self._dependencies[edge.edge_id] = copy.deepcopy(edge)
        return copy.deepcopy(edge)

    def save_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        with self._lock:
            self._dependencies[edge.edge_id] = copy.deepcopy(edge)
        return copy.deepcopy(edge)

    def get_dependency(self, edge_id: str) -> Optional[DependencyEdge]:
        with self._lock:
            edge = self._dependencies.get(edge_id)
            return copy.deepcopy(edge) if edge else None

    def delete_dependency(self, edge_id: str) -> bool:
        with self._lock:
            return self._dependencies.pop(edge_id, None) is not None

    def list_dependencies(
        self,
        predecessor_id: Optional[str] = None,
        successor_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[DependencyEdge]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._dependencies.values()
                if (predecessor_id is None or e.predecessor_id == predecessor_id)
                and (successor_id is None or e.successor_id == successor_id)
                and (not active_only or e.is_active)
            ]

    # derived records

    def save_master_aggregate(self, aggregate: MasterAggregate) -> MasterAggregate:
        with self._lock:
            self._aggregates[aggregate.master_id] = copy.deepcopy(aggregate)
        return aggregate

    def get_master_aggregate(self, master_id: str) -> Optional[MasterAggregate]:
        with self._lock:
            aggregate = self._aggregates.get(master_id)
            return copy.deepcopy(aggregate) if aggregate else None

    def delete_master_aggregate(self, master_id: str) -> bool:
        with self._lock:
            return self._aggregates.pop(master_id, None) is not None

    def save_program(self, program: Program) -> Program:
        with self._lock:
            self._programs[program.program_id] = copy.deepcopy(program)
        return program

    def get_program(self, program_id: str) -> Optional[Program]:
        with self._lock:
            program = self._programs.get(program_id)
            return copy.deepcopy(program) if program else None

    def list_programs(self, tenant_id: Optional[str] = None) -> List[Program]:
        with self._lock:
            return [
                copy.deepcopy(p)
                for p in self._programs.values()
                if tenant_id is None or p.tenant_id == tenant_id
            ]
