"""
Structural relationships: parent/child hierarchy and program membership.

Edges are soft-deleted (is_active=False) so history survives. Rules:
    - an identical active (source, target, type) edge is a duplicate
    - PARENT_CHILD: a target has at most one active parent and the
      hierarchy stays acyclic
    - PROGRAM: a node belongs to at most one active program
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineSettings, Settings
from ..errors import (
    CircularDependencyError,
    CrossScopeError,
    DuplicateEdgeError,
    GraphValidationError,
    NotFoundError,
    SelfDependencyError,
)
from ..models import GraphType, Node, Program, RelationshipEdge, RelationshipType
from ..schemas import RelationshipCreate, parse_payload
from ..store.base import GraphStore, NodeProvider
from .cycle_validator import CycleValidator
from .hierarchy import HierarchyTraversal

logger = logging.getLogger(__name__)


class RelationshipService:

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()
        self.validator = CycleValidator(store, self.settings)
        self.hierarchy = HierarchyTraversal(store, self.settings)
        self._clock = clock or datetime.now
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._mutation_lock = threading.RLock()

    # ── lookups ────────────────────────────────────────────────────────────

    def _require_node(self, node_id: str) -> Node:
        node = self.provider.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found", details={"node_id": node_id})
        return node

    def _require_program(self, program_id: str) -> Program:
        program = self.store.get_program(program_id)
        if program is None:
            raise NotFoundError(f"Program {program_id} not found", details={"program_id": program_id})
        return program

    def _require_relationship(self, edge_id: str) -> RelationshipEdge:
        edge = self.store.get_relationship(edge_id)
        if edge is None:
            raise NotFoundError(f"Relationship {edge_id} not found", details={"edge_id": edge_id})
        return edge

    # ── validation ─────────────────────────────────────────────────────────

    def _validate(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType,
        replacing_parent: bool = False,
    ) -> None:
        if relationship_type == RelationshipType.PROGRAM:
            source_tenant = self._require_program(source_id).tenant_id
        else:
            source_tenant = self._require_node(source_id).tenant_id
        target = self._require_node(target_id)

        if source_tenant and target.tenant_id and source_tenant != target.tenant_id:
            raise CrossScopeError(
                f"{source_id} ({source_tenant}) and {target_id} ({target.tenant_id}) "
                f"belong to different tenants"
            )

        duplicates = self.store.list_relationships(
            relationship_type, source_id=source_id, target_id=target_id
        )
        if duplicates:
            raise DuplicateEdgeError(
                f"{relationship_type.value} relationship {source_id} -> {target_id} already exists",
                details={"existing_edge_id": duplicates[0].edge_id},
            )

        if relationship_type == RelationshipType.PARENT_CHILD:
            if source_id == target_id:
                raise SelfDependencyError(f"Node {source_id} cannot be its own parent")
            current = self.hierarchy.parent(target_id)
            if current is not None and not replacing_parent:
                raise GraphValidationError(
                    f"Node {target_id} already has parent {current}",
                    details={"parent_id": current},
                )
            if self.validator.would_create_cycle(GraphType.PARENT_CHILD, source_id, target_id):
                raise CircularDependencyError(
                    f"Making {source_id} the parent of {target_id} would create a cycle"
                )

        elif relationship_type == RelationshipType.PROGRAM:
            memberships = self.store.list_relationships(RelationshipType.PROGRAM, target_id=target_id)
            if memberships:
                raise GraphValidationError(
                    f"Node {target_id} already belongs to program {memberships[0].source_id}",
                    details={"program_id": memberships[0].source_id},
                )

        elif relationship_type == RelationshipType.MASTER and source_id != target_id:
            raise GraphValidationError("MASTER relationships must be self-referential")

    # ── mutations ──────────────────────────────────────────────────────────

    def create_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RelationshipEdge:
        payload = parse_payload(RelationshipCreate, {
            "source_id": source_id,
            "target_id": target_id,
            "relationship_type": relationship_type,
            "metadata": metadata or {},
        })
        with self._mutation_lock:
            self._validate(payload.source_id, payload.target_id, payload.relationship_type)
            edge = RelationshipEdge(
                edge_id=self._id_factory(),
                source_id=payload.source_id,
                target_id=payload.target_id,
                relationship_type=payload.relationship_type,
                metadata=dict(payload.metadata),
                created_by=actor,
                created_at=self._clock(),
            )
            saved = self.store.add_relationship(edge)
        logger.info(
            f"Relationship created: {saved.source_id} -> {saved.target_id} "
            f"({saved.relationship_type.value}) by {actor}"
        )
        return saved

    def remove_relationship(self, edge_id: str) -> RelationshipEdge:
        """Soft delete."""
        with self._mutation_lock:
            edge = self._require_relationship(edge_id)
            if edge.is_active:
                edge.is_active = False
                edge.metadata["deactivated_at"] = self._clock().isoformat()
                self.store.save_relationship(edge)
        logger.info(f"Relationship {edge_id} deactivated")
        return edge

    def set_parent(self, child_id: str, parent_id: str, actor: Optional[str] = None) -> RelationshipEdge:
        """Re-parent child_id, validating the new edge before dropping the old one."""
        with self._mutation_lock:
            current = self.store.list_relationships(RelationshipType.PARENT_CHILD, target_id=child_id)
            for edge in current:
                if edge.source_id == parent_id:
                    return edge
            self._validate(parent_id, child_id, RelationshipType.PARENT_CHILD, replacing_parent=True)
            for edge in current:
                self.remove_relationship(edge.edge_id)
            return self.create_relationship(parent_id, child_id, RelationshipType.PARENT_CHILD, actor)

    def clear_parent(self, child_id: str) -> Optional[RelationshipEdge]:
        with self._mutation_lock:
            edges = self.store.list_relationships(RelationshipType.PARENT_CHILD, target_id=child_id)
            for edge in edges:
                self.remove_relationship(edge.edge_id)
        return edges[0] if edges else None

    # ── hierarchy reads ────────────────────────────────────────────────────

    def parent_of(self, node_id: str) -> Optional[str]:
        return self.hierarchy.parent(node_id)

    def children_of(self, node_id: str) -> List[str]:
        return self.hierarchy.children(node_id)

    def relationships_of(
        self, node_id: str, relationship_type: Optional[RelationshipType] = None
    ) -> List[RelationshipEdge]:
        outgoing = self.store.list_relationships(relationship_type, source_id=node_id)
        incoming = [
            e for e in self.store.list_relationships(relationship_type, target_id=node_id)
            if e.source_id != node_id
        ]
        return outgoing + incoming

    # ── programs ───────────────────────────────────────────────────────────

    def create_program(self, program: Program) -> Program:
        if self.store.get_program(program.program_id) is not None:
            raise DuplicateEdgeError(f"Program {program.program_id} already exists")
        self.store.save_program(program)
        logger.info(f"Program created: {program.program_id}")
        return program

    def add_to_program(self, program_id: str, node_id: str, actor: Optional[str] = None) -> RelationshipEdge:
        return self.create_relationship(program_id, node_id, RelationshipType.PROGRAM, actor)

    def remove_from_program(self, program_id: str, node_id: str) -> RelationshipEdge:
        edges = self.store.list_relationships(RelationshipType.PROGRAM, source_id=program_id, target_id=node_id)
        if not edges:
            raise NotFoundError(f"Node {node_id} is not in program {program_id}")
        return self.remove_relationship(edges[0].edge_id)

    def program_members(self, program_id: str) -> List[str]:
        self._require_program(program_id)
        return self.store.successors(GraphType.PROGRAM, program_id)

    def program_of(self, node_id: str) -> Optional[str]:
        edges = self.store.list_relationships(RelationshipType.PROGRAM, target_id=node_id)
        return edges[0].source_id if edges else None
