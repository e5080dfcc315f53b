"""
Master nodes: aggregation roots marked by a self-referential MASTER edge.

Promotion writes the marker and an initial MasterAggregate; structural
changes made through this service refresh the aggregate immediately.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..errors import DuplicateEdgeError, GraphValidationError, NotFoundError
from ..models import MasterAggregate, RelationshipEdge, RelationshipType
from ..graph.relationships import RelationshipService
from .aggregation_engine import AggregationEngine

logger = logging.getLogger(__name__)


class MasterProjectService:

    def __init__(self, relationships: RelationshipService, aggregation: AggregationEngine):
        self.relationships = relationships
        self.aggregation = aggregation
        self.store = relationships.store

    def _marker(self, node_id: str) -> Optional[RelationshipEdge]:
        edges = self.store.list_relationships(
            RelationshipType.MASTER, source_id=node_id, target_id=node_id
        )
        return edges[0] if edges else None

    def is_master(self, node_id: str) -> bool:
        return self._marker(node_id) is not None

    def _require_master(self, node_id: str) -> RelationshipEdge:
        marker = self._marker(node_id)
        if marker is None:
            raise NotFoundError(f"Node {node_id} is not a master", details={"node_id": node_id})
        return marker

    def list_masters(self) -> List[str]:
        return [
            e.source_id
            for e in self.store.list_relationships(RelationshipType.MASTER)
            if e.source_id == e.target_id
        ]

    def promote(self, node_id: str, actor: Optional[str] = None) -> MasterAggregate:
        if self.is_master(node_id):
            raise DuplicateEdgeError(f"Node {node_id} is already a master")
        self.relationships.create_relationship(node_id, node_id, RelationshipType.MASTER, actor)
        aggregate = self.aggregation.refresh_master(node_id)
        logger.info(f"Node {node_id} promoted to master by {actor}")
        return aggregate

    def demote(self, node_id: str) -> None:
        """Drop the marker, detach sub-nodes and discard the aggregate."""
        marker = self._require_master(node_id)
        self.relationships.remove_relationship(marker.edge_id)
        for edge in self.store.list_relationships(RelationshipType.PARENT_CHILD, source_id=node_id):
            self.relationships.remove_relationship(edge.edge_id)
        self.store.delete_master_aggregate(node_id)
        logger.info(f"Master {node_id} demoted")

    def refresh(self, node_id: str) -> MasterAggregate:
        self._require_master(node_id)
        return self.aggregation.refresh_master(node_id)

    def get_aggregate(self, node_id: str) -> MasterAggregate:
        self._require_master(node_id)
        aggregate = self.store.get_master_aggregate(node_id)
        if aggregate is None:
            aggregate = self.aggregation.refresh_master(node_id)
        return aggregate

    def sub_nodes(self, node_id: str) -> List[str]:
        """All descendants of a master."""
        self._require_master(node_id)
        return self.aggregation.hierarchy.descendants(node_id)

    def add_sub_node(self, master_id: str, child_id: str, actor: Optional[str] = None) -> MasterAggregate:
        self._require_master(master_id)
        parent = self.relationships.parent_of(child_id)
        if parent is not None:
            raise GraphValidationError(
                f"Node {child_id} already has parent {parent}", details={"parent_id": parent}
            )
        self.relationships.create_relationship(master_id, child_id, RelationshipType.PARENT_CHILD, actor)
        return self.aggregation.refresh_master(master_id)

    def remove_sub_node(self, master_id: str, child_id: str) -> MasterAggregate:
        self._require_master(master_id)
        edges = self.store.list_relationships(
            RelationshipType.PARENT_CHILD, source_id=master_id, target_id=child_id
        )
        if not edges:
            raise NotFoundError(f"Node {child_id} is not a direct sub-node of {master_id}")
        self.relationships.remove_relationship(edges[0].edge_id)
        return self.aggregation.refresh_master(master_id)
