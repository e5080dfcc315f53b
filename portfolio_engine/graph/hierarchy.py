"""
Traversal over the PARENT_CHILD forest.

Each node has at most one active parent. Upward walks follow that single
edge; downward walks are breadth first. Both stop at the configured hop
bound so a cycle that slipped into the data cannot hang a request.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..config import EngineSettings, Settings
from ..models import Direction, GraphType, RelationshipType
from ..store.base import GraphStore

logger = logging.getLogger(__name__)


class HierarchyTraversal:

    def __init__(self, store: GraphStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or Settings.get()

    @property
    def max_depth(self) -> int:
        return self.settings.max_traversal_depth

    def parent(self, node_id: str) -> Optional[str]:
        edges = self.store.list_relationships(RelationshipType.PARENT_CHILD, target_id=node_id)
        if len(edges) > 1:
            logger.warning(f"Node {node_id} has {len(edges)} active parents; using the first")
        return edges[0].source_id if edges else None

    def children(self, node_id: str) -> List[str]:
        return self.store.successors(GraphType.PARENT_CHILD, node_id)

    def ancestors(self, node_id: str) -> List[str]:
        """Ancestors nearest first."""
        chain = []
        seen = {node_id}
        current = node_id
        for _ in range(self.max_depth):
            parent = self.parent(current)
            if parent is None:
                return chain
            if parent in seen:
                logger.warning(f"Hierarchy cycle through {parent} while walking up from {node_id}")
                return chain
            chain.append(parent)
            seen.add(parent)
            current = parent

        if self.parent(current) is not None:
            logger.warning(
                f"Traversal bound of {self.max_depth} hops hit walking ancestors of {node_id}"
            )
        return chain

    def descendants(self, node_id: str) -> List[str]:
        """Descendants in breadth-first order (node_id excluded)."""
        reach = self.store.reachable(
            GraphType.PARENT_CHILD, node_id, direction=Direction.DOWNSTREAM, max_depth=self.max_depth
        )
        if reach.truncated:
            logger.warning(
                f"Traversal bound of {self.max_depth} hops hit walking descendants of {node_id}"
            )
        return [n for n in reach.node_ids if n != node_id]

    def siblings(self, node_id: str) -> List[str]:
        parent = self.parent(node_id)
        if parent is None:
            return []
        return [child for child in self.children(parent) if child != node_id]

    def depth(self, node_id: str) -> int:
        """Hops from the root (0 for a root)."""
        return len(self.ancestors(node_id))

    def path_from_root(self, node_id: str) -> List[str]:
        """[root, ..., node_id]; [node_id] for a root."""
        return list(reversed(self.ancestors(node_id))) + [node_id]

    def root_of(self, node_id: str) -> str:
        return self.path_from_root(node_id)[0]
