"""
Cycle gate for structural mutations.

Adding edge (u → v) closes a loop iff u is already reachable from v over
the active edges of the same subgraph. The walk is hop bounded; when the
bound is hit without finding u the validator fails open and logs a warning.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Optional

from ..config import EngineSettings, Settings
from ..models import Direction, GraphType
from ..store.base import GraphStore

logger = logging.getLogger(__name__)


class CycleValidator:
    """Reachability-based cycle detection over one edge subgraph."""

    def __init__(self, store: GraphStore, settings: Optional[EngineSettings] = None):
        self.store = store
        self.settings = settings or Settings.get()

    @property
    def max_depth(self) -> int:
        return self.settings.max_traversal_depth

    def would_create_cycle(self, graph_type: GraphType, source_id: str, target_id: str) -> bool:
        """True iff adding source → target would close a loop."""
        if source_id == target_id:
            return True

        reach = self.store.reachable(
            graph_type,
            target_id,
            direction=Direction.DOWNSTREAM,
            max_depth=self.max_depth,
            stop_at=source_id,
        )
        if source_id in reach:
            logger.info(
                f"Cycle detected on {graph_type.value}: {source_id} is reachable from {target_id} "
                f"in {reach.depths[source_id]} hops"
            )
            return True

        if reach.truncated:
            logger.warning(
                f"Traversal bound of {self.max_depth} hops hit while checking "
                f"{graph_type.value} edge {source_id} -> {target_id}; assuming no cycle"
            )
        return False

    def dependency_path(self, from_id: str, to_id: str) -> List[str]:
        """
        Shortest active dependency path from_id → to_id (inclusive).

        Empty when unreachable within the bound.
        """
        if from_id == to_id:
            return [from_id]

        parents: Dict[str, str] = {}
        visited = {from_id}
        queue = deque([(from_id, 0)])

        while queue:
            current, depth = queue.popleft()
            if depth >= self.max_depth:
                continue
            for nxt in self.store.successors(GraphType.DEPENDENCY, current):
                if nxt in visited:
                    continue
                visited.add(nxt)
                parents[nxt] = current
                if nxt == to_id:
                    path = [nxt]
                    while path[-1] != from_id:
                        path.append(parents[path[-1]])
                    path.reverse()
                    return path
                queue.append((nxt, depth + 1))

        return []

    def related_nodes(self, node_id: str) -> List[str]:
        """Every node linked to node_id through dependencies, either direction."""
        related = []
        for direction in (Direction.UPSTREAM, Direction.DOWNSTREAM):
            reach = self.store.reachable(
                GraphType.DEPENDENCY, node_id, direction=direction, max_depth=self.max_depth
            )
            for other in reach.node_ids:
                if other not in related:
                    related.append(other)
        return related
