"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — NETWORK ANALYZER
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Transient analysis snapshot of the dependency network over a node subset.

EDGE WEIGHT
═══════════

    w(e) = b(e) · m(impact) + 0.1 · |ℓ|
    b(e) = 2 if critical else 1
    m    = {NONE: 1, LOW: 1, MEDIUM: 1.5, HIGH: 2, CRITICAL: 3}

PATH COST (critical_path_between)
─────────────────────────────────

    c(e) = (−10 if critical or impact ≥ HIGH else 1) + ℓ

Negative costs make this a best-first search rather than exact Dijkstra;
each node is settled once so the search always terminates.

LOCAL CLUSTERING
────────────────

For v with successor set S(v), k = |S(v)| ≥ 2:
    C(v) = |{(a, b) ∈ S(v)², a ≠ b, a → b}| / (k(k − 1))
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import networkx as nx
import numpy as np
import pandas as pd

from ..config import EngineSettings, Settings
from ..models import (
    DependencyEdge,
    DependencyImpact,
    GraphType,
    Node,
    TERMINAL_STATUSES,
)
from ..store.base import GraphStore, NodeProvider

logger = logging.getLogger(__name__)

IMPACT_MULTIPLIER = {
    DependencyImpact.NONE: 1.0,
    DependencyImpact.LOW: 1.0,
    DependencyImpact.MEDIUM: 1.5,
    DependencyImpact.HIGH: 2.0,
    DependencyImpact.CRITICAL: 3.0,
}

BOTTLENECK_MIN_OUT_DEGREE = 3


def edge_weight(edge: DependencyEdge) -> float:
    base = 2.0 if edge.is_critical else 1.0
    return base * IMPACT_MULTIPLIER[edge.impact] + 0.1 * abs(edge.lag_days)


def step_cost(edge: DependencyEdge) -> float:
    rewarded = edge.is_critical or edge.impact.rank >= DependencyImpact.HIGH.rank
    return (-10.0 if rewarded else 1.0) + edge.lag_days


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# REPORTS
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class ConnectivityReport:
    node_count: int
    edge_count: int
    density: float
    average_degree: float
    max_in_degree: int
    max_out_degree: int
    clustering_coefficient: float
    weakly_connected_components: int
    max_level: int
    isolated_nodes: List[str] = field(default_factory=list)
    source_nodes: List[str] = field(default_factory=list)
    terminal_nodes: List[str] = field(default_factory=list)
    bottlenecks: List[str] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "density": round(self.density, 4),
            "average_degree": round(self.average_degree, 2),
            "max_in_degree": self.max_in_degree,
            "max_out_degree": self.max_out_degree,
            "clustering_coefficient": round(self.clustering_coefficient, 4),
            "weakly_connected_components": self.weakly_connected_components,
            "max_level": self.max_level,
            "isolated_nodes": self.isolated_nodes,
            "source_nodes": self.source_nodes,
            "terminal_nodes": self.terminal_nodes,
            "bottlenecks": self.bottlenecks,
            "cycles": self.cycles,
            "recommendations": self.recommendations,
        }


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# SNAPSHOT
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class NetworkSnapshot:
    """Immutable-by-convention view of nodes plus weighted dependency edges."""

    def __init__(self, nodes: Dict[str, Optional[Node]], edges: Iterable[DependencyEdge]):
        self.graph = nx.DiGraph()
        for node_id, node in nodes.items():
            self.graph.add_node(
                node_id,
                status=node.status if node else None,
                name=node.name if node else "",
                critical=False,
            )
        for edge in edges:
            if edge.predecessor_id not in self.graph or edge.successor_id not in self.graph:
                continue
            if edge.predecessor_id == edge.successor_id:
                continue
            self.graph.add_edge(
                edge.predecessor_id,
                edge.successor_id,
                edge_id=edge.edge_id,
                dependency_type=edge.dependency_type,
                lag_days=edge.lag_days,
                impact=edge.impact,
                critical=edge.is_critical,
                weight=edge_weight(edge),
                step_cost=step_cost(edge),
            )
            if edge.is_critical:
                self.graph.nodes[edge.predecessor_id]["critical"] = True
                self.graph.nodes[edge.successor_id]["critical"] = True
        self._levels: Optional[Dict[str, int]] = None

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def node_ids(self) -> List[str]:
        return list(self.graph.nodes)

    # ── levels ─────────────────────────────────────────────────────────────

    def levels(self) -> Dict[str, int]:
        """Topological level per node (Kahn peeling, cycles force-assigned)."""
        if self._levels is not None:
            return dict(self._levels)

        remaining_in = {n: self.graph.in_degree(n) for n in self.graph.nodes}
        remaining = list(self.graph.nodes)
        levels: Dict[str, int] = {}
        level = 0

        while remaining:
            frontier = [n for n in remaining if remaining_in[n] == 0]
            if not frontier:
                logger.warning(
                    f"Level assignment stalled with {len(remaining)} nodes in a cycle; "
                    f"assigning them level {level}"
                )
                for node_id in remaining:
                    levels[node_id] = level
                break
            for node_id in frontier:
                levels[node_id] = level
                for succ in self.graph.successors(node_id):
                    remaining_in[succ] -= 1
            placed = set(frontier)
            remaining = [n for n in remaining if n not in placed]
            level += 1

        self._levels = levels
        return dict(levels)

    def level(self, node_id: str) -> int:
        return self.levels()[node_id]

    # ── structure ──────────────────────────────────────────────────────────

    def bottlenecks(self) -> List[str]:
        """High fan-out critical nodes still in flight, most connected first."""
        order = {n: i for i, n in enumerate(self.graph.nodes)}
        found = [
            n for n, attrs in self.graph.nodes(data=True)
            if self.graph.out_degree(n) > BOTTLENECK_MIN_OUT_DEGREE
            and attrs["critical"]
            and attrs["status"] not in TERMINAL_STATUSES
        ]
        return sorted(found, key=lambda n: (-self.graph.out_degree(n), order[n]))

    def strongly_connected_components(self) -> List[List[str]]:
        """Cycle groups (Kosaraju), largest first."""
        components = [
            sorted(component)
            for component in nx.kosaraju_strongly_connected_components(self.graph)
            if len(component) > 1
        ]
        return sorted(components, key=lambda c: (-len(c), c))

    def clustering_coefficient(self) -> float:
        coefficients = []
        for node_id in self.graph.nodes:
            successors = list(self.graph.successors(node_id))
            k = len(successors)
            if k < 2:
                continue
            links = sum(
                1 for a, b in itertools.permutations(successors, 2) if self.graph.has_edge(a, b)
            )
            coefficients.append(links / (k * (k - 1)))
        return float(np.mean(coefficients)) if coefficients else 0.0

    def critical_path_between(self, start_id: str, end_id: str) -> List[str]:
        """Lowest path-cost sequence start → end; empty when unreachable."""
        if start_id not in self.graph or end_id not in self.graph or start_id == end_id:
            return []

        counter = itertools.count()
        best = {start_id: 0.0}
        previous: Dict[str, str] = {}
        settled = set()
        heap = [(0.0, next(counter), start_id)]

        while heap:
            cost, _, current = heapq.heappop(heap)
            if current in settled:
                continue
            settled.add(current)
            if current == end_id:
                break
            for succ in self.graph.successors(current):
                if succ in settled:
                    continue
                candidate = cost + self.graph.edges[current, succ]["step_cost"]
                if succ not in best or candidate < best[succ]:
                    best[succ] = candidate
                    previous[succ] = current
                    heapq.heappush(heap, (candidate, next(counter), succ))

        if end_id not in previous:
            return []
        path = [end_id]
        while path[-1] != start_id:
            path.append(previous[path[-1]])
        path.reverse()
        return path

    # ── reports ────────────────────────────────────────────────────────────

    def analyze_connectivity(self) -> ConnectivityReport:
        n = self.graph.number_of_nodes()
        e = self.graph.number_of_edges()
        density = e / (n * (n - 1)) if n > 1 else 0.0
        in_degrees = dict(self.graph.in_degree())
        out_degrees = dict(self.graph.out_degree())
        levels = self.levels()
        max_level = max(levels.values(), default=0)
        bottlenecks = self.bottlenecks()
        critical_nodes = sum(1 for _, attrs in self.graph.nodes(data=True) if attrs["critical"])

        recommendations = []
        if density > 0.3:
            recommendations.append("High dependency density: consider decoupling work items")
        elif n > 1 and density < 0.1:
            recommendations.append("Low dependency density: verify that all dependencies are captured")
        if max_level > 5:
            recommendations.append(f"Long dependency chains ({max_level} levels): look for work that can run in parallel")
        if n and critical_nodes / n > 0.5:
            recommendations.append("More than half of the network is critical: add schedule buffers")
        if bottlenecks:
            recommendations.append(f"Bottlenecks detected: {', '.join(bottlenecks[:3])}")

        return ConnectivityReport(
            node_count=n,
            edge_count=e,
            density=density,
            average_degree=(2.0 * e / n) if n else 0.0,
            max_in_degree=max(in_degrees.values(), default=0),
            max_out_degree=max(out_degrees.values(), default=0),
            clustering_coefficient=self.clustering_coefficient(),
            weakly_connected_components=nx.number_weakly_connected_components(self.graph) if n else 0,
            max_level=max_level,
            isolated_nodes=[v for v in self.graph.nodes if in_degrees[v] == 0 and out_degrees[v] == 0],
            source_nodes=[v for v in self.graph.nodes if in_degrees[v] == 0 and out_degrees[v] > 0],
            terminal_nodes=[v for v in self.graph.nodes if out_degrees[v] == 0 and in_degrees[v] > 0],
            bottlenecks=bottlenecks,
            cycles=self.strongly_connected_components(),
            recommendations=recommendations,
        )

    def statistics(self) -> Dict[str, Any]:
        levels = self.levels()
        return {
            "total_nodes": self.graph.number_of_nodes(),
            "total_edges": self.graph.number_of_edges(),
            "critical_nodes": sum(1 for _, a in self.graph.nodes(data=True) if a["critical"]),
            "critical_edges": sum(1 for _, _, a in self.graph.edges(data=True) if a["critical"]),
            "max_level": max(levels.values(), default=0),
            "total_weight": round(sum(a["weight"] for _, _, a in self.graph.edges(data=True)), 2),
        }

    def to_frame(self) -> pd.DataFrame:
        levels = self.levels()
        rows = []
        for node_id, attrs in self.graph.nodes(data=True):
            rows.append({
                "node_id": node_id,
                "name": attrs["name"],
                "status": attrs["status"].value if attrs["status"] else None,
                "level": levels[node_id],
                "in_degree": self.graph.in_degree(node_id),
                "out_degree": self.graph.out_degree(node_id),
                "critical": attrs["critical"],
            })
        return pd.DataFrame(rows, columns=[
            "node_id", "name", "status", "level", "in_degree", "out_degree", "critical",
        ])


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# ANALYZER
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class NetworkAnalyzer:
    """Builds snapshots from the stores."""

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        settings: Optional[EngineSettings] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()

    def build(self, node_ids: Iterable[str]) -> NetworkSnapshot:
        """Snapshot over node_ids with the active edges among them."""
        ids = list(dict.fromkeys(node_ids))
        members = set(ids)
        found = self.provider.get_nodes(ids)
        nodes = {node_id: found.get(node_id) for node_id in ids}

        edges = []
        for node_id in ids:
            for edge in self.store.list_dependencies(predecessor_id=node_id):
                if edge.successor_id in members:
                    edges.append(edge)
        return NetworkSnapshot(nodes, edges)

    def build_around(self, node_id: str) -> NetworkSnapshot:
        """Snapshot of the dependency network containing node_id."""
        return self.build(
            self.store.component(GraphType.DEPENDENCY, node_id, self.settings.max_traversal_depth)
        )

    def build_for_tenant(self, tenant_id: Optional[str] = None) -> NetworkSnapshot:
        return self.build(n.node_id for n in self.provider.list_nodes(tenant_id=tenant_id))
