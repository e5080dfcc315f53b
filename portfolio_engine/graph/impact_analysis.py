"""
Delay impact analysis around one node.

Looks one hop in both directions: how the node's current overrun would
shift each successor, and which predecessors are currently late. Delay
levels are net of the successor's buffer days; cost impact assumes 1% of
the successor budget per day of slip.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..errors import NotFoundError
from ..models import (
    DependencyEdge,
    DependencyImpact,
    DependencyType,
    GraphType,
    Node,
    NodeStatus,
)
from .dependency_engine import DependencyGraphEngine, propagate_delay

logger = logging.getLogger(__name__)

IMPACT_POINTS = {
    DependencyImpact.CRITICAL: 25,
    DependencyImpact.HIGH: 15,
    DependencyImpact.MEDIUM: 10,
    DependencyImpact.LOW: 5,
    DependencyImpact.NONE: 0,
}
DELAYED_PREDECESSOR_POINTS = 10
DAILY_COST_RATE = 0.01


@dataclass
class SuccessorImpact:
    edge_id: str
    successor_id: str
    dependency_type: DependencyType
    lag_days: int
    potential_delay: float
    impact: DependencyImpact
    cost_impact: float
    mitigation_options: List[str] = field(default_factory=list)


@dataclass
class PredecessorImpact:
    edge_id: str
    predecessor_id: str
    current_delay: float
    is_delaying: bool


@dataclass
class ImpactAnalysis:
    node_id: str
    directly_impacted: int
    total_impacted: int
    critical_impacts: int
    overall_score: int
    successor_impacts: List[SuccessorImpact] = field(default_factory=list)
    predecessor_impacts: List[PredecessorImpact] = field(default_factory=list)
    bottlenecks: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


def overrun_days(node: Node, now: datetime) -> float:
    """Whole days past end date for an unfinished node (0 if on time)."""
    if node.end_date is None or node.status == NodeStatus.COMPLETED:
        return 0.0
    seconds = (now - node.end_date).total_seconds()
    return float(max(0, math.ceil(seconds / 86400.0)))


def impact_level(delay_days: float, buffer_days: float = 0.0) -> DependencyImpact:
    if delay_days == 0:
        return DependencyImpact.NONE
    net = delay_days - buffer_days
    if net <= 0:
        return DependencyImpact.LOW
    if net <= 7:
        return DependencyImpact.MEDIUM
    if net <= 14:
        return DependencyImpact.HIGH
    return DependencyImpact.CRITICAL


def mitigation_options(edge: DependencyEdge, potential_delay: float) -> List[str]:
    if potential_delay <= 0:
        return []
    options = ["Fast-track critical activities", "Allocate additional resources"]
    if edge.lag_days > 0:
        options.append(f"Reduce lag time (currently {edge.lag_days} days)")
    if edge.dependency_type == DependencyType.FINISH_TO_START:
        options.append("Consider changing to Start-to-Start dependency")
    if potential_delay > 7:
        options.append("Review and adjust project scope")
        options.append("Negotiate deadline extension")
    return options


class DependencyImpactAnalyzer:

    def __init__(self, engine: DependencyGraphEngine, clock: Optional[Callable[[], datetime]] = None):
        self.engine = engine
        self.store = engine.store
        self.provider = engine.provider
        self._clock = clock or datetime.now

    def analyze_impact(self, node_id: str, now: Optional[datetime] = None) -> ImpactAnalysis:
        now = now or self._clock()
        node = self.provider.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found", details={"node_id": node_id})

        delay = overrun_days(node, now)

        successor_impacts = []
        for edge in self.engine.successors_of(node_id):
            successor = self.provider.get_node(edge.successor_id)
            if successor is None:
                logger.warning(f"Successor {edge.successor_id} of {node_id} not found; skipped")
                continue
            potential = propagate_delay(edge.dependency_type, delay, edge.lag_days) if delay > 0 else 0.0
            potential = max(0.0, potential)
            cost = 0.0
            if successor.budget and potential > 0:
                cost = successor.budget * DAILY_COST_RATE * potential
            successor_impacts.append(SuccessorImpact(
                edge_id=edge.edge_id,
                successor_id=successor.node_id,
                dependency_type=edge.dependency_type,
                lag_days=edge.lag_days,
                potential_delay=potential,
                impact=impact_level(potential, successor.buffer_days),
                cost_impact=cost,
                mitigation_options=mitigation_options(edge, potential),
            ))

        predecessor_impacts = []
        for edge in self.engine.predecessors_of(node_id):
            predecessor = self.provider.get_node(edge.predecessor_id)
            if predecessor is None:
                continue
            late = overrun_days(predecessor, now)
            predecessor_impacts.append(PredecessorImpact(
                edge_id=edge.edge_id,
                predecessor_id=predecessor.node_id,
                current_delay=late,
                is_delaying=late > 0,
            ))

        score = sum(IMPACT_POINTS[i.impact] for i in successor_impacts)
        score += DELAYED_PREDECESSOR_POINTS * sum(1 for p in predecessor_impacts if p.is_delaying)
        score = min(100, score)

        downstream = self.store.reachable(
            GraphType.DEPENDENCY, node_id, max_depth=self.engine.settings.max_traversal_depth
        )
        bottlenecks = self._local_bottlenecks(node_id)

        return ImpactAnalysis(
            node_id=node_id,
            directly_impacted=len(successor_impacts),
            total_impacted=len(downstream.depths),
            critical_impacts=sum(1 for i in successor_impacts if i.impact == DependencyImpact.CRITICAL),
            overall_score=score,
            successor_impacts=successor_impacts,
            predecessor_impacts=predecessor_impacts,
            bottlenecks=bottlenecks,
            recommendations=self._recommendations(score, bottlenecks),
        )

    def _local_bottlenecks(self, node_id: str) -> List[Dict[str, Any]]:
        """Neighbours (and the node) feeding more than two successors."""
        candidates = [node_id] + [e.predecessor_id for e in self.engine.predecessors_of(node_id)]
        found = []
        for candidate in dict.fromkeys(candidates):
            edges = self.engine.successors_of(candidate)
            if len(edges) <= 2:
                continue
            critical = sum(1 for e in edges if e.is_critical)
            found.append({
                "node_id": candidate,
                "dependent_count": len(edges),
                "avg_lag": sum(e.lag_days for e in edges) / len(edges),
                "critical_count": critical,
                "risk": "HIGH" if critical > 0 else "MEDIUM",
            })
        found.sort(key=lambda b: (-b["dependent_count"], -b["critical_count"]))
        return found[:5]

    @staticmethod
    def _recommendations(score: int, bottlenecks: List[Dict[str, Any]]) -> List[str]:
        recommendations = []
        if score > 75:
            recommendations.append("Critical: immediate action required to prevent cascade failures")
            recommendations.append("Schedule emergency stakeholder meeting")
            recommendations.append("Consider project restructuring")
        elif score > 50:
            recommendations.append("High priority: review and adjust dependent schedules")
            recommendations.append("Implement risk mitigation strategies")
        elif score > 25:
            recommendations.append("Monitor closely and prepare contingency plans")

        if bottlenecks:
            recommendations.append(f"Focus on bottleneck node {bottlenecks[0]['node_id']}")
            recommendations.append("Consider parallel processing where possible")
        return recommendations
