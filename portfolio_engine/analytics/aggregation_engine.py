"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — HIERARCHY AGGREGATION
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Rolls up budget, cost, progress and schedule bounds over a PARENT_CHILD tree.

DEFINITIONS
═══════════

Let T(r) = {r} ∪ descendants(r) over active PARENT_CHILD edges.

    Budget(r)    = Σ_{n∈T(r)} bₙ
    Cost(r)      = Σ_{n∈T(r)} cₙ
    Progress(r)  = clamp( Σ wₙ·pₙ / Σ wₙ , 0, 100 ),   wₙ = bₙ if bₙ > 0 else 1
    Start(r)     = min sₙ,   End(r) = max eₙ

Derived metrics:
─────────────────

    budget_variance = Budget − Cost
    CPI             = Cost / Budget                       (0 if Budget = 0)
    SPI             = 1                                   before Start or without bounds
                    = 1 − 0.5 · elapsed / total           inside the window
                    = 0.5                                 at or after End
    budget_health   = max(0, 100 − 100·|Cost − Budget| / Budget)   (100 if Budget = 0)
    health_score    = (Progress + budget_health) / 2
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..config import EngineSettings, Settings
from ..errors import NotFoundError
from ..models import MasterAggregate, Node, RUNNING_STATUSES
from ..store.base import GraphStore, NodeProvider
from ..graph.hierarchy import HierarchyTraversal

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class DerivedMetrics:
    budget_variance: float = 0.0
    cost_performance_index: float = 0.0
    schedule_performance_index: float = 1.0
    budget_health_score: float = 100.0
    health_score: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "budget_variance": self.budget_variance,
            "cost_performance_index": self.cost_performance_index,
            "schedule_performance_index": self.schedule_performance_index,
            "budget_health_score": self.budget_health_score,
            "health_score": self.health_score,
        }


@dataclass
class AggregationResult:
    root_id: str
    budget: float = 0.0
    cost: float = 0.0
    progress: float = 0.0
    total_sub_nodes: int = 0
    active_sub_nodes: int = 0
    earliest_start: Optional[datetime] = None
    latest_end: Optional[datetime] = None
    duration_days: int = 0
    member_ids: List[str] = field(default_factory=list)
    metrics: DerivedMetrics = field(default_factory=DerivedMetrics)

    def to_master_aggregate(self, aggregated_at: Optional[datetime]) -> MasterAggregate:
        return MasterAggregate(
            master_id=self.root_id,
            aggregated_budget=self.budget,
            aggregated_cost=self.cost,
            aggregated_progress=self.progress,
            total_sub_nodes=self.total_sub_nodes,
            active_sub_nodes=self.active_sub_nodes,
            earliest_start=self.earliest_start,
            latest_end=self.latest_end,
            metrics={**self.metrics.to_dict(), "duration_days": float(self.duration_days)},
            last_aggregated_at=aggregated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root_id": self.root_id,
            "budget": round(self.budget, 2),
            "cost": round(self.cost, 2),
            "progress": round(self.progress, 2),
            "total_sub_nodes": self.total_sub_nodes,
            "active_sub_nodes": self.active_sub_nodes,
            "earliest_start": self.earliest_start.isoformat() if self.earliest_start else None,
            "latest_end": self.latest_end.isoformat() if self.latest_end else None,
            "duration_days": self.duration_days,
            "metrics": {k: round(v, 4) for k, v in self.metrics.to_dict().items()},
        }


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# FORMULAS
# ════════════════════════════════════════════════════════════════════════════════════════════════════

def weighted_progress(nodes: List[Node]) -> float:
    if not nodes:
        return 0.0
    progress = np.array([n.progress_percent or 0.0 for n in nodes], dtype=float)
    weights = np.array([n.budget if n.budget and n.budget > 0 else 1.0 for n in nodes], dtype=float)
    value = float(np.average(progress, weights=weights))
    return float(np.clip(value, 0.0, 100.0))


def schedule_performance_index(
    earliest_start: Optional[datetime],
    latest_end: Optional[datetime],
    now: datetime,
) -> float:
    if earliest_start is None or latest_end is None:
        return 1.0
    total = (latest_end - earliest_start).total_seconds()
    elapsed = (now - earliest_start).total_seconds()
    if elapsed <= 0:
        return 1.0
    if total <= 0 or elapsed >= total:
        return 0.5
    return 1.0 - (elapsed / total) * 0.5


def derive_metrics(budget: float, cost: float, progress: float, spi: float) -> DerivedMetrics:
    if budget > 0:
        cpi = cost / budget
        budget_health = max(0.0, 100.0 - abs(cost - budget) / budget * 100.0)
    else:
        cpi = 0.0
        budget_health = 100.0
    return DerivedMetrics(
        budget_variance=budget - cost,
        cost_performance_index=cpi,
        schedule_performance_index=spi,
        budget_health_score=budget_health,
        health_score=(progress + budget_health) / 2.0,
    )


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# ENGINE
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class AggregationEngine:

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()
        self.hierarchy = HierarchyTraversal(store, self.settings)
        self._clock = clock or datetime.now

    def aggregate(self, root_id: str, now: Optional[datetime] = None) -> AggregationResult:
        """Roll up the tree rooted at root_id (root included)."""
        now = now or self._clock()
        root = self.provider.get_node(root_id)
        if root is None:
            raise NotFoundError(f"Node {root_id} not found", details={"node_id": root_id})

        descendant_ids = self.hierarchy.descendants(root_id)
        found = self.provider.get_nodes(descendant_ids)
        descendants = [found[d] for d in descendant_ids if d in found]
        if len(descendants) < len(descendant_ids):
            logger.warning(
                f"{len(descendant_ids) - len(descendants)} descendants of {root_id} missing from provider"
            )
        members = [root] + descendants

        budget = float(sum(n.budget or 0.0 for n in members))
        cost = float(sum(n.actual_cost or 0.0 for n in members))
        progress = weighted_progress(members)

        starts = [n.start_date for n in members if n.start_date]
        ends = [n.end_date for n in members if n.end_date]
        earliest = min(starts) if starts else None
        latest = max(ends) if ends else None
        duration = 0
        if earliest and latest:
            duration = max(0, math.ceil((latest - earliest).total_seconds() / 86400.0))

        spi = schedule_performance_index(earliest, latest, now)

        return AggregationResult(
            root_id=root_id,
            budget=budget,
            cost=cost,
            progress=progress,
            total_sub_nodes=len(descendants),
            active_sub_nodes=sum(1 for n in descendants if n.status in RUNNING_STATUSES),
            earliest_start=earliest,
            latest_end=latest,
            duration_days=duration,
            member_ids=[n.node_id for n in members],
            metrics=derive_metrics(budget, cost, progress, spi),
        )

    def refresh_master(self, master_id: str, now: Optional[datetime] = None) -> MasterAggregate:
        """Recompute and persist the MasterAggregate for master_id."""
        now = now or self._clock()
        result = self.aggregate(master_id, now=now)
        aggregate = result.to_master_aggregate(aggregated_at=now)
        self.store.save_master_aggregate(aggregate)
        logger.debug(
            f"Master {master_id} aggregated: budget={result.budget:.2f} "
            f"progress={result.progress:.1f}% over {result.total_sub_nodes} sub-nodes"
        )
        return aggregate
