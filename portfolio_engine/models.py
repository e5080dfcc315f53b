"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — GRAPH MODEL
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Data model for the relationship and dependency graph over work items.

DEFINITIONS
═══════════

Let:
    N = {n₁, ..., nₖ}            set of nodes (projects / work items) of one tenant
    R ⊆ N × N × {PC, PROG, M}    relationship edges (hierarchy, program, master marker)
    D ⊆ N × N × {FS, SS, FF, SF} dependency edges with signed lag ℓ ∈ [-365, 365]

Invariants:
─────────────
    PARENT_CHILD:   ∀ t ∈ N: |{s : (s, t, PC) active}| ≤ 1       (forest)
    PROGRAM:        ∀ t ∈ N: |{p : (p, t, PROG) active}| ≤ 1
    DEPENDENCY:     (p, s) unique among active edges, p ≠ s, active subgraph acyclic

Derived records (MasterAggregate, HealthRecord, CacheEntry) carry no independent
source of truth and may be recomputed at will.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# ENUMS
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class NodeStatus(str, Enum):
    """Work item lifecycle status."""
    PLANNING = "PLANNING"
    ACTIVE = "ACTIVE"
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    DELAYED = "DELAYED"
    AT_RISK = "AT_RISK"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.CANCELLED})
RUNNING_STATUSES = frozenset({NodeStatus.ACTIVE, NodeStatus.IN_PROGRESS})


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RelationshipType(str, Enum):
    """Kinds of structural relationship between nodes."""
    PARENT_CHILD = "PARENT_CHILD"   # Tree edge, at most one active parent
    PROGRAM = "PROGRAM"             # Program membership, source is the program id
    MASTER = "MASTER"               # Self edge promoting a node to aggregation root


class GraphType(str, Enum):
    """Edge subgraphs that must stay acyclic."""
    DEPENDENCY = "DEPENDENCY"
    PARENT_CHILD = "PARENT_CHILD"
    PROGRAM = "PROGRAM"


class Direction(str, Enum):
    DOWNSTREAM = "DOWNSTREAM"   # follow source -> target / predecessor -> successor
    UPSTREAM = "UPSTREAM"


class DependencyType(str, Enum):
    FINISH_TO_START = "FINISH_TO_START"
    START_TO_START = "START_TO_START"
    FINISH_TO_FINISH = "FINISH_TO_FINISH"
    START_TO_FINISH = "START_TO_FINISH"


class DependencyImpact(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _IMPACT_RANK[self]


_IMPACT_RANK = {
    DependencyImpact.NONE: 0,
    DependencyImpact.LOW: 1,
    DependencyImpact.MEDIUM: 2,
    DependencyImpact.HIGH: 3,
    DependencyImpact.CRITICAL: 4,
}


class DependencyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ViolationSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return ["LOW", "MEDIUM", "HIGH", "CRITICAL"].index(self.value)


class HealthTrend(str, Enum):
    IMPROVING = "IMPROVING"
    STABLE = "STABLE"
    DECLINING = "DECLINING"


class VelocityTrend(str, Enum):
    INCREASING = "INCREASING"
    STABLE = "STABLE"
    DECREASING = "DECREASING"


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# NODE SNAPSHOT
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class QualityIndicators:
    """Externally supplied quality signals. None leaves the baseline untouched."""
    defect_rate: Optional[float] = None             # defects per 100 deliverables
    test_coverage: Optional[float] = None           # %
    customer_satisfaction: Optional[float] = None   # 0-100


@dataclass
class TeamIndicators:
    """Externally supplied team signals. None leaves the baseline untouched."""
    size: Optional[int] = None
    turnover_rate: Optional[float] = None           # % per year
    velocity_trend: Optional[VelocityTrend] = None


@dataclass
class Node:
    """
    Read-mostly snapshot of a work item.

    Owned by the external project system; the engine never mutates it.
    """
    node_id: str
    name: str = ""
    tenant_id: Optional[str] = None
    budget: Optional[float] = None
    actual_cost: Optional[float] = None
    progress_percent: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: NodeStatus = NodeStatus.ACTIVE
    priority: Priority = Priority.MEDIUM
    duration_days: Optional[float] = None
    buffer_days: float = 0.0
    quality: QualityIndicators = field(default_factory=QualityIndicators)
    team: TeamIndicators = field(default_factory=TeamIndicators)
    health_history: List[float] = field(default_factory=list)

    @property
    def duration(self) -> float:
        """Planned duration in days (explicit, else from dates, else 0)."""
        if self.duration_days is not None:
            return max(0.0, float(self.duration_days))
        if self.start_date and self.end_date:
            return max(0.0, (self.end_date - self.start_date).total_seconds() / 86400.0)
        return 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "name": self.name,
            "tenant_id": self.tenant_id,
            "budget": self.budget,
            "actual_cost": self.actual_cost,
            "progress_percent": self.progress_percent,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status.value,
            "priority": self.priority.value,
            "duration_days": round(self.duration, 2),
        }


@dataclass
class Program:
    """Named grouping of nodes; the program id is the source of PROGRAM edges."""
    program_id: str
    name: str = ""
    tenant_id: Optional[str] = None
    target_budget: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: NodeStatus = NodeStatus.ACTIVE


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# EDGES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class RelationshipEdge:
    edge_id: str
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    is_active: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_id": self.edge_id,
            "source_id": self.source_id,
            "target_id": self.target_id,
            "relationship_type": self.relationship_type.value,
            "is_active": self.is_active,
            "metadata": dict(self.metadata),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class DependencyEdge:
    edge_id: str
    predecessor_id: str
    successor_id: str
    dependency_type: DependencyType = DependencyType.FINISH_TO_START
    lag_days: int = 0
    is_critical: bool = False
    impact: DependencyImpact = DependencyImpact.NONE
    status: DependencyStatus = DependencyStatus.ACTIVE
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == DependencyStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_id": self.edge_id,
            "predecessor_id": self.predecessor_id,
            "successor_id": self.successor_id,
            "dependency_type": self.dependency_type.value,
            "lag_days": self.lag_days,
            "is_critical": self.is_critical,
            "impact": self.impact.value,
            "status": self.status.value,
            "description": self.description,
            "metadata": dict(self.metadata),
        }


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DERIVED RECORDS
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class MasterAggregate:
    """Cached rollup for a master node. Never mutated by callers."""
    master_id: str
    aggregated_budget: float = 0.0
    aggregated_cost: float = 0.0
    aggregated_progress: float = 0.0
    total_sub_nodes: int = 0
    active_sub_nodes: int = 0
    earliest_start: Optional[datetime] = None
    latest_end: Optional[datetime] = None
    metrics: Dict[str, float] = field(default_factory=dict)
    last_aggregated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master_id": self.master_id,
            "aggregated_budget": round(self.aggregated_budget, 2),
            "aggregated_cost": round(self.aggregated_cost, 2),
            "aggregated_progress": round(self.aggregated_progress, 2),
            "total_sub_nodes": self.total_sub_nodes,
            "active_sub_nodes": self.active_sub_nodes,
            "earliest_start": self.earliest_start.isoformat() if self.earliest_start else None,
            "latest_end": self.latest_end.isoformat() if self.latest_end else None,
            "metrics": {k: round(v, 4) for k, v in self.metrics.items()},
            "last_aggregated_at": self.last_aggregated_at.isoformat() if self.last_aggregated_at else None,
        }


@dataclass
class HealthRecord:
    node_id: str
    score: int
    trend: HealthTrend = HealthTrend.STABLE
    components: Dict[str, float] = field(default_factory=dict)
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "score": self.score,
            "trend": self.trend.value,
            "components": {k: round(v, 1) for k, v in self.components.items()},
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }


@dataclass
class CacheEntry:
    key: str
    payload: Any
    computed_at: datetime
    ttl: timedelta

    def is_expired(self, now: datetime) -> bool:
        return now - self.computed_at > self.ttl
