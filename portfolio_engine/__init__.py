"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Relationship and dependency graph over projects / work items:

    graph/       cycle gate, hierarchy traversal, dependency engine (CPM, delay
                 propagation), impact analysis, network analysis
    analytics/   hierarchical aggregation, master nodes, health scoring, programs
    jobs/        recompute scheduler, result cache, violation detection
    store/       node providers and graph stores (in-memory, SQLAlchemy)
"""

from .config import EngineSettings, Settings, load_settings_from_env
from .errors import (
    CircularDependencyError,
    CrossScopeError,
    DuplicateEdgeError,
    ErrorCode,
    GraphEngineError,
    GraphValidationError,
    NotFoundError,
    SelfDependencyError,
)
from .models import (
    DependencyEdge,
    DependencyImpact,
    DependencyStatus,
    DependencyType,
    Direction,
    GraphType,
    HealthRecord,
    HealthTrend,
    MasterAggregate,
    Node,
    NodeStatus,
    Priority,
    Program,
    QualityIndicators,
    RelationshipEdge,
    RelationshipType,
    TeamIndicators,
    VelocityTrend,
)

__version__ = "1.0.0"

__all__ = [
    "EngineSettings",
    "Settings",
    "load_settings_from_env",
    "CircularDependencyError",
    "CrossScopeError",
    "DuplicateEdgeError",
    "ErrorCode",
    "GraphEngineError",
    "GraphValidationError",
    "NotFoundError",
    "SelfDependencyError",
    "DependencyEdge",
    "DependencyImpact",
    "DependencyStatus",
    "DependencyType",
    "Direction",
    "GraphType",
    "HealthRecord",
    "HealthTrend",
    "MasterAggregate",
    "Node",
    "NodeStatus",
    "Priority",
    "Program",
    "QualityIndicators",
    "RelationshipEdge",
    "RelationshipType",
    "TeamIndicators",
    "VelocityTrend",
]
