"""Graph algorithms: cycle gate, hierarchy, dependencies, network analysis."""

from .cycle_validator import CycleValidator
from .dependency_engine import (
    CriticalPathResult,
    DependencyGraphEngine,
    DependencyValidation,
    ScheduleEntry,
    compute_schedule,
    propagate_delay,
)
from .hierarchy import HierarchyTraversal
from .impact_analysis import DependencyImpactAnalyzer, ImpactAnalysis
from .network_analyzer import ConnectivityReport, NetworkAnalyzer, NetworkSnapshot
from .relationships import RelationshipService

__all__ = [
    "CycleValidator",
    "CriticalPathResult",
    "DependencyGraphEngine",
    "DependencyValidation",
    "ScheduleEntry",
    "compute_schedule",
    "propagate_delay",
    "HierarchyTraversal",
    "DependencyImpactAnalyzer",
    "ImpactAnalysis",
    "ConnectivityReport",
    "NetworkAnalyzer",
    "NetworkSnapshot",
    "RelationshipService",
]
