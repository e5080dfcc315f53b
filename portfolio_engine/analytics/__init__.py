"""Rollups and scoring: aggregation, master nodes, health, programs."""

from .aggregation_engine import AggregationEngine, AggregationResult, DerivedMetrics
from .health_scorer import HealthScorer, PortfolioHealth, classify_trend
from .master_projects import MasterProjectService
from .program_metrics import ProgramMetrics, ProgramMetricsCalculator, ProgramTimeline

__all__ = [
    "AggregationEngine",
    "AggregationResult",
    "DerivedMetrics",
    "HealthScorer",
    "PortfolioHealth",
    "classify_trend",
    "MasterProjectService",
    "ProgramMetrics",
    "ProgramMetricsCalculator",
    "ProgramTimeline",
]
