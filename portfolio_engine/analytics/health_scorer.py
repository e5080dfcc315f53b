"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — HEALTH SCORING
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Per-node health score and portfolio aggregate.

NODE SCORE
══════════

    H(n) = round( 0.25·S_sched + 0.25·S_budget + 0.20·S_progress
                + 0.15·S_quality + 0.15·S_team )

Each sub-score is clamped to [0, 100]. Rounding is half-up.

TREND
─────

OLS slope β over the last ≤ 5 historical scores (x = 0..k−1):
    β > 2  → IMPROVING,   β < −2 → DECLINING,   else STABLE

PORTFOLIO SCORE
───────────────

    P = round( Σ wₙ·Hₙ / Σ wₙ ),   wₙ = priority(n) · f(bₙ)
    priority: CRITICAL 3, HIGH 2, MEDIUM 1.5, LOW 1
    f(b)    = log10(max(10000, b)) / 6    (1 when the node has no budget)
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..models import (
    HealthRecord,
    HealthTrend,
    Node,
    NodeStatus,
    Priority,
    RUNNING_STATUSES,
    VelocityTrend,
)

logger = logging.getLogger(__name__)

WEIGHTS = {
    "schedule": 0.25,
    "budget": 0.25,
    "progress": 0.20,
    "quality": 0.15,
    "team": 0.15,
}

PRIORITY_WEIGHTS = {
    Priority.CRITICAL: 3.0,
    Priority.HIGH: 2.0,
    Priority.MEDIUM: 1.5,
    Priority.LOW: 1.0,
}

TREND_WINDOW = 5
TREND_THRESHOLD = 2.0


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# SUB-SCORES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

def schedule_score(node: Node, now: datetime) -> float:
    if node.start_date is None or node.end_date is None:
        return 70.0

    score = 100.0
    if node.end_date < now and node.status != NodeStatus.COMPLETED:
        days_overdue = math.ceil((now - node.end_date).total_seconds() / 86400.0)
        score -= min(50.0, days_overdue * 2.0)

    if node.start_date <= now and node.progress_percent is not None:
        total = (node.end_date - node.start_date).total_seconds()
        elapsed = (now - node.start_date).total_seconds()
        expected = 100.0 if total <= 0 else min(100.0, elapsed / total * 100.0)
        gap = expected - node.progress_percent
        if gap > 20:
            score -= 30
        elif gap > 10:
            score -= 15
        elif gap > 5:
            score -= 5

    if node.status == NodeStatus.COMPLETED and node.end_date > now:
        score = min(100.0, score + 10)

    return _clamp(score)


def budget_score(node: Node) -> float:
    if not node.budget:
        return 75.0
    if not node.actual_cost:
        return 90.0

    variance = (node.actual_cost - node.budget) * 100.0 / node.budget
    if variance <= -10:
        return 100.0
    if variance <= 0:
        return 95.0
    if variance <= 5:
        return 85.0
    if variance <= 10:
        return 70.0
    if variance <= 20:
        return 50.0
    return _clamp(50.0 - variance)


def progress_score(node: Node) -> float:
    progress = node.progress_percent
    if progress is None:
        return 50.0

    score = 70.0
    if node.status == NodeStatus.COMPLETED:
        score = 100.0
    elif node.status in RUNNING_STATUSES:
        if progress > 0:
            score += 20
        if progress > 25:
            score += 10
    elif node.status == NodeStatus.AT_RISK:
        score -= 20
    elif node.status == NodeStatus.DELAYED:
        score -= 30
    return _clamp(score)


def quality_score(node: Node) -> float:
    q = node.quality
    score = 75.0

    if q.defect_rate is not None:
        if q.defect_rate < 5:
            score += 20
        elif q.defect_rate < 10:
            score += 10
        elif q.defect_rate > 20:
            score -= 20

    if q.test_coverage is not None:
        if q.test_coverage > 80:
            score += 15
        elif q.test_coverage > 60:
            score += 5
        elif q.test_coverage < 40:
            score -= 15

    if q.customer_satisfaction is not None:
        if q.customer_satisfaction > 90:
            score += 10
        elif q.customer_satisfaction < 70:
            score -= 10

    return _clamp(score)


def team_score(node: Node) -> float:
    t = node.team
    score = 80.0

    if t.size is not None:
        if 3 <= t.size <= 9:
            score += 10
        elif t.size > 15:
            score -= 15
        elif t.size < 3:
            score -= 10

    if t.turnover_rate is not None:
        if t.turnover_rate < 5:
            score += 15
        elif t.turnover_rate > 20:
            score -= 20

    if t.velocity_trend == VelocityTrend.INCREASING:
        score += 10
    elif t.velocity_trend == VelocityTrend.DECREASING:
        score -= 10

    return _clamp(score)


def classify_trend(history: Sequence[float]) -> HealthTrend:
    recent = list(history)[-TREND_WINDOW:]
    if len(recent) < 2:
        return HealthTrend.STABLE
    x = np.arange(len(recent), dtype=float)
    slope = float(np.polyfit(x, np.asarray(recent, dtype=float), 1)[0])
    if slope > TREND_THRESHOLD:
        return HealthTrend.IMPROVING
    if slope < -TREND_THRESHOLD:
        return HealthTrend.DECLINING
    return HealthTrend.STABLE


def portfolio_weight(node: Node) -> float:
    weight = PRIORITY_WEIGHTS.get(node.priority, 1.0)
    if node.budget:
        weight *= math.log10(max(10000.0, node.budget)) / 6.0
    return weight


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# PORTFOLIO REPORT
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class CriticalNode:
    node_id: str
    name: str
    score: int
    trend: HealthTrend
    issues: List[str] = field(default_factory=list)


@dataclass
class PortfolioHealth:
    overall_score: int
    records: List[HealthRecord] = field(default_factory=list)
    distribution: Dict[str, int] = field(default_factory=dict)
    by_status: Dict[str, float] = field(default_factory=dict)
    by_priority: Dict[str, float] = field(default_factory=dict)
    critical_nodes: List[CriticalNode] = field(default_factory=list)
    trends: Dict[str, int] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)  # node_id -> error
    computed_at: Optional[datetime] = None

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {"node_id": r.node_id, "score": r.score, "trend": r.trend.value, **r.components}
            for r in self.records
        ]
        return pd.DataFrame(rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_score": self.overall_score,
            "distribution": dict(self.distribution),
            "by_status": {k: round(v, 1) for k, v in self.by_status.items()},
            "by_priority": {k: round(v, 1) for k, v in self.by_priority.items()},
            "critical_nodes": [
                {"node_id": c.node_id, "name": c.name, "score": c.score,
                 "trend": c.trend.value, "issues": c.issues}
                for c in self.critical_nodes
            ],
            "trends": dict(self.trends),
            "recommendations": list(self.recommendations),
            "failed_nodes": sorted(self.failures),
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
        }


def distribution_bucket(score: float) -> str:
    if score >= 90:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 50:
        return "fair"
    if score >= 30:
        return "poor"
    return "critical"


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# SCORER
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class HealthScorer:
    """Stateless scorer; `now` comes from the injected clock unless given."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now

    def components(self, node: Node, now: Optional[datetime] = None) -> Dict[str, float]:
        now = now or self._clock()
        return {
            "schedule": schedule_score(node, now),
            "budget": budget_score(node),
            "progress": progress_score(node),
            "quality": quality_score(node),
            "team": team_score(node),
        }

    def score(self, node: Node, now: Optional[datetime] = None) -> HealthRecord:
        now = now or self._clock()
        parts = self.components(node, now)
        weighted = sum(parts[k] * WEIGHTS[k] for k in WEIGHTS)
        return HealthRecord(
            node_id=node.node_id,
            score=round_half_up(_clamp(weighted)),
            trend=classify_trend(node.health_history),
            components=parts,
            computed_at=now,
        )

    @staticmethod
    def portfolio_score(scored: Sequence[Tuple[Node, HealthRecord]]) -> int:
        """Weighted mean over (node, record) pairs."""
        if not scored:
            return 0
        for node, record in scored:
            if node.node_id != record.node_id:
                raise ValueError(f"Health record {record.node_id} paired with node {node.node_id}")
        weights = np.array([portfolio_weight(n) for n, _ in scored], dtype=float)
        scores = np.array([r.score for _, r in scored], dtype=float)
        if weights.sum() <= 0:
            return 0
        return round_half_up(float(np.average(scores, weights=weights)))

    def portfolio_health(self, nodes: Sequence[Node], now: Optional[datetime] = None) -> PortfolioHealth:
        now = now or self._clock()
        if not nodes:
            return PortfolioHealth(
                overall_score=0,
                recommendations=["No projects in portfolio"],
                computed_at=now,
            )

        scored: List[Tuple[Node, HealthRecord]] = []
        failures: Dict[str, str] = {}
        for node in nodes:
            try:
                scored.append((node, self.score(node, now)))
            except Exception as exc:
                logger.exception(f"Health scoring failed for node {node.node_id}")
                failures[node.node_id] = str(exc)
        records = [r for _, r in scored]
        overall = self.portfolio_score(scored)

        distribution = {"excellent": 0, "good": 0, "fair": 0, "poor": 0, "critical": 0}
        by_status: Dict[str, List[int]] = defaultdict(list)
        by_priority: Dict[str, List[int]] = defaultdict(list)
        trends = {"improving": 0, "stable": 0, "declining": 0}
        for node, record in scored:
            distribution[distribution_bucket(record.score)] += 1
            by_status[node.status.value].append(record.score)
            by_priority[node.priority.value].append(record.score)
            trends[record.trend.value.lower()] += 1

        critical = []
        for node, record in scored:
            if record.score < 50 or (record.score < 70 and record.trend == HealthTrend.DECLINING):
                critical.append(CriticalNode(
                    node_id=node.node_id,
                    name=node.name,
                    score=record.score,
                    trend=record.trend,
                    issues=self._issues(node, record.score, now),
                ))
        critical.sort(key=lambda c: c.score)
        critical = critical[:10]

        return PortfolioHealth(
            overall_score=overall,
            records=records,
            distribution=distribution,
            by_status={k: float(np.mean(v)) for k, v in by_status.items()},
            by_priority={k: float(np.mean(v)) for k, v in by_priority.items()},
            critical_nodes=critical,
            trends=trends,
            recommendations=self._recommendations(overall, distribution, critical),
            failures=failures,
            computed_at=now,
        )

    @staticmethod
    def _issues(node: Node, score: int, now: datetime) -> List[str]:
        issues = []
        if node.end_date and node.end_date < now and node.status != NodeStatus.COMPLETED:
            issues.append("Overdue")
        if node.budget and node.actual_cost and node.actual_cost > node.budget * 1.1:
            issues.append("Over budget by more than 10%")
        if (
            node.progress_percent is not None
            and node.progress_percent < 10
            and node.status == NodeStatus.ACTIVE
        ):
            issues.append("Minimal progress despite active status")
        if node.status in (NodeStatus.AT_RISK, NodeStatus.DELAYED):
            issues.append(f"Status: {node.status.value}")
        if score < 30:
            issues.append("Critical health score")
        elif score < 50:
            issues.append("Poor health score")
        return issues

    @staticmethod
    def _recommendations(
        overall: int,
        distribution: Dict[str, int],
        critical: List[CriticalNode],
    ) -> List[str]:
        recommendations = []
        if overall < 50:
            recommendations.append("Portfolio health is critical: immediate intervention required")
            recommendations.append("Consider pausing new initiatives to focus on recovery")
        elif overall < 70:
            recommendations.append("Portfolio health needs improvement: review resource allocation")
            recommendations.append("Add monitoring for at-risk projects")
        elif overall >= 85:
            recommendations.append("Portfolio health is excellent: maintain current practices")

        total = sum(distribution.values())
        if total:
            poor_share = (distribution["critical"] + distribution["poor"]) / total
            if poor_share > 0.3:
                recommendations.append(
                    f"{round_half_up(poor_share * 100)}% of projects have poor health: conduct root cause analysis"
                )

        if len(critical) > 5:
            recommendations.append(f"{len(critical)} projects in critical condition: prioritize recovery")
            recommendations.append("Consider establishing a project recovery team")
        elif critical:
            recommendations.append(f"Focus on improving {len(critical)} critical project(s)")

        if sum(1 for c in critical if c.trend == HealthTrend.DECLINING) > 3:
            recommendations.append("Several projects show declining health: investigate common causes")
        return recommendations
