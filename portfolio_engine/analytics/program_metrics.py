"""
Program-level metrics over PROGRAM members.

    on_time  : end ≥ today and status ∉ {DELAYED, AT_RISK}
    at_risk  : status = AT_RISK, or end < today and not COMPLETED

Timeline phases group members whose [start, end] windows overlap, in
start order.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from ..errors import NotFoundError
from ..models import GraphType, Node, NodeStatus, Program
from ..store.base import GraphStore, NodeProvider

logger = logging.getLogger(__name__)

AT_RISK_SHARE = 0.3
OVER_BUDGET_FACTOR = 1.1
LOW_PROGRESS = 25.0
LOW_PROGRESS_MONTHS = 3.0


@dataclass
class ProgramMetrics:
    program_id: str
    total_nodes: int = 0
    total_budget: float = 0.0
    total_cost: float = 0.0
    average_progress: float = 0.0
    status_distribution: Dict[str, int] = field(default_factory=dict)
    earliest_start: Optional[datetime] = None
    latest_end: Optional[datetime] = None
    on_time: int = 0
    at_risk: int = 0
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "program_id": self.program_id,
            "total_nodes": self.total_nodes,
            "total_budget": round(self.total_budget, 2),
            "total_cost": round(self.total_cost, 2),
            "average_progress": round(self.average_progress, 2),
            "status_distribution": dict(self.status_distribution),
            "earliest_start": self.earliest_start.isoformat() if self.earliest_start else None,
            "latest_end": self.latest_end.isoformat() if self.latest_end else None,
            "on_time": self.on_time,
            "at_risk": self.at_risk,
        }


@dataclass
class TimelinePhase:
    start: datetime
    end: datetime
    node_ids: List[str] = field(default_factory=list)


@dataclass
class ProgramTimeline:
    program_id: str
    earliest_start: Optional[datetime] = None
    latest_end: Optional[datetime] = None
    phases: List[TimelinePhase] = field(default_factory=list)
    unscheduled: List[str] = field(default_factory=list)


class ProgramMetricsCalculator:

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self._clock = clock or datetime.now

    def _program(self, program_id: str) -> Program:
        program = self.store.get_program(program_id)
        if program is None:
            raise NotFoundError(f"Program {program_id} not found", details={"program_id": program_id})
        return program

    def members(self, program_id: str) -> List[Node]:
        self._program(program_id)
        ids = self.store.successors(GraphType.PROGRAM, program_id)
        found = self.provider.get_nodes(ids)
        return [found[i] for i in ids if i in found]

    def metrics(self, program_id: str, now: Optional[datetime] = None) -> ProgramMetrics:
        now = now or self._clock()
        nodes = self.members(program_id)
        result = ProgramMetrics(program_id=program_id, total_nodes=len(nodes), computed_at=now)
        if not nodes:
            return result

        result.total_budget = float(sum(n.budget or 0.0 for n in nodes))
        result.total_cost = float(sum(n.actual_cost or 0.0 for n in nodes))
        result.average_progress = float(np.mean([n.progress_percent or 0.0 for n in nodes]))
        result.status_distribution = dict(Counter(n.status.value for n in nodes))

        starts = [n.start_date for n in nodes if n.start_date]
        ends = [n.end_date for n in nodes if n.end_date]
        result.earliest_start = min(starts) if starts else None
        result.latest_end = max(ends) if ends else None

        result.on_time = sum(
            1 for n in nodes
            if n.end_date and n.end_date >= now
            and n.status not in (NodeStatus.DELAYED, NodeStatus.AT_RISK)
        )
        result.at_risk = sum(
            1 for n in nodes
            if n.status == NodeStatus.AT_RISK
            or (n.end_date and n.end_date < now and n.status != NodeStatus.COMPLETED)
        )
        return result

    def timeline(self, program_id: str) -> ProgramTimeline:
        nodes = self.members(program_id)
        timeline = ProgramTimeline(program_id=program_id)

        scheduled = sorted(
            (n for n in nodes if n.start_date and n.end_date),
            key=lambda n: (n.start_date, n.node_id),
        )
        timeline.unscheduled = [n.node_id for n in nodes if not (n.start_date and n.end_date)]

        for node in scheduled:
            current = timeline.phases[-1] if timeline.phases else None
            if current is not None and node.start_date <= current.end:
                current.node_ids.append(node.node_id)
                current.end = max(current.end, node.end_date)
            else:
                timeline.phases.append(TimelinePhase(
                    start=node.start_date, end=node.end_date, node_ids=[node.node_id]
                ))

        if scheduled:
            timeline.earliest_start = scheduled[0].start_date
            timeline.latest_end = max(n.end_date for n in scheduled)
        return timeline

    def widen_program_window(self, program_id: str) -> bool:
        """Stretch the program dates to cover its members; True if changed."""
        program = self._program(program_id)
        timeline = self.timeline(program_id)
        updated = False
        if timeline.earliest_start and (
            program.start_date is None or timeline.earliest_start < program.start_date
        ):
            program.start_date = timeline.earliest_start
            updated = True
        if timeline.latest_end and (program.end_date is None or timeline.latest_end > program.end_date):
            program.end_date = timeline.latest_end
            updated = True
        if updated:
            self.store.save_program(program)
            logger.debug(f"Updated timeline for program {program_id}")
        return updated

    def health_warnings(self, program_id: str, metrics: ProgramMetrics, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        program = self._program(program_id)
        warnings = []

        if metrics.total_nodes and metrics.at_risk > metrics.total_nodes * AT_RISK_SHARE:
            warnings.append(
                f"Program {program_id} has {metrics.at_risk} at-risk nodes "
                f"({round(metrics.at_risk / metrics.total_nodes * 100)}%)"
            )

        if program.target_budget and metrics.total_cost > program.target_budget * OVER_BUDGET_FACTOR:
            overrun = (metrics.total_cost - program.target_budget) / program.target_budget * 100
            warnings.append(f"Program {program_id} is over budget by {round(overrun)}%")

        if metrics.average_progress < LOW_PROGRESS and program.start_date:
            months = (now - program.start_date).total_seconds() / (86400.0 * 30)
            if months > LOW_PROGRESS_MONTHS:
                warnings.append(
                    f"Program {program_id} has low progress ({round(metrics.average_progress)}%) "
                    f"after {round(months)} months"
                )

        for warning in warnings:
            logger.warning(warning)
        return warnings

    def to_frame(self, program_id: str) -> pd.DataFrame:
        rows = [n.to_dict() for n in self.members(program_id)]
        return pd.DataFrame(rows)
