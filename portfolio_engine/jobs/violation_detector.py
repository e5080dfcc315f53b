"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — DEPENDENCY VIOLATION DETECTOR
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Checks every active dependency against the current dates and statuses of
its endpoints.

RULES
═════

Let gap = start(succ) − end(pred)  (FS)   or   start(succ) − start(pred)  (SS)
and shortfall = ℓ − gap, a violation whenever shortfall > 0.

    FS   shortfall                  HIGH if succ active (CRITICAL past 14 days), else MEDIUM
    FS   pred DELAYED, succ active  HIGH
    SS   shortfall                  MEDIUM (HIGH past 14 days while succ active)
    FF   succ COMPLETED, pred not   LOW
    SF   succ COMPLETED, end(succ) < start(pred)   MEDIUM
    *    pred CANCELLED             HIGH
    *    pred ON_HOLD               MEDIUM

The worst violation per edge is written to edge.metadata["violation"] and
raises the edge impact (CRITICAL → CRITICAL, HIGH → at least HIGH).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..config import EngineSettings, Settings
from ..models import (
    RUNNING_STATUSES,
    DependencyEdge,
    DependencyImpact,
    DependencyType,
    GraphType,
    Node,
    NodeStatus,
    ViolationSeverity,
)
from ..graph.dependency_engine import DependencyGraphEngine
from ..graph.network_analyzer import NetworkAnalyzer
from ..store.base import GraphStore, NodeProvider
from .notifications import LoggingNotifier, Notifier, ViolationAlert

logger = logging.getLogger(__name__)

ESCALATION_DAYS = 14


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class DependencyViolation:
    edge_id: str
    predecessor_id: str
    successor_id: str
    violation_type: str
    severity: ViolationSeverity
    description: str
    shortfall_days: float = 0.0
    detected_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edge_id": self.edge_id,
            "predecessor_id": self.predecessor_id,
            "successor_id": self.successor_id,
            "violation_type": self.violation_type,
            "severity": self.severity.value,
            "description": self.description,
            "shortfall_days": round(self.shortfall_days, 2),
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
        }


@dataclass
class ViolationScanReport:
    checked: int = 0
    violations: List[DependencyViolation] = field(default_factory=list)
    alerts_sent: int = 0
    alerts_failed: int = 0
    cycles: List[List[str]] = field(default_factory=list)
    critical_flags_changed: int = 0
    failed: Dict[str, str] = field(default_factory=dict)  # edge_id -> error
    scanned_at: Optional[datetime] = None

    def by_severity(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in ViolationSeverity}
        for violation in self.violations:
            counts[violation.severity.value] += 1
        return counts


def _days(delta) -> float:
    return delta.total_seconds() / 86400.0


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DETECTOR
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class DependencyViolationDetector:

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        engine: Optional[DependencyGraphEngine] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()
        self._clock = clock or datetime.now
        self.engine = engine or DependencyGraphEngine(store, provider, self.settings, clock=self._clock)
        self.analyzer = NetworkAnalyzer(store, provider, self.settings)
        self.notifier = notifier or LoggingNotifier()

    # ── rules ──────────────────────────────────────────────────────────────

    def check(
        self,
        edge: DependencyEdge,
        predecessor: Node,
        successor: Node,
        now: Optional[datetime] = None,
    ) -> List[DependencyViolation]:
        """All violations of one edge, in rule order."""
        now = now or self._clock()
        found: List[DependencyViolation] = []

        def add(violation_type: str, severity: ViolationSeverity, description: str, shortfall: float = 0.0):
            found.append(DependencyViolation(
                edge_id=edge.edge_id,
                predecessor_id=edge.predecessor_id,
                successor_id=edge.successor_id,
                violation_type=violation_type,
                severity=severity,
                description=description,
                shortfall_days=shortfall,
                detected_at=now,
            ))

        successor_active = successor.status in RUNNING_STATUSES
        lag = float(edge.lag_days)

        if edge.dependency_type == DependencyType.FINISH_TO_START:
            if predecessor.end_date and successor.start_date:
                shortfall = lag - _days(successor.start_date - predecessor.end_date)
                if shortfall > 0:
                    if successor_active:
                        severity = (
                            ViolationSeverity.CRITICAL if shortfall > ESCALATION_DAYS
                            else ViolationSeverity.HIGH
                        )
                    else:
                        severity = ViolationSeverity.MEDIUM
                    add(
                        "FINISH_TO_START_VIOLATED", severity,
                        f"{successor.name or successor.node_id} starts {shortfall:.1f} days too early "
                        f"relative to the finish of {predecessor.name or predecessor.node_id}",
                        shortfall,
                    )
            if predecessor.status == NodeStatus.DELAYED and successor_active:
                add(
                    "PREDECESSOR_DELAYED", ViolationSeverity.HIGH,
                    f"Predecessor {predecessor.name or predecessor.node_id} is delayed while successor is active",
                )

        elif edge.dependency_type == DependencyType.START_TO_START:
            if predecessor.start_date and successor.start_date:
                shortfall = lag - _days(successor.start_date - predecessor.start_date)
                if shortfall > 0:
                    severity = (
                        ViolationSeverity.HIGH if shortfall > ESCALATION_DAYS and successor_active
                        else ViolationSeverity.MEDIUM
                    )
                    add(
                        "START_TO_START_VIOLATED", severity,
                        "Successor started too early relative to predecessor start",
                        shortfall,
                    )

        elif edge.dependency_type == DependencyType.FINISH_TO_FINISH:
            if successor.status == NodeStatus.COMPLETED and predecessor.status != NodeStatus.COMPLETED:
                add("FINISH_TO_FINISH_VIOLATED", ViolationSeverity.LOW, "Successor completed before predecessor")

        else:
            if (
                successor.status == NodeStatus.COMPLETED
                and successor.end_date and predecessor.start_date
                and successor.end_date < predecessor.start_date
            ):
                add(
                    "START_TO_FINISH_VIOLATED", ViolationSeverity.MEDIUM,
                    "Successor completed before predecessor started",
                )

        if predecessor.status == NodeStatus.CANCELLED:
            add(
                "PREDECESSOR_CANCELLED", ViolationSeverity.HIGH,
                f"Predecessor {predecessor.name or predecessor.node_id} has been cancelled",
            )
        elif predecessor.status == NodeStatus.ON_HOLD:
            add(
                "PREDECESSOR_ON_HOLD", ViolationSeverity.MEDIUM,
                f"Predecessor {predecessor.name or predecessor.node_id} is on hold",
            )
        return found

    # ── recording ──────────────────────────────────────────────────────────

    def _record(self, edge: DependencyEdge, violations: List[DependencyViolation], now: datetime) -> DependencyEdge:
        edge.metadata["last_violation_check"] = now.isoformat()
        if violations:
            worst = max(violations, key=lambda v: v.severity.rank)
            edge.metadata["violation"] = {
                "type": worst.violation_type,
                "severity": worst.severity.value,
                "description": worst.description,
                "detected_at": now.isoformat(),
            }
            if worst.severity == ViolationSeverity.CRITICAL:
                edge.impact = DependencyImpact.CRITICAL
            elif worst.severity == ViolationSeverity.HIGH and edge.impact.rank < DependencyImpact.HIGH.rank:
                edge.impact = DependencyImpact.HIGH
        else:
            edge.metadata.pop("violation", None)
        edge.updated_at = now
        return self.store.save_dependency(edge)

    def _send_alerts(self, violations: List[DependencyViolation], report: ViolationScanReport, now: datetime) -> None:
        grouped: Dict[str, List[DependencyViolation]] = defaultdict(list)
        for violation in violations:
            if violation.severity.rank >= ViolationSeverity.HIGH.rank:
                grouped[violation.successor_id].append(violation)

        for node_id, node_violations in grouped.items():
            alert = ViolationAlert(node_id=node_id, violations=node_violations, created_at=now)
            try:
                self.notifier.notify(alert)
                report.alerts_sent += 1
            except Exception:
                report.alerts_failed += 1
                logger.exception(f"Failed to deliver violation alert for {node_id}")

    # ── scan ───────────────────────────────────────────────────────────────

    def scan(self, now: Optional[datetime] = None) -> ViolationScanReport:
        """Check all active dependencies, record results and alert."""
        now = now or self._clock()
        report = ViolationScanReport(scanned_at=now)

        edges = self.store.list_dependencies()
        ids = {e.predecessor_id for e in edges} | {e.successor_id for e in edges}
        nodes = self.provider.get_nodes(ids)

        for edge in edges:
            predecessor = nodes.get(edge.predecessor_id)
            successor = nodes.get(edge.successor_id)
            if predecessor is None or successor is None:
                logger.debug(f"Skipping dependency {edge.edge_id}: endpoint missing from provider")
                continue
            try:
                violations = self.check(edge, predecessor, successor, now)
                self._record(edge, violations, now)
            except Exception as exc:
                logger.exception(f"Violation check failed for dependency {edge.edge_id}")
                report.failed[edge.edge_id] = str(exc)
                continue
            report.checked += 1
            report.violations.extend(violations)

        counts = report.by_severity()
        if report.violations:
            logger.warning(
                f"Found {len(report.violations)} dependency violations "
                f"(critical={counts['CRITICAL']}, high={counts['HIGH']}, "
                f"medium={counts['MEDIUM']}, low={counts['LOW']})"
            )
            self._send_alerts(report.violations, report, now)
        else:
            logger.info(f"No dependency violations across {report.checked} dependencies")

        report.cycles = self.analyzer.build(sorted(ids)).strongly_connected_components()
        for cycle in report.cycles:
            logger.error(f"Dependency cycle detected: {' -> '.join(cycle)}")

        if self.settings.refresh_critical_flags and not report.cycles:
            report.critical_flags_changed = self._refresh_critical_flags(sorted(ids))
        return report

    def _refresh_critical_flags(self, node_ids: List[str]) -> int:
        changed = 0
        done = set()
        for node_id in node_ids:
            if node_id in done:
                continue
            try:
                component = self.store.component(
                    GraphType.DEPENDENCY, node_id, self.settings.max_traversal_depth
                )
                done.update(component)
                changed += self.engine.refresh_critical_flags(node_id)
            except Exception:
                logger.exception(f"Failed to refresh critical flags around {node_id}")
        return changed
