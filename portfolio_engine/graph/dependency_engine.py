"""
═══════════════════════════════════════════════════════════════════════════════════════════════════════
                    PORTFOLIO ENGINE — DEPENDENCY GRAPH ENGINE
═══════════════════════════════════════════════════════════════════════════════════════════════════════

Cycle-safe mutation of predecessor/successor edges, CPM scheduling and
delay propagation.

CRITICAL PATH METHOD
════════════════════

For node j with duration dⱼ and incoming edge (i → j, type, ℓ):

    FS:  ESⱼ ≥ EFᵢ + ℓ
    SS:  ESⱼ ≥ ESᵢ + ℓ
    FF:  EFⱼ ≥ EFᵢ + ℓ      ⇒  ESⱼ ≥ EFᵢ + ℓ − dⱼ
    SF:  EFⱼ ≥ ESᵢ + ℓ      ⇒  ESⱼ ≥ ESᵢ + ℓ − dⱼ

Forward pass (topological order):
    ESⱼ = max(0, constraints),  EFⱼ = ESⱼ + dⱼ

Backward pass (reverse order), seeded with T = max EF:
    LFᵢ = min(T, mirrored constraints),  LSᵢ = LFᵢ − dᵢ

Slack:
    sⱼ = LSⱼ − ESⱼ,   critical ⟺ |sⱼ| < ε   (ε = 0.01 day)

DELAY PROPAGATION
─────────────────

    FS:  d + ℓ        SS:  max(0, d − ℓ)
    FF:  d            SF:  max(0, d + ℓ)

Breadth first from the seed; a node keeps the largest delay seen and only
positive delays propagate further.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from ..config import EngineSettings, Settings
from ..errors import (
    CircularDependencyError,
    CrossScopeError,
    DuplicateEdgeError,
    ErrorCode,
    GraphEngineError,
    GraphValidationError,
    NotFoundError,
    SelfDependencyError,
)
from ..models import (
    DependencyEdge,
    DependencyStatus,
    DependencyType,
    GraphType,
    Node,
)
from ..schemas import DependencyCreate, DependencyPatch, parse_payload
from ..store.base import GraphStore, NodeProvider
from .cycle_validator import CycleValidator

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# DATA STRUCTURES
# ════════════════════════════════════════════════════════════════════════════════════════════════════

@dataclass
class ScheduleEntry:
    """CPM times for one node, in days from the network start."""
    node_id: str
    duration: float
    early_start: float = 0.0
    early_finish: float = 0.0
    late_start: float = 0.0
    late_finish: float = 0.0
    slack: float = 0.0
    is_critical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "duration": round(self.duration, 2),
            "early_start": round(self.early_start, 2),
            "early_finish": round(self.early_finish, 2),
            "late_start": round(self.late_start, 2),
            "late_finish": round(self.late_finish, 2),
            "slack": round(self.slack, 2),
            "is_critical": self.is_critical,
        }


@dataclass
class CriticalPathResult:
    seed_id: str
    order: List[str] = field(default_factory=list)
    entries: Dict[str, ScheduleEntry] = field(default_factory=dict)
    critical_path: List[str] = field(default_factory=list)
    project_duration: float = 0.0

    def is_critical(self, node_id: str) -> bool:
        entry = self.entries.get(node_id)
        return bool(entry and entry.is_critical)

    def to_frame(self) -> pd.DataFrame:
        """Schedule table in topological order."""
        return pd.DataFrame([self.entries[n].to_dict() for n in self.order])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seed_id": self.seed_id,
            "critical_path": list(self.critical_path),
            "project_duration": round(self.project_duration, 2),
            "schedule": [self.entries[n].to_dict() for n in self.order],
        }


@dataclass
class DependencyValidation:
    valid: bool
    reason: Optional[str] = None
    code: Optional[ErrorCode] = None


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# PURE FUNCTIONS
# ════════════════════════════════════════════════════════════════════════════════════════════════════

def propagate_delay(dependency_type: DependencyType, delay: float, lag_days: float) -> float:
    """Offset induced on the successor by a predecessor delay."""
    if dependency_type == DependencyType.FINISH_TO_START:
        return delay + lag_days
    if dependency_type == DependencyType.START_TO_START:
        return max(0.0, delay - lag_days)
    if dependency_type == DependencyType.FINISH_TO_FINISH:
        return delay
    return max(0.0, delay + lag_days)


def topological_order(node_ids: Iterable[str], edges: Iterable[DependencyEdge]) -> Tuple[List[str], List[str]]:
    """
    Kahn ordering. Returns (ordered, leftover); leftover is non-empty only
    when the edges contain a cycle.
    """
    nodes = list(dict.fromkeys(node_ids))
    in_degree = {n: 0 for n in nodes}
    outgoing: Dict[str, List[str]] = defaultdict(list)
    for edge in edges:
        if edge.predecessor_id in in_degree and edge.successor_id in in_degree:
            outgoing[edge.predecessor_id].append(edge.successor_id)
            in_degree[edge.successor_id] += 1

    queue = deque(n for n in nodes if in_degree[n] == 0)
    ordered = []
    while queue:
        current = queue.popleft()
        ordered.append(current)
        for nxt in outgoing[current]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    placed = set(ordered)
    return ordered, [n for n in nodes if n not in placed]


def compute_schedule(
    node_ids: List[str],
    durations: Dict[str, float],
    edges: List[DependencyEdge],
    tolerance: float = 0.01,
    seed_id: Optional[str] = None,
) -> CriticalPathResult:
    """Forward and backward CPM passes over an acyclic edge set."""
    order, leftover = topological_order(node_ids, edges)
    if leftover:
        raise CircularDependencyError(
            f"Dependency network contains a cycle through {sorted(leftover)}",
            details={"nodes": sorted(leftover)},
        )

    incoming: Dict[str, List[DependencyEdge]] = defaultdict(list)
    outgoing: Dict[str, List[DependencyEdge]] = defaultdict(list)
    members = set(order)
    for edge in edges:
        if edge.predecessor_id in members and edge.successor_id in members:
            incoming[edge.successor_id].append(edge)
            outgoing[edge.predecessor_id].append(edge)

    entries = {n: ScheduleEntry(node_id=n, duration=float(durations.get(n, 0.0))) for n in order}

    # Forward pass
    for node_id in order:
        entry = entries[node_id]
        start = 0.0
        for edge in incoming[node_id]:
            pred = entries[edge.predecessor_id]
            lag = float(edge.lag_days)
            if edge.dependency_type == DependencyType.FINISH_TO_START:
                bound = pred.early_finish + lag
            elif edge.dependency_type == DependencyType.START_TO_START:
                bound = pred.early_start + lag
            elif edge.dependency_type == DependencyType.FINISH_TO_FINISH:
                bound = pred.early_finish + lag - entry.duration
            else:
                bound = pred.early_start + lag - entry.duration
            start = max(start, bound)
        entry.early_start = start
        entry.early_finish = start + entry.duration

    project_finish = max((e.early_finish for e in entries.values()), default=0.0)

    # Backward pass
    for node_id in reversed(order):
        entry = entries[node_id]
        finish = project_finish
        for edge in outgoing[node_id]:
            succ = entries[edge.successor_id]
            lag = float(edge.lag_days)
            if edge.dependency_type == DependencyType.FINISH_TO_START:
                bound = succ.late_start - lag
            elif edge.dependency_type == DependencyType.START_TO_START:
                bound = succ.late_start - lag + entry.duration
            elif edge.dependency_type == DependencyType.FINISH_TO_FINISH:
                bound = succ.late_finish - lag
            else:
                bound = succ.late_finish - lag + entry.duration
            finish = min(finish, bound)
        entry.late_finish = finish
        entry.late_start = finish - entry.duration
        entry.slack = entry.late_start - entry.early_start
        entry.is_critical = abs(entry.slack) < tolerance

    return CriticalPathResult(
        seed_id=seed_id or (order[0] if order else ""),
        order=order,
        entries=entries,
        critical_path=[n for n in order if entries[n].is_critical],
        project_duration=project_finish,
    )


# ════════════════════════════════════════════════════════════════════════════════════════════════════
# ENGINE
# ════════════════════════════════════════════════════════════════════════════════════════════════════

class DependencyGraphEngine:
    """
    Predecessor/successor graph for one tenant.

    Mutations run read-validate-write under an instance lock, so concurrent
    creates on the same engine cannot interleave their cycle checks.
    """

    def __init__(
        self,
        store: GraphStore,
        provider: NodeProvider,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or Settings.get()
        self.validator = CycleValidator(store, self.settings)
        self._clock = clock or datetime.now
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._mutation_lock = threading.RLock()

    # ── validation helpers ─────────────────────────────────────────────────

    def _check_lag(self, lag_days: int) -> None:
        limit = self.settings.max_lag_days
        if abs(lag_days) > limit:
            raise GraphValidationError(
                f"lag_days must be within [-{limit}, {limit}], got {lag_days}",
                details={"lag_days": lag_days},
            )

    def _require_node(self, node_id: str) -> Node:
        node = self.provider.get_node(node_id)
        if node is None:
            raise NotFoundError(f"Node {node_id} not found", details={"node_id": node_id})
        return node

    def _require_edge(self, edge_id: str) -> DependencyEdge:
        edge = self.store.get_dependency(edge_id)
        if edge is None:
            raise NotFoundError(f"Dependency {edge_id} not found", details={"edge_id": edge_id})
        return edge

    def _validate_new_edge(self, predecessor_id: str, successor_id: str, exclude_edge_id: Optional[str] = None) -> None:
        predecessor = self._require_node(predecessor_id)
        successor = self._require_node(successor_id)

        if predecessor.tenant_id and successor.tenant_id and predecessor.tenant_id != successor.tenant_id:
            raise CrossScopeError(
                f"Cannot link {predecessor_id} ({predecessor.tenant_id}) to "
                f"{successor_id} ({successor.tenant_id})",
            )

        if predecessor_id == successor_id:
            raise SelfDependencyError(f"Node {predecessor_id} cannot depend on itself")

        existing = self.store.find_dependency(predecessor_id, successor_id)
        if existing is not None and existing.edge_id != exclude_edge_id:
            raise DuplicateEdgeError(
                f"Dependency {predecessor_id} -> {successor_id} already exists",
                details={"existing_edge_id": existing.edge_id},
            )

        if self.validator.would_create_cycle(GraphType.DEPENDENCY, predecessor_id, successor_id):
            raise CircularDependencyError(
                f"Dependency {predecessor_id} -> {successor_id} would create a cycle",
                details={"predecessor_id": predecessor_id, "successor_id": successor_id},
            )

    # ── CRUD ───────────────────────────────────────────────────────────────

    def create_dependency(
        self,
        predecessor_id: str,
        successor_id: str,
        dependency_type: DependencyType = DependencyType.FINISH_TO_START,
        lag_days: int = 0,
        actor: Optional[str] = None,
        **extra: Any,
    ) -> DependencyEdge:
        """
        Create an active edge predecessor → successor.

        Raises:
            GraphValidationError: lag out of range or malformed payload
            NotFoundError: either endpoint missing
            CrossScopeError: endpoints owned by different tenants
            SelfDependencyError, DuplicateEdgeError, CircularDependencyError
        """
        payload = parse_payload(
            DependencyCreate,
            {
                "predecessor_id": predecessor_id,
                "successor_id": successor_id,
                "dependency_type": dependency_type,
                "lag_days": lag_days,
                **extra,
            },
        )
        self._check_lag(payload.lag_days)

        with self._mutation_lock:
            self._validate_new_edge(payload.predecessor_id, payload.successor_id)
            now = self._clock()
            edge = DependencyEdge(
                edge_id=self._id_factory(),
                predecessor_id=payload.predecessor_id,
                successor_id=payload.successor_id,
                dependency_type=payload.dependency_type,
                lag_days=payload.lag_days,
                is_critical=payload.is_critical,
                impact=payload.impact,
                description=payload.description,
                metadata=dict(payload.metadata),
                created_by=actor,
                updated_by=actor,
                created_at=now,
                updated_at=now,
            )
            saved = self.store.add_dependency(edge)

        logger.info(
            f"Dependency created: {saved.predecessor_id} -> {saved.successor_id} "
            f"({saved.dependency_type.value}, lag={saved.lag_days}) by {actor}"
        )
        return saved

    def update_dependency(self, edge_id: str, patch: Any, actor: Optional[str] = None) -> DependencyEdge:
        """Apply a partial update. Type changes and reactivation re-run the cycle gate."""
        patch = parse_payload(DependencyPatch, patch)
        changes = {k: v for k, v in patch.model_dump(exclude_unset=True).items() if v is not None}

        if "lag_days" in changes:
            self._check_lag(changes["lag_days"])

        with self._mutation_lock:
            edge = self._require_edge(edge_id)

            type_changed = (
                "dependency_type" in changes and changes["dependency_type"] != edge.dependency_type
            )
            reactivated = (
                changes.get("status") == DependencyStatus.ACTIVE and not edge.is_active
            )
            if reactivated:
                self._validate_new_edge(edge.predecessor_id, edge.successor_id, exclude_edge_id=edge.edge_id)
            elif type_changed and edge.is_active:
                if self.validator.would_create_cycle(
                    GraphType.DEPENDENCY, edge.predecessor_id, edge.successor_id
                ):
                    raise CircularDependencyError(
                        f"Dependency {edge.predecessor_id} -> {edge.successor_id} is part of a cycle",
                    )

            metadata = changes.pop("metadata", None)
            for key, value in changes.items():
                setattr(edge, key, value)
            if metadata:
                edge.metadata.update(metadata)
            edge.updated_by = actor
            edge.updated_at = self._clock()
            saved = self.store.save_dependency(edge)

        logger.info(f"Dependency {edge_id} updated by {actor}: {sorted(changes)}")
        return saved

    def remove_dependency(self, edge_id: str) -> DependencyEdge:
        with self._mutation_lock:
            edge = self._require_edge(edge_id)
            self.store.delete_dependency(edge_id)
        logger.info(f"Dependency removed: {edge.predecessor_id} -> {edge.successor_id}")
        return edge

    def get_dependency(self, edge_id: str) -> DependencyEdge:
        return self._require_edge(edge_id)

    def predecessors_of(self, node_id: str) -> List[DependencyEdge]:
        return self.store.list_dependencies(successor_id=node_id)

    def successors_of(self, node_id: str) -> List[DependencyEdge]:
        return self.store.list_dependencies(predecessor_id=node_id)

    def dependencies_of(self, node_id: str) -> List[DependencyEdge]:
        """Active edges touching node_id, incoming first."""
        return self.predecessors_of(node_id) + self.successors_of(node_id)

    def validate_dependency(self, predecessor_id: str, successor_id: str) -> DependencyValidation:
        """Dry-run of create_dependency's checks."""
        try:
            self._validate_new_edge(predecessor_id, successor_id)
        except GraphEngineError as exc:
            return DependencyValidation(valid=False, reason=exc.message, code=exc.code)
        return DependencyValidation(valid=True)

    def dependency_path(self, from_id: str, to_id: str) -> List[str]:
        return self.validator.dependency_path(from_id, to_id)

    def related_nodes(self, node_id: str) -> List[str]:
        return self.validator.related_nodes(node_id)

    # ── scheduling ─────────────────────────────────────────────────────────

    def _component_edges(self, node_ids: List[str]) -> List[DependencyEdge]:
        members = set(node_ids)
        edges = []
        for node_id in node_ids:
            for edge in self.store.list_dependencies(predecessor_id=node_id):
                if edge.successor_id in members:
                    edges.append(edge)
        return edges

    def critical_path(self, node_id: str) -> CriticalPathResult:
        """CPM over the dependency network containing node_id."""
        self._require_node(node_id)
        node_ids = list(self.store.component(GraphType.DEPENDENCY, node_id, self.settings.max_traversal_depth))
        nodes = self.provider.get_nodes(node_ids)
        missing = [n for n in node_ids if n not in nodes]
        if missing:
            logger.warning(f"Nodes {missing} missing from provider; scheduling them with zero duration")

        durations = {n: nodes[n].duration if n in nodes else 0.0 for n in node_ids}
        result = compute_schedule(
            node_ids,
            durations,
            self._component_edges(node_ids),
            tolerance=self.settings.critical_slack_tolerance,
            seed_id=node_id,
        )
        logger.debug(
            f"Critical path for {node_id}: {result.critical_path} "
            f"({result.project_duration:.1f} days over {len(node_ids)} nodes)"
        )
        return result

    def refresh_critical_flags(self, node_id: str) -> int:
        """Mark edges between critical nodes as critical; returns edges changed."""
        changed = 0
        with self._mutation_lock:
            result = self.critical_path(node_id)
            for edge in self._component_edges(result.order):
                flag = result.is_critical(edge.predecessor_id) and result.is_critical(edge.successor_id)
                if edge.is_critical != flag:
                    edge.is_critical = flag
                    edge.updated_at = self._clock()
                    self.store.save_dependency(edge)
                    changed += 1
        if changed:
            logger.info(f"Updated critical flag on {changed} dependencies around {node_id}")
        return changed

    def cascading_delay(self, node_id: str, delay_days: float) -> Dict[str, float]:
        """Delay per node reached from node_id (seed included)."""
        self._require_node(node_id)
        max_depth = self.settings.max_traversal_depth
        delays: Dict[str, float] = {node_id: float(delay_days)}
        queue = deque([(node_id, float(delay_days), 0)])
        truncated = False

        while queue:
            current, delay, depth = queue.popleft()
            if delay < delays.get(current, 0.0):
                continue  # superseded by a larger delay
            edges = self.store.list_dependencies(predecessor_id=current)
            if depth >= max_depth:
                truncated = truncated or bool(edges)
                continue
            for edge in edges:
                offset = propagate_delay(edge.dependency_type, delay, edge.lag_days)
                if offset <= 0:
                    continue
                if offset > delays.get(edge.successor_id, 0.0):
                    delays[edge.successor_id] = offset
                    queue.append((edge.successor_id, offset, depth + 1))

        if truncated:
            logger.warning(f"Traversal bound of {max_depth} hops hit propagating delay from {node_id}")
        return delays

    def impacted_nodes(self, node_id: str, delay_days: float) -> List[Tuple[str, float]]:
        """Nodes delayed by a slip of node_id, largest delay first."""
        delays = self.cascading_delay(node_id, delay_days)
        impacted = [(n, d) for n, d in delays.items() if n != node_id and d > 0]
        return sorted(impacted, key=lambda item: (-item[1], item[0]))
