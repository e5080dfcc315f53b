"""
════════════════════════════════════════════════════════════════════════════════════════════════════
SQL STORE - SQLAlchemy persistence for nodes, edges and derived records
════════════════════════════════════════════════════════════════════════════════════════════════════

Tables:
- portfolio_nodes: work-item snapshots (read by the engine)
- relationship_edges: PARENT_CHILD / PROGRAM / MASTER edges (soft delete)
- dependency_edges: predecessor/successor edges, unique active pair
- master_aggregates: cached rollups per master node
- programs: program headers

Any SQLAlchemy engine works (SQLite for tests, Postgres in production); the
active-pair rule is a partial unique index on both dialects.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import DuplicateEdgeError
from ..models import (
    DependencyEdge,
    DependencyImpact,
    DependencyStatus,
    DependencyType,
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
from .base import GraphStore, NodeProvider

logger = logging.getLogger(__name__)

Base = declarative_base()


# ═══════════════════════════════════════════════════════════════════════════════
# TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class NodeRow(Base):
    __tablename__ = "portfolio_nodes"

    node_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, default="")
    tenant_id = Column(String(64), nullable=True, index=True)
    budget = Column(Float, nullable=True)
    actual_cost = Column(Float, nullable=True)
    progress_percent = Column(Float, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    status = Column(String(32), nullable=False, default=NodeStatus.ACTIVE.value, index=True)
    priority = Column(String(16), nullable=False, default=Priority.MEDIUM.value)
    duration_days = Column(Float, nullable=True)
    buffer_days = Column(Float, nullable=False, default=0.0)

    # Quality / team indicators
    defect_rate = Column(Float, nullable=True)
    test_coverage = Column(Float, nullable=True)
    customer_satisfaction = Column(Float, nullable=True)
    team_size = Column(Integer, nullable=True)
    turnover_rate = Column(Float, nullable=True)
    velocity_trend = Column(String(16), nullable=True)

    health_history = Column(JSON, nullable=True)  # [score, ...] oldest first


class RelationshipRow(Base):
    __tablename__ = "relationship_edges"

    edge_id = Column(String(64), primary_key=True)
    source_id = Column(String(64), nullable=False, index=True)
    target_id = Column(String(64), nullable=False, index=True)
    relationship_type = Column(String(16), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=True)


class DependencyRow(Base):
    __tablename__ = "dependency_edges"

    edge_id = Column(String(64), primary_key=True)
    predecessor_id = Column(String(64), nullable=False, index=True)
    successor_id = Column(String(64), nullable=False, index=True)
    dependency_type = Column(String(24), nullable=False)
    lag_days = Column(Integer, nullable=False, default=0)
    is_critical = Column(Boolean, nullable=False, default=False)
    impact = Column(String(16), nullable=False, default=DependencyImpact.NONE.value)
    status = Column(String(16), nullable=False, default=DependencyStatus.ACTIVE.value)
    description = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_active_dependency_pair",
            "predecessor_id",
            "successor_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )


class MasterAggregateRow(Base):
    __tablename__ = "master_aggregates"

    master_id = Column(String(64), primary_key=True)
    aggregated_budget = Column(Float, nullable=False, default=0.0)
    aggregated_cost = Column(Float, nullable=False, default=0.0)
    aggregated_progress = Column(Float, nullable=False, default=0.0)
    total_sub_nodes = Column(Integer, nullable=False, default=0)
    active_sub_nodes = Column(Integer, nullable=False, default=0)
    earliest_start = Column(DateTime, nullable=True)
    latest_end = Column(DateTime, nullable=True)
    metrics = Column(JSON, nullable=True)
    last_aggregated_at = Column(DateTime, nullable=True)


class ProgramRow(Base):
    __tablename__ = "programs"

    program_id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False, default="")
    tenant_id = Column(String(64), nullable=True, index=True)
    target_budget = Column(Float, nullable=True)
    start_date = Column(DateTime, nullable=True)
    end_date = Column(DateTime, nullable=True)
    status = Column(String(32), nullable=False, default=NodeStatus.ACTIVE.value)


# ═══════════════════════════════════════════════════════════════════════════════
# ROW <-> DATACLASS
# ═══════════════════════════════════════════════════════════════════════════════

def _node_from_row(row: NodeRow) -> Node:
    return Node(
        node_id=row.node_id,
        name=row.name or "",
        tenant_id=row.tenant_id,
        budget=row.budget,
        actual_cost=row.actual_cost,
        progress_percent=row.progress_percent,
        start_date=row.start_date,
        end_date=row.end_date,
        status=NodeStatus(row.status),
        priority=Priority(row.priority),
        duration_days=row.duration_days,
        buffer_days=row.buffer_days or 0.0,
        quality=QualityIndicators(
            defect_rate=row.defect_rate,
            test_coverage=row.test_coverage,
            customer_satisfaction=row.customer_satisfaction,
        ),
        team=TeamIndicators(
            size=row.team_size,
            turnover_rate=row.turnover_rate,
            velocity_trend=VelocityTrend(row.velocity_trend) if row.velocity_trend else None,
        ),
        health_history=list(row.health_history or []),
    )


def _relationship_from_row(row: RelationshipRow) -> RelationshipEdge:
    return RelationshipEdge(
        edge_id=row.edge_id,
        source_id=row.source_id,
        target_id=row.target_id,
        relationship_type=RelationshipType(row.relationship_type),
        is_active=bool(row.is_active),
        metadata=dict(row.metadata_json or {}),
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _dependency_from_row(row: DependencyRow) -> DependencyEdge:
    return DependencyEdge(
        edge_id=row.edge_id,
        predecessor_id=row.predecessor_id,
        successor_id=row.successor_id,
        dependency_type=DependencyType(row.dependency_type),
        lag_days=row.lag_days or 0,
        is_critical=bool(row.is_critical),
        impact=DependencyImpact(row.impact),
        status=DependencyStatus(row.status),
        description=row.description,
        metadata=dict(row.metadata_json or {}),
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply_dependency(row: DependencyRow, edge: DependencyEdge) -> None:
    row.predecessor_id = edge.predecessor_id
    row.successor_id = edge.successor_id
    row.dependency_type = edge.dependency_type.value
    row.lag_days = edge.lag_days
    row.is_critical = edge.is_critical
    row.impact = edge.impact.value
    row.status = edge.status.value
    row.description = edge.description
    row.metadata_json = dict(edge.metadata)
    row.created_by = edge.created_by
    row.updated_by = edge.updated_by
    row.created_at = edge.created_at
    row.updated_at = edge.updated_at


def create_session_factory(url: str = "sqlite:///:memory:", echo: bool = False) -> sessionmaker:
    """Create an engine, ensure tables exist and return a session factory."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    if url == "sqlite:///:memory:":
        engine = create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    else:
        engine = create_engine(url, echo=echo, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


# ═══════════════════════════════════════════════════════════════════════════════
# ADAPTERS
# ═══════════════════════════════════════════════════════════════════════════════

class SqlNodeProvider(NodeProvider):
    """Node provider over the portfolio_nodes table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def upsert(self, node: Node) -> Node:
        with self._session_factory() as db:
            row = db.get(NodeRow, node.node_id) or NodeRow(node_id=node.node_id)
            row.name = node.name
            row.tenant_id = node.tenant_id
            row.budget = node.budget
            row.actual_cost = node.actual_cost
            row.progress_percent = node.progress_percent
            row.start_date = node.start_date
            row.end_date = node.end_date
            row.status = node.status.value
            row.priority = node.priority.value
            row.duration_days = node.duration_days
            row.buffer_days = node.buffer_days
            row.defect_rate = node.quality.defect_rate
            row.test_coverage = node.quality.test_coverage
            row.customer_satisfaction = node.quality.customer_satisfaction
            row.team_size = node.team.size
            row.turnover_rate = node.team.turnover_rate
            row.velocity_trend = node.team.velocity_trend.value if node.team.velocity_trend else None
            row.health_history = list(node.health_history)
            db.merge(row)
            db.commit()
        return node

    def get_node(self, node_id: str) -> Optional[Node]:
        with self._session_factory() as db:
            row = db.get(NodeRow, node_id)
            return _node_from_row(row) if row else None

    def get_nodes(self, node_ids: Iterable[str]) -> Dict[str, Node]:
        ids = list(node_ids)
        if not ids:
            return {}
        with self._session_factory() as db:
            rows = db.query(NodeRow).filter(NodeRow.node_id.in_(ids)).all()
            return {row.node_id: _node_from_row(row) for row in rows}

    def list_nodes(self, statuses=None, tenant_id=None) -> List[Node]:
        with self._session_factory() as db:
            query = db.query(NodeRow)
            if statuses is not None:
                query = query.filter(NodeRow.status.in_([s.value for s in statuses]))
            if tenant_id is not None:
                query = query.filter(NodeRow.tenant_id == tenant_id)
            return [_node_from_row(row) for row in query.order_by(NodeRow.node_id).all()]


class SqlGraphStore(GraphStore):
    """Graph store over SQLAlchemy sessions."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # relationships

    def add_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        return self.save_relationship(edge)

    def save_relationship(self, edge: RelationshipEdge) -> RelationshipEdge:
        with self._session_factory() as db:
            row = db.get(RelationshipRow, edge.edge_id) or RelationshipRow(edge_id=edge.edge_id)
            row.source_id = edge.source_id
            row.target_id = edge.target_id
            row.relationship_type = edge.relationship_type.value
            row.is_active = edge.is_active
            row.metadata_json = dict(edge.metadata)
            row.created_by = edge.created_by
            row.created_at = edge.created_at
            db.add(row)
            db.commit()
        return edge

    def get_relationship(self, edge_id: str) -> Optional[RelationshipEdge]:
        with self._session_factory() as db:
            row = db.get(RelationshipRow, edge_id)
            return _relationship_from_row(row) if row else None

    def list_relationships(
        self,
        relationship_type: Optional[RelationshipType] = None,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[RelationshipEdge]:
        with self._session_factory() as db:
            query = db.query(RelationshipRow)
            if relationship_type is not None:
                query = query.filter(RelationshipRow.relationship_type == relationship_type.value)
            if source_id is not None:
                query = query.filter(RelationshipRow.source_id == source_id)
            if target_id is not None:
                query = query.filter(RelationshipRow.target_id == target_id)
            if active_only:
                query = query.filter(RelationshipRow.is_active.is_(True))
            rows = query.order_by(RelationshipRow.created_at, RelationshipRow.edge_id).all()
            return [_relationship_from_row(row) for row in rows]

    # dependencies

    def add_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        with self._session_factory() as db:
            row = DependencyRow(edge_id=edge.edge_id)
            _apply_dependency(row, edge)
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateEdgeError(
                    f"Dependency {edge.predecessor_id} -> {edge.successor_id} already exists",
                ) from exc
        return edge

    def save_dependency(self, edge: DependencyEdge) -> DependencyEdge:
        with self._session_factory() as db:
            row = db.get(DependencyRow, edge.edge_id) or DependencyRow(edge_id=edge.edge_id)
            _apply_dependency(row, edge)
            db.add(row)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateEdgeError(
                    f"Dependency {edge.predecessor_id} -> {edge.successor_id} already exists",
                ) from exc
        return edge

    def get_dependency(self, edge_id: str) -> Optional[DependencyEdge]:
        with self._session_factory() as db:
            row = db.get(DependencyRow, edge_id)
            return _dependency_from_row(row) if row else None

    def delete_dependency(self, edge_id: str) -> bool:
        with self._session_factory() as db:
            row = db.get(DependencyRow, edge_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def list_dependencies(
        self,
        predecessor_id: Optional[str] = None,
        successor_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[DependencyEdge]:
        with self._session_factory() as db:
            query = db.query(DependencyRow)
            if predecessor_id is not None:
                query = query.filter(DependencyRow.predecessor_id == predecessor_id)
            if successor_id is not None:
                query = query.filter(DependencyRow.successor_id == successor_id)
            if active_only:
                query = query.filter(DependencyRow.status == DependencyStatus.ACTIVE.value)
            rows = query.order_by(DependencyRow.created_at, DependencyRow.edge_id).all()
            return [_dependency_from_row(row) for row in rows]

    # derived records

    def save_master_aggregate(self, aggregate: MasterAggregate) -> MasterAggregate:
        with self._session_factory() as db:
            row = db.get(MasterAggregateRow, aggregate.master_id) or MasterAggregateRow(
                master_id=aggregate.master_id
            )
            row.aggregated_budget = aggregate.aggregated_budget
            row.aggregated_cost = aggregate.aggregated_cost
            row.aggregated_progress = aggregate.aggregated_progress
            row.total_sub_nodes = aggregate.total_sub_nodes
            row.active_sub_nodes = aggregate.active_sub_nodes
            row.earliest_start = aggregate.earliest_start
            row.latest_end = aggregate.latest_end
            row.metrics = dict(aggregate.metrics)
            row.last_aggregated_at = aggregate.last_aggregated_at
            db.add(row)
            db.commit()
        return aggregate

    def get_master_aggregate(self, master_id: str) -> Optional[MasterAggregate]:
        with self._session_factory() as db:
            row = db.get(MasterAggregateRow, master_id)
            if row is None:
                return None
            return MasterAggregate(
                master_id=row.master_id,
                aggregated_budget=row.aggregated_budget,
                aggregated_cost=row.aggregated_cost,
                aggregated_progress=row.aggregated_progress,
                total_sub_nodes=row.total_sub_nodes,
                active_sub_nodes=row.active_sub_nodes,
                earliest_start=row.earliest_start,
                latest_end=row.latest_end,
                metrics=dict(row.metrics or {}),
                last_aggregated_at=row.last_aggregated_at,
            )

    def delete_master_aggregate(self, master_id: str) -> bool:
        with self._session_factory() as db:
            row = db.get(MasterAggregateRow, master_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    def save_program(self, program: Program) -> Program:
        with self._session_factory() as db:
            row = db.get(ProgramRow, program.program_id) or ProgramRow(program_id=program.program_id)
            row.name = program.name
            row.tenant_id = program.tenant_id
            row.target_budget = program.target_budget
            row.start_date = program.start_date
            row.end_date = program.end_date
            row.status = program.status.value
            db.add(row)
            db.commit()
        return program

    def get_program(self, program_id: str) -> Optional[Program]:
        with self._session_factory() as db:
            row = db.get(ProgramRow, program_id)
            return self._program_from_row(row) if row else None

    def list_programs(self, tenant_id: Optional[str] = None) -> List[Program]:
        with self._session_factory() as db:
            query = db.query(ProgramRow)
            if tenant_id is not None:
                query = query.filter(ProgramRow.tenant_id == tenant_id)
            return [self._program_from_row(row) for row in query.order_by(ProgramRow.program_id).all()]

    @staticmethod
    def _program_from_row(row: ProgramRow) -> Program:
        return Program(
            program_id=row.program_id,
            name=row.name or "",
            tenant_id=row.tenant_id,
            target_budget=row.target_budget,
            start_date=row.start_date,
            end_date=row.end_date,
            status=NodeStatus(row.status),
        )
