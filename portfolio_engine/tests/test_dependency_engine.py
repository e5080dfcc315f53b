"""
Tests for the dependency graph engine: cycle-safe mutation, CPM and delay propagation.
"""
import logging
import random

import pytest

from portfolio_engine.errors import (
    CircularDependencyError,
    CrossScopeError,
    DuplicateEdgeError,
    ErrorCode,
    GraphValidationError,
    NotFoundError,
    SelfDependencyError,
)
from portfolio_engine.graph.dependency_engine import (
    compute_schedule,
    propagate_delay,
    topological_order,
)
from portfolio_engine.models import DependencyEdge, DependencyStatus, DependencyType, GraphType


class TestCreateDependency:
    """Every rejected mutation leaves the graph untouched."""

    def test_creates_active_edge(self, engine, make_node):
        make_node("a")
        make_node("b")
        edge = engine.create_dependency("a", "b", DependencyType.FINISH_TO_START, lag_days=3, actor="ana")

        assert edge.edge_id == "edge-1"
        assert edge.is_active
        assert edge.lag_days == 3
        assert edge.created_by == "ana"
        assert [e.successor_id for e in engine.successors_of("a")] == ["b"]

    def test_reverse_edge_is_circular(self, engine, make_node):
        """A→B then B→A is rejected as circular."""
        make_node("a")
        make_node("b")
        engine.create_dependency("a", "b")

        with pytest.raises(CircularDependencyError) as exc_info:
            engine.create_dependency("b", "a")
        assert exc_info.value.code == ErrorCode.CIRCULAR_DEPENDENCY
        assert engine.predecessors_of("a") == []

    def test_self_dependency(self, engine, make_node):
        make_node("a")
        with pytest.raises(SelfDependencyError) as exc_info:
            engine.create_dependency("a", "a")
        assert exc_info.value.category == ErrorCode.VALIDATION

    def test_duplicate_active_pair(self, engine, make_node):
        make_node("a")
        make_node("b")
        engine.create_dependency("a", "b")
        with pytest.raises(DuplicateEdgeError):
            engine.create_dependency("a", "b", DependencyType.START_TO_START)

    def test_missing_node(self, engine, make_node):
        make_node("a")
        with pytest.raises(NotFoundError):
            engine.create_dependency("a", "ghost")

    def test_cross_tenant(self, engine, make_node):
        make_node("a", tenant_id="t1")
        make_node("b", tenant_id="t2")
        with pytest.raises(CrossScopeError):
            engine.create_dependency("a", "b")

    @pytest.mark.parametrize("lag", [366, -366, 1000])
    def test_lag_out_of_range(self, engine, make_node, lag):
        make_node("a")
        make_node("b")
        with pytest.raises(GraphValidationError):
            engine.create_dependency("a", "b", lag_days=lag)
        assert engine.successors_of("a") == []

    def test_lag_range_follows_settings(self, engine, make_node, settings):
        make_node("a")
        make_node("b")
        settings.max_lag_days = 500
        assert engine.create_dependency("a", "b", lag_days=400).lag_days == 400

    def test_random_dag_rejects_back_edge(self, engine, make_node):
        """Any edge from a later node back to an ancestor closes a loop."""
        rng = random.Random(7)
        ids = [f"n{i}" for i in range(10)]
        for node_id in ids:
            make_node(node_id)
        for i in range(len(ids) - 1):
            engine.create_dependency(ids[i], ids[i + 1])
        for _ in range(15):
            i, j = sorted(rng.sample(range(len(ids)), 2))
            if engine.store.find_dependency(ids[i], ids[j]) is None:
                engine.create_dependency(ids[i], ids[j])

        for _ in range(5):
            i, j = sorted(rng.sample(range(len(ids)), 2))
            with pytest.raises(CircularDependencyError):
                engine.create_dependency(ids[j], ids[i])

    def test_validate_dependency_is_dry_run(self, engine, make_node):
        make_node("a")
        make_node("b")
        engine.create_dependency("a", "b")

        assert engine.validate_dependency("a", "b").code == ErrorCode.DUPLICATE_EDGE
        result = engine.validate_dependency("b", "a")
        assert not result.valid
        assert result.code == ErrorCode.CIRCULAR_DEPENDENCY
        assert engine.validate_dependency("a", "a").code == ErrorCode.SELF_DEPENDENCY
        assert len(engine.dependencies_of("a")) == 1


class TestCycleValidator:
    """Reachability gate over the dependency subgraph."""

    def test_disconnected_components(self, engine, make_node):
        for node_id in "abcd":
            make_node(node_id)
        engine.create_dependency("a", "b")
        engine.create_dependency("c", "d")

        assert not engine.validator.would_create_cycle(GraphType.DEPENDENCY, "b", "c")
        assert not engine.validator.would_create_cycle(GraphType.DEPENDENCY, "d", "a")
        assert engine.validator.would_create_cycle(GraphType.DEPENDENCY, "b", "a")

    def test_fails_open_at_traversal_bound(self, engine, make_node, settings, caplog):
        ids = [f"n{i}" for i in range(6)]
        for node_id in ids:
            make_node(node_id)
        for pred, succ in zip(ids, ids[1:]):
            engine.create_dependency(pred, succ)

        settings.max_traversal_depth = 3
        with caplog.at_level(logging.WARNING, logger="portfolio_engine.graph.cycle_validator"):
            assert not engine.validator.would_create_cycle(GraphType.DEPENDENCY, "n5", "n0")
        assert "assuming no cycle" in caplog.text

        settings.max_traversal_depth = 20
        assert engine.validator.would_create_cycle(GraphType.DEPENDENCY, "n5", "n0")


class TestUpdateAndRemove:
    """Partial updates and hard deletes."""

    def test_patch_lag_and_impact(self, engine, make_node):
        make_node("a")
        make_node("b")
        edge = engine.create_dependency("a", "b")
        updated = engine.update_dependency(edge.edge_id, {"lag_days": 4, "impact": "HIGH"}, actor="bo")

        assert updated.lag_days == 4
        assert updated.impact.value == "HIGH"
        assert updated.updated_by == "bo"
        assert engine.get_dependency(edge.edge_id).lag_days == 4

    def test_reactivation_rechecks_cycles(self, engine, make_node):
        make_node("a")
        make_node("b")
        edge = engine.create_dependency("a", "b")
        engine.update_dependency(edge.edge_id, {"status": DependencyStatus.INACTIVE})
        engine.create_dependency("b", "a")

        with pytest.raises(CircularDependencyError):
            engine.update_dependency(edge.edge_id, {"status": DependencyStatus.ACTIVE})
        assert not engine.get_dependency(edge.edge_id).is_active

    def test_invalid_patch(self, engine, make_node):
        make_node("a")
        make_node("b")
        edge = engine.create_dependency("a", "b")
        with pytest.raises(GraphValidationError):
            engine.update_dependency(edge.edge_id, {"lag_days": 900})

    def test_remove(self, engine, make_node):
        make_node("a")
        make_node("b")
        edge = engine.create_dependency("a", "b")
        engine.remove_dependency(edge.edge_id)

        with pytest.raises(NotFoundError):
            engine.get_dependency(edge.edge_id)
        engine.create_dependency("b", "a")


class TestCriticalPath:
    """CPM forward/backward passes."""

    def test_chain_is_fully_critical(self, engine, make_node):
        """A→B→C, FS lag 0, durations 5,3,2: all critical, duration 10."""
        make_node("a", duration_days=5)
        make_node("b", duration_days=3)
        make_node("c", duration_days=2)
        engine.create_dependency("a", "b")
        engine.create_dependency("b", "c")

        result = engine.critical_path("b")
        assert result.critical_path == ["a", "b", "c"]
        assert result.project_duration == pytest.approx(10.0)
        assert result.entries["c"].early_start == pytest.approx(8.0)

    def test_parallel_branch_has_slack(self, engine, make_node):
        make_node("a", duration_days=5)
        make_node("b", duration_days=3)
        make_node("d", duration_days=1)
        make_node("c", duration_days=2)
        for pred, succ in [("a", "b"), ("a", "d"), ("b", "c"), ("d", "c")]:
            engine.create_dependency(pred, succ)

        result = engine.critical_path("a")
        assert result.entries["d"].slack == pytest.approx(2.0)
        assert not result.is_critical("d")
        assert result.critical_path == ["a", "b", "c"]

    def test_lag_and_start_to_start(self, engine, make_node):
        make_node("a", duration_days=4)
        make_node("b", duration_days=2)
        engine.create_dependency("a", "b", DependencyType.START_TO_START, lag_days=1)

        result = engine.critical_path("a")
        assert result.entries["b"].early_start == pytest.approx(1.0)
        assert result.project_duration == pytest.approx(4.0)

    def test_schedule_frame(self, engine, make_node):
        make_node("a", duration_days=1)
        make_node("b", duration_days=1)
        engine.create_dependency("a", "b")

        frame = engine.critical_path("a").to_frame()
        assert list(frame["node_id"]) == ["a", "b"]
        assert list(frame["is_critical"]) == [True, True]

    def test_compute_schedule_rejects_cycle(self):
        edges = [
            DependencyEdge(edge_id="1", predecessor_id="x", successor_id="y"),
            DependencyEdge(edge_id="2", predecessor_id="y", successor_id="x"),
        ]
        ordered, leftover = topological_order(["x", "y"], edges)
        assert ordered == []
        assert sorted(leftover) == ["x", "y"]
        with pytest.raises(CircularDependencyError):
            compute_schedule(["x", "y"], {"x": 1, "y": 1}, edges)

    def test_refresh_critical_flags(self, engine, make_node):
        make_node("a", duration_days=5)
        make_node("b", duration_days=3)
        make_node("c", duration_days=2)
        engine.create_dependency("a", "b")
        engine.create_dependency("b", "c")

        assert engine.refresh_critical_flags("a") == 2
        assert all(e.is_critical for e in engine.successors_of("a") + engine.successors_of("b"))
        assert engine.refresh_critical_flags("a") == 0


class TestDelayPropagation:
    """Cascading delay over successors."""

    @pytest.mark.parametrize("dep_type,lag,expected", [
        (DependencyType.FINISH_TO_START, 2, 7.0),
        (DependencyType.START_TO_START, 2, 3.0),
        (DependencyType.FINISH_TO_FINISH, 2, 5.0),
        (DependencyType.START_TO_FINISH, -2, 3.0),
        (DependencyType.START_TO_START, 9, 0.0),
    ])
    def test_propagate_delay(self, dep_type, lag, expected):
        assert propagate_delay(dep_type, 5, lag) == pytest.approx(expected)

    def test_finish_to_start_with_lag(self, engine, make_node):
        """X→Y FS lag 2, X delayed 5 days: Y delayed 7."""
        make_node("x")
        make_node("y")
        engine.create_dependency("x", "y", DependencyType.FINISH_TO_START, lag_days=2)

        delays = engine.cascading_delay("x", 5)
        assert delays == {"x": 5.0, "y": 7.0}

    def test_largest_delay_wins(self, engine, make_node):
        for node_id in "abcd":
            make_node(node_id)
        engine.create_dependency("a", "b", lag_days=1)
        engine.create_dependency("a", "c", lag_days=4)
        engine.create_dependency("b", "d")
        engine.create_dependency("c", "d")

        delays = engine.cascading_delay("a", 2)
        assert delays["d"] == pytest.approx(6.0)
        assert engine.impacted_nodes("a", 2) == [("c", 6.0), ("d", 6.0), ("b", 3.0)]

    def test_zero_offset_stops(self, engine, make_node):
        make_node("x")
        make_node("y")
        make_node("z")
        engine.create_dependency("x", "y", DependencyType.START_TO_START, lag_days=10)
        engine.create_dependency("y", "z")

        assert engine.cascading_delay("x", 3) == {"x": 3.0}

    def test_dependency_path(self, engine, make_node):
        for node_id in "abc":
            make_node(node_id)
        engine.create_dependency("a", "b")
        engine.create_dependency("b", "c")

        assert engine.dependency_path("a", "c") == ["a", "b", "c"]
        assert engine.dependency_path("c", "a") == []
        assert sorted(engine.related_nodes("b")) == ["a", "c"]
