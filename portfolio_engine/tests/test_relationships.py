"""
Tests for structural relationships: hierarchy, programs and master nodes.
"""
import pytest

from portfolio_engine.analytics.aggregation_engine import AggregationEngine
from portfolio_engine.analytics.master_projects import MasterProjectService
from portfolio_engine.errors import (
    CircularDependencyError,
    CrossScopeError,
    DuplicateEdgeError,
    GraphValidationError,
    NotFoundError,
    SelfDependencyError,
)
from portfolio_engine.graph.hierarchy import HierarchyTraversal
from portfolio_engine.models import Program, RelationshipType


@pytest.fixture
def tree(relationships, make_node):
    """root → (a → (a1, a2), b)"""
    for node_id in ["root", "a", "b", "a1", "a2"]:
        make_node(node_id)
    relationships.create_relationship("root", "a", RelationshipType.PARENT_CHILD)
    relationships.create_relationship("root", "b", RelationshipType.PARENT_CHILD)
    relationships.create_relationship("a", "a1", RelationshipType.PARENT_CHILD)
    relationships.create_relationship("a", "a2", RelationshipType.PARENT_CHILD)
    return relationships


class TestParentChild:
    """PARENT_CHILD edges form a forest."""

    def test_single_parent(self, tree):
        with pytest.raises(GraphValidationError):
            tree.create_relationship("b", "a1", RelationshipType.PARENT_CHILD)
        assert tree.parent_of("a1") == "a"

    def test_cycle_rejected(self, tree):
        tree.clear_parent("root")
        with pytest.raises(CircularDependencyError):
            tree.create_relationship("a1", "root", RelationshipType.PARENT_CHILD)

    def test_self_parent(self, tree):
        with pytest.raises(SelfDependencyError):
            tree.set_parent("a", "a")

    def test_set_parent_moves_subtree(self, tree):
        tree.set_parent("a1", "b")
        assert tree.parent_of("a1") == "b"
        assert tree.children_of("a") == ["a2"]

        old = tree.store.list_relationships(
            RelationshipType.PARENT_CHILD, source_id="a", target_id="a1", active_only=False
        )
        assert len(old) == 1
        assert not old[0].is_active
        assert "deactivated_at" in old[0].metadata

    def test_set_parent_under_descendant_keeps_old_parent(self, tree):
        with pytest.raises(CircularDependencyError):
            tree.set_parent("a", "a1")
        assert tree.parent_of("a") == "root"

    def test_set_parent_across_tenants_keeps_old_parent(self, relationships, make_node):
        make_node("p", tenant_id="t1")
        make_node("c", tenant_id="t1")
        make_node("q", tenant_id="t2")
        relationships.set_parent("c", "p")

        with pytest.raises(CrossScopeError):
            relationships.set_parent("c", "q")
        assert relationships.parent_of("c") == "p"
        assert [e.is_active for e in relationships.relationships_of("c", RelationshipType.PARENT_CHILD)] == [True]

    def test_cross_tenant(self, relationships, make_node):
        make_node("p", tenant_id="t1")
        make_node("c", tenant_id="t2")
        with pytest.raises(CrossScopeError):
            relationships.create_relationship("p", "c", RelationshipType.PARENT_CHILD)

    def test_missing_node(self, relationships, make_node):
        make_node("p")
        with pytest.raises(NotFoundError):
            relationships.set_parent("ghost", "p")

    def test_relationships_of(self, tree):
        edges = tree.relationships_of("a")
        assert sorted((e.source_id, e.target_id) for e in edges) == [
            ("a", "a1"), ("a", "a2"), ("root", "a"),
        ]


class TestHierarchyTraversal:
    """Bounded walks over the forest."""

    def test_ancestors_and_path(self, tree, store, settings):
        hierarchy = HierarchyTraversal(store, settings)
        assert hierarchy.ancestors("a2") == ["a", "root"]
        assert hierarchy.path_from_root("a2") == ["root", "a", "a2"]
        assert hierarchy.path_from_root("root") == ["root"]
        assert hierarchy.depth("a1") == 2
        assert hierarchy.root_of("a1") == "root"

    def test_descendants_and_siblings(self, tree, store, settings):
        hierarchy = HierarchyTraversal(store, settings)
        assert hierarchy.descendants("root") == ["a", "b", "a1", "a2"]
        assert hierarchy.siblings("a1") == ["a2"]
        assert hierarchy.siblings("root") == []

    def test_depth_bound(self, relationships, make_node, store, settings):
        settings.max_traversal_depth = 3
        ids = [f"n{i}" for i in range(6)]
        for node_id in ids:
            make_node(node_id)
        for parent, child in zip(ids, ids[1:]):
            relationships.create_relationship(parent, child, RelationshipType.PARENT_CHILD)

        hierarchy = HierarchyTraversal(store, settings)
        assert hierarchy.ancestors("n5") == ["n4", "n3", "n2"]
        assert hierarchy.descendants("n0") == ["n1", "n2", "n3"]


class TestPrograms:
    """A node belongs to at most one program."""

    def test_membership(self, relationships, make_node):
        make_node("x")
        make_node("y")
        relationships.create_program(Program(program_id="prog-1", name="Launch"))
        relationships.create_program(Program(program_id="prog-2", name="Ops"))
        relationships.add_to_program("prog-1", "x")
        relationships.add_to_program("prog-1", "y")

        assert relationships.program_members("prog-1") == ["x", "y"]
        assert relationships.program_of("x") == "prog-1"
        with pytest.raises(GraphValidationError):
            relationships.add_to_program("prog-2", "x")

        relationships.remove_from_program("prog-1", "x")
        relationships.add_to_program("prog-2", "x")
        assert relationships.program_of("x") == "prog-2"

    def test_unknown_program(self, relationships, make_node):
        make_node("x")
        with pytest.raises(NotFoundError):
            relationships.add_to_program("nope", "x")

    def test_duplicate_program(self, relationships):
        relationships.create_program(Program(program_id="p"))
        with pytest.raises(DuplicateEdgeError):
            relationships.create_program(Program(program_id="p"))


class TestMasterProjects:
    """Master marker plus persisted aggregate."""

    @pytest.fixture
    def masters(self, relationships, store, provider, settings, clock):
        return MasterProjectService(relationships, AggregationEngine(store, provider, settings, clock=clock))

    def test_promote_and_aggregate(self, masters, make_node, now):
        make_node("m", budget=100.0)
        make_node("s1", budget=200.0)
        make_node("s2", budget=50.0)
        aggregate = masters.promote("m", actor="lead")
        assert aggregate.total_sub_nodes == 0
        assert masters.is_master("m")
        assert masters.list_masters() == ["m"]

        masters.add_sub_node("m", "s1")
        aggregate = masters.add_sub_node("m", "s2")
        assert aggregate.aggregated_budget == pytest.approx(350.0)
        assert aggregate.total_sub_nodes == 2
        assert aggregate.last_aggregated_at == now
        assert masters.sub_nodes("m") == ["s1", "s2"]

        aggregate = masters.remove_sub_node("m", "s1")
        assert aggregate.aggregated_budget == pytest.approx(150.0)

    def test_promote_twice(self, masters, make_node):
        make_node("m")
        masters.promote("m")
        with pytest.raises(DuplicateEdgeError):
            masters.promote("m")

    def test_demote(self, masters, make_node, store):
        make_node("m")
        make_node("s")
        masters.promote("m")
        masters.add_sub_node("m", "s")
        masters.demote("m")

        assert not masters.is_master("m")
        assert store.get_master_aggregate("m") is None
        assert masters.relationships.parent_of("s") is None
        with pytest.raises(NotFoundError):
            masters.get_aggregate("m")

    def test_sub_node_with_parent(self, masters, relationships, make_node):
        make_node("m")
        make_node("other")
        make_node("s")
        masters.promote("m")
        relationships.create_relationship("other", "s", RelationshipType.PARENT_CHILD)
        with pytest.raises(GraphValidationError):
            masters.add_sub_node("m", "s")
