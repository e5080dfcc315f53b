"""
Tests for hierarchy aggregation, health scoring and program metrics.
"""
from datetime import timedelta

import pytest

from portfolio_engine.analytics.aggregation_engine import (
    AggregationEngine,
    derive_metrics,
    schedule_performance_index,
    weighted_progress,
)
from portfolio_engine.analytics.health_scorer import (
    HealthScorer,
    budget_score,
    classify_trend,
    progress_score,
    quality_score,
    round_half_up,
    schedule_score,
    team_score,
)
from portfolio_engine.analytics.program_metrics import ProgramMetricsCalculator
from portfolio_engine.errors import NotFoundError
from portfolio_engine.models import (
    HealthRecord,
    HealthTrend,
    Node,
    NodeStatus,
    Priority,
    Program,
    QualityIndicators,
    RelationshipType,
    TeamIndicators,
    VelocityTrend,
)


class TestAggregation:
    """Roll-ups over the PARENT_CHILD tree."""

    @pytest.fixture
    def aggregation(self, store, provider, settings, clock):
        return AggregationEngine(store, provider, settings, clock=clock)

    def test_sums_budget_over_tree(self, aggregation, relationships, make_node, now):
        """Budgets 100, 200, 50 over a root and two children sum to 350."""
        make_node("root", budget=100.0, actual_cost=80.0, progress_percent=50.0,
                  start_date=now - timedelta(days=10), end_date=now + timedelta(days=10))
        make_node("c1", budget=200.0, actual_cost=150.0, progress_percent=20.0,
                  status=NodeStatus.IN_PROGRESS, start_date=now - timedelta(days=20))
        make_node("c2", budget=50.0, progress_percent=100.0, status=NodeStatus.COMPLETED,
                  end_date=now + timedelta(days=30))
        relationships.create_relationship("root", "c1", RelationshipType.PARENT_CHILD)
        relationships.create_relationship("root", "c2", RelationshipType.PARENT_CHILD)

        result = aggregation.aggregate("root")
        assert result.budget == pytest.approx(350.0)
        assert result.cost == pytest.approx(230.0)
        assert result.progress == pytest.approx((100 * 50 + 200 * 20 + 50 * 100) / 350)
        assert result.total_sub_nodes == 2
        assert result.active_sub_nodes == 1
        assert result.earliest_start == now - timedelta(days=20)
        assert result.latest_end == now + timedelta(days=30)
        assert result.duration_days == 50

    def test_leaf_aggregates_to_itself(self, aggregation, make_node):
        make_node("solo", budget=10.0, progress_percent=40.0)
        result = aggregation.aggregate("solo")
        assert result.budget == pytest.approx(10.0)
        assert result.progress == pytest.approx(40.0)
        assert result.total_sub_nodes == 0

    def test_missing_root(self, aggregation):
        with pytest.raises(NotFoundError):
            aggregation.aggregate("ghost")

    def test_refresh_is_idempotent(self, aggregation, relationships, make_node, store):
        """Two passes with a fixed clock write identical aggregates."""
        make_node("m", budget=100.0, progress_percent=10.0)
        make_node("s", budget=300.0, progress_percent=30.0)
        relationships.create_relationship("m", "s", RelationshipType.PARENT_CHILD)

        first = aggregation.refresh_master("m").to_dict()
        second = aggregation.refresh_master("m").to_dict()
        assert first == second
        assert store.get_master_aggregate("m").to_dict() == second

    def test_weighted_progress_without_budget(self):
        nodes = [
            Node("a", progress_percent=80.0),
            Node("b", progress_percent=20.0),
            Node("c", budget=0.0, progress_percent=50.0),
        ]
        assert weighted_progress(nodes) == pytest.approx(50.0)
        assert weighted_progress([]) == 0.0

    def test_schedule_performance_index(self, now):
        start = now - timedelta(days=5)
        end = now + timedelta(days=5)
        assert schedule_performance_index(None, end, now) == 1.0
        assert schedule_performance_index(now + timedelta(days=1), end, now) == 1.0
        assert schedule_performance_index(start, end, now) == pytest.approx(0.75)
        assert schedule_performance_index(start, now - timedelta(days=1), now) == 0.5

    def test_derived_metrics(self):
        metrics = derive_metrics(1000.0, 1100.0, 40.0, 1.0)
        assert metrics.budget_variance == pytest.approx(-100.0)
        assert metrics.cost_performance_index == pytest.approx(1.1)
        assert metrics.budget_health_score == pytest.approx(90.0)
        assert metrics.health_score == pytest.approx(65.0)
        assert derive_metrics(0.0, 50.0, 0.0, 1.0).budget_health_score == 100.0


class TestHealthSubScores:
    """Sub-score tiers."""

    def test_budget_over_by_ten_percent(self):
        """Budget 1000, cost 1100: score 70."""
        assert budget_score(Node("n", budget=1000.0, actual_cost=1100.0)) == 70.0

    @pytest.mark.parametrize("budget,cost,expected", [
        (None, 500.0, 75.0),
        (1000.0, None, 90.0),
        (1000.0, 850.0, 100.0),
        (1000.0, 950.0, 95.0),
        (1000.0, 1040.0, 85.0),
        (1000.0, 1150.0, 50.0),
        (1000.0, 1300.0, 20.0),
        (1000.0, 2000.0, 0.0),
    ])
    def test_budget_tiers(self, budget, cost, expected):
        assert budget_score(Node("n", budget=budget, actual_cost=cost)) == pytest.approx(expected)

    def test_schedule_overdue(self, now):
        node = Node(
            "n",
            start_date=now - timedelta(days=20),
            end_date=now - timedelta(days=10),
            progress_percent=100.0,
        )
        assert schedule_score(node, now) == pytest.approx(80.0)
        assert schedule_score(Node("n"), now) == 70.0

    def test_schedule_behind_expected_progress(self, now):
        node = Node(
            "n",
            start_date=now - timedelta(days=5),
            end_date=now + timedelta(days=5),
            progress_percent=20.0,
        )
        assert schedule_score(node, now) == pytest.approx(70.0)

    def test_progress(self):
        assert progress_score(Node("n")) == 50.0
        assert progress_score(Node("n", progress_percent=30.0, status=NodeStatus.ACTIVE)) == 100.0
        assert progress_score(Node("n", progress_percent=10.0, status=NodeStatus.DELAYED)) == 40.0
        assert progress_score(Node("n", progress_percent=60.0, status=NodeStatus.COMPLETED)) == 100.0

    def test_quality_and_team(self):
        node = Node(
            "n",
            quality=QualityIndicators(defect_rate=3.0, test_coverage=30.0, customer_satisfaction=95.0),
            team=TeamIndicators(size=20, turnover_rate=25.0, velocity_trend=VelocityTrend.INCREASING),
        )
        assert quality_score(node) == pytest.approx(90.0)
        assert team_score(node) == pytest.approx(55.0)
        assert quality_score(Node("n")) == 75.0
        assert team_score(Node("n")) == 80.0

    def test_round_half_up(self):
        assert round_half_up(68.5) == 69
        assert round_half_up(2.5) == 3
        assert round_half_up(2.49) == 2

    @pytest.mark.parametrize("history,expected", [
        ([], HealthTrend.STABLE),
        ([60], HealthTrend.STABLE),
        ([40, 45, 50, 55, 60], HealthTrend.IMPROVING),
        ([90, 80, 70], HealthTrend.DECLINING),
        ([60, 61, 60, 61], HealthTrend.STABLE),
        ([0, 0, 0, 90, 80, 70, 60, 50], HealthTrend.DECLINING),
    ])
    def test_classify_trend(self, history, expected):
        assert classify_trend(history) == expected


class TestHealthScorer:
    """Weighted node score and portfolio report."""

    def test_baseline_node(self, clock):
        record = HealthScorer(clock).score(Node("n"))
        assert record.score == 70
        assert record.components["schedule"] == 70.0
        assert record.trend == HealthTrend.STABLE

    def test_portfolio_score_weights_priority(self):
        nodes = [Node("a", priority=Priority.CRITICAL), Node("b", priority=Priority.LOW)]
        records = [HealthRecord("a", 90), HealthRecord("b", 50)]
        assert HealthScorer.portfolio_score(list(zip(nodes, records))) == 80
        assert HealthScorer.portfolio_score([]) == 0

    def test_portfolio_score_rejects_misaligned_pairs(self):
        nodes = [Node("a"), Node("b")]
        records = [HealthRecord("b", 50), HealthRecord("a", 90)]
        with pytest.raises(ValueError):
            HealthScorer.portfolio_score(list(zip(nodes, records)))

    def test_portfolio_health(self, clock, now):
        healthy = Node("ok", name="Healthy", progress_percent=50.0, budget=1000.0, actual_cost=900.0,
                       start_date=now - timedelta(days=10), end_date=now + timedelta(days=10))
        failing = Node("bad", name="Failing", status=NodeStatus.DELAYED, progress_percent=10.0,
                       budget=1000.0, actual_cost=1500.0,
                       start_date=now - timedelta(days=60), end_date=now - timedelta(days=30))

        report = HealthScorer(clock).portfolio_health([healthy, failing])
        by_id = {r.node_id: r.score for r in report.records}
        assert by_id["bad"] == 36
        assert [c.node_id for c in report.critical_nodes] == ["bad"]
        assert report.critical_nodes[0].issues == [
            "Overdue",
            "Over budget by more than 10%",
            "Status: DELAYED",
            "Poor health score",
        ]
        assert report.distribution["poor"] == 1
        assert sum(report.distribution.values()) == 2
        assert set(report.by_status) == {"ACTIVE", "DELAYED"}
        assert len(report.to_frame()) == 2

    def test_portfolio_health_skips_failing_node(self, clock):
        scorer = HealthScorer(clock)
        score = scorer.score

        def flaky(node, now=None):
            if node.node_id == "bad":
                raise ValueError("bad indicators")
            return score(node, now)

        scorer.score = flaky
        report = scorer.portfolio_health([Node("good"), Node("bad")])
        assert [r.node_id for r in report.records] == ["good"]
        assert report.overall_score == 70
        assert report.failures == {"bad": "bad indicators"}
        assert report.to_dict()["failed_nodes"] == ["bad"]

    def test_empty_portfolio(self, clock):
        report = HealthScorer(clock).portfolio_health([])
        assert report.overall_score == 0
        assert report.recommendations == ["No projects in portfolio"]


class TestProgramMetrics:
    """Program totals, timeline and warnings."""

    @pytest.fixture
    def program(self, relationships, make_node, now):
        relationships.create_program(Program(
            program_id="prog", name="Launch", target_budget=300.0,
            start_date=now - timedelta(days=120),
        ))
        make_node("m1", budget=100.0, actual_cost=150.0, progress_percent=10.0,
                  start_date=now - timedelta(days=100), end_date=now - timedelta(days=10))
        make_node("m2", budget=100.0, actual_cost=150.0, progress_percent=20.0, status=NodeStatus.AT_RISK,
                  start_date=now - timedelta(days=20), end_date=now + timedelta(days=20))
        make_node("m3", budget=100.0, actual_cost=150.0, progress_percent=30.0,
                  start_date=now + timedelta(days=30), end_date=now + timedelta(days=60))
        make_node("m4", status=NodeStatus.PLANNING)
        for member in ["m1", "m2", "m3", "m4"]:
            relationships.add_to_program("prog", member)
        return "prog"

    @pytest.fixture
    def calculator(self, store, provider, clock):
        return ProgramMetricsCalculator(store, provider, clock=clock)

    def test_metrics(self, calculator, program, now):
        metrics = calculator.metrics(program)
        assert metrics.total_nodes == 4
        assert metrics.total_budget == pytest.approx(300.0)
        assert metrics.total_cost == pytest.approx(450.0)
        assert metrics.average_progress == pytest.approx(15.0)
        assert metrics.on_time == 1
        assert metrics.at_risk == 2
        assert metrics.status_distribution == {"ACTIVE": 2, "AT_RISK": 1, "PLANNING": 1}
        assert metrics.earliest_start == now - timedelta(days=100)

    def test_timeline(self, calculator, program):
        timeline = calculator.timeline(program)
        assert [p.node_ids for p in timeline.phases] == [["m1", "m2"], ["m3"]]
        assert timeline.unscheduled == ["m4"]

    def test_warnings(self, calculator, program):
        warnings = calculator.health_warnings(program, calculator.metrics(program))
        assert len(warnings) == 3
        assert "over budget by 50%" in warnings[1]

    def test_widen_window(self, calculator, program, store, now):
        assert calculator.widen_program_window(program) is True
        assert store.get_program(program).end_date == now + timedelta(days=60)
        assert store.get_program(program).start_date == now - timedelta(days=120)
        assert calculator.widen_program_window(program) is False

    def test_unknown_program(self, calculator):
        with pytest.raises(NotFoundError):
            calculator.metrics("missing")
