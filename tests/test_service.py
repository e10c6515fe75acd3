"""Tests for the analysis service and results cache."""

from datetime import datetime, timedelta, timezone

import pytest

from src.ab.experiment import (
    Experiment,
    ExperimentConfigError,
    Goal,
    GoalType,
    Variant,
    activate,
)
from src.analysis.service import (
    AggregationQueryError,
    GoalCountRow,
    ResultsCache,
    VariantCountRow,
    analyze_experiment,
    build_variant_stats,
    days_running,
)
from src.analysis.stats import NO_DATA_MESSAGE, AnalysisConfig, analyze

START = datetime(2026, 3, 1, tzinfo=timezone.utc)

EXPERIMENT = activate(Experiment(
    experiment_id="exp_pricing",
    name="Pricing",
    variants=[Variant("control", "Control"), Variant("treatment", "Annual first")],
    goals=[
        Goal("goal_purchase", "Purchase", GoalType.REVENUE, is_primary=True, event_name="purchase"),
        Goal("goal_signup", "Signup", event_name="signup"),
    ],
), now=START)


class FakeSource:
    def __init__(self, rows=(), goal_rows=()):
        self.rows = list(rows)
        self.goal_rows = list(goal_rows)
        self.calls = []

    def fetch_variant_counts(self, experiment_id, goal_event, start=None, end=None, goal_id=None):
        self.calls.append(("variants", experiment_id, goal_event, start, end, goal_id))
        return self.rows

    def fetch_goal_counts(self, experiment_id, goals, start=None, end=None):
        self.calls.append(("goals", experiment_id, tuple(goals), start, end))
        return self.goal_rows


class FailingSource(FakeSource):
    def fetch_variant_counts(self, experiment_id, goal_event, start=None, end=None, goal_id=None):
        raise AggregationQueryError("connection reset")


ROWS = [
    VariantCountRow("control", 1000, 100),
    VariantCountRow("treatment", 1000, 130),
]


class TestBuildVariantStats:
    def test_follows_declaration_order(self):
        rows = list(reversed(ROWS))
        stats = build_variant_stats(EXPERIMENT, rows)
        assert [s.variant_id for s in stats] == ["control", "treatment"]
        assert stats[1].name == "Annual first"

    def test_missing_variant_zero_filled(self):
        stats = build_variant_stats(EXPERIMENT, [ROWS[0]])
        assert stats[1].variant_id == "treatment"
        assert stats[1].users == 0
        assert stats[1].conversions == 0

    def test_unknown_variant_dropped(self):
        rows = ROWS + [VariantCountRow("retired", 500, 50)]
        stats = build_variant_stats(EXPERIMENT, rows)
        assert [s.variant_id for s in stats] == ["control", "treatment"]

    def test_conversions_clamped_to_users(self):
        stats = build_variant_stats(EXPERIMENT, [VariantCountRow("control", 10, 12)])
        assert stats[0].conversions == 10

    def test_goal_breakdown_with_revenue(self):
        goal_rows = [
            GoalCountRow("treatment", "goal_purchase", 130, 3900.0),
            GoalCountRow("treatment", "goal_signup", 400, None),
            GoalCountRow("treatment", "goal_unrelated", 7, None),
        ]
        stats = build_variant_stats(EXPERIMENT, ROWS, goal_rows)
        goals = stats[1].goals
        assert [g.goal_id for g in goals] == ["goal_purchase", "goal_signup"]

        purchase = goals[0]
        assert purchase.is_primary
        assert purchase.goal_type == "revenue"
        assert purchase.total_revenue == 3900.0
        assert purchase.avg_order_value == 30.0
        assert purchase.revenue_per_visitor == 3.9

        signup = goals[1]
        assert signup.conversion_rate == pytest.approx(0.4)
        assert signup.total_revenue is None
        assert signup.avg_order_value is None

        assert stats[0].goals == ()


class TestDaysRunning:
    def test_elapsed_days(self):
        assert days_running(EXPERIMENT, START + timedelta(days=3)) == pytest.approx(3.0)

    def test_not_started(self):
        draft = Experiment("exp_draft", "Draft", [Variant("a", "A"), Variant("b", "B")])
        assert days_running(draft) is None

    def test_clock_before_start(self):
        assert days_running(EXPERIMENT, START - timedelta(hours=1)) is None

    def test_naive_clock_treated_as_utc(self):
        naive_now = datetime(2026, 3, 3)
        assert days_running(EXPERIMENT, naive_now) == pytest.approx(2.0)

    def test_naive_start_rejected(self):
        with pytest.raises(ExperimentConfigError, match="timezone-aware"):
            Experiment(
                "exp_naive", "Naive", [Variant("a", "A"), Variant("b", "B")],
                started_at=datetime(2026, 1, 1),
            )


class TestAnalyzeExperiment:
    def test_matches_pure_analysis(self):
        now = START + timedelta(days=10)
        result = analyze_experiment(EXPERIMENT, FakeSource(ROWS), now=now)
        expected = analyze(
            build_variant_stats(EXPERIMENT, ROWS),
            experiment_id="exp_pricing",
            days_running=10.0,
        )
        assert result == expected
        assert result.winner == "treatment"
        assert result.days_to_significance == 89

    def test_queries_primary_goal_event(self):
        source = FakeSource(ROWS)
        analyze_experiment(EXPERIMENT, source, now=START)
        assert source.calls[0][:3] == ("variants", "exp_pricing", "purchase")
        assert source.calls[0][5] == "goal_purchase"
        assert source.calls[1][2] == (("goal_purchase", "purchase"), ("goal_signup", "signup"))

    def test_passes_date_range(self):
        source = FakeSource(ROWS)
        end = START + timedelta(days=7)
        analyze_experiment(EXPERIMENT, source, start=START, end=end)
        assert all(call[3:5] == (START, end) for call in source.calls)

    def test_experiment_without_primary_goal_degrades(self, caplog):
        exp = Experiment("exp_x", "X", [Variant("a", "A"), Variant("b", "B")])
        source = FakeSource([VariantCountRow("a", 1000, 100), VariantCountRow("b", 1000, 130)])
        result = analyze_experiment(exp, source)
        assert result.status_message == NO_DATA_MESSAGE
        assert result.is_significant is False
        assert result.winner is None
        assert source.calls == []
        assert "primary goal" in caplog.text

    def test_single_variant_experiment_degrades(self):
        exp = Experiment(
            "exp_solo", "Solo", [Variant("a", "A")],
            goals=[Goal("g", "G", is_primary=True)],
        )
        result = analyze_experiment(exp, FakeSource([VariantCountRow("a", 1000, 100)]))
        assert result.status_message == NO_DATA_MESSAGE

    def test_all_zero_weights_degrade(self):
        exp = Experiment(
            "exp_zero", "Zero", [Variant("a", "A", 0), Variant("b", "B", 0)],
            goals=[Goal("g", "G", is_primary=True)],
        )
        result = analyze_experiment(exp, FakeSource(ROWS))
        assert result.status_message == NO_DATA_MESSAGE

    def test_query_failure_degrades_to_no_data(self, caplog):
        result = analyze_experiment(EXPERIMENT, FailingSource())
        assert result.status_message == NO_DATA_MESSAGE
        assert result.is_significant is False
        assert result.winner is None
        assert result.experiment_id == "exp_pricing"
        assert "Aggregation query failed" in caplog.text

    def test_unexpected_error_also_degrades(self):
        class Broken(FakeSource):
            def fetch_goal_counts(self, *args, **kwargs):
                raise KeyError("boom")

        result = analyze_experiment(EXPERIMENT, Broken(ROWS))
        assert result.status_message == NO_DATA_MESSAGE

    def test_no_rows(self):
        result = analyze_experiment(EXPERIMENT, FakeSource([]))
        assert result.total_users == 0
        assert result.status_message == NO_DATA_MESSAGE

    def test_config_passed_through(self):
        config = AnalysisConfig(min_users_per_arm=5000)
        result = analyze_experiment(EXPERIMENT, FakeSource(ROWS), config)
        assert result.is_significant is False
        assert result.status_message.startswith("Not enough data")


class TestResultsCache:
    def test_hit_within_ttl(self):
        now = [0.0]
        cache = ResultsCache(ttl_seconds=30, clock=lambda: now[0])
        calls = []

        def compute():
            calls.append(1)
            return analyze_experiment(EXPERIMENT, FakeSource(ROWS))

        first = cache.get_or_compute("exp_pricing", compute)
        now[0] = 29.0
        second = cache.get_or_compute("exp_pricing", compute)
        assert first is second
        assert len(calls) == 1

    def test_expires_after_ttl(self):
        now = [0.0]
        cache = ResultsCache(ttl_seconds=30, clock=lambda: now[0])
        calls = []

        def compute():
            calls.append(1)
            return analyze_experiment(EXPERIMENT, FakeSource(ROWS))

        cache.get_or_compute("exp_pricing", compute)
        now[0] = 31.0
        cache.get_or_compute("exp_pricing", compute)
        assert len(calls) == 2

    def test_date_range_is_part_of_key(self):
        cache = ResultsCache()
        calls = []

        def compute():
            calls.append(1)
            return analyze_experiment(EXPERIMENT, FakeSource(ROWS))

        cache.get_or_compute("exp_pricing", compute)
        cache.get_or_compute("exp_pricing", compute, start=START)
        assert len(calls) == 2
        assert len(cache) == 2

    def test_evicts_oldest(self):
        cache = ResultsCache(max_entries=2)
        result = analyze([])
        for exp_id in ("a", "b", "c"):
            cache.get_or_compute(exp_id, lambda: result)
        assert len(cache) == 2

        calls = []
        cache.get_or_compute("a", lambda: calls.append(1) or result)
        assert calls == [1]

    def test_invalidate(self):
        cache = ResultsCache()
        result = analyze([])
        cache.get_or_compute("a", lambda: result)
        cache.get_or_compute("a", lambda: result, start=START)
        cache.get_or_compute("b", lambda: result)
        cache.invalidate("a")
        assert len(cache) == 1
