"""Tests for the visitor behavior simulator."""

import dataclasses

import pytest

from src.ab.assignment import AssignmentCoordinator, assign_variant
from src.ab.experiment import PRICING_PAGE_EXPERIMENT
from src.ab.store import InMemoryAssignmentStore
from src.collector.schemas import EventType
from src.simulator.config import Plan, SimulationConfig
from src.simulator.engine import generate_events


# Small config for fast tests
SMALL_CONFIG = SimulationConfig(num_users=200, days=7, seed=42)
EXP_ID = PRICING_PAGE_EXPERIMENT.experiment_id


def _by_visitor(events):
    visitors = {}
    for e in events:
        visitors.setdefault(e.user_id, []).append(e)
    return visitors


class TestGenerateEvents:
    def test_generates_events(self):
        events = generate_events(SMALL_CONFIG)
        assert len(events) > 0

    def test_deterministic_with_same_seed(self):
        events_a = generate_events(SMALL_CONFIG)
        events_b = generate_events(SMALL_CONFIG)
        assert len(events_a) == len(events_b)
        assert [e.event_id for e in events_a] == [e.event_id for e in events_b]

    def test_different_seed_produces_different_events(self):
        config_other = SimulationConfig(num_users=200, days=7, seed=99)
        ids_a = {e.event_id for e in generate_events(SMALL_CONFIG)}
        ids_b = {e.event_id for e in generate_events(config_other)}
        assert ids_a != ids_b

    def test_events_sorted_by_timestamp(self):
        events = generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT)
        timestamps = [e.timestamp for e in events]
        assert timestamps == sorted(timestamps)

    def test_all_event_ids_unique(self):
        events = generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT)
        ids = [e.event_id for e in events]
        assert len(ids) == len(set(ids))

    def test_contains_all_funnel_stages(self):
        events = generate_events(SMALL_CONFIG)
        types = {e.event_type for e in events}
        assert EventType.PAGE_VIEW in types
        assert EventType.CLICK in types
        assert EventType.SIGNUP in types
        assert EventType.PURCHASE in types

    def test_funnel_has_natural_dropoff(self):
        events = generate_events(SMALL_CONFIG)
        type_counts = {}
        for e in events:
            type_counts[e.event_type] = type_counts.get(e.event_type, 0) + 1
        assert type_counts[EventType.PAGE_VIEW] > type_counts[EventType.SIGNUP]
        assert type_counts[EventType.SIGNUP] > type_counts[EventType.PURCHASE]

    def test_purchase_has_plan_and_amount(self):
        events = generate_events(SMALL_CONFIG)
        purchases = [e for e in events if e.event_type == EventType.PURCHASE]
        assert len(purchases) > 0
        for p in purchases:
            assert "plan" in p.properties
            assert p.properties["amount"] > 0

    def test_no_experiment_means_no_tags(self):
        events = generate_events(SMALL_CONFIG)
        assert all(e.experiments == {} for e in events)
        assert not any(e.event_type == EventType.EXPERIMENT_ASSIGNMENT for e in events)


class TestExperimentTraffic:
    def test_every_visitor_assigned_at_full_traffic(self):
        events = generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT)
        assigned = {e.user_id for e in events if e.event_type == EventType.EXPERIMENT_ASSIGNMENT}
        assert len(assigned) == SMALL_CONFIG.num_users

    def test_assignment_matches_bucketing(self):
        events = generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT)
        for e in events:
            if e.event_type == EventType.EXPERIMENT_ASSIGNMENT:
                expected = assign_variant(PRICING_PAGE_EXPERIMENT, e.user_id).variant_id
                assert e.properties["variant"] == expected
                assert e.experiments == {EXP_ID: expected}

    def test_visitor_keeps_variant_across_sessions(self):
        config = SimulationConfig(num_users=200, days=7, seed=42, prob_return_visit=1.0)
        events = generate_events(config, PRICING_PAGE_EXPERIMENT)
        for visitor_events in _by_visitor(events).values():
            variants = {e.experiments[EXP_ID] for e in visitor_events if EXP_ID in e.experiments}
            assert len(variants) == 1

    def test_events_before_assignment_untagged(self):
        events = generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT)
        for visitor_events in _by_visitor(events).values():
            assert visitor_events[0].event_type == EventType.PAGE_VIEW
            assert visitor_events[0].experiments == {}

    def test_partial_traffic_allocation(self):
        config = SimulationConfig(num_users=1000, days=7, seed=3)
        half = dataclasses.replace(PRICING_PAGE_EXPERIMENT, traffic_percentage=50)
        events = generate_events(config, half)
        assigned = {e.user_id for e in events if e.event_type == EventType.EXPERIMENT_ASSIGNMENT}
        assert 0.43 < len(assigned) / config.num_users < 0.57
        for e in events:
            if e.user_id not in assigned:
                assert e.experiments == {}

    def test_uses_supplied_coordinator(self):
        store = InMemoryAssignmentStore()
        generate_events(SMALL_CONFIG, PRICING_PAGE_EXPERIMENT, AssignmentCoordinator(store))
        assert len(store) == SMALL_CONFIG.num_users

    def test_treatment_uplift_applies_to_non_control(self):
        """With base purchase probability 0 only treatment visitors can buy."""
        config = SimulationConfig(
            num_users=200, days=7, seed=5,
            prob_signup=1.0, prob_onboarding=1.0, prob_purchase=0.0, treatment_uplift=1.0,
        )
        events = generate_events(config, PRICING_PAGE_EXPERIMENT)
        purchases = [e for e in events if e.event_type == EventType.PURCHASE]
        assert purchases
        assert all(e.experiments[EXP_ID] == "treatment" for e in purchases)


class TestSimulationConfig:
    def test_probability_out_of_range(self):
        with pytest.raises(ValueError, match="prob_signup"):
            SimulationConfig(prob_signup=1.5)

    def test_days_must_be_positive(self):
        with pytest.raises(ValueError):
            SimulationConfig(days=0)

    def test_plans_need_positive_price(self):
        with pytest.raises(ValueError, match="positive price"):
            SimulationConfig(plans=(Plan("free", 0.0, 1.0),))

    def test_page_view_range(self):
        with pytest.raises(ValueError):
            SimulationConfig(min_page_views=0)
