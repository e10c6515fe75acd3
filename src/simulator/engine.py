"""Simulation engine that generates visitor journeys through a live experiment.

Each simulated visitor progresses through a funnel:
  page_view(s) -> click(s) -> experiment_assignment -> signup -> onboarding -> purchase

Variants are assigned through the AssignmentCoordinator exactly as a page
request would be, and every event emitted after assignment is tagged with
the visitor's assignments. Some visitors come back for a second session,
which exercises the stored (frozen) assignment path. Non-control variants
get a configurable uplift to purchase probability.

All randomness is seeded for full reproducibility.
"""

import hashlib
import random
from datetime import datetime, timedelta, timezone

from src.ab.assignment import AssignmentCoordinator
from src.ab.experiment import Experiment
from src.ab.store import InMemoryAssignmentStore
from src.collector.schemas import Event, EventType
from src.collector.tagging import tag_event
from src.simulator.config import SimulationConfig


def generate_events(
    config: SimulationConfig | None = None,
    experiment: Experiment | None = None,
    coordinator: AssignmentCoordinator | None = None,
) -> list[Event]:
    """Generate a full set of simulated visitor events.

    If an experiment is provided, each visitor is run through the
    coordinator and, when included, an experiment_assignment event is
    emitted. Returns a list of Event objects sorted by timestamp.
    """
    if config is None:
        config = SimulationConfig()
    if coordinator is None:
        coordinator = AssignmentCoordinator(InMemoryAssignmentStore())

    rng = random.Random(config.seed)
    all_events: list[Event] = []
    # End the simulation window 1 day before now to avoid future timestamps
    # (journeys can add a few hours of in-session time)
    end_time = datetime.now(timezone.utc) - timedelta(days=1)
    start_time = end_time - timedelta(days=config.days)

    for i in range(config.num_users):
        visitor_id = f"user_{i:05d}"
        all_events.extend(_simulate_journey(
            visitor_id, start_time, config, rng, experiment, coordinator,
        ))

    all_events.sort(key=lambda e: e.timestamp)
    return all_events


def _simulate_journey(
    visitor_id: str,
    start_time: datetime,
    config: SimulationConfig,
    rng: random.Random,
    experiment: Experiment | None,
    coordinator: AssignmentCoordinator,
) -> list[Event]:
    """Simulate a single visitor's journey through the funnel."""
    events: list[Event] = []
    assignments: dict[str, str] = {}
    current_time = start_time + timedelta(seconds=rng.randint(0, config.days * 86400))

    def emit(event_type: EventType, properties: dict) -> None:
        event = _make_event(visitor_id, event_type, current_time, rng, properties)
        events.append(tag_event(event, assignments))

    # --- Browsing ---
    for _ in range(rng.randint(config.min_page_views, config.max_page_views)):
        emit(EventType.PAGE_VIEW, {"page": rng.choice(config.pages)})
        current_time += timedelta(seconds=rng.randint(5, 120))

    for _ in range(rng.randint(config.min_clicks, config.max_clicks)):
        emit(EventType.CLICK, {"target": rng.choice(config.click_targets)})
        current_time += timedelta(seconds=rng.randint(2, 30))

    # --- Assignment (page served with the experiment) ---
    variant_id = None
    if experiment is not None:
        variant_id = coordinator.get_or_create_assignment(visitor_id, experiment)
        current_time += timedelta(seconds=rng.randint(1, 10))
        if variant_id is not None:
            # The stored set may lag if the write failed; this request still counts
            assignments = {
                **coordinator.list_assignments(visitor_id),
                experiment.experiment_id: variant_id,
            }
            emit(EventType.EXPERIMENT_ASSIGNMENT, {
                "experiment_id": experiment.experiment_id,
                "variant": variant_id,
            })

    # --- Return visit: the stored assignment must come back unchanged ---
    if experiment is not None and rng.random() < config.prob_return_visit:
        current_time += timedelta(seconds=rng.randint(*config.return_gap_seconds))
        coordinator.get_or_create_assignment(visitor_id, experiment)
        emit(EventType.PAGE_VIEW, {"page": rng.choice(config.pages)})

    # --- Signup (funnel gate) ---
    if rng.random() >= config.prob_signup:
        return events

    current_time += timedelta(seconds=rng.randint(10, 300))
    emit(EventType.SIGNUP, {"source": "web"})

    # --- Onboarding ---
    if rng.random() >= config.prob_onboarding:
        return events

    current_time += timedelta(seconds=rng.randint(60, 3600))
    for _ in range(rng.randint(2, 5)):
        emit(EventType.PAGE_VIEW, {"page": "/dashboard"})
        current_time += timedelta(seconds=rng.randint(10, 180))

    # --- Purchase (funnel gate) ---
    purchase_prob = config.prob_purchase
    is_control = experiment is not None and variant_id == experiment.control.variant_id
    if variant_id is not None and not is_control:
        purchase_prob = min(purchase_prob + config.treatment_uplift, 1.0)

    if rng.random() >= purchase_prob:
        return events

    current_time += timedelta(seconds=rng.randint(30, 600))
    plan = rng.choices(config.plans, weights=[p.weight for p in config.plans], k=1)[0]
    emit(EventType.PURCHASE, {"plan": plan.name, "amount": plan.price})
    return events


def _make_event(
    visitor_id: str,
    event_type: EventType,
    timestamp: datetime,
    rng: random.Random,
    properties: dict | None = None,
) -> Event:
    # Deterministic event ID derived from seeded RNG
    event_id = hashlib.md5(rng.randbytes(16)).hexdigest()
    return Event(
        event_id=event_id,
        user_id=visitor_id,
        event_type=event_type,
        timestamp=timestamp,
        properties=properties or {},
    )
