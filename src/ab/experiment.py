"""Experiment definitions and lifecycle.

Each experiment has a unique ID, an ordered list of variants with relative
traffic weights, a traffic-allocation percentage and a set of goals.
The first declared variant is the control. Declaration order is part of
the experiment's identity: bucketing walks the weights in that order.
"""

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ExperimentConfigError(ValueError):
    """Raised for a malformed experiment definition."""


class ExperimentStatus(str, Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class GoalType(str, Enum):
    CLICK = "click"
    PAGEVIEW = "pageview"
    FORM_SUBMIT = "form_submit"
    CUSTOM_EVENT = "custom_event"
    SCROLL_DEPTH = "scroll_depth"
    TIME_ON_PAGE = "time_on_page"
    REVENUE = "revenue"


@dataclass(frozen=True)
class Variant:
    variant_id: str
    name: str
    weight: float = 1.0  # Relative; normalized against the other variants
    description: str = ""


@dataclass(frozen=True)
class Goal:
    goal_id: str
    name: str
    goal_type: GoalType = GoalType.CUSTOM_EVENT
    is_primary: bool = False
    # Event the warehouse counts as a hit for this goal
    event_name: str | None = None

    @property
    def event(self) -> str:
        return self.event_name or self.goal_id


# Allowed lifecycle moves; anything else is a configuration error
_TRANSITIONS = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING},
    ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED},
    ExperimentStatus.COMPLETED: set(),
}


@dataclass(frozen=True)
class Experiment:
    experiment_id: str
    name: str
    variants: tuple[Variant, ...]
    traffic_percentage: float = 100
    status: ExperimentStatus = ExperimentStatus.DRAFT
    goals: tuple[Goal, ...] = field(default_factory=tuple)
    started_at: datetime | None = None

    def __post_init__(self):
        # Accept lists for convenience but store tuples so the dataclass stays hashable
        object.__setattr__(self, "variants", tuple(self.variants))
        object.__setattr__(self, "goals", tuple(self.goals))
        object.__setattr__(self, "status", ExperimentStatus(self.status))

        for v in self.variants:
            if not math.isfinite(v.weight) or v.weight < 0:
                raise ExperimentConfigError(
                    f"Variant {v.variant_id} has invalid weight {v.weight}"
                )
        ids = [v.variant_id for v in self.variants]
        if len(ids) != len(set(ids)):
            raise ExperimentConfigError("Variant ids must be unique")
        goal_ids = [g.goal_id for g in self.goals]
        if len(goal_ids) != len(set(goal_ids)):
            raise ExperimentConfigError("Goal ids must be unique")
        if not 0 <= self.traffic_percentage <= 100:
            raise ExperimentConfigError(
                f"Traffic percentage must be within 0-100, got {self.traffic_percentage}"
            )
        if self.started_at is not None and self.started_at.tzinfo is None:
            raise ExperimentConfigError(
                f"started_at must be timezone-aware for {self.experiment_id}"
            )

    @property
    def control(self) -> Variant | None:
        return self.variants[0] if self.variants else None

    @property
    def primary_goal(self) -> Goal | None:
        primaries = [g for g in self.goals if g.is_primary]
        return primaries[0] if len(primaries) == 1 else None

    @property
    def weights(self) -> list[float]:
        return [v.weight for v in self.variants]

    @property
    def variant_ids(self) -> list[str]:
        return [v.variant_id for v in self.variants]

    @property
    def is_running(self) -> bool:
        return self.status == ExperimentStatus.RUNNING

    def variant(self, variant_id: str) -> Variant | None:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v
        return None


def validate_for_activation(experiment: Experiment) -> list[str]:
    """Return the problems that block this experiment from running (empty = ok)."""
    errors = []
    if len(experiment.variants) < 2:
        errors.append("Experiment must have at least 2 variants")
    elif sum(experiment.weights) <= 0:
        errors.append("At least one variant must have a positive weight")

    primaries = [g for g in experiment.goals if g.is_primary]
    if len(primaries) != 1:
        errors.append(
            f"Experiment must have exactly one primary goal, found {len(primaries)}"
        )
    return errors


def activate(experiment: Experiment, now: datetime | None = None) -> Experiment:
    """Validate and move an experiment into the running state.

    Malformed experiments are rejected here so that assignment and
    analysis never see them.
    """
    errors = validate_for_activation(experiment)
    if errors:
        raise ExperimentConfigError(
            f"Cannot activate {experiment.experiment_id}: " + "; ".join(errors)
        )
    started_at = experiment.started_at or now or datetime.now(timezone.utc)
    return dataclasses.replace(
        experiment, status=ExperimentStatus.RUNNING, started_at=started_at,
    )


def transition(
    experiment: Experiment,
    status: ExperimentStatus,
    now: datetime | None = None,
) -> Experiment:
    status = ExperimentStatus(status)
    if status not in _TRANSITIONS[experiment.status]:
        raise ExperimentConfigError(
            f"Cannot move {experiment.experiment_id} from "
            f"{experiment.status.value} to {status.value}"
        )
    if status == ExperimentStatus.RUNNING:
        return activate(experiment, now)
    return dataclasses.replace(experiment, status=status)


# Default experiment used by the simulator
PRICING_PAGE_EXPERIMENT = Experiment(
    experiment_id="exp_pricing_page_v1",
    name="Pricing Page Redesign",
    variants=(
        Variant(variant_id="control", name="Control", weight=50),
        Variant(variant_id="treatment", name="New Pricing Page", weight=50),
    ),
    status=ExperimentStatus.RUNNING,
    goals=(
        Goal("goal_purchase", "Purchase", GoalType.REVENUE, is_primary=True, event_name="purchase"),
        Goal("goal_signup", "Signup", GoalType.CUSTOM_EVENT, event_name="signup"),
    ),
)
