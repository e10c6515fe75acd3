"""Turn aggregated warehouse counts into an AnalysisResult.

The only I/O is the aggregation query behind ResultsSource. If it fails,
the caller gets the "No data available" result rather than an exception,
so a dashboard never renders a broken state.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from src.ab.experiment import Experiment, Goal, validate_for_activation
from src.analysis.stats import (
    AnalysisConfig,
    AnalysisResult,
    GoalStats,
    VariantStats,
    analyze,
    empty_result,
)

logger = logging.getLogger(__name__)

class AggregationQueryError(RuntimeError):
    """The analytics store could not answer the aggregation query."""


@dataclass(frozen=True)
class VariantCountRow:
    variant_id: str
    users: int
    conversions: int


@dataclass(frozen=True)
class GoalCountRow:
    variant_id: str
    goal_id: str
    conversions: int
    total_revenue: float | None = None


class ResultsSource(Protocol):
    """Per-variant aggregation over attributed events.

    An event is a hit for a goal when its type or properties.event_name
    equals the goal's event, or when it is an experiment_goal event whose
    properties.goal_id equals the goal's id. Goals are passed as
    (goal_id, event) pairs.
    """

    def fetch_variant_counts(
        self,
        experiment_id: str,
        goal_event: str,
        start: datetime | None = None,
        end: datetime | None = None,
        goal_id: str | None = None,
    ) -> list[VariantCountRow]: ...

    def fetch_goal_counts(
        self,
        experiment_id: str,
        goals: list[tuple[str, str]],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[GoalCountRow]: ...


def build_variant_stats(
    experiment: Experiment,
    rows: list[VariantCountRow],
    goal_rows: Sequence[GoalCountRow] = (),
) -> list[VariantStats]:
    """Align query rows with the experiment's declared variants.

    Configured variants missing from the rows are zero-filled; rows for
    variant ids the experiment does not declare are dropped.
    """
    by_variant = {}
    for row in rows:
        if experiment.variant(row.variant_id) is None:
            logger.debug(
                "Ignoring counts for unknown variant %s in %s",
                row.variant_id, experiment.experiment_id,
            )
            continue
        by_variant[row.variant_id] = row

    goals_by_id = {g.goal_id: g for g in experiment.goals}
    goal_hits: dict[str, list[GoalCountRow]] = {}
    for g in goal_rows:
        goal_hits.setdefault(g.variant_id, []).append(g)

    result = []
    for variant in experiment.variants:
        row = by_variant.get(variant.variant_id)
        users = row.users if row else 0
        conversions = row.conversions if row else 0
        if conversions > users:
            logger.warning(
                "Variant %s reports %d conversions for %d users; clamping",
                variant.variant_id, conversions, users,
            )
            conversions = users

        goals = []
        for hit in goal_hits.get(variant.variant_id, []):
            goal = goals_by_id.get(hit.goal_id)
            if goal is None:
                continue
            goals.append(_goal_stats(goal, hit, users))

        result.append(VariantStats(
            variant_id=variant.variant_id,
            name=variant.name,
            users=users,
            conversions=conversions,
            goals=tuple(sorted(goals, key=lambda g: (not g.is_primary, g.goal_id))),
        ))
    return result


def _goal_stats(goal: Goal, hit: GoalCountRow, users: int) -> GoalStats:
    conversions = min(hit.conversions, users)
    revenue = hit.total_revenue if hit.total_revenue else None
    return GoalStats(
        goal_id=goal.goal_id,
        name=goal.name,
        goal_type=goal.goal_type.value,
        is_primary=goal.is_primary,
        conversions=conversions,
        conversion_rate=conversions / users if users else 0.0,
        total_revenue=round(revenue, 2) if revenue is not None else None,
        avg_order_value=(
            round(revenue / conversions, 2) if revenue is not None and conversions else None
        ),
        revenue_per_visitor=round(revenue / users, 4) if revenue is not None and users else None,
    )


def days_running(experiment: Experiment, now: datetime | None = None) -> float | None:
    if experiment.started_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    elapsed = (now - experiment.started_at).total_seconds() / 86400
    return elapsed if elapsed > 0 else None


def analyze_experiment(
    experiment: Experiment,
    source: ResultsSource,
    config: AnalysisConfig | None = None,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> AnalysisResult:
    """Query the warehouse for an experiment's counts and analyze them.

    An experiment that could not be activated (fewer than two variants, no
    positive weight, not exactly one primary goal) yields the empty result
    without querying.
    """
    problems = validate_for_activation(experiment)
    if problems:
        logger.warning(
            "Not analyzing malformed experiment %s: %s",
            experiment.experiment_id, "; ".join(problems),
        )
        return empty_result(experiment.experiment_id)

    primary = experiment.primary_goal
    goals = [(g.goal_id, g.event) for g in experiment.goals]

    try:
        rows = source.fetch_variant_counts(
            experiment.experiment_id, primary.event, start, end, goal_id=primary.goal_id,
        )
        goal_rows = source.fetch_goal_counts(experiment.experiment_id, goals, start, end)
    except Exception:
        # Any query failure degrades to an empty result for the dashboard
        logger.exception("Aggregation query failed for %s", experiment.experiment_id)
        return empty_result(experiment.experiment_id)

    if not rows:
        return empty_result(experiment.experiment_id)

    try:
        variant_stats = build_variant_stats(experiment, rows, goal_rows)
    except ValueError as exc:
        logger.warning("Unusable counts for %s: %s", experiment.experiment_id, exc)
        return empty_result(experiment.experiment_id)

    return analyze(
        variant_stats,
        config,
        experiment_id=experiment.experiment_id,
        days_running=days_running(experiment, now),
    )


class ResultsCache:
    """Short-lived in-process cache of analysis results.

    Keys are (experiment_id, start, end). Entries expire after ttl_seconds;
    the oldest entry is evicted beyond max_entries. Process-local: each
    worker keeps its own copy.
    """

    def __init__(self, ttl_seconds: float = 30, max_entries: int = 30, clock=time.monotonic):
        self._ttl = ttl_seconds
        self._max = max_entries
        self._clock = clock
        self._entries: OrderedDict[tuple, tuple[float, AnalysisResult]] = OrderedDict()
        self._lock = threading.Lock()

    def get_or_compute(self, experiment_id: str, compute, start=None, end=None) -> AnalysisResult:
        key = (experiment_id, start, end)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self._ttl:
                self._entries.move_to_end(key)
                return entry[1]

        result = compute()
        with self._lock:
            self._entries[key] = (now, result)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max:
                self._entries.popitem(last=False)
        return result

    def invalidate(self, experiment_id: str) -> None:
        with self._lock:
            for key in [k for k in self._entries if k[0] == experiment_id]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
