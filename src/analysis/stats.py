"""Statistical analysis for A/B experiments.

The first declared variant is the control. Every other variant is compared
to it with a pooled two-proportion z-test. The result carries per-variant
comparisons plus a headline verdict: significance, confidence, lift, a
winner (if any), the per-arm sample size needed for the configured power
and minimum detectable effect, and an estimate of the days still needed.

Analysis is pure: the same VariantStats snapshot always produces the same
AnalysisResult, so results can be cached and compared in tests.

Confidence levels are directional. A variant's confidence is the two-tailed
confidence that it improves on control (100 * (1 - p) when z > 0) and 0
when it is not ahead, so adding conversions to a variant never lowers its
confidence.

Repeatedly checking significance while data accumulates ("peeking")
inflates the false-positive rate. No sequential correction is applied;
the per-arm sample floor and the minimum sample size are the guard rails.
"""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from scipy import stats

logger = logging.getLogger(__name__)

DEFAULT_MIN_USERS_PER_ARM = 100
NO_DATA_MESSAGE = "No data available"
NO_COMPARISON_MESSAGE = "Nothing to compare against control: the experiment has a single variant"


@dataclass(frozen=True)
class GoalStats:
    """Hits for one secondary goal within one variant."""

    goal_id: str
    name: str
    goal_type: str
    is_primary: bool
    conversions: int
    conversion_rate: float
    total_revenue: float | None = None
    avg_order_value: float | None = None
    revenue_per_visitor: float | None = None


@dataclass(frozen=True)
class VariantStats:
    """Raw counts for one variant."""

    variant_id: str
    users: int
    conversions: int
    name: str = ""
    goals: tuple[GoalStats, ...] = ()

    def __post_init__(self):
        if self.users < 0 or self.conversions < 0:
            raise ValueError(f"Negative counts for variant {self.variant_id}")
        if self.conversions > self.users:
            raise ValueError(
                f"Variant {self.variant_id} has more conversions ({self.conversions}) "
                f"than users ({self.users})"
            )

    @property
    def conversion_rate(self) -> float:
        return conversion_rate(self.users, self.conversions)

    @property
    def display_name(self) -> str:
        return self.name or self.variant_id


@dataclass(frozen=True)
class VariantComparison:
    """One non-control variant tested against control."""

    variant_id: str
    z_score: float
    p_value: float
    confidence_level: float     # 0-100, confidence the variant beats control
    lift: float | None          # percent; None when control rate is 0
    is_significant: bool


@dataclass(frozen=True)
class AnalysisConfig:
    minimum_detectable_effect: float = 0.02   # absolute rate difference
    significance_level: float = 0.05          # alpha
    power: float = 0.8
    # Significance is never declared while either arm is below this
    min_users_per_arm: int = DEFAULT_MIN_USERS_PER_ARM
    # Assumed pooled rate for sample sizing; 0.5 is the worst case
    baseline_rate: float = 0.5
    trending_confidence: float = 80.0
    # Divide alpha by the number of comparisons in multi-variant tests
    bonferroni: bool = False

    def validate(self) -> None:
        if not 0 < self.significance_level < 1:
            raise ValueError(f"significance_level must be in (0, 1), got {self.significance_level}")
        if not 0 < self.power < 1:
            raise ValueError(f"power must be in (0, 1), got {self.power}")
        if not 0 < self.minimum_detectable_effect < 1:
            raise ValueError(
                f"minimum_detectable_effect must be in (0, 1), got {self.minimum_detectable_effect}"
            )
        if not 0 < self.baseline_rate < 1:
            raise ValueError(f"baseline_rate must be in (0, 1), got {self.baseline_rate}")
        if self.min_users_per_arm < 1:
            raise ValueError(f"min_users_per_arm must be >= 1, got {self.min_users_per_arm}")


@dataclass(frozen=True)
class AnalysisResult:
    experiment_id: str
    variants: tuple[VariantStats, ...]
    total_users: int
    is_significant: bool
    confidence_level: float
    lift: float | None
    winner: str | None
    status_message: str
    minimum_sample_size: int        # per arm
    days_to_significance: int | None
    comparisons: tuple[VariantComparison, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        """JSON-ready representation."""
        return {
            "experiment_id": self.experiment_id,
            "total_users": self.total_users,
            "is_significant": self.is_significant,
            "confidence_level": self.confidence_level,
            "lift": self.lift,
            "winner": self.winner,
            "status_message": self.status_message,
            "minimum_sample_size": self.minimum_sample_size,
            "days_to_significance": self.days_to_significance,
            "variants": [
                {
                    "variant_id": v.variant_id,
                    "name": v.display_name,
                    "users": v.users,
                    "conversions": v.conversions,
                    "conversion_rate": round(v.conversion_rate, 6),
                    "goals": [
                        {
                            "goal_id": g.goal_id,
                            "name": g.name,
                            "goal_type": g.goal_type,
                            "is_primary": g.is_primary,
                            "conversions": g.conversions,
                            "conversion_rate": round(g.conversion_rate, 6),
                            "total_revenue": g.total_revenue,
                            "avg_order_value": g.avg_order_value,
                            "revenue_per_visitor": g.revenue_per_visitor,
                        }
                        for g in v.goals
                    ],
                }
                for v in self.variants
            ],
            "comparisons": [
                {
                    "variant_id": c.variant_id,
                    "z_score": c.z_score,
                    "p_value": c.p_value,
                    "confidence_level": c.confidence_level,
                    "lift": c.lift,
                    "is_significant": c.is_significant,
                }
                for c in self.comparisons
            ],
        }


# ---------------------------------------------------------------------------
# Core statistics
# ---------------------------------------------------------------------------

def conversion_rate(users: int, conversions: int) -> float:
    if users <= 0:
        return 0.0
    return conversions / users


def z_score(control: VariantStats, variant: VariantStats) -> float:
    """Pooled two-proportion z-statistic; positive means the variant is ahead.

    Returns 0.0 whenever the test is undefined (an empty arm, or a pooled
    rate of exactly 0 or 1).
    """
    n_c, n_v = control.users, variant.users
    if n_c == 0 or n_v == 0:
        return 0.0

    p_pool = (control.conversions + variant.conversions) / (n_c + n_v)
    if p_pool <= 0 or p_pool >= 1:
        return 0.0

    se = math.sqrt(p_pool * (1 - p_pool) * (1 / n_c + 1 / n_v))
    if se == 0:
        return 0.0
    return (variant.conversion_rate - control.conversion_rate) / se


def p_value(z: float) -> float:
    """Two-tailed p-value for a z-statistic."""
    return float(2 * stats.norm.sf(abs(z)))


def confidence_level(z: float) -> float:
    """Confidence (0-100) that the variant improves on control."""
    if z <= 0:
        return 0.0
    return 100.0 * (1.0 - p_value(z))


def calculate_lift(control_rate: float, variant_rate: float) -> float | None:
    """Relative improvement in percent, or None when control has no conversions."""
    if control_rate <= 0:
        return None
    return (variant_rate - control_rate) / control_rate * 100


def calculate_minimum_sample_size(
    alpha: float = 0.05,
    power: float = 0.8,
    minimum_detectable_effect: float = 0.02,
    baseline_rate: float = 0.5,
) -> int:
    """Users needed per arm to detect an absolute rate difference.

    n = 2 * (z_{1-alpha/2} + z_{power})^2 * p(1-p) / delta^2

    Pure function of its inputs; the default baseline of 0.5 maximizes
    p(1-p) and so never under-sizes the test.
    """
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    if not 0 < power < 1:
        raise ValueError(f"power must be in (0, 1), got {power}")
    if minimum_detectable_effect <= 0:
        raise ValueError(
            f"minimum_detectable_effect must be positive, got {minimum_detectable_effect}"
        )
    if not 0 < baseline_rate < 1:
        raise ValueError(f"baseline_rate must be in (0, 1), got {baseline_rate}")

    z_alpha = stats.norm.ppf(1 - alpha / 2)
    z_power = stats.norm.ppf(power)
    variance = baseline_rate * (1 - baseline_rate)
    n = 2 * (z_alpha + z_power) ** 2 * variance / minimum_detectable_effect ** 2
    return int(math.ceil(n))


def estimate_days_to_significance(
    minimum_sample_size: int,
    total_users: int,
    days_running: float | None,
    num_variants: int = 1,
) -> int | None:
    """Days until the required sample is reached at the observed enrollment rate.

    0 once the sample is reached; None when no enrollment rate can be
    observed yet. Never negative or infinite.
    """
    required = minimum_sample_size * max(num_variants, 1)
    if total_users >= required:
        return 0
    if not days_running or days_running <= 0 or total_users <= 0:
        return None
    daily_rate = total_users / days_running
    return int(math.ceil((required - total_users) / daily_rate))


def compare(
    control: VariantStats,
    variant: VariantStats,
    config: AnalysisConfig,
    alpha: float | None = None,
) -> VariantComparison:
    alpha = config.significance_level if alpha is None else alpha
    z = z_score(control, variant)
    confidence = confidence_level(z)
    enough_data = min(control.users, variant.users) >= config.min_users_per_arm
    return VariantComparison(
        variant_id=variant.variant_id,
        z_score=round(z, 4),
        p_value=round(p_value(z), 6),
        confidence_level=round(confidence, 2),
        lift=_round_or_none(calculate_lift(control.conversion_rate, variant.conversion_rate), 2),
        is_significant=enough_data and confidence > 100 * (1 - alpha),
    )


def status_message(
    total_users: int,
    enough_data: bool,
    is_significant: bool,
    confidence: float,
    winner: str | None,
    leader: str | None,
    config: AnalysisConfig | None = None,
    compared: bool = True,
) -> str:
    """User-facing classification of an analysis outcome."""
    config = config or AnalysisConfig()
    if total_users == 0:
        return NO_DATA_MESSAGE
    if not compared:
        return NO_COMPARISON_MESSAGE
    if not enough_data:
        return (
            f"Not enough data: need at least {config.min_users_per_arm} "
            f"users per variant"
        )
    if is_significant and winner:
        return f"Significant winner: {winner} ({confidence:.1f}% confidence)"
    if is_significant:
        return (
            f"Significant difference at {confidence:.1f}% confidence, "
            f"but no single winner yet"
        )
    if leader and confidence >= config.trending_confidence:
        return f"Trending toward {leader} ({confidence:.1f}% confidence). Keep the test running."
    return "No significant difference detected yet. Keep the test running."


def empty_result(
    experiment_id: str,
    variants: Sequence[VariantStats] = (),
    minimum_sample_size: int = 0,
) -> AnalysisResult:
    """The degraded result shown when there is nothing (valid) to analyze."""
    return AnalysisResult(
        experiment_id=experiment_id,
        variants=tuple(variants),
        total_users=0,
        is_significant=False,
        confidence_level=0.0,
        lift=None,
        winner=None,
        status_message=NO_DATA_MESSAGE,
        minimum_sample_size=minimum_sample_size,
        days_to_significance=None,
    )


# ---------------------------------------------------------------------------
# Full analysis
# ---------------------------------------------------------------------------

def analyze(
    variant_stats: Sequence[VariantStats],
    config: AnalysisConfig | None = None,
    *,
    experiment_id: str = "",
    days_running: float | None = None,
) -> AnalysisResult:
    """Produce a verdict from per-variant counts.

    Args:
        variant_stats: Counts in declaration order; the first is control.
        config: Test parameters. An invalid config degrades to the empty result.
        experiment_id: Carried through to the result.
        days_running: Elapsed days, used for the enrollment-rate estimate.
    """
    config = config or AnalysisConfig()
    try:
        config.validate()
    except ValueError as exc:
        logger.warning("Invalid analysis config for %s: %s", experiment_id, exc)
        return empty_result(experiment_id, variant_stats)

    variants = tuple(variant_stats)
    min_sample = calculate_minimum_sample_size(
        config.significance_level,
        config.power,
        config.minimum_detectable_effect,
        config.baseline_rate,
    )
    total_users = sum(v.users for v in variants)
    if not variants or total_users == 0:
        return empty_result(experiment_id, variants, min_sample)

    control, others = variants[0], variants[1:]
    alpha = config.significance_level
    if config.bonferroni and len(others) > 1:
        alpha = alpha / len(others)

    comparisons = tuple(compare(control, v, config, alpha) for v in others)
    by_id = {c.variant_id: c for c in comparisons}

    significant = [v for v in others if by_id[v.variant_id].is_significant]
    significant.sort(key=lambda v: v.conversion_rate, reverse=True)

    if significant:
        headline = significant[0]
    else:
        with_data = [v for v in others if v.users > 0]
        headline = max(with_data, key=lambda v: v.conversion_rate) if with_data else None

    winner = _pick_winner(significant, config, alpha)
    headline_cmp = by_id[headline.variant_id] if headline else None

    is_significant = headline_cmp.is_significant if headline_cmp else False
    confidence = headline_cmp.confidence_level if headline_cmp else 0.0
    lift = headline_cmp.lift if headline_cmp else None

    enough_data = headline is not None and (
        min(control.users, headline.users) >= config.min_users_per_arm
    )
    winner_name = next(
        (v.display_name for v in others if v.variant_id == winner), None,
    )
    message = status_message(
        total_users,
        enough_data,
        is_significant,
        confidence,
        winner_name,
        headline.display_name if headline else None,
        config,
        compared=bool(others),
    )

    return AnalysisResult(
        experiment_id=experiment_id,
        variants=variants,
        total_users=total_users,
        is_significant=is_significant,
        confidence_level=confidence,
        lift=lift,
        winner=winner,
        status_message=message,
        minimum_sample_size=min_sample,
        days_to_significance=estimate_days_to_significance(
            min_sample, total_users, days_running, num_variants=len(variants),
        ),
        comparisons=comparisons,
    )


def _pick_winner(
    significant: list[VariantStats],
    config: AnalysisConfig,
    alpha: float,
) -> str | None:
    """Best significant variant, unless the runner-up is within noise of it."""
    if not significant:
        return None
    top = significant[0]
    if len(significant) > 1:
        runner_up = significant[1]
        if runner_up.conversion_rate == top.conversion_rate:
            return None
        # Treat the runner-up as the baseline and test the leader against it
        head_to_head = compare(runner_up, top, config, alpha)
        if not head_to_head.is_significant:
            return None
    return top.variant_id


def _round_or_none(value: float | None, digits: int) -> float | None:
    return None if value is None else round(value, digits)


def format_report(result: AnalysisResult) -> str:
    """Format an analysis result as a human-readable report."""
    lines = [
        f"{'=' * 60}",
        f"EXPERIMENT ANALYSIS: {result.experiment_id}",
        f"{'=' * 60}",
        "",
        "VARIANT SUMMARY",
    ]
    for i, v in enumerate(result.variants):
        role = "control" if i == 0 else "variant"
        lines.append(
            f"  {v.display_name} ({role}): {v.conversions}/{v.users} "
            f"= {v.conversion_rate:.2%} conversion rate"
        )
        for g in v.goals:
            if not g.is_primary:
                lines.append(f"      {g.name}: {g.conversions} ({g.conversion_rate:.2%})")

    lift = f"{result.lift:+.1f}%" if result.lift is not None else "n/a"
    days = (
        str(result.days_to_significance)
        if result.days_to_significance is not None else "unknown"
    )
    lines += [
        "",
        "STATISTICAL RESULTS",
        f"  Total users:      {result.total_users:,}",
        f"  Confidence:       {result.confidence_level:.1f}%",
        f"  Lift:             {lift}",
        f"  Significant:      {'YES' if result.is_significant else 'NO'}",
        f"  Winner:           {result.winner or '-'}",
        f"  Sample per arm:   {result.minimum_sample_size:,}",
        f"  Days remaining:   {days}",
        "",
        f"STATUS: {result.status_message}",
        f"{'=' * 60}",
    ]
    return "\n".join(lines)
