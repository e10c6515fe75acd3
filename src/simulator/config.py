"""Knobs for the synthetic traffic generator.

The defaults describe a pricing-page test on a SaaS site: visitors browse,
some are served the experiment, a share sign up and a smaller share buy a
plan. Rates are high enough that a few thousand visitors produce a
readable analysis.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Plan:
    name: str
    price: float
    # Relative popularity among purchasers
    weight: float


DEFAULT_PLANS = (
    Plan("starter", 29.0, 0.6),
    Plan("pro", 99.0, 0.3),
    Plan("enterprise", 299.0, 0.1),
)


@dataclass(frozen=True)
class SimulationConfig:
    num_users: int = 2000
    days: int = 14
    seed: int = 42

    # Conditional on reaching the previous step
    prob_signup: float = 0.30
    prob_onboarding: float = 0.70
    prob_purchase: float = 0.15
    # Added to purchase probability for every non-control variant
    treatment_uplift: float = 0.08
    # Second session; the variant comes back from the assignment store
    prob_return_visit: float = 0.40
    return_gap_seconds: tuple[int, int] = (600, 7200)

    min_page_views: int = 1
    max_page_views: int = 8
    min_clicks: int = 0
    max_clicks: int = 5

    pages: tuple[str, ...] = ("/", "/features", "/pricing", "/docs", "/blog", "/about")
    click_targets: tuple[str, ...] = (
        "cta_hero", "cta_pricing", "nav_features", "nav_docs", "footer_signup",
    )
    plans: tuple[Plan, ...] = DEFAULT_PLANS

    def __post_init__(self):
        for name in ("prob_signup", "prob_onboarding", "prob_purchase", "prob_return_visit"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        if self.num_users < 0 or self.days < 1:
            raise ValueError("num_users must be >= 0 and days >= 1")
        if not self.plans or any(p.price <= 0 or p.weight < 0 for p in self.plans):
            raise ValueError("plans need a positive price and a non-negative weight")
        if self.min_page_views < 1 or self.max_page_views < self.min_page_views:
            raise ValueError("page view range must start at 1 or more")
