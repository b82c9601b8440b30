"""
Plan catalog — tiers ordenados, intervalos de cobranca e classificacao de
mudancas de plano.

Tier e intervalo sao eixos independentes: ``pro_monthly`` e ``pro_yearly``
compartilham o tier PRO e diferem so no intervalo.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Any, Optional


class PlanTier(IntEnum):
    """Ordered billing tier: FREE < PRO < MAX."""

    FREE = 0
    PRO = 1
    MAX = 2


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


INTERVAL_DAYS: dict[BillingInterval, int] = {
    BillingInterval.MONTHLY: 30,
    BillingInterval.YEARLY: 365,
}


class Plan(str, Enum):
    """Planos vendaveis; ``free`` usa ciclo mensal para fins de periodo."""

    FREE = "free"
    PRO_MONTHLY = "pro_monthly"
    PRO_YEARLY = "pro_yearly"
    MAX_MONTHLY = "max_monthly"
    MAX_YEARLY = "max_yearly"

    @property
    def tier(self) -> PlanTier:
        return _PLAN_SHAPE[self][0]

    @property
    def interval(self) -> BillingInterval:
        return _PLAN_SHAPE[self][1]

    @property
    def is_paid(self) -> bool:
        return self.tier > PlanTier.FREE


_PLAN_SHAPE: dict[Plan, tuple[PlanTier, BillingInterval]] = {
    Plan.FREE: (PlanTier.FREE, BillingInterval.MONTHLY),
    Plan.PRO_MONTHLY: (PlanTier.PRO, BillingInterval.MONTHLY),
    Plan.PRO_YEARLY: (PlanTier.PRO, BillingInterval.YEARLY),
    Plan.MAX_MONTHLY: (PlanTier.MAX, BillingInterval.MONTHLY),
    Plan.MAX_YEARLY: (PlanTier.MAX, BillingInterval.YEARLY),
}


class PlanChange(str, Enum):
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    BILLING_CHANGED = "billing_changed"
    NO_CHANGE = "no_change"


# Features por tier (gates de acesso leem plano + status atuais)
PLAN_FEATURES: dict[PlanTier, dict[str, Any]] = {
    PlanTier.FREE: {
        "match_analyses_per_week": 10,
        "shot_success_percentage": True,
        "basic_shot_classification": True,
        "full_shot_breakdown": False,
        "movement_heatmaps": False,
        "average_speed": False,
        "distance_covered": True,
        "calories_burned": True,
        "community_feed_access": True,
        "leaderboard_access": True,
        "processing_speed": "standard",
        "early_feature_access": False,
    },
    PlanTier.PRO: {
        "match_analyses_per_week": 30,
        "shot_success_percentage": True,
        "basic_shot_classification": True,
        "full_shot_breakdown": True,
        "movement_heatmaps": True,
        "average_speed": True,
        "distance_covered": True,
        "calories_burned": True,
        "community_feed_access": True,
        "leaderboard_access": True,
        "processing_speed": "fast",
        "early_feature_access": True,
    },
    PlanTier.MAX: {
        # -1 = ilimitado
        "match_analyses_per_week": -1,
        "shot_success_percentage": True,
        "basic_shot_classification": True,
        "full_shot_breakdown": True,
        "movement_heatmaps": True,
        "average_speed": True,
        "distance_covered": True,
        "calories_burned": True,
        "community_feed_access": True,
        "leaderboard_access": True,
        "processing_speed": "fastest",
        "early_feature_access": True,
        "advanced_analytics": True,
        "custom_reports": True,
    },
}


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    """Converte string em Plan; None se ausente ou desconhecido."""
    if not value:
        return None
    try:
        return Plan(value)
    except ValueError:
        return None


def compare_tiers(previous: PlanTier, new: PlanTier) -> int:
    """Total order on tiers: -1 if previous < new, 0 if equal, 1 if greater."""
    if previous < new:
        return -1
    if previous > new:
        return 1
    return 0


def classify_plan_change(previous: Optional[Plan], new: Plan) -> PlanChange:
    """
    Classify a plan change for the history ledger.

    ``previous=None`` (sem assinatura anterior) conta como tier FREE.
    """
    if previous == new:
        return PlanChange.NO_CHANGE

    previous_tier = previous.tier if previous is not None else PlanTier.FREE
    order = compare_tiers(previous_tier, new.tier)
    if order < 0:
        return PlanChange.UPGRADED
    if order > 0:
        return PlanChange.DOWNGRADED
    if previous is not None and previous.interval != new.interval:
        return PlanChange.BILLING_CHANGED
    return PlanChange.NO_CHANGE


def period_end_for(plan: Plan, start: datetime) -> datetime:
    """End of the billing period starting at ``start`` (30 or 365 days)."""
    return start + timedelta(days=INTERVAL_DAYS[plan.interval])


def features_for(plan: Plan) -> dict[str, Any]:
    return dict(PLAN_FEATURES[plan.tier])
