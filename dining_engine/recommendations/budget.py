"""
Budget impact calculator.

Frames each candidate's estimated cost against the user's daily allowance
(remaining budget spread over the days left in the period) as an
"investment": within budget, a small stretch, or one to save for later.
"""
from __future__ import annotations

from collections import Counter

from ..errors import ValidationError
from .models import (
    BudgetImpact,
    BudgetImpactSummary,
    BudgetPeriod,
    CandidateBudgetImpact,
    ImpactMessage,
)

IMPACT_MESSAGES: dict[BudgetImpact, ImpactMessage] = {
    BudgetImpact.within_budget: ImpactMessage.smart_investment,
    BudgetImpact.small_stretch: ImpactMessage.worthwhile_stretch,
    BudgetImpact.save_for_later: ImpactMessage.plan_ahead,
}


def daily_allowance(remaining_budget: float, days_remaining: int) -> float:
    if days_remaining < 1:
        raise ValidationError(f"days_remaining must be at least 1, got {days_remaining}")
    return max(0.0, remaining_budget) / days_remaining


def classify(
    estimated_cost: float, allowance: float, stretch_ratio: float = 0.20,
) -> BudgetImpact:
    if estimated_cost < 0:
        raise ValidationError(f"estimated_cost must be non-negative, got {estimated_cost}")
    overage = estimated_cost - allowance
    if overage <= 0:
        return BudgetImpact.within_budget
    if overage < allowance * stretch_ratio:
        return BudgetImpact.small_stretch
    return BudgetImpact.save_for_later


def assess(
    restaurant_id: str,
    estimated_cost: float,
    period: BudgetPeriod,
    stretch_ratio: float = 0.20,
) -> CandidateBudgetImpact:
    allowance = daily_allowance(period.remaining_budget, period.days_remaining)
    impact = classify(estimated_cost, allowance, stretch_ratio)
    return CandidateBudgetImpact(
        restaurant_id=restaurant_id,
        estimated_cost=round(estimated_cost, 2),
        daily_allowance=round(allowance, 2),
        overage=round(max(0.0, estimated_cost - allowance), 2),
        impact=impact,
        message=IMPACT_MESSAGES[impact],
    )


def summarize(
    costs: list[tuple[str, float]],
    period: BudgetPeriod,
    stretch_ratio: float = 0.20,
) -> BudgetImpactSummary:
    """Assess every (restaurant_id, estimated_cost) pair, in the given order.

    The headline message follows the first (top-ranked) candidate.
    """
    assessments = [assess(rid, cost, period, stretch_ratio) for rid, cost in costs]
    counts = Counter(a.impact for a in assessments)
    return BudgetImpactSummary(
        daily_allowance=round(daily_allowance(period.remaining_budget, period.days_remaining), 2),
        remaining_budget=period.remaining_budget,
        days_remaining=period.days_remaining,
        headline=assessments[0].message if assessments else None,
        counts={impact: counts.get(impact, 0) for impact in BudgetImpact},
        candidates=assessments,
    )
