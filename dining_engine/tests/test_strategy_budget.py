from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dining_engine.errors import ValidationError
from dining_engine.recommendations.budget import assess, classify, daily_allowance, summarize
from dining_engine.recommendations.config import STRATEGY_WEIGHTS
from dining_engine.recommendations.models import (
    BudgetImpact,
    BudgetPeriod,
    FilterContext,
    ImpactMessage,
    MealTime,
    RestaurantRecord,
    Strategy,
    meal_time_for,
)
from dining_engine.recommendations.strategy import (
    estimated_meal_cost,
    plan_for,
    prefilter,
    select_strategy,
)

EVENING = datetime(2026, 3, 2, 19, 0, tzinfo=timezone.utc)
MORNING = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _restaurant(rid: str, price_tier: int = 2, **kwargs) -> RestaurantRecord:
    return RestaurantRecord(
        id=rid, location={"lat": 0.0, "lng": 0.0}, price_tier=price_tier, **kwargs,
    )


# ── Strategy selection ───────────────────────────────────────────────────


def test_meal_time_slots():
    assert meal_time_for(MORNING) is MealTime.breakfast
    assert meal_time_for(EVENING) is MealTime.dinner
    assert meal_time_for(datetime(2026, 3, 2, 23, 30)) is MealTime.late_night
    assert FilterContext(now=EVENING).meal_time is MealTime.dinner


def test_short_time_wins_over_everything():
    ctx = FilterContext(now=MORNING, mood="healthy", budget_constraint=10, time_available_minutes=20)
    assert select_strategy(ctx) is Strategy.quick_meal


def test_healthy_mood_or_breakfast_before_budget():
    assert select_strategy(FilterContext(now=EVENING, mood="Healthy", budget_constraint=10)) is Strategy.healthy_focus
    assert select_strategy(FilterContext(now=MORNING, budget_constraint=10)) is Strategy.healthy_focus


def test_budget_then_exploration_default():
    assert select_strategy(FilterContext(now=EVENING, budget_constraint=30)) is Strategy.budget_conscious
    assert select_strategy(FilterContext(now=EVENING, time_available_minutes=90)) is Strategy.exploration


def test_plan_carries_strategy_weights():
    plan = plan_for(FilterContext(now=EVENING, budget_constraint=30))
    assert plan.weights == STRATEGY_WEIGHTS[Strategy.budget_conscious]


def test_quick_meal_prefilter_keeps_fast_and_unknown_wait():
    ctx = FilterContext(now=EVENING, time_available_minutes=30)
    restaurants = [
        _restaurant("fast", average_wait_minutes=10),
        _restaurant("slow", average_wait_minutes=45),
        _restaurant("unknown"),
    ]
    kept = prefilter(Strategy.quick_meal, restaurants, ctx)
    assert [r.id for r in kept] == ["fast", "unknown"]


def test_budget_prefilter_uses_meal_cost_or_tier_estimate():
    ctx = FilterContext(now=EVENING, budget_constraint=30)
    restaurants = [
        _restaurant("cheap", price_tier=4, average_meal_cost=20),
        _restaurant("tier2", price_tier=2),
        _restaurant("tier3", price_tier=3),
    ]
    assert estimated_meal_cost(restaurants[1]) == 25.0
    kept = prefilter(Strategy.budget_conscious, restaurants, ctx)
    assert [r.id for r in kept] == ["cheap", "tier2"]


def test_exploration_prefilter_keeps_all():
    restaurants = [_restaurant("a"), _restaurant("b")]
    assert prefilter(Strategy.exploration, restaurants, FilterContext(now=EVENING)) == restaurants


# ── Budget impact ────────────────────────────────────────────────────────


def test_daily_allowance():
    assert daily_allowance(100.0, 4) == 25.0
    assert daily_allowance(-10.0, 2) == 0.0
    with pytest.raises(ValidationError):
        daily_allowance(100.0, 0)


def test_classification_thresholds():
    assert classify(20.0, 25.0) is BudgetImpact.within_budget
    assert classify(25.0, 25.0) is BudgetImpact.within_budget
    assert classify(29.0, 25.0) is BudgetImpact.small_stretch
    assert classify(30.0, 25.0) is BudgetImpact.save_for_later
    with pytest.raises(ValidationError):
        classify(-1.0, 25.0)


def test_assess_reports_overage_and_message():
    impact = assess("r1", 40.0, BudgetPeriod(remaining_budget=70.0, days_remaining=2))
    assert impact.daily_allowance == 35.0
    assert impact.overage == 5.0
    assert impact.impact is BudgetImpact.small_stretch
    assert impact.message is ImpactMessage.worthwhile_stretch


def test_summary_headline_follows_top_candidate():
    period = BudgetPeriod(remaining_budget=100.0, days_remaining=4)
    summary = summarize([("a", 60.0), ("b", 20.0), ("c", 27.0)], period)
    assert summary.headline is ImpactMessage.plan_ahead
    assert summary.counts == {
        BudgetImpact.within_budget: 1,
        BudgetImpact.small_stretch: 1,
        BudgetImpact.save_for_later: 1,
    }
    assert [c.restaurant_id for c in summary.candidates] == ["a", "b", "c"]
