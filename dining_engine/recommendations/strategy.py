from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import DEFAULT_ENGINE_CONFIG, EngineConfig, TIER_MEAL_COST, WeightProfile
from .models import FilterContext, MealTime, RestaurantRecord, Strategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyPlan:
    strategy: Strategy
    weights: WeightProfile


def select_strategy(context: FilterContext, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> Strategy:
    """Decision table, first match wins.

    1. time available below the quick-meal threshold -> quick_meal
    2. a health-focused mood, or breakfast           -> healthy_focus
    3. an explicit per-meal budget                   -> budget_conscious
    4. otherwise                                     -> exploration
    """
    if (
        context.time_available_minutes is not None
        and context.time_available_minutes < config.quick_meal_threshold_minutes
    ):
        return Strategy.quick_meal
    if context.mood in config.healthy_moods or context.meal_time is MealTime.breakfast:
        return Strategy.healthy_focus
    if context.budget_constraint is not None:
        return Strategy.budget_conscious
    return Strategy.exploration


def plan_for(context: FilterContext, config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> StrategyPlan:
    strategy = select_strategy(context, config)
    logger.info("Selected %s strategy", strategy.value)
    return StrategyPlan(strategy=strategy, weights=config.weights_for(strategy))


def estimated_meal_cost(
    restaurant: RestaurantRecord, tier_costs: dict[int, float] = TIER_MEAL_COST,
) -> float:
    if restaurant.average_meal_cost is not None:
        return restaurant.average_meal_cost
    return tier_costs.get(restaurant.price_tier, TIER_MEAL_COST[restaurant.price_tier])


def prefilter(
    strategy: Strategy,
    restaurants: list[RestaurantRecord],
    context: FilterContext,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> list[RestaurantRecord]:
    """Strategy-specific candidate restriction applied before scoring.

    Restaurants with no wait-time or cost data are kept; only known values
    can rule a candidate out.
    """
    if strategy is Strategy.quick_meal and context.time_available_minutes is not None:
        limit = context.time_available_minutes
        return [
            r for r in restaurants
            if r.average_wait_minutes is None or r.average_wait_minutes < limit
        ]

    if strategy is Strategy.budget_conscious and context.budget_constraint is not None:
        ceiling = context.budget_constraint
        return [
            r for r in restaurants
            if estimated_meal_cost(r, config.tier_meal_cost) <= ceiling
        ]

    return list(restaurants)
