"""
Compatibility scorer.

Computes a weighted multi-factor score in [0, 1] for every safety-filtered
candidate and ranks them. Scoring is pure and deterministic: the same inputs
always produce the same scores and the same order.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from .config import DEFAULT_ENGINE_CONFIG, EngineConfig, WeightProfile
from .geo import distances_from
from .models import (
    CompatibilityLevel,
    DietaryRestriction,
    FactorScores,
    FilterContext,
    RestaurantRecord,
    ScoredCandidate,
    UserPreferenceProfile,
)

logger = logging.getLogger(__name__)


def dietary_score(
    restaurant: RestaurantRecord, restrictions: list[DietaryRestriction],
) -> float:
    """Average compatibility over *restrictions*, 1.0 when there are none.

    Callers pass only the non-strict restrictions; strict ones are already
    enforced by the safety filter.
    """
    if not restrictions:
        return 1.0
    levels = [
        restaurant.dietary_compatibility.get(r, CompatibilityLevel.not_suitable)
        for r in restrictions
    ]
    return sum(level.score for level in levels) / len(levels)


def cuisine_score(restaurant: RestaurantRecord, affinities: dict[str, float]) -> float:
    if not affinities:
        return 1.0
    matches = [affinities[c] for c in restaurant.cuisines if c in affinities]
    return max(matches) if matches else 0.0


def price_score(price_tier: int, preferred_tier: int, step_penalty: float) -> float:
    """1.0 on the preferred tier, minus *step_penalty* per tier of distance."""
    return max(0.0, 1.0 - abs(price_tier - preferred_tier) * step_penalty)


def distance_score(distance_km: float | None, max_distance_km: float) -> float:
    if distance_km is None:
        return 1.0
    if distance_km >= max_distance_km:
        return 0.0
    return 1.0 - distance_km / max_distance_km


def context_score(restaurant: RestaurantRecord, context: FilterContext) -> float:
    """Average of whichever contextual signals apply to this request."""
    signals: list[float] = []
    if restaurant.meal_times:
        signals.append(1.0 if context.meal_time in restaurant.meal_times else 0.0)
    if context.mood:
        signals.append(1.0 if context.mood in restaurant.tags else 0.0)
    if context.group_size > 1 and restaurant.max_group_size is not None:
        signals.append(1.0 if context.group_size <= restaurant.max_group_size else 0.0)
    if not signals:
        return 1.0
    return sum(signals) / len(signals)


def score_candidate(
    restaurant: RestaurantRecord,
    profile: UserPreferenceProfile,
    weights: WeightProfile,
    context: FilterContext,
    distance_km: float | None = None,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> ScoredCandidate:
    factors = FactorScores(
        dietary=dietary_score(restaurant, [
            r for r in profile.dietary_restrictions
            if profile.strictness_for(r) < config.strictness_threshold
        ]),
        cuisine=cuisine_score(restaurant, profile.cuisine_affinities),
        price=price_score(restaurant.price_tier, profile.price_preference, config.price_step_penalty),
        distance=distance_score(distance_km, profile.max_distance_km),
        context=context_score(restaurant, context),
    )
    w = weights.as_dict()
    f = factors.model_dump()
    overall = float(np.clip(sum(w[name] * f[name] for name in w), 0.0, 1.0))
    return ScoredCandidate(restaurant=restaurant, factors=factors, overall=round(overall, 4))


def rank_candidates(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    """Order by score, then verification count, then cheaper tier, then id."""
    if not scored:
        return []
    frame = pd.DataFrame({
        "pos": range(len(scored)),
        "overall": [c.overall for c in scored],
        "verifications": [c.restaurant.total_verifications for c in scored],
        "price_tier": [c.restaurant.price_tier for c in scored],
        "id": [c.restaurant.id for c in scored],
    })
    frame = frame.sort_values(
        ["overall", "verifications", "price_tier", "id"],
        ascending=[False, False, True, True],
        kind="mergesort",
    )
    return [scored[i] for i in frame["pos"].tolist()]


def score_candidates(
    restaurants: list[RestaurantRecord],
    profile: UserPreferenceProfile,
    weights: WeightProfile,
    context: FilterContext,
    config: EngineConfig = DEFAULT_ENGINE_CONFIG,
) -> list[ScoredCandidate]:
    """Score and rank *restaurants*.

    A candidate whose scoring fails is dropped with a warning; the rest of
    the request carries on.
    """
    distances = distances_from(context.location, [r.location for r in restaurants])

    scored: list[ScoredCandidate] = []
    for restaurant, distance_km in zip(restaurants, distances):
        try:
            scored.append(
                score_candidate(restaurant, profile, weights, context, distance_km, config)
            )
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning("Could not score restaurant %s, skipping", restaurant.id, exc_info=True)

    return rank_candidates(scored)
