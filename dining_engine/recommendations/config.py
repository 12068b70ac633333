from __future__ import annotations

import os
from dataclasses import dataclass, field

from .models import Strategy

WEIGHT_FACTORS = ("dietary", "cuisine", "price", "distance", "context")


@dataclass(frozen=True)
class WeightProfile:
    dietary: float = 0.40
    cuisine: float = 0.25
    price: float = 0.15
    distance: float = 0.10
    context: float = 0.10

    def __post_init__(self) -> None:
        values = self.as_dict()
        if any(v < 0 for v in values.values()):
            raise ValueError(f"Weights must be non-negative: {values}")
        total = sum(values.values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Weights must sum to 1.0, got {total:.4f}")

    def as_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in WEIGHT_FACTORS}


DEFAULT_WEIGHTS = WeightProfile()

STRATEGY_WEIGHTS: dict[Strategy, WeightProfile] = {
    Strategy.quick_meal: WeightProfile(
        dietary=0.40, cuisine=0.10, price=0.10, distance=0.25, context=0.15,
    ),
    Strategy.healthy_focus: WeightProfile(
        dietary=0.50, cuisine=0.15, price=0.10, distance=0.10, context=0.15,
    ),
    Strategy.budget_conscious: WeightProfile(
        dietary=0.40, cuisine=0.15, price=0.30, distance=0.10, context=0.05,
    ),
    Strategy.exploration: DEFAULT_WEIGHTS,
}

# Per-person estimate used when a record carries no average meal cost.
TIER_MEAL_COST: dict[int, float] = {1: 12.0, 2: 25.0, 3: 45.0, 4: 80.0}


@dataclass(frozen=True)
class EngineConfig:
    strictness_threshold: int = 4
    max_results: int = int(os.getenv("MAX_RECOMMENDATIONS", "10"))
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))
    quick_meal_threshold_minutes: float = 45.0
    healthy_moods: frozenset[str] = frozenset({"healthy", "light", "fresh", "clean", "detox"})
    strategy_weights: dict[Strategy, WeightProfile] = field(
        default_factory=lambda: dict(STRATEGY_WEIGHTS)
    )
    small_stretch_ratio: float = 0.20
    price_step_penalty: float = 0.35
    tier_meal_cost: dict[int, float] = field(default_factory=lambda: dict(TIER_MEAL_COST))
    catalog_max_attempts: int = 2
    catalog_backoff_base_seconds: float = 0.25

    def weights_for(self, strategy: Strategy) -> WeightProfile:
        return self.strategy_weights.get(strategy, DEFAULT_WEIGHTS)


DEFAULT_ENGINE_CONFIG = EngineConfig()
