from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

Score = Annotated[float, Field(ge=0.0, le=1.0)]


# ── Closed enumerations ──────────────────────────────────────────────────


class DietaryRestriction(str, Enum):
    vegetarian = "vegetarian"
    vegan = "vegan"
    pescatarian = "pescatarian"
    gluten_free = "gluten_free"
    dairy_free = "dairy_free"
    nut_free = "nut_free"
    egg_free = "egg_free"
    soy_free = "soy_free"
    shellfish_free = "shellfish_free"
    keto = "keto"
    paleo = "paleo"
    low_carb = "low_carb"
    low_fat = "low_fat"
    low_sodium = "low_sodium"
    low_fodmap = "low_fodmap"
    sugar_free = "sugar_free"
    diabetic_friendly = "diabetic_friendly"
    halal = "halal"
    kosher = "kosher"
    jain = "jain"
    whole30 = "whole30"
    raw_food = "raw_food"


class Allergen(str, Enum):
    peanuts = "peanuts"
    tree_nuts = "tree_nuts"
    milk = "milk"
    eggs = "eggs"
    wheat = "wheat"
    gluten = "gluten"
    soy = "soy"
    fish = "fish"
    shellfish = "shellfish"
    molluscs = "molluscs"
    sesame = "sesame"
    mustard = "mustard"
    celery = "celery"
    sulfites = "sulfites"


class AllergySeverity(str, Enum):
    mild = "mild"
    moderate = "moderate"
    severe = "severe"


class CompatibilityLevel(str, Enum):
    full_menu = "full_menu"
    many_options = "many_options"
    some_options = "some_options"
    few_options = "few_options"
    limited_options = "limited_options"
    not_suitable = "not_suitable"

    @property
    def score(self) -> float:
        return COMPATIBILITY_SCORES[self]


COMPATIBILITY_SCORES: dict[CompatibilityLevel, float] = {
    CompatibilityLevel.full_menu: 1.0,
    CompatibilityLevel.many_options: 0.8,
    CompatibilityLevel.some_options: 0.6,
    CompatibilityLevel.few_options: 0.4,
    CompatibilityLevel.limited_options: 0.2,
    CompatibilityLevel.not_suitable: 0.0,
}


class SafetyLevel(str, Enum):
    allergen_free = "allergen_free"
    dedicated_prep = "dedicated_prep"
    cross_contamination_managed = "cross_contamination_managed"
    limited_safety = "limited_safety"
    not_safe = "not_safe"


class MealTime(str, Enum):
    breakfast = "breakfast"
    brunch = "brunch"
    lunch = "lunch"
    snack = "snack"
    dinner = "dinner"
    late_night = "late_night"


class Strategy(str, Enum):
    quick_meal = "quick_meal"
    healthy_focus = "healthy_focus"
    budget_conscious = "budget_conscious"
    exploration = "exploration"


class BudgetImpact(str, Enum):
    within_budget = "within_budget"
    small_stretch = "small_stretch"
    save_for_later = "save_for_later"


class ImpactMessage(str, Enum):
    smart_investment = "smart_investment"
    worthwhile_stretch = "worthwhile_stretch"
    plan_ahead = "plan_ahead"


class RecommendationStatus(str, Enum):
    ai_enhanced = "ai_enhanced"
    rule_based = "rule_based"
    fallback = "fallback"
    partial = "partial"


def meal_time_for(moment: datetime) -> MealTime:
    """Map a wall-clock time to the meal slot it falls in."""
    hour = moment.hour
    if 5 <= hour < 11:
        return MealTime.breakfast
    if 11 <= hour < 15:
        return MealTime.lunch
    if 15 <= hour < 17:
        return MealTime.snack
    if 17 <= hour < 22:
        return MealTime.dinner
    return MealTime.late_night


def _lower_unique(values: Any) -> Any:
    if values is None:
        return []
    if isinstance(values, str):
        values = values.split(",")
    seen: list[str] = []
    for v in values:
        v = str(v).strip().lower()
        if v and v not in seen:
            seen.append(v)
    return seen


# ── Collaborator inputs ──────────────────────────────────────────────────


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lng: float = Field(..., ge=-180.0, le=180.0)


class Allergy(BaseModel):
    allergen: Allergen
    severity: AllergySeverity = AllergySeverity.severe


class UserPreferenceProfile(BaseModel):
    user_id: str = Field(..., min_length=1)
    dietary_restrictions: list[DietaryRestriction] = Field(default_factory=list)
    restriction_strictness: dict[DietaryRestriction, Annotated[int, Field(ge=1, le=5)]] = Field(
        default_factory=dict,
        description="Per-restriction override of the profile strictness level",
    )
    allergies: list[Allergy] = Field(default_factory=list)
    cuisine_affinities: dict[str, Score] = Field(default_factory=dict)
    price_preference: int = Field(default=2, ge=1, le=4)
    max_distance_km: float = Field(default=5.0, gt=0.0)
    strictness: int = Field(default=3, ge=1, le=5)
    weekly_budget: float | None = Field(default=None, ge=0.0)

    @field_validator("dietary_restrictions")
    @classmethod
    def _dedupe_restrictions(cls, v: list[DietaryRestriction]) -> list[DietaryRestriction]:
        return list(dict.fromkeys(v))

    @field_validator("allergies")
    @classmethod
    def _one_entry_per_allergen(cls, v: list[Allergy]) -> list[Allergy]:
        # Keep the most severe declaration when an allergen is listed twice.
        order = list(AllergySeverity)
        merged: dict[Allergen, Allergy] = {}
        for allergy in v:
            current = merged.get(allergy.allergen)
            if current is None or order.index(allergy.severity) > order.index(current.severity):
                merged[allergy.allergen] = allergy
        return list(merged.values())

    @field_validator("cuisine_affinities")
    @classmethod
    def _lower_cuisines(cls, v: dict[str, float]) -> dict[str, float]:
        return {k.strip().lower(): score for k, score in v.items() if k.strip()}

    def strictness_for(self, restriction: DietaryRestriction) -> int:
        return self.restriction_strictness.get(restriction, self.strictness)


class RestaurantRecord(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    location: GeoPoint
    price_tier: int = Field(..., ge=1, le=4)
    rating: float | None = Field(default=None, ge=0.0, le=5.0)
    review_count: int = Field(default=0, ge=0)
    cuisines: list[str] = Field(default_factory=list)
    dietary_compatibility: dict[DietaryRestriction, CompatibilityLevel] = Field(default_factory=dict)
    allergen_safety: dict[Allergen, SafetyLevel] = Field(default_factory=dict)
    verification_counts: dict[DietaryRestriction, Annotated[int, Field(ge=0)]] = Field(
        default_factory=dict,
    )
    average_meal_cost: float | None = Field(default=None, ge=0.0)
    average_wait_minutes: float | None = Field(default=None, ge=0.0)
    tags: list[str] = Field(default_factory=list)
    meal_times: list[MealTime] = Field(default_factory=list)
    max_group_size: int | None = Field(default=None, ge=1)
    last_updated: datetime | None = None

    @field_validator("cuisines", "tags", mode="before")
    @classmethod
    def _normalize_labels(cls, v: Any) -> Any:
        return _lower_unique(v)

    @property
    def total_verifications(self) -> int:
        return sum(self.verification_counts.values())


# ── Per-request context ──────────────────────────────────────────────────


class BudgetPeriod(BaseModel):
    remaining_budget: float
    days_remaining: int = Field(..., ge=1)


class FilterContext(BaseModel):
    now: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    meal_time: MealTime | None = None
    mood: str | None = Field(default=None, max_length=50)
    group_size: int = Field(default=1, ge=1, le=50)
    budget_constraint: float | None = Field(
        default=None, ge=0.0, description="Maximum spend per person for this meal",
    )
    time_available_minutes: float | None = Field(default=None, gt=0.0)
    location: GeoPoint | None = None
    budget_period: BudgetPeriod | None = None

    @model_validator(mode="after")
    def _derive_meal_time(self) -> FilterContext:
        if self.meal_time is None:
            self.meal_time = meal_time_for(self.now)
        if self.mood is not None:
            self.mood = self.mood.strip().lower() or None
        return self


# ── Engine outputs ───────────────────────────────────────────────────────


class FactorScores(BaseModel):
    dietary: Score
    cuisine: Score
    price: Score
    distance: Score
    context: Score


class CandidateBudgetImpact(BaseModel):
    restaurant_id: str
    estimated_cost: float
    daily_allowance: float
    overage: float
    impact: BudgetImpact
    message: ImpactMessage


class BudgetImpactSummary(BaseModel):
    daily_allowance: float
    remaining_budget: float
    days_remaining: int
    headline: ImpactMessage | None = None
    counts: dict[BudgetImpact, int] = Field(default_factory=dict)
    candidates: list[CandidateBudgetImpact] = Field(default_factory=list)


class ScoredCandidate(BaseModel):
    restaurant: RestaurantRecord
    factors: FactorScores
    overall: Score
    budget_impact: BudgetImpact | None = None
    reason: str | None = None


class Recommendation(BaseModel):
    candidates: list[ScoredCandidate] = Field(default_factory=list)
    reasoning: str = ""
    confidence: Score = 0.0
    budget_impact: BudgetImpactSummary | None = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    strategy: Strategy = Strategy.exploration
    status: RecommendationStatus = RecommendationStatus.rule_based
    factor_weights: dict[str, float] = Field(default_factory=dict)
    notices: list[str] = Field(default_factory=list)
    total_candidates: int = 0
    excluded_count: int = 0

    @property
    def confidence_level(self) -> str:
        if self.confidence >= 0.8:
            return "High"
        if self.confidence >= 0.6:
            return "Medium"
        return "Low"

    @property
    def top_factors(self) -> list[str]:
        ranked = sorted(self.factor_weights.items(), key=lambda kv: kv[1], reverse=True)
        return [f"{name} ({round(weight * 100)}%)" for name, weight in ranked[:3]]


# ── HTTP request/response bodies ─────────────────────────────────────────


class SearchRequest(BaseModel):
    location: GeoPoint
    radius_m: int = Field(default=1500, ge=50, le=50_000)
    keyword: str | None = Field(default=None, max_length=100)


class RecommendationRequest(BaseModel):
    context: FilterContext = Field(default_factory=FilterContext)
    candidates: list[RestaurantRecord] | None = None
    search: SearchRequest | None = None
    craving: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _needs_candidates_or_search(self) -> RecommendationRequest:
        if self.candidates is None and self.search is None:
            raise ValueError("Provide either candidates or a search block")
        return self


class RecommendationResponse(BaseModel):
    recommendation: Recommendation
    confidence_level: str
    top_factors: list[str]


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
