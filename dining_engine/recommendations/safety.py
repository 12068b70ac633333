"""
Safety filter.

Hard-excludes restaurants that are incompatible with the user's declared
allergies or strict dietary restrictions. Exclusions are a normal outcome,
never an error, and no downstream stage may re-admit an excluded restaurant.

Unknown data fails closed: a restaurant with no safety entry for a severe
allergy is treated as not-safe, and one with no compatibility entry for a
strict restriction is treated as not-suitable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import (
    Allergy,
    AllergySeverity,
    CompatibilityLevel,
    DietaryRestriction,
    RestaurantRecord,
    SafetyLevel,
    UserPreferenceProfile,
)

logger = logging.getLogger(__name__)

UNSAFE_LEVELS = frozenset({SafetyLevel.not_safe, SafetyLevel.limited_safety})
UNSUITABLE_LEVELS = frozenset({CompatibilityLevel.not_suitable, CompatibilityLevel.limited_options})


@dataclass
class SafetyResult:
    passed: list[RestaurantRecord] = field(default_factory=list)
    excluded: dict[str, str] = field(default_factory=dict)


def strict_restrictions(
    profile: UserPreferenceProfile, threshold: int,
) -> list[DietaryRestriction]:
    """Restrictions the user holds at or above the strictness threshold."""
    return [r for r in profile.dietary_restrictions if profile.strictness_for(r) >= threshold]


def exclusion_reason(
    restaurant: RestaurantRecord,
    allergies: list[Allergy],
    strict: list[DietaryRestriction],
) -> str | None:
    for allergy in allergies:
        level = restaurant.allergen_safety.get(allergy.allergen)
        if level is None:
            if allergy.severity is AllergySeverity.severe:
                return f"no safety data for severe allergen {allergy.allergen.value}"
            continue
        if level in UNSAFE_LEVELS:
            return f"allergen {allergy.allergen.value} is {level.value}"

    for restriction in strict:
        level = restaurant.dietary_compatibility.get(restriction)
        if level is None:
            return f"no compatibility data for strict restriction {restriction.value}"
        if level in UNSUITABLE_LEVELS:
            return f"restriction {restriction.value} is {level.value}"

    return None


def filter_safe(
    restaurants: list[RestaurantRecord],
    profile: UserPreferenceProfile,
    strictness_threshold: int,
) -> SafetyResult:
    """Split *restaurants* into those safe for *profile* and the excluded ids."""
    strict = strict_restrictions(profile, strictness_threshold)
    result = SafetyResult()

    if not profile.allergies and not strict:
        result.passed = list(restaurants)
        return result

    for restaurant in restaurants:
        reason = exclusion_reason(restaurant, profile.allergies, strict)
        if reason is None:
            result.passed.append(restaurant)
        else:
            logger.debug("Excluded restaurant %s: %s", restaurant.id, reason)
            result.excluded[restaurant.id] = reason

    return result
