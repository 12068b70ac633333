from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass
from typing import Any

import groq
from groq import AsyncGroq
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..caching.manager import CacheManager, fingerprint
from ..errors import (
    CostLimitExceeded,
    ExternalServiceError,
    ParseError,
    RateLimitExceeded,
    ValidationError,
)
from ..recommendations.models import FilterContext, ScoredCandidate, UserPreferenceProfile
from ..usage.governor import ApiUsageGovernor
from ..usage.rate_limiter import SlidingWindowRateLimiter
from .config import DEFAULT_LLM_CONFIG, LLMConfig
from .retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a restaurant recommendation engine that helps users make "
    "investment-minded dining decisions. Every candidate you are given has "
    "already passed the user's allergy and dietary safety checks.\n\n"
    "Re-rank the candidates from best to worst match for the user's context "
    "and give a short, friendly one-sentence reason for each.\n\n"
    "Return ONLY valid JSON in this exact format:\n"
    '{"recommendations": [{"id": "<restaurant_id>", "reason": "<one sentence>"}], '
    '"reasoning": "<why these restaurants, framed as value for money>", '
    '"factor_weights": {"dietary": 0.0, "cuisine": 0.0, "price": 0.0, '
    '"distance": 0.0, "context": 0.0}, '
    '"overall_confidence": 0.0}\n'
    "Include only restaurants from the provided list. "
    "Order from best match to worst. Confidence and weights are between 0 and 1."
)

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RankedItem(BaseModel):
    id: str = Field(..., min_length=1)
    reason: str | None = None


class AIResponsePayload(BaseModel):
    recommendations: list[RankedItem] = Field(..., min_length=1)
    reasoning: str = Field(..., min_length=1)
    factor_weights: dict[str, float] = Field(default_factory=dict)
    overall_confidence: float = Field(..., ge=0.0, le=1.0)


class AIRanking(BaseModel):
    ranked_ids: list[str]
    reasons: dict[str, str] = Field(default_factory=dict)
    reasoning: str
    factor_weights: dict[str, float] = Field(default_factory=dict)
    confidence: float = Field(..., ge=0.0, le=1.0)


@dataclass(frozen=True)
class AIRankingResult:
    ranking: AIRanking
    cached: bool
    cost_usd: float = 0.0
    attempts: int = 0


def _price_label(tier: int) -> str:
    return {1: "$ (Budget-friendly)", 2: "$$ (Moderate)", 3: "$$$ (Upscale)", 4: "$$$$ (Premium)"}.get(
        tier, "N/A"
    )


def build_user_message(
    candidates: list[ScoredCandidate],
    profile: UserPreferenceProfile,
    context: FilterContext,
    craving: str | None = None,
) -> str:
    lines = ["## User Context"]
    lines.append(f"- Meal time: {context.meal_time.value}")
    lines.append(f"- Preferred price level: {_price_label(profile.price_preference)}")
    if context.budget_constraint is not None:
        lines.append(f"- Budget for this meal: ${context.budget_constraint:.2f} per person")
    if profile.dietary_restrictions:
        lines.append(f"- Dietary restrictions: {', '.join(r.value for r in profile.dietary_restrictions)}")
    if profile.cuisine_affinities:
        liked = sorted(profile.cuisine_affinities.items(), key=lambda kv: kv[1], reverse=True)
        lines.append(f"- Cuisine affinities: {', '.join(f'{c} {s:.1f}' for c, s in liked[:5])}")
    if context.mood:
        lines.append(f"- Mood: {context.mood}")
    if context.group_size > 1:
        lines.append(f"- Group size: {context.group_size}")
    if context.time_available_minutes is not None:
        lines.append(f"- Time available: {context.time_available_minutes:.0f} minutes")
    if craving:
        lines.append(f"- Specific cravings: {craving}")

    lines.append("\n## Candidate Restaurants")
    lines.append("| ID | Name | Price | Rating | Cuisines | Match score |")
    lines.append("|---|---|---|---|---|---|")
    for c in candidates:
        r = c.restaurant
        lines.append(
            f"| {r.id} | {r.name or r.id} | {_price_label(r.price_tier)} "
            f"| {r.rating if r.rating is not None else 'N/A'} | {', '.join(r.cuisines)} "
            f"| {c.overall:.2f} |"
        )

    return "\n".join(lines)


def parse_ranking(content: str, allowed_ids: set[str]) -> AIRanking:
    """Validate the service's JSON and keep only ids it was actually given."""
    try:
        payload = AIResponsePayload.model_validate(json.loads(content))
    except (json.JSONDecodeError, TypeError, PydanticValidationError) as exc:
        raise ParseError(f"Malformed AI response: {exc}") from exc

    ranked: list[str] = []
    reasons: dict[str, str] = {}
    for item in payload.recommendations:
        if item.id in allowed_ids and item.id not in ranked:
            ranked.append(item.id)
            if item.reason:
                reasons[item.id] = item.reason
    if not ranked:
        raise ParseError("AI response ranked none of the supplied candidates")

    weights = {
        k: min(1.0, max(0.0, float(v))) for k, v in payload.factor_weights.items()
    }
    return AIRanking(
        ranked_ids=ranked,
        reasons=reasons,
        reasoning=payload.reasoning,
        factor_weights=weights,
        confidence=payload.overall_confidence,
    )


def translate_error(exc: Exception) -> ExternalServiceError:
    if isinstance(exc, (groq.APITimeoutError, asyncio.TimeoutError)):
        return ExternalServiceError("AI service timed out", retryable=True)
    if isinstance(exc, groq.APIConnectionError):
        return ExternalServiceError(f"AI service unreachable: {exc}", retryable=True)
    if isinstance(exc, groq.APIStatusError):
        return ExternalServiceError(
            f"AI service returned HTTP {exc.status_code}",
            retryable=exc.status_code in _RETRYABLE_STATUS,
            status_code=exc.status_code,
        )
    return ExternalServiceError(f"AI service error: {exc}", retryable=False)


class AIRecommendationClient:
    """Re-ranks scored candidates with a Groq-hosted model.

    Cache hits skip the service and cost nothing. A live call first checks
    the usage governor, then takes a slot from the per-minute rate limiter,
    and every attempt, retries included, is counted against both.
    """

    def __init__(
        self,
        governor: ApiUsageGovernor,
        rate_limiter: SlidingWindowRateLimiter,
        cache: CacheManager,
        config: LLMConfig = DEFAULT_LLM_CONFIG,
        client: AsyncGroq | None = None,
    ) -> None:
        self.config = config
        self._governor = governor
        self._rate_limiter = rate_limiter
        self._cache = cache
        self._client = client
        self._policy = RetryPolicy(
            max_attempts=config.max_retries,
            base_delay=config.backoff_base_seconds,
            max_delay=config.backoff_max_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.api_key)

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            # Retries are ours; the SDK's own retry loop is switched off.
            self._client = AsyncGroq(
                api_key=self.config.api_key, timeout=self.config.timeout, max_retries=0,
            )
        return self._client

    def cache_key(
        self,
        user_id: str,
        candidates: list[ScoredCandidate],
        profile: UserPreferenceProfile,
        context: FilterContext,
        craving: str | None,
    ) -> str:
        return "ai|" + fingerprint({
            "user_id": user_id,
            "budget_range": [profile.price_preference, context.budget_constraint],
            "meal_time": context.meal_time.value,
            "restaurant_ids": [c.restaurant.id for c in candidates],
            "craving": (craving or "").strip().lower(),
        })

    def estimate_cost(self, prompt: str, content: str, usage: Any = None) -> float:
        prompt_tokens = getattr(usage, "prompt_tokens", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
        if not isinstance(prompt_tokens, int):
            prompt_tokens = math.ceil(len(prompt) / 4)
        if not isinstance(completion_tokens, int):
            completion_tokens = math.ceil(len(content) / 4)
        return (
            prompt_tokens / 1000 * self.config.input_cost_per_1k
            + completion_tokens / 1000 * self.config.output_cost_per_1k
        )

    async def _complete(self, messages: list[dict[str, str]]) -> tuple[str, Any]:
        try:
            response = await asyncio.wait_for(
                self._get_client().chat.completions.create(
                    model=self.config.model,
                    messages=messages,
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                    response_format={"type": "json_object"},
                ),
                timeout=self.config.timeout,
            )
        except (asyncio.TimeoutError, groq.APIError) as exc:
            raise translate_error(exc) from exc

        content = response.choices[0].message.content or ""
        return content, getattr(response, "usage", None)

    async def rank(
        self,
        candidates: list[ScoredCandidate],
        profile: UserPreferenceProfile,
        context: FilterContext,
        user_id: str,
        craving: str | None = None,
    ) -> AIRankingResult:
        top = candidates[: self.config.top_k]
        if not top:
            raise ValidationError("No candidates to rank")

        allowed_ids = {c.restaurant.id for c in top}
        user_message = build_user_message(top, profile, context, craving)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_message},
        ]
        meta = {"attempts": 0, "cost": 0.0}

        async def attempt() -> AIRanking:
            meta["attempts"] += 1
            try:
                self._rate_limiter.acquire()
                self._governor.acquire()
            except (RateLimitExceeded, CostLimitExceeded) as exc:
                if meta["attempts"] == 1:
                    raise
                # Only the first attempt surfaces limit errors.
                raise ExternalServiceError(f"Retry refused: {exc.message}", retryable=False) from exc
            content, usage = await self._complete(messages)
            cost = self.estimate_cost(SYSTEM_PROMPT + user_message, content, usage)
            meta["cost"] += cost
            self._governor.record_cost(cost)
            return parse_ranking(content, allowed_ids)

        async def fetch() -> dict:
            self._governor.ensure_capacity()
            ranking = await retry_async(attempt, self._policy)
            return ranking.model_dump(mode="json")

        result = await self._cache.get_or_fetch(
            self.cache_key(user_id, top, profile, context, craving),
            fetch,
            ttl=self.config.response_cache_ttl_seconds,
            user_id=user_id,
            decode=AIRanking.model_validate,
        )
        if result.hit:
            self._governor.record_cache_hit()
            logger.info("AI ranking for user %s served from %s cache", user_id, result.layer)

        return AIRankingResult(
            ranking=result.value,
            cached=result.hit,
            cost_usd=meta["cost"],
            attempts=meta["attempts"],
        )
