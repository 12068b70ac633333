"""
Recommendation orchestrator.

The single entry point collaborators call. One request runs:

    profile lookup -> candidates (supplied, or catalog search through the cache)
    -> safety filter -> strategy pre-filter -> scoring (off the event loop)
    -> optional AI re-ranking -> cap -> budget impact

The safety filter runs before everything that ranks, and every later stage
only reorders or trims what it passed. Each request carries a timeout and an
optional cancellation event; when either fires, the best result built so far
is returned with status ``partial``.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from ..analytics.aggregator import compute_analytics
from ..analytics.store import EventLog
from ..caching.manager import CacheManager, search_key
from ..errors import (
    ExternalServiceError,
    ParseError,
    ValidationError,
)
from ..llm.groq_client import AIRankingResult, AIRecommendationClient
from ..llm.retry import RetryPolicy, retry_async
from ..usage.config import DEFAULT_USAGE_CONFIG, UsageConfig
from ..usage.governor import ApiUsageGovernor
from ..usage.rate_limiter import SlidingWindowRateLimiter
from . import budget
from .collaborators import PreferenceStore, RestaurantCatalog, parse_restaurants
from .config import DEFAULT_ENGINE_CONFIG, EngineConfig
from .models import (
    FilterContext,
    Recommendation,
    RecommendationStatus,
    RestaurantRecord,
    ScoredCandidate,
    SearchRequest,
    Strategy,
)
from .safety import filter_safe
from .scoring import score_candidates
from .strategy import estimated_meal_cost, plan_for, prefilter

logger = logging.getLogger(__name__)

LAST_RESULT_TTL_SECONDS = 1800.0

FACTOR_LABELS = {
    "dietary": "dietary fit",
    "cuisine": "cuisine match",
    "price": "price match",
    "distance": "distance",
    "context": "fit for the moment",
}


@dataclass
class _Progress:
    """What a request has built so far, for partial results."""

    strategy: Strategy = Strategy.exploration
    factor_weights: dict[str, float] = field(default_factory=dict)
    ranked: list[ScoredCandidate] | None = None
    total_candidates: int = 0
    excluded_count: int = 0
    notices: list[str] = field(default_factory=list)


def _decode_records(payload: Any) -> list[RestaurantRecord]:
    return [RestaurantRecord.model_validate(r) for r in payload]


def rule_based_reasoning(
    ranked: list[ScoredCandidate], strategy: Strategy, excluded_count: int = 0,
) -> str:
    if not ranked:
        if excluded_count:
            return (
                f"None of the nearby restaurants met your allergy and dietary requirements "
                f"({excluded_count} excluded for safety)."
            )
        return "No restaurants matched your request."

    top = ranked[0]
    strongest = sorted(top.factors.model_dump().items(), key=lambda kv: kv[1], reverse=True)[:2]
    labels = " and ".join(FACTOR_LABELS[name] for name, _ in strongest)
    reasoning = (
        f"{top.restaurant.name or top.restaurant.id} is the best match for a "
        f"{strategy.value.replace('_', ' ')} pick ({top.overall:.0%}), strongest on {labels}."
    )
    if excluded_count:
        reasoning += f" {excluded_count} restaurant(s) were left out for safety."
    return reasoning


def rule_based_confidence(ranked: list[ScoredCandidate]) -> float:
    top = ranked[:3]
    if not top:
        return 0.0
    return round(sum(c.overall for c in top) / len(top), 4)


def apply_ai_order(ranked: list[ScoredCandidate], result: AIRankingResult) -> list[ScoredCandidate]:
    """AI-ranked ids first, then anything the AI left out, in rule-based order."""
    by_id = {c.restaurant.id: c for c in ranked}
    reasons = result.ranking.reasons
    ordered = [
        by_id[rid].model_copy(update={"reason": reasons.get(rid)})
        for rid in result.ranking.ranked_ids
        if rid in by_id
    ]
    chosen = {c.restaurant.id for c in ordered}
    ordered.extend(c for c in ranked if c.restaurant.id not in chosen)
    return ordered


class RecommendationOrchestrator:
    def __init__(
        self,
        preferences: PreferenceStore,
        catalog: RestaurantCatalog | None = None,
        *,
        cache: CacheManager | None = None,
        governor: ApiUsageGovernor | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        ai_client: AIRecommendationClient | None = None,
        events: EventLog | None = None,
        config: EngineConfig = DEFAULT_ENGINE_CONFIG,
        usage_config: UsageConfig = DEFAULT_USAGE_CONFIG,
    ) -> None:
        self.config = config
        self.usage_config = usage_config
        self.cache = cache or CacheManager()
        self.governor = governor or ApiUsageGovernor(usage_config)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            usage_config.rate_limit_per_minute, usage_config.rate_window_seconds,
        )
        self.ai_client = ai_client or AIRecommendationClient(
            self.governor, self.rate_limiter, self.cache,
        )
        self.events = events or EventLog()
        self._preferences = preferences
        self._catalog = catalog
        self._catalog_policy = RetryPolicy(
            max_attempts=config.catalog_max_attempts,
            base_delay=config.catalog_backoff_base_seconds,
            max_delay=config.catalog_backoff_base_seconds * 8,
        )

        add_listener = getattr(preferences, "add_listener", None)
        if add_listener is not None:
            add_listener(self.on_profile_updated)

    @property
    def preferences(self) -> PreferenceStore:
        return self._preferences

    # ── Public API ───────────────────────────────────────────────────────

    async def get_recommendations(
        self,
        user_id: str,
        context: FilterContext | dict | None = None,
        candidates: Iterable[RestaurantRecord | dict] | None = None,
        *,
        search: SearchRequest | dict | None = None,
        craving: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Recommendation:
        """Rank restaurants for *user_id*.

        Malformed input raises ValidationError before any work starts.
        RateLimitExceeded and CostLimitExceeded propagate when the AI stage
        cannot be served from cache; every other failure degrades into a
        Recommendation with an explanatory notice.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")
        ctx = self._parse_context(context)
        records = parse_restaurants(candidates) if candidates is not None else None
        search_req = self._parse_search(search)
        if records is None and search_req is None:
            raise ValidationError("Provide candidate restaurants or a search")
        if craving is not None and len(craving) > 500:
            raise ValidationError("craving must be at most 500 characters")

        start = time.perf_counter()
        progress = _Progress()
        task = asyncio.ensure_future(
            self._run(user_id, ctx, records, search_req, craving, progress)
        )
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout if timeout is not None else self.config.request_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            recommendation, ai_meta = task.result()
        else:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            reason = "cancelled" if cancel_waiter in done else "timed out"
            logger.warning("Recommendation request for %s %s; returning partial result", user_id, reason)
            recommendation = self._partial(user_id, ctx, progress, reason)
            ai_meta = {}

        if recommendation.status is not RecommendationStatus.partial:
            self.cache.memory.set(
                self._last_key(user_id),
                recommendation.model_dump(mode="json"),
                LAST_RESULT_TTL_SECONDS,
                user_id,
            )

        self.events.record_event("recommendation", {
            "user_id": user_id,
            "status": recommendation.status.value,
            "strategy": recommendation.strategy.value,
            "results_returned": len(recommendation.candidates),
            "total_candidates": recommendation.total_candidates,
            "excluded_count": recommendation.excluded_count,
            "response_time_ms": round((time.perf_counter() - start) * 1000, 1),
            **ai_meta,
        })
        return recommendation

    def usage_status(self) -> dict[str, Any]:
        return {
            "usage": self.governor.snapshot().as_dict(),
            "cache": self.cache.stats(),
            "rate_limiter": {
                "limit": self.rate_limiter.limit,
                "window_seconds": self.rate_limiter.window_seconds,
                "in_window": self.rate_limiter.in_window(),
            },
            "ai_enabled": self.ai_client.enabled,
            "requests": compute_analytics(self.events.get_events()),
        }

    def on_profile_updated(self, user_id: str) -> None:
        self.cache.invalidate_user(user_id)
        self.cache.memory.delete(self._last_key(user_id))

    # ── Pipeline ─────────────────────────────────────────────────────────

    async def _run(
        self,
        user_id: str,
        context: FilterContext,
        records: list[RestaurantRecord] | None,
        search: SearchRequest | None,
        craving: str | None,
        progress: _Progress,
    ) -> tuple[Recommendation, dict[str, Any]]:
        profile = self._preferences.get_profile(user_id)
        plan = plan_for(context, self.config)
        progress.strategy = plan.strategy
        progress.factor_weights = plan.weights.as_dict()

        if records is None:
            try:
                records = await self._search(search, user_id)
            except ExternalServiceError:
                logger.warning("Catalog search failed for user %s", user_id, exc_info=True)
                return self._build(
                    context, progress, [], RecommendationStatus.fallback,
                    notices=["Restaurant search is unavailable right now. Please try again shortly."],
                ), {}
        progress.total_candidates = len(records)

        safety = filter_safe(records, profile, self.config.strictness_threshold)
        progress.excluded_count = len(safety.excluded)

        narrowed = prefilter(plan.strategy, safety.passed, context, self.config)
        if len(narrowed) < len(safety.passed):
            progress.notices.append(
                f"{len(safety.passed) - len(narrowed)} restaurant(s) skipped for the "
                f"{plan.strategy.value.replace('_', ' ')} strategy."
            )

        ranked = await asyncio.to_thread(
            score_candidates, narrowed, profile, plan.weights, context, self.config,
        )
        progress.ranked = ranked

        if not ranked or not self.ai_client.enabled:
            return self._build(context, progress, ranked, RecommendationStatus.rule_based), {}

        ai_meta: dict[str, Any] = {"ai_attempted": True}
        try:
            result = await self.ai_client.rank(ranked, profile, context, user_id, craving)
        except (ExternalServiceError, ParseError):
            logger.warning("AI ranking failed for user %s, using rule-based order", user_id, exc_info=True)
            progress.notices.append("Smart ranking is unavailable; showing our best rule-based matches.")
            return self._build(context, progress, ranked, RecommendationStatus.fallback), ai_meta

        ai_meta.update({"ai_cache_hit": result.cached, "ai_cost_usd": result.cost_usd})
        recommendation = self._build(
            context, progress, apply_ai_order(ranked, result), RecommendationStatus.ai_enhanced,
        )
        recommendation.reasoning = result.ranking.reasoning
        recommendation.confidence = result.ranking.confidence
        if result.ranking.factor_weights:
            recommendation.factor_weights = result.ranking.factor_weights
        return recommendation, ai_meta

    async def _search(self, search: SearchRequest, user_id: str) -> list[RestaurantRecord]:
        if self._catalog is None:
            raise ValidationError("Search requested but no restaurant catalog is configured")
        catalog = self._catalog
        key = search_key(
            search.location,
            search.radius_m,
            [search.keyword] if search.keyword else [],
            self.cache.config.location_precision,
        )

        async def attempt() -> list[RestaurantRecord]:
            self.governor.acquire(cost_usd=self.usage_config.catalog_request_cost_usd)
            return await catalog.search(search.location, search.radius_m, search.keyword)

        async def fetch() -> list[dict]:
            records = await retry_async(attempt, self._catalog_policy)
            logger.info("Catalog returned %d restaurants for %s", len(records), key)
            return [r.model_dump(mode="json") for r in records]

        self.cache.track(key, fetch, user_id)
        result = await self.cache.get_or_fetch(key, fetch, user_id=user_id, decode=_decode_records)
        if result.hit:
            self.governor.record_cache_hit()
        return result.value

    # ── Assembly ─────────────────────────────────────────────────────────

    def _build(
        self,
        context: FilterContext,
        progress: _Progress,
        ordered: list[ScoredCandidate],
        status: RecommendationStatus,
        notices: list[str] | None = None,
    ) -> Recommendation:
        capped = ordered[: self.config.max_results]
        summary = None
        if context.budget_period is not None and capped:
            summary = budget.summarize(
                [
                    (c.restaurant.id, estimated_meal_cost(c.restaurant, self.config.tier_meal_cost))
                    for c in capped
                ],
                context.budget_period,
                self.config.small_stretch_ratio,
            )
            impacts = {a.restaurant_id: a.impact for a in summary.candidates}
            capped = [
                c.model_copy(update={"budget_impact": impacts[c.restaurant.id]}) for c in capped
            ]

        return Recommendation(
            candidates=capped,
            reasoning=rule_based_reasoning(capped, progress.strategy, progress.excluded_count),
            confidence=rule_based_confidence(capped),
            budget_impact=summary,
            strategy=progress.strategy,
            status=status,
            factor_weights=dict(progress.factor_weights),
            notices=list(progress.notices) + list(notices or []),
            total_candidates=progress.total_candidates,
            excluded_count=progress.excluded_count,
        )

    def _partial(
        self, user_id: str, context: FilterContext, progress: _Progress, reason: str,
    ) -> Recommendation:
        notice = f"Request {reason}; these results may be incomplete."
        if progress.ranked is not None:
            return self._build(
                context, progress, progress.ranked, RecommendationStatus.partial, notices=[notice],
            )

        entry = self.cache.memory.get(self._last_key(user_id))
        if entry is not None:
            previous = Recommendation.model_validate(entry.payload)
            return previous.model_copy(update={
                "status": RecommendationStatus.partial,
                "notices": previous.notices + [f"Request {reason}; showing your previous results."],
            })

        return self._build(context, progress, [], RecommendationStatus.partial, notices=[notice])

    # ── Input parsing ────────────────────────────────────────────────────

    @staticmethod
    def _last_key(user_id: str) -> str:
        return f"last|{user_id}"

    @staticmethod
    def _parse_context(context: FilterContext | dict | None) -> FilterContext:
        if isinstance(context, FilterContext):
            return context
        try:
            return FilterContext.model_validate(context or {})
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid context: {exc.errors()[0].get('msg')}") from exc

    @staticmethod
    def _parse_search(search: SearchRequest | dict | None) -> SearchRequest | None:
        if search is None or isinstance(search, SearchRequest):
            return search
        try:
            return SearchRequest.model_validate(search)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid search: {exc.errors()[0].get('msg')}") from exc

