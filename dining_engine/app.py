from __future__ import annotations

import asyncio
import contextlib
import math
import os
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .auth.dependencies import require_admin, require_user
from .auth.users import UserDirectory, demo_directory
from .errors import CostLimitExceeded, RateLimitExceeded, ValidationError
from .recommendations.collaborators import InMemoryPreferenceStore, InMemoryRestaurantCatalog
from .recommendations.models import (
    LoginRequest,
    RecommendationRequest,
    RecommendationResponse,
    UserPreferenceProfile,
)
from .recommendations.orchestrator import RecommendationOrchestrator


def _default_orchestrator() -> RecommendationOrchestrator:
    catalog_csv = os.getenv("DINING_CATALOG_CSV", "")
    catalog = InMemoryRestaurantCatalog.from_csv(catalog_csv) if catalog_csv else None
    return RecommendationOrchestrator(InMemoryPreferenceStore(), catalog)


def create_app(
    orchestrator: RecommendationOrchestrator | None = None,
    users: UserDirectory | None = None,
    background_tasks: bool = True,
) -> FastAPI:
    engine = orchestrator or _default_orchestrator()
    directory = users or demo_directory()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        tasks = []
        if background_tasks:
            tasks = [
                asyncio.create_task(engine.cache.run_warmer()),
                asyncio.create_task(engine.governor.run_daily_reset()),
            ]
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(title="Dining Recommendation API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        SessionMiddleware,
        secret_key=os.environ.get("SESSION_SECRET", "dining-engine-secret-change-in-production"),
    )
    app.state.orchestrator = engine

    # ── Error mapping ────────────────────────────────────────────────────

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(RateLimitExceeded)
    async def rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        retry_after = max(1, math.ceil(exc.retry_after_seconds))
        return JSONResponse(
            status_code=429,
            content={"detail": exc.message, "code": exc.code, "retry_after_seconds": retry_after},
            headers={"Retry-After": str(retry_after)},
        )

    @app.exception_handler(CostLimitExceeded)
    async def cost_limited(request: Request, exc: CostLimitExceeded) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": exc.message, "code": exc.code})

    # ── Public endpoints ─────────────────────────────────────────────────

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # ── Auth endpoints ───────────────────────────────────────────────────

    @app.post("/auth/login")
    def login(body: LoginRequest, request: Request) -> dict:
        user = directory.authenticate(body.username, body.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        request.session["user"] = user
        return {"status": "ok", "user": user}

    @app.post("/auth/logout")
    def logout(request: Request) -> dict:
        request.session.clear()
        return {"status": "logged_out"}

    @app.get("/auth/me")
    def auth_me(user: dict = Depends(require_user)) -> dict:
        return user

    # ── User endpoints ───────────────────────────────────────────────────

    @app.post("/recommendations", response_model=RecommendationResponse)
    async def recommendations(
        body: RecommendationRequest,
        user: dict = Depends(require_user),
    ) -> RecommendationResponse:
        recommendation = await engine.get_recommendations(
            user["user_id"],
            body.context,
            body.candidates,
            search=body.search,
            craving=body.craving,
        )
        return RecommendationResponse(
            recommendation=recommendation,
            confidence_level=recommendation.confidence_level,
            top_factors=recommendation.top_factors,
        )

    @app.get("/preferences", response_model=UserPreferenceProfile)
    def get_preferences(user: dict = Depends(require_user)) -> UserPreferenceProfile:
        return engine.preferences.get_profile(user["user_id"])

    @app.put("/preferences", response_model=UserPreferenceProfile)
    def put_preferences(
        body: dict[str, Any] = Body(...),
        user: dict = Depends(require_user),
    ) -> UserPreferenceProfile:
        store = engine.preferences
        if not isinstance(store, InMemoryPreferenceStore):
            raise HTTPException(status_code=501, detail="Preference store is read-only")
        # The session decides whose profile this is, never the body.
        return store.put_profile({**body, "user_id": user["user_id"]})

    # ── Admin endpoints ──────────────────────────────────────────────────

    @app.get("/usage")
    def usage(user: dict = Depends(require_admin)) -> dict:
        return engine.usage_status()

    @app.get("/cache/stats")
    def cache_stats(user: dict = Depends(require_admin)) -> dict:
        return engine.cache.stats()

    return app


app = create_app()
