"""
API usage governor.

Tracks the day's external request count and spend against hard limits.
Past the warning ratio it signals once per day; at either limit it flips
into cache-only mode and refuses new upstream calls until the next reset.

The day boundary is UTC midnight. Every mutation happens under one lock,
and the period is rolled forward lazily on every call as well as by the
optional background reset task, so the counters reset exactly once per
boundary.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable

from ..errors import CostLimitExceeded, ValidationError
from .config import DEFAULT_USAGE_CONFIG, UsageConfig

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def period_of(moment: datetime) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).date()


def next_boundary(moment: datetime) -> datetime:
    return datetime.combine(period_of(moment) + timedelta(days=1), time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class UsageSnapshot:
    period: date
    request_count: int
    cost_usd: float
    request_quota: int
    cost_cap_usd: float
    remaining_requests: int
    remaining_cost_usd: float
    cache_hits: int
    warning: bool
    cache_only: bool
    resets_at: datetime

    def as_dict(self) -> dict:
        data = asdict(self)
        data["period"] = self.period.isoformat()
        data["resets_at"] = self.resets_at.isoformat()
        return data


class ApiUsageGovernor:
    def __init__(
        self,
        config: UsageConfig = DEFAULT_USAGE_CONFIG,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._period = period_of(clock())
        self._requests = 0
        self._cost = 0.0
        self._cache_hits = 0
        self._warned = False
        self._closed: dict[date, tuple[int, float]] = {}
        self._warning_handlers: list[Callable[[UsageSnapshot], None]] = []
        self.resets = 0

    def add_warning_handler(self, handler: Callable[[UsageSnapshot], None]) -> None:
        self._warning_handlers.append(handler)

    # ── Period handling (call with the lock held) ────────────────────────

    def _roll(self, moment: datetime) -> date:
        period = period_of(moment)
        if period > self._period:
            self._closed[self._period] = (self._requests, self._cost)
            logger.info(
                "Usage period %s closed at %d requests / $%.4f; counters reset",
                self._period, self._requests, self._cost,
            )
            self._period = period
            self._requests = 0
            self._cost = 0.0
            self._cache_hits = 0
            self._warned = False
            self.resets += 1
        return period

    def _exhausted(self) -> bool:
        return (
            self._requests >= self.config.daily_request_quota
            or self._cost >= self.config.daily_cost_cap_usd
        )

    def _near_limit(self) -> bool:
        ratio = self.config.warning_ratio
        return (
            self._requests >= self.config.daily_request_quota * ratio
            or self._cost >= self.config.daily_cost_cap_usd * ratio
        )

    def _crossed_warning(self) -> bool:
        if not self._warned and self._near_limit():
            self._warned = True
            return True
        return False

    def _snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(
            period=self._period,
            request_count=self._requests,
            cost_usd=round(self._cost, 6),
            request_quota=self.config.daily_request_quota,
            cost_cap_usd=self.config.daily_cost_cap_usd,
            remaining_requests=max(0, self.config.daily_request_quota - self._requests),
            remaining_cost_usd=round(max(0.0, self.config.daily_cost_cap_usd - self._cost), 6),
            cache_hits=self._cache_hits,
            warning=self._near_limit(),
            cache_only=self._exhausted(),
            resets_at=next_boundary(datetime.combine(self._period, time.min, tzinfo=timezone.utc)),
        )

    def _emit_warning(self, snapshot: UsageSnapshot) -> None:
        logger.warning(
            "API usage at %d/%d requests, $%.4f/$%.2f for %s",
            snapshot.request_count, snapshot.request_quota,
            snapshot.cost_usd, snapshot.cost_cap_usd, snapshot.period,
        )
        for handler in self._warning_handlers:
            handler(snapshot)

    # ── Public API ───────────────────────────────────────────────────────

    def ensure_capacity(self, at: datetime | None = None) -> None:
        """Raise CostLimitExceeded if the engine is in cache-only mode."""
        with self._lock:
            self._roll(at or self._clock())
            if self._exhausted():
                raise CostLimitExceeded(
                    f"Daily API budget exhausted for {self._period}; serving from cache only "
                    "until the next reset."
                )

    def acquire(self, at: datetime | None = None, cost_usd: float = 0.0) -> None:
        """Count one upstream request, refusing it once a limit is reached."""
        if cost_usd < 0:
            raise ValidationError(f"cost must be non-negative, got {cost_usd}")
        moment = at or self._clock()
        with self._lock:
            period = self._roll(moment)
            if period < self._period:
                # Timestamped before the boundary but arriving after the reset.
                requests, cost = self._closed.get(period, (0, 0.0))
                self._closed[period] = (requests + 1, cost + cost_usd)
                return
            if self._exhausted():
                raise CostLimitExceeded(
                    f"Daily API budget exhausted for {self._period}; serving from cache only "
                    "until the next reset."
                )
            self._requests += 1
            self._cost += cost_usd
            warn = self._crossed_warning()
            snapshot = self._snapshot()
        if warn:
            self._emit_warning(snapshot)

    def record_cost(self, cost_usd: float, at: datetime | None = None) -> None:
        """Add the actual spend of a completed request."""
        if cost_usd < 0:
            raise ValidationError(f"cost must be non-negative, got {cost_usd}")
        moment = at or self._clock()
        with self._lock:
            period = self._roll(moment)
            if period < self._period:
                # Late report for a period that has already been closed.
                requests, cost = self._closed.get(period, (0, 0.0))
                self._closed[period] = (requests, cost + cost_usd)
                return
            self._cost += cost_usd
            warn = self._crossed_warning()
            snapshot = self._snapshot()
        if warn:
            self._emit_warning(snapshot)

    def record_cache_hit(self) -> None:
        with self._lock:
            self._roll(self._clock())
            self._cache_hits += 1

    def reset_if_due(self, at: datetime | None = None) -> bool:
        with self._lock:
            before = self.resets
            self._roll(at or self._clock())
            return self.resets > before

    @property
    def cache_only(self) -> bool:
        with self._lock:
            self._roll(self._clock())
            return self._exhausted()

    def snapshot(self) -> UsageSnapshot:
        with self._lock:
            self._roll(self._clock())
            return self._snapshot()

    def closed_period(self, period: date) -> tuple[int, float] | None:
        with self._lock:
            return self._closed.get(period)

    async def run_daily_reset(self) -> None:
        """Background loop that rolls the period over at each UTC midnight."""
        while True:
            now = self._clock()
            await asyncio.sleep(max(1.0, (next_boundary(now) - now).total_seconds()))
            self.reset_if_due()
