from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from dining_engine.errors import CostLimitExceeded, RateLimitExceeded, ValidationError
from dining_engine.usage.config import UsageConfig
from dining_engine.usage.governor import ApiUsageGovernor, next_boundary
from dining_engine.usage.rate_limiter import SlidingWindowRateLimiter

BEFORE_MIDNIGHT = datetime(2026, 3, 2, 23, 59, 59, tzinfo=timezone.utc)
AFTER_MIDNIGHT = datetime(2026, 3, 3, 0, 0, 1, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


def _governor(clock, **overrides) -> ApiUsageGovernor:
    config = UsageConfig(**{"daily_request_quota": 10, "daily_cost_cap_usd": 1.0, **overrides})
    return ApiUsageGovernor(config, clock=clock)


# ── Governor ─────────────────────────────────────────────────────────────


def test_requests_either_side_of_boundary_count_in_separate_periods():
    clock = MutableClock(BEFORE_MIDNIGHT)
    gov = _governor(clock)
    gov.acquire(at=BEFORE_MIDNIGHT)
    clock.value = AFTER_MIDNIGHT
    gov.acquire(at=AFTER_MIDNIGHT)

    assert gov.closed_period(BEFORE_MIDNIGHT.date()) == (1, 0.0)
    assert gov.snapshot().request_count == 1
    assert gov.resets == 1


def test_reset_happens_exactly_once_per_boundary():
    clock = MutableClock(BEFORE_MIDNIGHT)
    gov = _governor(clock)
    gov.acquire()
    clock.value = AFTER_MIDNIGHT
    assert gov.reset_if_due() is True
    assert gov.reset_if_due() is False
    gov.snapshot()
    assert gov.resets == 1


def test_late_request_for_closed_period_is_not_counted_today():
    clock = MutableClock(AFTER_MIDNIGHT)
    gov = _governor(clock)
    gov.acquire(at=BEFORE_MIDNIGHT)
    assert gov.snapshot().request_count == 0


def test_request_quota_flips_to_cache_only():
    gov = _governor(MutableClock(BEFORE_MIDNIGHT), daily_request_quota=3)
    for _ in range(3):
        gov.acquire()
    assert gov.cache_only
    with pytest.raises(CostLimitExceeded):
        gov.acquire()
    with pytest.raises(CostLimitExceeded):
        gov.ensure_capacity()
    assert gov.snapshot().request_count == 3


def test_cost_cap_flips_to_cache_only_and_resets_next_day():
    clock = MutableClock(BEFORE_MIDNIGHT)
    gov = _governor(clock)
    gov.acquire()
    gov.record_cost(1.0)
    with pytest.raises(CostLimitExceeded):
        gov.ensure_capacity()

    clock.value = AFTER_MIDNIGHT
    gov.ensure_capacity()
    snap = gov.snapshot()
    assert snap.cost_usd == 0.0
    assert not snap.cache_only


def test_warning_fires_once_at_eighty_percent(caplog):
    gov = _governor(MutableClock(BEFORE_MIDNIGHT))
    seen = []
    gov.add_warning_handler(seen.append)
    for _ in range(7):
        gov.acquire()
    assert seen == []
    gov.acquire()
    gov.acquire()
    assert len(seen) == 1
    assert seen[0].request_count == 8
    assert seen[0].warning
    assert "API usage at 8/10" in caplog.text


def test_negative_cost_is_rejected():
    gov = _governor(MutableClock(BEFORE_MIDNIGHT))
    with pytest.raises(ValidationError):
        gov.record_cost(-0.01)


def test_snapshot_reports_remaining_and_reset_time():
    gov = _governor(MutableClock(BEFORE_MIDNIGHT))
    gov.acquire(cost_usd=0.25)
    gov.record_cache_hit()
    data = gov.snapshot().as_dict()
    assert data["remaining_requests"] == 9
    assert data["remaining_cost_usd"] == 0.75
    assert data["cache_hits"] == 1
    assert data["resets_at"] == next_boundary(BEFORE_MIDNIGHT).isoformat()
    assert next_boundary(BEFORE_MIDNIGHT) - BEFORE_MIDNIGHT == timedelta(seconds=1)


def test_concurrent_acquires_never_exceed_quota():
    gov = _governor(MutableClock(BEFORE_MIDNIGHT), daily_request_quota=50)
    refused = []

    def worker():
        for _ in range(20):
            try:
                gov.acquire()
            except CostLimitExceeded:
                refused.append(1)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert gov.snapshot().request_count == 50
    assert len(refused) == 50


# ── Rate limiter ─────────────────────────────────────────────────────────


def test_rate_limiter_admits_limit_then_rejects_with_retry_after():
    clock = MutableClock(100.0)
    limiter = SlidingWindowRateLimiter(3, 60.0, clock=clock)
    for t in (100.0, 110.0, 120.0):
        clock.value = t
        limiter.acquire()

    clock.value = 130.0
    with pytest.raises(RateLimitExceeded) as info:
        limiter.acquire()
    assert info.value.retry_after_seconds == pytest.approx(30.0)

    clock.value = 160.0  # first call has left the window
    limiter.acquire()
    assert limiter.in_window() == 3


def test_rate_limiter_holds_under_concurrency():
    limiter = SlidingWindowRateLimiter(10, 60.0, clock=MutableClock(0.0))
    admitted = []

    def worker():
        for _ in range(10):
            try:
                limiter.acquire()
                admitted.append(1)
            except RateLimitExceeded:
                pass

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(admitted) == 10
