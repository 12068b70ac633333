from __future__ import annotations

from dining_engine.analytics.aggregator import compute_analytics
from dining_engine.analytics.store import EventLog


def _request(**overrides) -> dict:
    return {
        "type": "recommendation",
        "status": "rule_based",
        "strategy": "exploration",
        "results_returned": 5,
        "excluded_count": 0,
        "response_time_ms": 10.0,
        **overrides,
    }


def test_event_log_is_bounded():
    log = EventLog(max_events=3)
    for i in range(5):
        log.record_event("recommendation", {"n": i})
    events = log.get_events()
    assert [e["n"] for e in events] == [2, 3, 4]
    assert all("timestamp" in e for e in events)
    log.clear_events()
    assert log.get_events() == []


def test_analytics_empty():
    body = compute_analytics([])
    assert body["total_requests"] == 0
    assert body["avg_response_time_ms"] == 0.0
    assert body["avg_results_returned"] == 0.0
    assert body["ai_cache"]["hit_rate"] == 0.0


def test_analytics_breakdowns():
    events = [
        _request(response_time_ms=10.0),
        _request(status="ai_enhanced", strategy="budget_conscious", response_time_ms=30.0,
                 ai_attempted=True, ai_cache_hit=False, ai_cost_usd=0.0012),
        _request(status="ai_enhanced", ai_attempted=True, ai_cache_hit=True, results_returned=0,
                 excluded_count=3),
        {"type": "something_else"},
    ]
    body = compute_analytics(events)
    assert body["total_requests"] == 3
    assert body["avg_response_time_ms"] == 16.7
    assert body["status_breakdown"] == {"rule_based": 1, "ai_enhanced": 2}
    assert body["strategy_breakdown"] == {"exploration": 2, "budget_conscious": 1}
    assert body["empty_results"] == 1
    assert body["excluded_for_safety"] == 3
    assert body["ai_cost_usd"] == 0.0012
    assert body["ai_cache"] == {"requests": 2, "hits": 1, "hit_rate": 50.0}
