from __future__ import annotations

from collections import Counter
from typing import Any


def compute_analytics(events: list[dict[str, Any]]) -> dict[str, Any]:
    requests = [e for e in events if e["type"] == "recommendation"]
    total = len(requests)

    # Average response time
    times = [r["response_time_ms"] for r in requests if "response_time_ms" in r]
    avg_time = round(sum(times) / len(times), 1) if times else 0.0

    status_counter: Counter[str] = Counter(r.get("status", "unknown") for r in requests)
    strategy_counter: Counter[str] = Counter(r.get("strategy", "unknown") for r in requests)

    # AI response cache
    ai_requests = [r for r in requests if r.get("ai_attempted")]
    ai_hits = sum(1 for r in ai_requests if r.get("ai_cache_hit"))

    results = [r.get("results_returned", 0) for r in requests]
    empty = sum(1 for n in results if n == 0)

    return {
        "total_requests": total,
        "avg_response_time_ms": avg_time,
        "status_breakdown": dict(status_counter),
        "strategy_breakdown": dict(strategy_counter),
        "avg_results_returned": round(sum(results) / total, 1) if total else 0.0,
        "empty_results": empty,
        "excluded_for_safety": sum(r.get("excluded_count", 0) for r in requests),
        "ai_cost_usd": round(sum(r.get("ai_cost_usd", 0.0) for r in requests), 6),
        "ai_cache": {
            "requests": len(ai_requests),
            "hits": ai_hits,
            "hit_rate": round(ai_hits / len(ai_requests) * 100, 1) if ai_requests else 0.0,
        },
    }
