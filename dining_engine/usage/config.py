from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class UsageConfig:
    daily_request_quota: int = int(os.getenv("DAILY_REQUEST_QUOTA", "1000"))
    daily_cost_cap_usd: float = float(os.getenv("DAILY_COST_CAP_USD", "5.0"))
    warning_ratio: float = 0.8
    rate_limit_per_minute: int = int(os.getenv("AI_RATE_LIMIT_PER_MINUTE", "10"))
    rate_window_seconds: float = 60.0
    catalog_request_cost_usd: float = 0.0


DEFAULT_USAGE_CONFIG = UsageConfig()
