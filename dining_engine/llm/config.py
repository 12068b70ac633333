from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
load_dotenv(Path(__file__).resolve().parent.parent.parent / ".env")


def _flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "false", "no", "off")


@dataclass(frozen=True)
class LLMConfig:
    api_key: str = os.getenv("GROQ_API_KEY", "")
    model: str = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    timeout: float = 10.0
    max_tokens: int = 1024
    temperature: float = 0.3
    enabled: bool = _flag("AI_RECOMMENDATIONS_ENABLED")
    max_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    response_cache_ttl_seconds: float = 3600.0
    top_k: int = 20
    # USD per 1K tokens
    input_cost_per_1k: float = 0.00059
    output_cost_per_1k: float = 0.00079


DEFAULT_LLM_CONFIG = LLMConfig()
