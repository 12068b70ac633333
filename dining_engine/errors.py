from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the recommendation engine."""

    code = "engine_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(EngineError):
    """Malformed input. Raised before any processing starts."""

    code = "validation_error"


class ExternalServiceError(EngineError):
    code = "external_service_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class RateLimitExceeded(EngineError):
    code = "rate_limit_exceeded"

    def __init__(self, message: str, retry_after_seconds: float) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(0.0, retry_after_seconds)


class CostLimitExceeded(EngineError):
    code = "cost_limit_exceeded"


class CacheCorruption(EngineError):
    code = "cache_corruption"

    def __init__(self, key: str, message: str = "") -> None:
        super().__init__(message or f"Corrupt cache entry for key {key}")
        self.key = key


class ParseError(EngineError):
    """The generative service answered, but not with a usable ranking."""

    code = "parse_error"
