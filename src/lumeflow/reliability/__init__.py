"""
Reliability primitives shared by blocks that call external services.
"""

from lumeflow.domain.value_object import (
    CacheConfig,
    CircuitBreakerConfig,
    RateLimiterConfig,
    RetryConfig,
)
from lumeflow.reliability.cache import Cache, CachePresets, cached, generate_cache_key
from lumeflow.reliability.circuit_breaker import CircuitBreaker
from lumeflow.reliability.rate_limiter import RateLimiter, RateLimiterPresets, per_minute
from lumeflow.reliability.retry import RetryConditions, RetryExecutor, RetryPresets, retry

__all__ = [
    "Cache",
    "CacheConfig",
    "CachePresets",
    "cached",
    "generate_cache_key",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "RateLimiter",
    "RateLimiterConfig",
    "RateLimiterPresets",
    "per_minute",
    "RetryConditions",
    "RetryConfig",
    "RetryExecutor",
    "RetryPresets",
    "retry",
]
