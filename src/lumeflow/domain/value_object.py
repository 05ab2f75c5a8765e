from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import msgspec


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobKind(str, Enum):
    SEARCH = "SEARCH"
    UPLOAD = "UPLOAD"
    WORKFLOW = "WORKFLOW"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class WorkflowStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionMode(str, Enum):
    PRODUCTION = "production"
    DEMO = "demo"
    TEST = "test"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CacheConfig:
    """Settings of a single cache instance. Durations are in seconds."""

    ttl: float = 3600.0
    max_size: int = 1000
    cleanup_interval: float | None = 300.0
    name: str = "default"


@dataclass
class RateLimiterConfig:
    """Token bucket admitting ``max_requests`` per ``period`` seconds."""

    max_requests: int = 10
    period: float = 1.0
    name: str = "default"
    enforce_window: bool = True


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_attempts: int = 1
    name: str = "default"


@dataclass
class RetryConfig:
    """Retry policy for a callable. Delays are in seconds.

    ``jitter`` spreads each delay by up to ``jitter_factor`` of its value in both directions.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1
    retry_condition: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[int, BaseException], Any] | None = None


class BlockMetadata(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    """Descriptive information about a registered block type."""

    type: str
    name: str
    description: str = ""
    category: str = "general"
    version: str = "1.0.0"
    supports_mock: bool = False


class JobStats(msgspec.Struct, frozen=True):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0


class CacheStats(msgspec.Struct, frozen=True):
    """Counters of a cache instance. ``hit_rate`` is a percentage."""

    hits: int
    misses: int
    evictions: int
    size: int
    max_size: int
    hit_rate: float
    total_sets: int = 0


class RateLimiterStats(msgspec.Struct, frozen=True):
    total_requests: int
    throttled_requests: int
    successful_requests: int
    total_wait_time: float
    average_wait_time: float
    available_tokens: float


class CircuitBreakerSnapshot(msgspec.Struct, frozen=True):
    name: str
    state: CircuitState
    failure_count: int
    half_open_trial_count: int
    half_open_successes: int
    last_failure_time: float | None
    next_attempt_time: float | None
    total_calls: int
    rejected_calls: int


class RetryStats(msgspec.Struct):
    """Attempt statistics of one retried call."""

    attempts: int = 0
    total_delay: float = 0.0
    errors: list[str] = msgspec.field(default_factory=list)
    succeeded: bool = False

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)
