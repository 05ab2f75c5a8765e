from typing import Any


class LumeflowError(Exception):
    """Base class for every error raised by lumeflow."""


class WorkflowValidationError(LumeflowError, ValueError):
    """Raised when a workflow definition cannot be executed.

    Collects every problem found instead of stopping at the first one.
    """

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Invalid workflow: " + "; ".join(self.errors))


class DuplicateBlockError(LumeflowError, ValueError):
    """Raised when a block type is registered twice."""

    def __init__(self, block_type: str):
        self.block_type = block_type
        super().__init__(f"Block type '{block_type}' is already registered")


class UnknownBlockTypeError(LumeflowError, KeyError):
    """Raised when resolving a block type that was never registered."""

    def __init__(self, block_type: str):
        self.block_type = block_type
        super().__init__(f"No block registered for type '{block_type}'")

    def __str__(self) -> str:
        return self.args[0]


class InvalidBlockConfigError(LumeflowError, ValueError):
    """Raised by a block when its node configuration breaks the block contract."""


class ExecutionError(LumeflowError):
    """A node failed while a workflow was running.

    :param message: Human readable description of the failure
    :param node_id: The node that failed, when known
    :param block_type: The block type of the failing node, when known
    :param retry_count: Number of retries performed before giving up
    """

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        block_type: str | None = None,
        retry_count: int = 0,
    ):
        self.node_id = node_id
        self.block_type = block_type
        self.retry_count = retry_count
        super().__init__(message)


class WorkflowCancelledError(ExecutionError):
    """The run observed its cancellation token and stopped."""


class RateLimitExceeded(LumeflowError):
    """Raised when acquiring a rate limiter token would exceed the allowed wait."""

    def __init__(self, name: str, wait: float):
        self.name = name
        self.wait = wait
        super().__init__(f"Rate limit '{name}' exceeded, next slot in {wait:.3f}s")


class CircuitOpenError(LumeflowError):
    """Raised when a call is rejected by an open circuit breaker."""

    def __init__(self, name: str, retry_at: float):
        self.name = name
        self.retry_at = retry_at
        super().__init__(f"Circuit '{name}' is open")


class RetryExhaustedError(LumeflowError):
    """Raised after the final failed attempt of a retried call.

    :param stats: Attempt statistics of the failed call
    :param last_error: The error raised by the final attempt
    """

    def __init__(self, stats: Any, last_error: BaseException):
        self.stats = stats
        self.last_error = last_error
        super().__init__(f"Failed after {stats.attempts} attempts: {last_error}")


class JobNotFoundError(LumeflowError, KeyError):
    """Raised when an operation targets a job id that is not in the store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")

    def __str__(self) -> str:
        return self.args[0]


class JobConflictError(LumeflowError):
    """Raised when a job is started while it is already being processed."""

    def __init__(self, job_id: str, reason: str = "is already being processed"):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' {reason}")


class InvalidJobTransitionError(LumeflowError):
    """Raised when a job is asked to leave a state it cannot leave."""

    def __init__(self, job_id: str, current: Any, target: Any):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job '{job_id}' cannot move from {current} to {target}")
