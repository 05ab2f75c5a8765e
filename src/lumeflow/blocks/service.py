import logging
from typing import Any

from lumeflow.domain.exception import InvalidBlockConfigError, LumeflowError, WorkflowCancelledError
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import CacheConfig, CircuitBreakerConfig, RateLimiterConfig, RetryConfig
from lumeflow.reliability.cache import Cache, generate_cache_key
from lumeflow.reliability.circuit_breaker import CircuitBreaker
from lumeflow.reliability.rate_limiter import RateLimiter
from lumeflow.reliability.retry import RetryExecutor

logger = logging.getLogger(__name__)

_MISSING = object()


class ServiceBlock(BlockBase):
    """Base class for blocks that call an external service.

    Subclasses implement :meth:`call_service` and optionally :meth:`mock_response`.
    In ``demo`` and ``test`` mode the mock response is returned without touching the
    service. Otherwise a call goes through the cache, then the circuit breaker, then
    the retry executor and finally the rate limiter before reaching the service.

    The primitives are built once per block instance from the ``cache_config``,
    ``rate_limit``, ``circuit_breaker_config`` and ``retry_config`` class attributes;
    a None attribute leaves that layer out.
    """

    category = "service"
    supports_mock = True

    cache_config: CacheConfig | None = None
    rate_limit: RateLimiterConfig | None = None
    circuit_breaker_config: CircuitBreakerConfig | None = None
    retry_config: RetryConfig | None = None

    def __init_subclass__(cls, **kwargs):
        """
        Ensures a 'call_service' method is defined by the subclass or one of its bases.

        :raises TypeError: If no class below ServiceBlock defines 'call_service'
        """
        super().__init_subclass__(**kwargs)

        if getattr(cls, "call_service", None) is ServiceBlock.call_service:
            raise TypeError(f"{cls.__name__} must define a 'call_service' method")

    def __init__(
        self,
        *,
        cache: Cache | None = None,
        rate_limiter: RateLimiter | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_executor: RetryExecutor | None = None,
    ):
        """
        :param cache: Replaces the cache built from ``cache_config``
        :param rate_limiter: Replaces the limiter built from ``rate_limit``
        :param circuit_breaker: Replaces the breaker built from ``circuit_breaker_config``
        :param retry_executor: Replaces the executor built from ``retry_config``
        """
        block_type = self.block_type or type(self).__name__
        self.cache = cache if cache is not None else self._build(Cache, self.cache_config, block_type)
        self.rate_limiter = (
            rate_limiter if rate_limiter is not None else self._build(RateLimiter, self.rate_limit, block_type)
        )
        self.circuit_breaker = (
            circuit_breaker
            if circuit_breaker is not None
            else self._build(CircuitBreaker, self.circuit_breaker_config, block_type)
        )
        self.retry_executor = (
            retry_executor if retry_executor is not None else self._build(RetryExecutor, self.retry_config, None)
        )

    @staticmethod
    def _build(factory, config, name):
        if config is None:
            return None
        if name is not None and getattr(config, "name", "default") == "default":
            return factory(config, name=name)
        return factory(config)

    async def call_service(self, config: dict[str, Any], input: Any, context: Any) -> Any:
        """
        Perform the actual service call.

        :param config: The resolved node configuration
        :type config: dict[str, Any]
        :param input: The node input
        :type input: Any
        :param context: The node-scoped execution context
        :type context: ExecutionContext
        :returns: The node output
        :rtype: Any
        :raises NotImplementedError: Must be implemented by subclasses
        """
        raise NotImplementedError("Service blocks must implement the call_service method")

    def mock_response(self, config: dict[str, Any], input: Any, context: Any) -> Any:
        """Output returned in ``demo`` and ``test`` mode."""
        return {"mock": True, "block": self.block_type, "input": input}

    def cache_key(self, config: dict[str, Any], input: Any) -> str:
        return generate_cache_key(self.block_type or type(self).__name__, {"config": config, "input": input})

    async def execute(self, config, input, context):
        if context.is_mock:
            context.logger.info("Returning mock response in %s mode", context.mode.value)
            return self.completed(self.mock_response(config, input, context))

        key = None
        if self.cache is not None and not context.disable_cache:
            key = self.cache_key(config, input)
            cached = self.cache.get(key, _MISSING)
            if cached is not _MISSING:
                context.logger.debug("Cache hit")
                return self.completed(cached)

        try:
            output = await self._guarded_call(config, input, context)
        except (InvalidBlockConfigError, WorkflowCancelledError):
            raise
        except LumeflowError as exc:
            context.logger.warning("Service call rejected: %s", exc)
            return self.failed(exc)
        except Exception as exc:
            context.logger.error("Service call failed: %s", exc)
            return self.failed(exc)

        if key is not None:
            self.cache.set(key, output)
        return self.completed(output)

    def close(self) -> None:
        """Stop the background sweeper of the block cache."""
        if self.cache is not None:
            self.cache.close()

    async def _guarded_call(self, config, input, context):
        if self.circuit_breaker is not None:
            return await self.circuit_breaker.call(self._retried_call, config, input, context)
        return await self._retried_call(config, input, context)

    async def _retried_call(self, config, input, context):
        if self.retry_executor is not None:
            return await self.retry_executor.execute(self._limited_call, config, input, context)
        return await self._limited_call(config, input, context)

    async def _limited_call(self, config, input, context):
        if self.rate_limiter is not None:
            waited = await self.rate_limiter.acquire()
            if waited:
                logger.debug("%s waited %.3fs for rate limiter", self.block_type, waited)
        return await self.call_service(config, input, context)
