from typing import Any

from lumeflow.domain.entity import BlockExecutionResult
from lumeflow.domain.value_object import BlockMetadata, NodeStatus


class BlockBase:
    """Base class for all blocks. Enforces an 'execute' method on every concrete block.

    A block is identified by its ``block_type`` registry key and described by the
    ``name``, ``description``, ``category`` and ``version`` class attributes.
    ``execute`` may be a coroutine function or a plain function; plain functions are
    run on a worker thread by the block runner.
    """

    block_type: str | None = None
    name: str | None = None
    description: str = ""
    category: str = "general"
    version: str = "1.0.0"
    supports_mock: bool = False

    def __init_subclass__(cls, **kwargs):
        """
        Ensures an 'execute' method is defined by the subclass or one of its bases.

        :param kwargs: Additional keyword arguments passed to super().__init_subclass__
        :raises TypeError: If no class in the hierarchy below BlockBase defines 'execute'
        """
        super().__init_subclass__(**kwargs)

        if getattr(cls, "execute", None) is BlockBase.execute:
            raise TypeError(f"{cls.__name__} must define a 'execute' method")

    def execute(self, config: dict[str, Any], input: Any, context: Any) -> Any:
        """
        Run the block for one node.

        Expected failures (network errors, empty lookups) are reported by returning
        ``self.failed(...)``; raising is reserved for contract violations such as an
        invalid configuration.

        :param config: The node configuration with placeholders already resolved
        :type config: dict[str, Any]
        :param input: The node input; must not be mutated
        :type input: Any
        :param context: The execution context of the current run
        :type context: ExecutionContext
        :returns: A BlockExecutionResult, or a raw value taken as the node output
        :rtype: Any
        :raises NotImplementedError: Must be implemented by subclasses
        """
        raise NotImplementedError("Blocks must implement the execute method")

    def validate_config(self, config: dict[str, Any]) -> list[str]:
        """Return the problems of ``config``; an empty list means valid."""
        return []

    def close(self) -> None:
        """Release resources held by the block. Called when its registry is closed or the block is unregistered."""

    @classmethod
    def metadata(cls) -> BlockMetadata:
        block_type = cls.block_type or cls.__name__
        return BlockMetadata(
            type=block_type,
            name=cls.name or cls.__name__,
            description=cls.description or (cls.__doc__ or "").strip().split("\n")[0],
            category=cls.category,
            version=cls.version,
            supports_mock=cls.supports_mock,
        )

    @staticmethod
    def completed(output: Any = None) -> BlockExecutionResult:
        return BlockExecutionResult(status=NodeStatus.COMPLETED, output=output)

    @staticmethod
    def failed(error: str | BaseException, output: Any = None) -> BlockExecutionResult:
        if isinstance(error, BaseException):
            error = str(error) or type(error).__name__
        return BlockExecutionResult(status=NodeStatus.FAILED, output=output, error=error)
