import logging
import threading
from collections.abc import Callable

from lumeflow.application.port import BlockResolver
from lumeflow.domain.exception import DuplicateBlockError, UnknownBlockTypeError
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import BlockMetadata

logger = logging.getLogger(__name__)

BlockFactory = type[BlockBase] | Callable[[], BlockBase]


class InMemoryBlockRegistry(BlockResolver):
    """Resolves blocks from an in-memory registry keyed by block type.

    Each type is instantiated once, on first use, and the instance is reused for
    every node of that type, so blocks can hold long-lived resources such as a
    shared cache or rate limiter.
    """

    def __init__(self, blocks: list[BlockFactory | BlockBase] | None = None):
        """
        Initializes registry with optional block list.

        :param blocks: Block classes, factories or instances to register
        :type blocks: list[BlockFactory | BlockBase] | None
        """
        self._registry: dict[str, BlockFactory] = {}
        self._metadata: dict[str, BlockMetadata] = {}
        self._instances: dict[str, BlockBase] = {}
        self._lock = threading.Lock()
        for block in blocks or []:
            self.register(block)

    def register(
        self,
        block: BlockFactory | BlockBase | None = None,
        *,
        block_type: str | None = None,
        metadata: BlockMetadata | None = None,
    ):
        """
        Registers a block class, factory or instance under its block type.

        Called without ``block`` it returns a class decorator.

        :param block: The block class, a zero-argument factory, or a ready instance
        :param block_type: Registry key; defaults to the class ``block_type`` or its name
        :type block_type: str | None
        :param metadata: Descriptive metadata; defaults to the class metadata
        :type metadata: BlockMetadata | None
        :returns: The registered block (or a decorator)
        :raises DuplicateBlockError: If the block type is already registered
        """
        if block is None:
            return lambda cls: self.register(cls, block_type=block_type, metadata=metadata)

        instance = None
        if isinstance(block, BlockBase):
            instance = block
            block_cls = type(block)
        elif isinstance(block, type) and issubclass(block, BlockBase):
            block_cls = block
        else:
            block_cls = None
            if block_type is None:
                raise ValueError("block_type is required when registering a factory")

        key = block_type or block_cls.block_type or block_cls.__name__
        if metadata is None:
            metadata = block_cls.metadata() if block_cls is not None else BlockMetadata(type=key, name=key)
        if metadata.type != key:
            metadata = BlockMetadata(
                type=key,
                name=metadata.name,
                description=metadata.description,
                category=metadata.category,
                version=metadata.version,
                supports_mock=metadata.supports_mock,
            )

        with self._lock:
            if key in self._registry:
                raise DuplicateBlockError(key)
            self._registry[key] = block_cls if instance is not None else block
            self._metadata[key] = metadata
            if instance is not None:
                self._instances[key] = instance
        logger.debug("Registered block type %s", key)
        return block

    def resolve(self, block_type: str) -> BlockBase:
        """
        Returns the block instance registered for the given type.

        :param block_type: The block type to resolve
        :type block_type: str
        :returns: Block instance matching the given type
        :rtype: BlockBase
        :raises UnknownBlockTypeError: If no block is registered for the given type
        """
        with self._lock:
            instance = self._instances.get(block_type)
            if instance is not None:
                return instance
            try:
                factory = self._registry[block_type]
            except KeyError:
                raise UnknownBlockTypeError(block_type) from None
            instance = factory()
            self._instances[block_type] = instance
            return instance

    def has(self, block_type: str) -> bool:
        return block_type in self._registry

    def __contains__(self, block_type: str) -> bool:
        return self.has(block_type)

    def __len__(self) -> int:
        return len(self._registry)

    def list_types(self) -> list[str]:
        return sorted(self._registry)

    def get_metadata(self, block_type: str) -> BlockMetadata:
        try:
            return self._metadata[block_type]
        except KeyError:
            raise UnknownBlockTypeError(block_type) from None

    def all_metadata(self) -> list[BlockMetadata]:
        return [self._metadata[key] for key in self.list_types()]

    def by_category(self, category: str) -> list[BlockMetadata]:
        return [meta for meta in self.all_metadata() if meta.category == category]

    def unregister(self, block_type: str) -> bool:
        with self._lock:
            self._metadata.pop(block_type, None)
            instance = self._instances.pop(block_type, None)
            removed = self._registry.pop(block_type, None) is not None
        if instance is not None:
            instance.close()
        return removed

    def clear(self) -> None:
        self.close()
        with self._lock:
            self._registry.clear()
            self._metadata.clear()
            self._instances.clear()

    def close(self) -> None:
        """
        Closes every block instance created so far.

        Registrations and instances stay in place; a closed block only loses its
        background work, such as a cache sweeper.
        """
        with self._lock:
            instances = list(self._instances.items())
        for block_type, instance in instances:
            logger.debug("Closing block %s", block_type)
            instance.close()
