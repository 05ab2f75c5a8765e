"""
Tests for the in-memory block registry.

This module tests the InMemoryBlockRegistry implementation.
"""

import pytest

from lumeflow.domain.exception import DuplicateBlockError, UnknownBlockTypeError
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import BlockMetadata
from lumeflow.infrastructure.adapter.in_memory.block_registry import InMemoryBlockRegistry


class UpperBlock(BlockBase):
    """Upper-cases text."""

    block_type = "text.upper"
    name = "Upper"
    category = "transform"

    async def execute(self, config, input, context):
        return input.upper()


class SourceBlock(BlockBase):
    """Emits a constant."""

    block_type = "test.source"
    category = "input"

    def execute(self, config, input, context):
        return 1


class ClosingBlock(BlockBase):
    """Counts how often it was closed."""

    block_type = "test.closing"

    def __init__(self):
        self.closed = 0

    async def execute(self, config, input, context):
        return None

    def close(self):
        self.closed += 1


class TestInMemoryBlockRegistry:
    """Test cases for InMemoryBlockRegistry."""

    def setup_method(self):
        """Set up an empty registry."""
        self.registry = InMemoryBlockRegistry()

    def test_init_with_blocks(self):
        """Test blocks passed to the constructor are registered."""
        registry = InMemoryBlockRegistry([UpperBlock, SourceBlock])

        assert registry.list_types() == ["test.source", "text.upper"]
        assert len(registry) == 2

    def test_register_class_and_resolve(self):
        """Test classes are instantiated once and the instance is reused."""
        self.registry.register(UpperBlock)

        first = self.registry.resolve("text.upper")

        assert isinstance(first, UpperBlock)
        assert self.registry.resolve("text.upper") is first

    def test_register_instance(self):
        """Test a ready instance is returned as-is."""
        block = UpperBlock()

        self.registry.register(block)

        assert self.registry.resolve("text.upper") is block

    def test_register_factory_requires_type(self):
        """Test factories need an explicit block type."""
        with pytest.raises(ValueError):
            self.registry.register(lambda: UpperBlock())

        self.registry.register(lambda: UpperBlock(), block_type="text.shout")

        assert isinstance(self.registry.resolve("text.shout"), UpperBlock)
        assert self.registry.get_metadata("text.shout").type == "text.shout"

    def test_register_under_custom_type(self):
        """Test a class may be registered under another key."""
        self.registry.register(UpperBlock, block_type="text.caps")

        metadata = self.registry.get_metadata("text.caps")

        assert metadata.type == "text.caps"
        assert metadata.name == "Upper"
        assert "text.upper" not in self.registry

    def test_register_as_decorator(self):
        """Test register works as a class decorator."""

        @self.registry.register(block_type="text.lower")
        class LowerBlock(BlockBase):
            async def execute(self, config, input, context):
                return input.lower()

        assert LowerBlock.__name__ == "LowerBlock"
        assert self.registry.has("text.lower")

    def test_duplicate_registration(self):
        """Test a block type cannot be registered twice."""
        self.registry.register(UpperBlock)

        with pytest.raises(DuplicateBlockError, match="text.upper"):
            self.registry.register(UpperBlock)

    def test_unknown_block_type(self):
        """Test resolving an unknown type raises a KeyError subclass."""
        with pytest.raises(UnknownBlockTypeError, match="No block registered for type 'nope'"):
            self.registry.resolve("nope")
        with pytest.raises(KeyError):
            self.registry.get_metadata("nope")

    def test_metadata_queries(self):
        """Test metadata listing and category filters."""
        self.registry.register(UpperBlock)
        self.registry.register(SourceBlock)

        assert [meta.type for meta in self.registry.all_metadata()] == ["test.source", "text.upper"]
        assert [meta.type for meta in self.registry.by_category("input")] == ["test.source"]
        assert self.registry.get_metadata("text.upper").description == "Upper-cases text."

    def test_explicit_metadata(self):
        """Test explicit metadata overrides the class metadata."""
        self.registry.register(UpperBlock, metadata=BlockMetadata(type="text.upper", name="Shout"))

        assert self.registry.get_metadata("text.upper").name == "Shout"

    def test_unregister_and_clear(self):
        """Test blocks can be removed."""
        self.registry.register(UpperBlock)
        self.registry.register(SourceBlock)

        assert self.registry.unregister("text.upper") is True
        assert self.registry.unregister("text.upper") is False
        assert self.registry.list_types() == ["test.source"]

        self.registry.clear()

        assert len(self.registry) == 0

    def test_close_closes_created_instances(self):
        """Test close() releases every instance and keeps the registrations."""
        block = ClosingBlock()
        self.registry.register(block)
        self.registry.register(UpperBlock)

        self.registry.close()

        assert block.closed == 1
        assert self.registry.resolve("test.closing") is block
        assert self.registry.list_types() == ["test.closing", "text.upper"]

    def test_unregister_closes_the_instance(self):
        """Test removing a block type closes its instance."""
        block = ClosingBlock()
        self.registry.register(block)

        self.registry.unregister("test.closing")

        assert block.closed == 1
