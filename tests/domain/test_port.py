"""
Tests for the block contract.

This module tests BlockBase subclass enforcement, metadata and result helpers.
"""

import pytest

from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import BlockMetadata, NodeStatus


class EchoBlock(BlockBase):
    """Echoes its input."""

    block_type = "test.echo"
    category = "transform"

    async def execute(self, config, input, context):
        return self.completed(input)


class TestBlockBase:
    """Test cases for BlockBase."""

    def test_subclass_without_execute_is_rejected(self):
        """Test defining a block without execute raises TypeError."""
        with pytest.raises(TypeError, match="must define a 'execute' method"):

            class Broken(BlockBase):
                block_type = "test.broken"

    def test_subclass_inherits_execute(self):
        """Test subclasses of a concrete block need not redefine execute."""

        class Louder(EchoBlock):
            block_type = "test.louder"

        assert Louder.execute is EchoBlock.execute

    def test_base_execute_raises(self):
        """Test the base execute is abstract."""
        with pytest.raises(NotImplementedError):
            BlockBase().execute({}, None, None)

    def test_validate_config_defaults_to_no_errors(self):
        """Test the default config validation accepts anything."""
        assert EchoBlock().validate_config({"anything": 1}) == []

    def test_metadata(self):
        """Test metadata is derived from class attributes and the docstring."""
        metadata = EchoBlock.metadata()

        assert metadata == BlockMetadata(
            type="test.echo",
            name="EchoBlock",
            description="Echoes its input.",
            category="transform",
            version="1.0.0",
            supports_mock=False,
        )

    def test_completed_helper(self):
        """Test completed() builds a successful result."""
        result = BlockBase.completed({"a": 1})

        assert result.status is NodeStatus.COMPLETED
        assert result.output == {"a": 1}
        assert result.error is None

    def test_failed_helper_with_exception(self):
        """Test failed() accepts exceptions and keeps partial output."""
        result = BlockBase.failed(RuntimeError("service down"), output=[1])

        assert result.status is NodeStatus.FAILED
        assert result.error == "service down"
        assert result.output == [1]

    def test_failed_helper_with_empty_exception(self):
        """Test an exception without message is reported by its type name."""
        assert BlockBase.failed(TimeoutError()).error == "TimeoutError"
