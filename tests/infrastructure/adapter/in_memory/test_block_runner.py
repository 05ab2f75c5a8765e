"""
Tests for the asyncio block runner.

This module tests the AsyncioBlockRunner implementation.
"""

import threading

from lumeflow.domain.port import BlockBase
from lumeflow.infrastructure.adapter.in_memory.block_runner import AsyncioBlockRunner


class AsyncBlock(BlockBase):
    async def execute(self, config, input, context):
        return ("async", threading.current_thread() is threading.main_thread(), input)


class SyncBlock(BlockBase):
    def execute(self, config, input, context):
        return ("sync", threading.current_thread() is threading.main_thread(), config["factor"] * input)


class TestAsyncioBlockRunner:
    """Test cases for AsyncioBlockRunner."""

    def setup_method(self):
        """Set up the runner."""
        self.runner = AsyncioBlockRunner()

    async def test_coroutine_blocks_run_on_the_loop(self):
        """Test async execute methods are awaited on the event loop thread."""
        result = await self.runner.run(AsyncBlock(), {}, 5, None)

        assert result == ("async", True, 5)

    async def test_sync_blocks_run_on_a_worker_thread(self):
        """Test plain execute methods are off-loaded to a thread."""
        result = await self.runner.run(SyncBlock(), {"factor": 3}, 2, None)

        assert result == ("sync", False, 6)
