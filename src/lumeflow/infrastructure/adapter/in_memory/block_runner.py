import asyncio
import inspect
from typing import Any

from lumeflow.application.port import BlockRunner
from lumeflow.domain.port import BlockBase


class AsyncioBlockRunner(BlockRunner):
    async def run(self, block: BlockBase, config: dict[str, Any], input_data: Any, context: Any) -> Any:
        """
        Execute a block for one node on the running event loop.

        Coroutine ``execute`` methods are awaited; plain ones run on a worker thread.

        :param block: The block instance to execute
        :type block: BlockBase
        :param config: The resolved node configuration
        :type config: dict[str, Any]
        :param input_data: The node input
        :type input_data: Any
        :param context: The node-scoped execution context
        :type context: ExecutionContext
        :returns: The result of block execution
        :rtype: Any
        """
        if inspect.iscoroutinefunction(block.execute):
            return await block.execute(config, input_data, context)
        result = await asyncio.to_thread(block.execute, config, input_data, context)
        if inspect.isawaitable(result):
            result = await result
        return result
