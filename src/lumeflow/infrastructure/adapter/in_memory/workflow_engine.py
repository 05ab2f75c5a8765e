import asyncio
import inspect
import logging
import time
import uuid
from typing import Any

from lumeflow.application.adapter import ExecutionContext, InputResolver, NodeExecutor
from lumeflow.application.port import BlockResolver, BlockRunner, ExecutionStore, ProgressCallback, WorkflowEngine
from lumeflow.domain.entity import BlockExecutionResult, WorkflowDefinition, WorkflowExecutionResult, utcnow
from lumeflow.domain.exception import WorkflowValidationError
from lumeflow.domain.service import plan_layers, sink_nodes, validate_workflow
from lumeflow.domain.value_object import NodeStatus, WorkflowStatus
from lumeflow.infrastructure.adapter.in_memory.block_runner import AsyncioBlockRunner
from lumeflow.infrastructure.adapter.in_memory.execution_store import InMemoryExecutionStore

logger = logging.getLogger(__name__)


class UUIDGenerator:
    """Generates unique identifiers using UUID."""

    def generate(self) -> str:
        """
        Generate a unique identifier.

        :returns: A unique identifier string
        :rtype: str
        """
        return uuid.uuid4().hex


class InMemoryWorkflowEngine(WorkflowEngine):
    """Workflow engine that executes the node graph layer by layer on the event loop."""

    def __init__(
        self,
        resolver: BlockResolver,
        runner: BlockRunner | None = None,
        execution_store: ExecutionStore | None = None,
        id_generator: UUIDGenerator | None = None,
    ):
        """
        Initializes with a block resolver and optional runner, execution store and id generator.

        :param resolver: Resolves node types to blocks
        :type resolver: BlockResolver
        :param runner: Runs a block for one node
        :type runner: BlockRunner | None
        :param execution_store: Store for finished runs
        :type execution_store: ExecutionStore | None
        :param id_generator: Generates execution ids
        :type id_generator: UUIDGenerator | None
        """
        self.resolver = resolver
        self.runner = runner if runner is not None else AsyncioBlockRunner()
        self.execution_store = execution_store if execution_store is not None else InMemoryExecutionStore()
        self.id_generator = id_generator if id_generator is not None else UUIDGenerator()
        self.node_executor = NodeExecutor(self.resolver, self.runner)

    def validate(self, workflow: WorkflowDefinition) -> bool:
        known = self.resolver.list_types()
        validate_workflow(workflow, known_types=known)
        errors = []
        for node in workflow.nodes:
            block = self.resolver.resolve(node.type)
            errors.extend(f"Node '{node.id}': {problem}" for problem in block.validate_config(node.config))
        if errors:
            raise WorkflowValidationError(errors)
        return True

    async def run(
        self,
        workflow: WorkflowDefinition,
        input_data: Any = None,
        context: ExecutionContext | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowExecutionResult:
        """
        Executes the workflow in dependency order and returns its execution record.

        Nodes of one layer run concurrently up to ``globals.max_parallel_nodes``; the
        first failing node stops the run and every node that did not run is marked
        skipped. The cancellation token of the context is checked before each node.

        :param workflow: The workflow to execute
        :type workflow: WorkflowDefinition
        :param input_data: External input of the root nodes
        :type input_data: Any
        :param context: Execution context; a production context is created when None
        :type context: ExecutionContext | None
        :param on_progress: Called with overall progress and the node result after every node
        :type on_progress: ProgressCallback | None
        :returns: The result of executing the workflow
        :rtype: WorkflowExecutionResult
        :raises WorkflowValidationError: If the workflow cannot be executed; no node runs
        """
        self.validate(workflow)
        if context is None:
            context = ExecutionContext(workflow.workflow_id, execution_id=self.id_generator.generate())
        if context.input is None:
            context.input = input_data

        nodes = {node.id: node for node in workflow.nodes}
        inputs = InputResolver(workflow)
        semaphore = asyncio.Semaphore(workflow.globals.max_parallel_nodes)
        node_results: dict[str, BlockExecutionResult] = {}
        total = len(nodes)
        state = {"done": 0, "failed": None}
        start_time = utcnow()
        started = time.perf_counter()
        context.logger.event("WORKFLOW_STARTED", f"Running {total} nodes", workflowId=workflow.workflow_id)

        async def run_node(node_id: str) -> None:
            async with semaphore:
                if state["failed"] is not None or context.cancelled:
                    return
                node = nodes[node_id]
                node_input = inputs.resolve(node_id, context.results, input_data)
                result = await self.node_executor.execute(node, node_input, context)
                node_results[node_id] = result
                if result.status is NodeStatus.COMPLETED:
                    context.set_result(node_id, result.output)
                elif result.status is NodeStatus.FAILED and state["failed"] is None:
                    state["failed"] = node_id
                state["done"] += 1
                await self._notify(on_progress, round(state["done"] / total * 100), result)

        for layer in plan_layers(workflow):
            if state["failed"] is not None or context.cancelled:
                break
            await asyncio.gather(*(run_node(node_id) for node_id in layer))

        for node_id in nodes:
            if node_id not in node_results:
                node_results[node_id] = BlockExecutionResult(node_id=node_id, status=NodeStatus.SKIPPED)
        skipped = [node_id for node_id, result in node_results.items() if result.status is NodeStatus.SKIPPED]

        failed_node = state["failed"]
        if failed_node is not None:
            status = WorkflowStatus.FAILED
            error = node_results[failed_node].error
            output = None
            context.logger.event("WORKFLOW_FAILED", error, nodeId=failed_node)
        elif skipped and context.cancelled:
            status = WorkflowStatus.CANCELLED
            error = "Workflow run was cancelled"
            output = None
            context.logger.event("WORKFLOW_CANCELLED", error)
        else:
            status = WorkflowStatus.COMPLETED
            error = None
            output = {node_id: context.get_result(node_id) for node_id in sink_nodes(workflow)}
            context.logger.event("WORKFLOW_COMPLETED", f"Completed {total} nodes")

        result = WorkflowExecutionResult(
            execution_id=context.execution_id,
            workflow_id=workflow.workflow_id,
            status=status,
            mode=context.mode,
            output=output,
            error=error,
            failed_node=failed_node,
            node_results={node_id: node_results[node_id] for node_id in nodes},
            timeline=list(context.logger.events),
            start_time=start_time,
            end_time=utcnow(),
            execution_time=time.perf_counter() - started,
        )
        self.execution_store.save(result)
        logger.info(
            "Workflow %s execution %s finished: %s", workflow.workflow_id, result.execution_id, status.value
        )
        return result

    @staticmethod
    async def _notify(callback: ProgressCallback | None, progress: int, result: BlockExecutionResult) -> None:
        if callback is None:
            return
        outcome = callback(progress, result)
        if inspect.isawaitable(outcome):
            await outcome
