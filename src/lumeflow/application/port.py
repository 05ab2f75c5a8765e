from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from lumeflow.domain.entity import BlockExecutionResult, Job, WorkflowDefinition, WorkflowExecutionResult
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import BlockMetadata

ProgressCallback = Callable[[int, BlockExecutionResult], Any]


class WorkflowEngine(ABC):
    """Abstract base class defining the workflow engine interface."""

    @abstractmethod
    def validate(self, workflow: WorkflowDefinition) -> bool:
        """
        Checks that the workflow can be executed by this engine.

        :param workflow: The workflow to check
        :type workflow: WorkflowDefinition
        :returns: True when the workflow is valid
        :rtype: bool
        :raises WorkflowValidationError: If the workflow cannot be executed
        """

    @abstractmethod
    async def run(
        self,
        workflow: WorkflowDefinition,
        input_data: Any = None,
        context: Any = None,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowExecutionResult:
        """
        Runs the given workflow.

        :param workflow: The workflow to execute
        :type workflow: WorkflowDefinition
        :param input_data: External input handed to the root nodes
        :type input_data: Any
        :param context: Execution context of the run; a default one is created when None
        :type context: ExecutionContext | None
        :param on_progress: Called with the overall progress (0-100) after every node
        :type on_progress: ProgressCallback | None
        :returns: The execution record of the run
        :rtype: WorkflowExecutionResult
        """
        ...


class BlockResolver(ABC):
    """Abstract base class defining block resolution interface."""

    @abstractmethod
    def resolve(self, block_type: str) -> BlockBase:
        """
        Resolves and returns a block instance by its type.

        :param block_type: The registry key of the block
        :type block_type: str
        :returns: The resolved block instance
        :rtype: BlockBase
        :raises UnknownBlockTypeError: if the block type is not registered
        """
        ...

    @abstractmethod
    def list_types(self) -> list[str]:
        """
        Returns every registered block type.

        :rtype: list[str]
        """

    @abstractmethod
    def register(self, block: Any = None, *, block_type: str | None = None, metadata: BlockMetadata | None = None):
        """
        Registers a block class, factory or instance.

        :raises DuplicateBlockError: If the block type is already registered
        """

    def has(self, block_type: str) -> bool:
        return block_type in self.list_types()

    def get_metadata(self, block_type: str) -> BlockMetadata:
        return type(self.resolve(block_type)).metadata()

    def close(self) -> None:
        """Release the resources of every block instance created so far."""


class BlockRunner(ABC):
    """Abstract interface for running a block for one node."""

    @abstractmethod
    async def run(self, block: BlockBase, config: dict[str, Any], input_data: Any, context: Any) -> Any:
        """
        Run a block with its resolved configuration and input.

        :param block: The block to run
        :type block: BlockBase
        :param config: The node configuration
        :type config: dict[str, Any]
        :param input_data: The node input
        :type input_data: Any
        :param context: The node-scoped execution context
        :type context: ExecutionContext
        :returns: Whatever the block returned
        :rtype: Any
        """


class JobStore(ABC):
    """Abstract interface for storing jobs and tracking which of them are being processed."""

    @abstractmethod
    def add(self, job: Job) -> None:
        """Store a new job."""

    @abstractmethod
    def get(self, job_id: str) -> Job | None:
        """
        Retrieve a job by id.

        :param job_id: The job identifier
        :type job_id: str
        :returns: The job, or None if absent
        :rtype: Job | None
        """

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Remove a job; returns False if it was absent."""

    @abstractmethod
    def list(self) -> list[Job]:
        """Return every stored job in insertion order."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored jobs."""

    @abstractmethod
    def try_activate(self, job_id: str) -> bool:
        """
        Admit a job id into the active-processing set in one atomic check-and-insert.

        :param job_id: The job identifier
        :type job_id: str
        :returns: True if admitted, False if the id was already active
        :rtype: bool
        """

    @abstractmethod
    def deactivate(self, job_id: str) -> None:
        """Remove a job id from the active-processing set; absent ids are ignored."""

    @abstractmethod
    def is_active(self, job_id: str) -> bool:
        """Whether the job id is in the active-processing set."""


class ExecutionStore(ABC):
    """Abstract interface for storing and retrieving workflow execution records."""

    @abstractmethod
    def save(self, result: WorkflowExecutionResult) -> None:
        """
        Store an execution record under its execution id.

        :param result: The finished run
        :type result: WorkflowExecutionResult
        """

    @abstractmethod
    def get(self, execution_id: str) -> WorkflowExecutionResult:
        """
        Retrieve an execution record.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: The stored record
        :rtype: WorkflowExecutionResult
        :raises KeyError: if the execution is not found
        """

    @abstractmethod
    def list(self, workflow_id: str | None = None) -> list[WorkflowExecutionResult]:
        """
        List execution records, optionally restricted to one workflow, oldest first.

        :param workflow_id: Only return runs of this workflow
        :type workflow_id: str | None
        :rtype: list[WorkflowExecutionResult]
        """

    @abstractmethod
    def delete(self, execution_id: str) -> bool:
        """
        Delete an execution record.

        :returns: True if a record was deleted, False otherwise
        :rtype: bool
        """
