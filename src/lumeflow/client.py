import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from lumeflow.application.adapter import ExecutionContext
from lumeflow.application.port import BlockResolver, ExecutionStore, ProgressCallback, WorkflowEngine
from lumeflow.application.service import JobProcessor, JobRunner, load_workflow
from lumeflow.domain.entity import Job, WorkflowDefinition, WorkflowExecutionResult
from lumeflow.domain.exception import JobNotFoundError
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import BlockMetadata, ExecutionMode, JobKind, JobStats, JobStatus

logger = logging.getLogger(__name__)


class Client:
    """
    Unified client façade for workflows and background jobs.

    The Client is the only thing users interact with. It exposes methods like .block(),
    .run() and .submit(), and holds the engine, block registry, job processor and
    execution store chosen by :func:`lumeflow.create`.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        resolver: BlockResolver,
        job_processor: JobProcessor,
        execution_store: ExecutionStore,
        secrets: Mapping[str, str] | None = None,
        default_mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
    ):
        """
        Initialize the client with its collaborators.

        :param engine: The workflow engine implementation (e.g., InMemoryWorkflowEngine)
        :type engine: WorkflowEngine
        :param resolver: The block registry used by the engine
        :type resolver: BlockResolver
        :param job_processor: Tracks background jobs
        :type job_processor: JobProcessor
        :param execution_store: Where finished workflow runs are kept
        :type execution_store: ExecutionStore
        :param secrets: Secrets handed to every run started with :meth:`run`
        :type secrets: Mapping[str, str] | None
        :param default_mode: Execution mode used when a run does not name one
        :type default_mode: ExecutionMode | str
        """
        self._engine = engine
        self._resolver = resolver
        self._jobs = job_processor
        self._executions = execution_store
        self._secrets = dict(secrets or {})
        self._default_mode = ExecutionMode(default_mode)
        self._runners: dict[str, JobRunner] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine

    @property
    def jobs(self) -> JobProcessor:
        return self._jobs

    def block(self, block: type[BlockBase] | BlockBase, block_type: str | None = None) -> "Client":
        """
        Register a block with the client's registry.

        :param block: A block class or instance
        :param block_type: Registry key; defaults to the block's ``block_type``
        :returns: The client, for chaining
        :rtype: Client
        """
        self._resolver.register(block, block_type=block_type)
        return self

    def available_blocks(self) -> list[BlockMetadata]:
        return [self._resolver.get_metadata(block_type) for block_type in self._resolver.list_types()]

    def validate(self, workflow: dict | str | bytes | WorkflowDefinition) -> WorkflowDefinition:
        """
        Load a workflow document and check it against the registered blocks.

        :raises WorkflowValidationError: If the workflow cannot be executed
        """
        definition = load_workflow(workflow)
        self._engine.validate(definition)
        return definition

    async def run(
        self,
        workflow: dict | str | bytes | WorkflowDefinition,
        input_data: Any = None,
        *,
        mode: ExecutionMode | str | None = None,
        variables: Mapping[str, Any] | None = None,
        disable_cache: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowExecutionResult:
        """
        Execute a workflow in the foreground.

        :param workflow: The workflow document or definition
        :param input_data: Input of the root nodes
        :type input_data: Any
        :param mode: Execution mode; defaults to the client's mode
        :param variables: Values reachable as ``{{variables.x}}``
        :param disable_cache: Bypass block caches for this run
        :param on_progress: Called with overall progress after every node
        :returns: The execution record of the run
        :rtype: WorkflowExecutionResult
        :raises WorkflowValidationError: If the workflow is invalid; no node runs
        """
        definition = load_workflow(workflow)
        context = ExecutionContext(
            workflow_id=definition.workflow_id,
            mode=mode or self._default_mode,
            variables=variables,
            secrets=self._secrets,
            input_data=input_data,
            disable_cache=disable_cache,
        )
        return await self._engine.run(definition, input_data, context=context, on_progress=on_progress)

    def register_runner(self, kind: JobKind | str, runner: JobRunner) -> "Client":
        """
        Register the coroutine function that runs jobs of ``kind``.

        :returns: The client, for chaining
        :rtype: Client
        """
        self._runners[kind.value if isinstance(kind, JobKind) else kind] = runner
        return self

    def runner_for(self, kind: JobKind | str) -> JobRunner:
        key = kind.value if isinstance(kind, JobKind) else kind
        try:
            return self._runners[key]
        except KeyError:
            raise LookupError(f"No runner registered for job kind '{key}'") from None

    def create_job(self, owner_id: str, kind: JobKind | str, payload: Any = None) -> Job:
        return self._jobs.create_job(owner_id, kind, payload)

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get_job(job_id)

    def list_jobs(self, owner_id: str | None = None, status: JobStatus | None = None) -> list[Job]:
        return self._jobs.list_jobs(owner_id, status)

    def cancel_job(self, job_id: str) -> Job | None:
        return self._jobs.cancel_job(job_id)

    def get_job_stats(self) -> JobStats:
        return self._jobs.get_stats()

    async def start_job(self, job_id: str, **callbacks: Any) -> Job:
        """
        Run a pending job in the foreground with the runner registered for its kind.

        :param job_id: The job to run
        :type job_id: str
        :param callbacks: ``on_progress``, ``on_complete`` and ``on_error`` callbacks
        :returns: The job in its final state
        :rtype: Job
        :raises JobNotFoundError: If the job does not exist
        :raises JobConflictError: If the job is already being processed
        """
        job = self._jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return await self._jobs.start_job(job_id, self.runner_for(job.kind), **callbacks)

    async def submit(self, owner_id: str, kind: JobKind | str, payload: Any = None, **callbacks: Any) -> Job:
        """
        Create a job and start it in the background.

        The returned job is pending or already processing; poll it with :meth:`get_job`
        or wait for it with :meth:`wait_for`.

        :raises LookupError: If no runner is registered for ``kind``
        """
        runner = self.runner_for(kind)
        validate_payload = getattr(runner, "validate_payload", None)
        if validate_payload is not None:
            validate_payload(payload)
        job = self._jobs.create_job(owner_id, kind, payload)
        task = asyncio.get_running_loop().create_task(
            self._jobs.start_job(job.id, runner, **callbacks), name=f"lumeflow-job-{job.id}"
        )
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))
        return job

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Job:
        """
        Wait until a submitted job has left the active-processing set.

        :raises JobNotFoundError: If the job does not exist
        :raises TimeoutError: If ``timeout`` elapses first
        """
        task = self._tasks.get(job_id)
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise TimeoutError(f"Job {job_id} did not finish within {timeout}s")
        job = self._jobs.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_execution(self, execution_id: str) -> WorkflowExecutionResult:
        """
        Retrieve a stored workflow run.

        :raises KeyError: If the execution is not found
        """
        return self._executions.get(execution_id)

    def list_executions(self, workflow_id: str | None = None) -> list[WorkflowExecutionResult]:
        return self._executions.list(workflow_id)

    def delete_execution(self, execution_id: str) -> bool:
        return self._executions.delete(execution_id)

    def start(self) -> None:
        """Launch periodic job cleanup on the running event loop."""
        self._jobs.start()

    async def close(self) -> None:
        """Cancel background jobs, stop job cleanup, close the blocks and the execution store."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._jobs.shutdown()
        self._resolver.close()
        close = getattr(self._executions, "close", None)
        if close is not None:
            close()

    async def __aenter__(self) -> "Client":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
