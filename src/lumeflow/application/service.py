import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

import msgspec

from lumeflow.application.adapter import ExecutionContext
from lumeflow.application.port import JobStore, WorkflowEngine
from lumeflow.domain.entity import BlockExecutionResult, Job, WorkflowDefinition, utcnow
from lumeflow.domain.exception import (
    ExecutionError,
    JobConflictError,
    JobNotFoundError,
    WorkflowCancelledError,
    WorkflowValidationError,
)
from lumeflow.domain.service import validate_workflow
from lumeflow.domain.value_object import (
    ExecutionMode,
    JobKind,
    JobStats,
    JobStatus,
    NodeStatus,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)

JobRunner = Callable[[Job, "ProgressReporter"], Awaitable[Any]]
JobCallback = Callable[[Job], Any]
ErrorCallback = Callable[[Job, BaseException], Any]


def load_workflow(data: dict | str | bytes | WorkflowDefinition) -> WorkflowDefinition:
    """
    Decodes and validates the structure of a workflow document.

    Strings and bytes are parsed as JSON, falling back to YAML. Block types are not
    checked here; the engine checks them against its registry before running.

    :param data: The workflow as a dictionary, a JSON/YAML document or a WorkflowDefinition
    :type data: dict | str | bytes | WorkflowDefinition
    :returns: A WorkflowDefinition instance representing the validated workflow
    :rtype: WorkflowDefinition
    :raises WorkflowValidationError: If the document cannot be decoded or is structurally invalid
    """
    if isinstance(data, WorkflowDefinition):
        validate_workflow(data)
        return data

    try:
        if isinstance(data, (str, bytes)):
            try:
                workflow = msgspec.json.decode(data, type=WorkflowDefinition)
            except msgspec.DecodeError:
                workflow = msgspec.yaml.decode(data, type=WorkflowDefinition)
        else:
            workflow = msgspec.convert(data, type=WorkflowDefinition)
    except (msgspec.ValidationError, msgspec.DecodeError) as exc:
        raise WorkflowValidationError(f"Cannot decode workflow: {exc}") from exc
    validate_workflow(workflow)
    return workflow


def load_workflow_file(path: str | Path) -> WorkflowDefinition:
    """
    Loads a workflow from a ``.json``, ``.yaml`` or ``.yml`` file.

    :param path: Path of the document
    :type path: str | Path
    :rtype: WorkflowDefinition
    """
    path = Path(path)
    raw = path.read_bytes()
    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            workflow = msgspec.json.decode(raw, type=WorkflowDefinition)
        elif suffix in (".yaml", ".yml"):
            workflow = msgspec.yaml.decode(raw, type=WorkflowDefinition)
        else:
            raise WorkflowValidationError(f"Unsupported workflow file type: {path.suffix or path.name}")
    except (msgspec.ValidationError, msgspec.DecodeError) as exc:
        raise WorkflowValidationError(f"Cannot decode workflow {path.name}: {exc}") from exc
    validate_workflow(workflow)
    return workflow


def dump_workflow(workflow: WorkflowDefinition, format: str = "json") -> str:
    """
    Serializes a workflow to a JSON or YAML document.

    :param workflow: The workflow to serialize
    :type workflow: WorkflowDefinition
    :param format: ``"json"`` or ``"yaml"``
    :type format: str
    :rtype: str
    """
    if format == "json":
        return workflow.to_json()
    if format == "yaml":
        return workflow.to_yaml()
    raise ValueError(f"Unsupported workflow format: {format}")


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Job callback %r failed", callback)


class ProgressReporter:
    """The ``update_progress`` callable handed to a job runner.

    Calling it stores the clamped progress and optionally appends a timeline event.
    It also carries the job's cancellation token.
    """

    def __init__(
        self,
        processor: "JobProcessor",
        job_id: str,
        cancel_event: asyncio.Event,
        on_progress: JobCallback | None = None,
    ):
        self.processor = processor
        self.job_id = job_id
        self.cancel_event = cancel_event
        self.on_progress = on_progress

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def __call__(self, progress: float, event: str | None = None, message: str | None = None, **details: Any):
        job = self.processor.update_progress(self.job_id, progress, event, message, **details)
        if job is not None and self.on_progress is not None:
            try:
                self.on_progress(job)
            except Exception:
                logger.exception("Progress callback for job %s failed", self.job_id)
        return job

    def event(self, event: str, message: str | None = None, **details: Any) -> Job | None:
        """Append a timeline event without changing the progress."""
        job = self.processor.get_job(self.job_id)
        if job is None or job.is_terminal:
            return None
        job.add_event(event, message, **details)
        return job


class JobProcessor:
    """
    Tracks background jobs and runs them with at most one runner per job id.

    The processor is the single owner of job state: it creates jobs, admits them
    into the active-processing set, drives the runner and records the outcome.
    :meth:`start` launches the periodic cleanup; :meth:`shutdown` stops it.
    """

    def __init__(
        self,
        store: JobStore,
        max_jobs: int = 100,
        cleanup_interval: float = 300.0,
        max_age: float = 86400.0,
    ):
        """
        :param store: Where jobs and the active-processing set live
        :type store: JobStore
        :param max_jobs: Ceiling on the number of stored jobs
        :type max_jobs: int
        :param cleanup_interval: Seconds between periodic cleanups
        :type cleanup_interval: float
        :param max_age: Age in seconds after which terminal jobs are removed
        :type max_age: float
        """
        self.store = store
        self.max_jobs = max_jobs
        self.cleanup_interval = cleanup_interval
        self.max_age = max_age
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._cleanup_task: asyncio.Task | None = None

    def create_job(self, owner_id: str, kind: JobKind | str, payload: Any = None) -> Job:
        """
        Creates a pending job and stores it, then enforces the job ceiling.

        :param owner_id: The user owning the job
        :type owner_id: str
        :param kind: The kind of operation, e.g. ``JobKind.WORKFLOW``
        :type kind: JobKind | str
        :param payload: Opaque operation parameters
        :type payload: Any
        :returns: The new job
        :rtype: Job
        """
        kind = kind.value if isinstance(kind, JobKind) else kind
        job = Job(id=str(uuid.uuid4()), owner_id=owner_id, kind=kind, payload=payload)
        job.add_event("JOB_CREATED", f"{kind} job created")
        self.store.add(job)
        logger.info("Created job %s (%s) for %s", job.id, kind, owner_id)
        self.enforce_job_limit()
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.store.get(job_id)

    def list_jobs(self, owner_id: str | None = None, status: JobStatus | None = None) -> list[Job]:
        """Return jobs, newest first, optionally filtered by owner and status."""
        jobs = [
            job
            for job in self.store.list()
            if (owner_id is None or job.owner_id == owner_id) and (status is None or job.status is status)
        ]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def get_stats(self) -> JobStats:
        counts = {status: 0 for status in JobStatus}
        jobs = self.store.list()
        for job in jobs:
            counts[job.status] += 1
        return JobStats(
            total=len(jobs),
            pending=counts[JobStatus.PENDING],
            processing=counts[JobStatus.PROCESSING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
        )

    async def start_job(
        self,
        job_id: str,
        runner: JobRunner,
        on_progress: JobCallback | None = None,
        on_complete: JobCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Job:
        """
        Runs ``runner(job, update_progress)`` for a pending job and records the outcome.

        The job id is admitted into the active-processing set before any state changes
        and removed from it as the very last step, whatever the outcome. Runner errors
        fail the job and are not re-raised. A runner that finishes after its job was
        cancelled has its result discarded.

        :param job_id: The job to run
        :type job_id: str
        :param runner: Coroutine function doing the work; its return value becomes ``result.data``
        :type runner: JobRunner
        :param on_progress: Called with the job after every progress update
        :param on_complete: Called with the job once it completed
        :param on_error: Called with the job and the error once it failed
        :returns: The job in its final state
        :rtype: Job
        :raises JobNotFoundError: If the job does not exist
        :raises JobConflictError: If the job is already being processed or not pending
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not self.store.try_activate(job_id):
            raise JobConflictError(job_id)
        try:
            if job.status is not JobStatus.PENDING:
                raise JobConflictError(job_id, f"is already {job.status.value}")
            cancel_event = asyncio.Event()
            self._cancel_events[job_id] = cancel_event
            job.mark_processing()
            job.add_event("JOB_STARTED", "Job processing started")
            logger.info("Started job %s", job_id)
            reporter = ProgressReporter(self, job_id, cancel_event, on_progress)
            try:
                data = await runner(job, reporter)
            except asyncio.CancelledError:
                if not job.is_terminal:
                    job.mark_cancelled()
                    job.add_event("JOB_CANCELLED", "Job task was cancelled")
                raise
            except Exception as exc:
                if job.is_terminal:
                    logger.debug("Discarding error of %s job %s: %s", job.status.value, job_id, exc)
                else:
                    message = str(exc) or type(exc).__name__
                    job.mark_failed(message)
                    job.add_event("JOB_FAILED", message, errorType=type(exc).__name__)
                    logger.warning("Job %s failed: %s", job_id, message)
                    await _notify(on_error, job, exc)
            else:
                if job.is_terminal:
                    logger.debug("Discarding result of %s job %s", job.status.value, job_id)
                else:
                    job.mark_completed(data)
                    job.add_event("JOB_COMPLETED", "Job completed successfully")
                    logger.info("Completed job %s", job_id)
                    await _notify(on_complete, job)
            return job
        finally:
            self._cancel_events.pop(job_id, None)
            self.store.deactivate(job_id)

    def update_progress(
        self,
        job_id: str,
        progress: float,
        event: str | None = None,
        message: str | None = None,
        **details: Any,
    ) -> Job | None:
        """
        Stores the clamped progress of a running job and optionally appends an event.

        Unknown and terminal jobs are left untouched.

        :returns: The updated job, or None if nothing was updated
        :rtype: Job | None
        """
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return None
        job.set_progress(progress)
        if event:
            job.add_event(event, message, progress=job.progress, **details)
        return job

    def cancel_job(self, job_id: str) -> Job | None:
        """
        Cancels a job. Terminal jobs are returned unchanged.

        The running runner is not interrupted; it is signalled through its
        cancellation token and its eventual outcome is discarded.

        :returns: The job, or None if it does not exist
        :rtype: Job | None
        """
        job = self.store.get(job_id)
        if job is None or job.is_terminal:
            return job
        job.mark_cancelled()
        job.add_event("JOB_CANCELLED", "Job was cancelled")
        cancel_event = self._cancel_events.get(job_id)
        if cancel_event is not None:
            cancel_event.set()
        self.store.deactivate(job_id)
        logger.info("Cancelled job %s", job_id)
        return job

    def cleanup_old_jobs(self, max_age: float | None = None) -> int:
        """
        Removes terminal jobs created more than ``max_age`` seconds ago.

        Jobs in the active-processing set are never removed.

        :returns: Number of removed jobs
        :rtype: int
        """
        max_age = self.max_age if max_age is None else max_age
        cutoff = utcnow() - timedelta(seconds=max_age)
        removed = 0
        for job in self.store.list():
            if job.is_terminal and job.created_at < cutoff and not self.store.is_active(job.id):
                self.store.delete(job.id)
                removed += 1
        if removed:
            logger.info("Removed %d jobs older than %ss", removed, max_age)
        return removed

    def enforce_job_limit(self, max_jobs: int | None = None) -> int:
        """
        Removes the oldest terminal jobs until at most ``max_jobs`` remain.

        Pending and processing jobs are never removed, even if the ceiling stays exceeded.

        :returns: Number of removed jobs
        :rtype: int
        """
        max_jobs = self.max_jobs if max_jobs is None else max_jobs
        if self.store.count() <= max_jobs:
            return 0
        removed = 0
        for job in sorted(self.store.list(), key=lambda job: job.created_at):
            if self.store.count() <= max_jobs:
                break
            if job.is_terminal and not self.store.is_active(job.id):
                self.store.delete(job.id)
                removed += 1
        logger.info("Removed %d old jobs to enforce limit of %d", removed, max_jobs)
        return removed

    def start(self) -> None:
        """Launch the periodic cleanup on the running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        """Stop the periodic cleanup and signal every running job to cancel."""
        for cancel_event in self._cancel_events.values():
            cancel_event.set()
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_old_jobs()
                self.enforce_job_limit()
            except Exception:
                logger.exception("Job cleanup failed")

    async def __aenter__(self) -> "JobProcessor":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()


class WorkflowJobRunner:
    """Job runner that executes the workflow carried by a job payload.

    The payload is ``{"workflow": <definition>, "input": <any>, "mode"?: str,
    "variables"?: dict, "disableCache"?: bool}``. Engine progress 0-100 is mapped onto
    job progress 5-95.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        secrets: Mapping[str, str] | None = None,
        default_mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
    ):
        self.engine = engine
        self.secrets = dict(secrets or {})
        self.default_mode = ExecutionMode(default_mode)

    @staticmethod
    def validate_payload(payload: Any) -> bool:
        """
        Checks a workflow job payload.

        :raises WorkflowValidationError: If the definition or the input is missing
        """
        errors = []
        if not isinstance(payload, Mapping):
            raise WorkflowValidationError("Workflow job payload must be a mapping")
        if not payload.get("workflow"):
            errors.append("Payload has no workflow definition")
        if "input" not in payload:
            errors.append("Payload has no input")
        mode = payload.get("mode")
        if mode is not None and mode not in {m.value for m in ExecutionMode}:
            errors.append(f"Unknown execution mode '{mode}'")
        if errors:
            raise WorkflowValidationError(errors)
        return True

    async def __call__(self, job: Job, update_progress: ProgressReporter) -> dict[str, Any]:
        self.validate_payload(job.payload)
        payload = job.payload
        update_progress(5, "WORKFLOW_LOADING", "Loading workflow definition")
        try:
            workflow = load_workflow(payload["workflow"])
        except WorkflowValidationError as exc:
            update_progress.event("WORKFLOW_FAILED", str(exc))
            raise

        context = ExecutionContext(
            workflow_id=workflow.workflow_id,
            mode=payload.get("mode") or self.default_mode,
            variables=payload.get("variables"),
            secrets=self.secrets,
            input_data=payload["input"],
            cancel_event=getattr(update_progress, "cancel_event", None),
            disable_cache=bool(payload.get("disableCache", False)),
        )

        def on_progress(progress: int, node_result: BlockExecutionResult) -> None:
            completed = node_result.status is NodeStatus.COMPLETED
            update_progress(
                5 + progress * 0.9,
                f"NODE_{node_result.status.value.upper()}",
                None if completed else node_result.error,
                nodeId=node_result.node_id,
                status=node_result.status.value,
            )

        try:
            result = await self.engine.run(workflow, payload["input"], context=context, on_progress=on_progress)
        except WorkflowValidationError as exc:
            update_progress.event("WORKFLOW_FAILED", str(exc))
            raise

        if result.status is WorkflowStatus.CANCELLED:
            raise WorkflowCancelledError("Workflow run was cancelled")
        if result.status is WorkflowStatus.FAILED:
            update_progress.event("WORKFLOW_FAILED", result.error, executionId=result.execution_id)
            failed_type = workflow.get_node(result.failed_node).type if result.failed_node else None
            raise ExecutionError(
                f"Node '{result.failed_node}' failed: {result.error}",
                node_id=result.failed_node,
                block_type=failed_type,
            )
        update_progress(95, "WORKFLOW_COMPLETED", "Workflow completed", executionId=result.execution_id)
        return {
            "executionId": result.execution_id,
            "workflowId": result.workflow_id,
            "output": result.output,
            "metadata": result.metadata,
        }
