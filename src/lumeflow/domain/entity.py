import math
from datetime import datetime, timezone
from typing import Any

import msgspec

from lumeflow.domain.exception import InvalidJobTransitionError
from lumeflow.domain.value_object import (
    ExecutionMode,
    JobStatus,
    NodeStatus,
    WorkflowStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class TimelineEvent(msgspec.Struct, kw_only=True):
    """A single entry of an append-only timeline."""

    event: str
    timestamp: datetime = msgspec.field(default_factory=utcnow)
    message: str | None = None
    details: dict[str, Any] = msgspec.field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": _isoformat(self.timestamp), "event": self.event}
        if self.message is not None:
            data["message"] = self.message
        if self.details:
            data["details"] = msgspec.to_builtins(self.details, enc_hook=str)
        return data


class JobResult(msgspec.Struct, kw_only=True):
    success: bool
    data: Any = None
    error: str | None = None


class Job(msgspec.Struct, kw_only=True):
    """A trackable unit of background work.

    Status only moves forward: ``pending -> processing -> {completed|failed|cancelled}``,
    and a job may also be cancelled while still pending. ``completed_at`` is set exactly
    when the status becomes terminal.
    """

    id: str
    owner_id: str
    kind: str
    payload: Any = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    timeline: list[TimelineEvent] = msgspec.field(default_factory=list)
    result: JobResult | None = None
    created_at: datetime = msgspec.field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = msgspec.field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def add_event(self, event: str, message: str | None = None, **details: Any) -> TimelineEvent:
        """
        Append an event to the job timeline.

        :param event: Event name, e.g. ``JOB_STARTED``
        :type event: str
        :param message: Optional human readable message
        :type message: str | None
        :returns: The appended event
        :rtype: TimelineEvent
        """
        entry = TimelineEvent(event=event, message=message, details=details)
        self.timeline.append(entry)
        self.updated_at = entry.timestamp
        return entry

    def set_progress(self, progress: float) -> int:
        """
        Clamp ``progress`` to [0, 100], round it half up and store it.

        Progress of a terminal job is frozen; the stored value is returned unchanged.

        :param progress: The new progress value
        :type progress: float
        :returns: The stored progress
        :rtype: int
        """
        if self.is_terminal:
            return self.progress
        self.progress = clamp_progress(progress)
        self.updated_at = utcnow()
        return self.progress

    def mark_processing(self) -> None:
        if self.status is not JobStatus.PENDING:
            raise InvalidJobTransitionError(self.id, self.status, JobStatus.PROCESSING)
        self.status = JobStatus.PROCESSING
        self.started_at = self.updated_at = utcnow()

    def mark_completed(self, data: Any = None) -> None:
        self._finish(JobStatus.COMPLETED, JobResult(success=True, data=data))
        self.progress = 100

    def mark_failed(self, error: str) -> None:
        self._finish(JobStatus.FAILED, JobResult(success=False, error=error))

    def mark_cancelled(self) -> None:
        self._finish(JobStatus.CANCELLED, JobResult(success=False, error="Job was cancelled"))

    def _finish(self, status: JobStatus, result: JobResult) -> None:
        if self.is_terminal:
            raise InvalidJobTransitionError(self.id, self.status, status)
        self.status = status
        self.result = result
        self.completed_at = self.updated_at = utcnow()

    def to_public_dict(self) -> dict[str, Any]:
        """
        Serialize the job into the shape polled by clients.

        Keys are camelCase and timestamps are ISO-8601 strings.

        :returns: JSON compatible dictionary
        :rtype: dict[str, Any]
        """
        result = None
        if self.result is not None:
            result = {"success": self.result.success}
            if self.result.data is not None:
                result["data"] = msgspec.to_builtins(self.result.data, enc_hook=str)
            if self.result.error is not None:
                result["error"] = self.result.error
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "type": self.kind,
            "status": self.status.value,
            "progress": self.progress,
            "timeline": [event.to_dict() for event in self.timeline],
            "result": result,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


def clamp_progress(progress: float) -> int:
    """Clamp a progress value to [0, 100] and round halves up."""
    if progress != progress:  # NaN
        return 0
    return int(math.floor(min(max(float(progress), 0.0), 100.0) + 0.5))


class RetryPolicy(msgspec.Struct, kw_only=True, rename="camel", forbid_unknown_fields=True):
    """Opt-in retry policy of a workflow node. Delays are in seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: bool = True

    def validate(self) -> list[str]:
        errors = []
        if self.max_retries < 0:
            errors.append("maxRetries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            errors.append("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            errors.append("backoffMultiplier must be >= 1")
        return errors


class NodeDefinition(msgspec.Struct, kw_only=True, rename="camel", forbid_unknown_fields=True):
    """A node of the workflow graph; ``type`` is a block registry key."""

    id: str
    type: str
    name: str | None = None
    description: str | None = None
    config: dict[str, Any] = msgspec.field(default_factory=dict)
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    retry: RetryPolicy | None = msgspec.field(default=None, name="retryConfig")


class EdgeDefinition(msgspec.Struct, kw_only=True, rename="camel", forbid_unknown_fields=True):
    """A dependency between two nodes.

    ``target_port`` names the input slot when a node has several predecessors.
    ``mapping`` reshapes the source output into ``{target_field: value_at_source_path}``.
    """

    source: str
    target: str
    id: str | None = None
    source_port: str | None = None
    target_port: str | None = None
    mapping: dict[str, str] | None = None


class WorkflowGlobals(msgspec.Struct, kw_only=True, rename="camel", forbid_unknown_fields=True):
    max_parallel_nodes: int = 1


class WorkflowDefinition(msgspec.Struct, kw_only=True, rename="camel", forbid_unknown_fields=True):
    """A directed acyclic graph of typed nodes."""

    workflow_id: str
    nodes: list[NodeDefinition]
    edges: list[EdgeDefinition] = msgspec.field(default_factory=list)
    name: str | None = None
    version: int | str = 1
    description: str | None = None
    metadata: dict[str, Any] = msgspec.field(default_factory=dict)
    globals: WorkflowGlobals = msgspec.field(default_factory=WorkflowGlobals)

    def get_node(self, node_id: str) -> NodeDefinition:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Node '{node_id}' not found in workflow '{self.workflow_id}'")

    def to_dict(self) -> dict[str, Any]:
        """Convert the definition to a document dictionary (camelCase keys)."""
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        return msgspec.json.encode(self).decode()

    def to_yaml(self) -> str:
        return msgspec.yaml.encode(self).decode()


class BlockExecutionResult(msgspec.Struct, kw_only=True):
    """Outcome of a single node within one workflow run. ``execution_time`` is in seconds."""

    status: NodeStatus
    node_id: str = ""
    input: Any = None
    output: Any = None
    error: str | None = None
    execution_time: float = 0.0
    retry_count: int = 0
    logs: list[TimelineEvent] = msgspec.field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is NodeStatus.COMPLETED


class WorkflowExecutionResult(msgspec.Struct, kw_only=True):
    """Structured record of one workflow run, including every node result."""

    execution_id: str
    workflow_id: str
    status: WorkflowStatus
    mode: ExecutionMode = ExecutionMode.PRODUCTION
    output: Any = None
    error: str | None = None
    failed_node: str | None = None
    node_results: dict[str, BlockExecutionResult] = msgspec.field(default_factory=dict)
    timeline: list[TimelineEvent] = msgspec.field(default_factory=list)
    start_time: datetime = msgspec.field(default_factory=utcnow)
    end_time: datetime | None = None
    execution_time: float = 0.0

    @property
    def metadata(self) -> dict[str, Any]:
        statuses = [result.status for result in self.node_results.values()]
        return {
            "executionTime": self.execution_time,
            "nodesExecuted": sum(1 for s in statuses if s in (NodeStatus.COMPLETED, NodeStatus.FAILED)),
            "nodesFailed": statuses.count(NodeStatus.FAILED),
            "nodesSkipped": statuses.count(NodeStatus.SKIPPED),
            "startTime": _isoformat(self.start_time),
            "endTime": _isoformat(self.end_time),
        }

    def to_dict(self):
        """Convert the WorkflowExecutionResult to a dictionary."""
        return msgspec.to_builtins(self, enc_hook=str)

    def to_json(self) -> str:
        """Convert the WorkflowExecutionResult to a JSON string."""
        return msgspec.json.encode(self, enc_hook=str).decode()

    def to_yaml(self) -> str:
        """Convert the WorkflowExecutionResult to a YAML string."""
        return msgspec.yaml.encode(self, enc_hook=str).decode()
