import asyncio
import copy
import logging
import re
import threading
import time
import uuid
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import msgspec
from msgspec import structs

from lumeflow.application.port import BlockResolver, BlockRunner
from lumeflow.domain.entity import (
    BlockExecutionResult,
    EdgeDefinition,
    NodeDefinition,
    TimelineEvent,
    WorkflowDefinition,
    utcnow,
)
from lumeflow.domain.exception import (
    ExecutionError,
    InvalidBlockConfigError,
    RetryExhaustedError,
    WorkflowCancelledError,
)
from lumeflow.domain.service import incoming_edges
from lumeflow.domain.value_object import ExecutionMode, NodeStatus, RetryConfig
from lumeflow.reliability.retry import RetryExecutor

logger = logging.getLogger(__name__)

MISSING = object()
_path_pattern = re.compile(r"[^.\[\]]+|\[\d+\]")


def lookup_path(value: Any, path: str | list[str]) -> Any:
    """
    Walks ``path`` (``a.b[0].c``) into ``value``.

    :returns: The value found, or :data:`MISSING` when the path does not exist
    """
    parts = _path_pattern.findall(path) if isinstance(path, str) else path
    current = value
    for part in parts:
        if isinstance(current, msgspec.Struct):
            current = msgspec.to_builtins(current)
        try:
            if part.startswith("["):
                current = current[int(part[1:-1])]
            elif isinstance(current, Mapping):
                current = current[part]
            elif isinstance(current, list) and part.isdigit():
                current = current[int(part)]
            else:
                return MISSING
        except (KeyError, IndexError, TypeError):
            return MISSING
    return current


class ContextLogger(logging.LoggerAdapter):
    """Logger bound to one workflow run that also records a timeline.

    Every message is forwarded to the ``lumeflow.execution`` logger and kept as a
    :class:`TimelineEvent` whose event name is the level name. Node-scoped children
    created with :meth:`for_node` report their events to their parent as well.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        extra: Mapping[str, Any] | None = None,
        parent: "ContextLogger | None" = None,
    ):
        super().__init__(logger or logging.getLogger("lumeflow.execution"), dict(extra or {}))
        self.events: list[TimelineEvent] = []
        self._parent = parent
        self._lock = threading.Lock()

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        node_id = extra.get("node_id")
        prefix = f"[{extra.get('workflow_id')}:{extra.get('execution_id')}]"
        if node_id:
            prefix = f"{prefix}[{node_id}]"
        return f"{prefix} {msg}", kwargs

    def log(self, level, msg, *args, **kwargs):
        details = kwargs.pop("details", None) or {}
        try:
            message = str(msg) % args if args else str(msg)
        except (TypeError, ValueError):
            message = f"{msg} {args}"
        self.record(TimelineEvent(event=logging.getLevelName(level), message=message, details=details))
        super().log(level, msg, *args, **kwargs)

    def record(self, event: TimelineEvent) -> None:
        node_id = self.extra.get("node_id")
        if node_id and "nodeId" not in event.details:
            event.details["nodeId"] = node_id
        with self._lock:
            self.events.append(event)
        if self._parent is not None:
            self._parent.record(event)

    def event(self, name: str, message: str | None = None, **details: Any) -> TimelineEvent:
        """Record a named timeline event and log it at INFO."""
        entry = TimelineEvent(event=name, message=message, details=details)
        self.record(entry)
        if self.isEnabledFor(logging.INFO):
            msg, kwargs = self.process(f"{name} {message or ''}".rstrip(), {})
            self.logger.info(msg, **kwargs)
        return entry

    def node(self, node_id: str, msg: str, *args: Any, level: int = logging.INFO, **details: Any) -> None:
        self.log(level, msg, *args, details={"nodeId": node_id, **details})

    def for_node(self, node_id: str) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, "node_id": node_id}, parent=self)


class ExecutionContext:
    """Per-run bag of secrets, variables, mode and logger handed to every block.

    Variables and secrets are exposed as read-only mappings. Node outputs are
    recorded by the engine as the run advances and read back with :meth:`get_result`.
    """

    def __init__(
        self,
        workflow_id: str,
        execution_id: str | None = None,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        variables: Mapping[str, Any] | None = None,
        secrets: Mapping[str, str] | None = None,
        logger: ContextLogger | None = None,
        input_data: Any = None,
        cancel_event: asyncio.Event | None = None,
        disable_cache: bool = False,
    ):
        self.workflow_id = workflow_id
        self.execution_id = execution_id or uuid.uuid4().hex
        self.mode = ExecutionMode(mode)
        self.variables = MappingProxyType(dict(variables or {}))
        self.secrets = MappingProxyType(dict(secrets or {}))
        self.logger = logger or ContextLogger(
            extra={"workflow_id": self.workflow_id, "execution_id": self.execution_id}
        )
        self.input = input_data
        self.cancel_event = cancel_event
        self.disable_cache = disable_cache
        self.node_id: str | None = None
        self._results: dict[str, Any] = {}

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    @property
    def is_mock(self) -> bool:
        """True in ``demo`` and ``test`` modes, where blocks answer with mock data."""
        return self.mode in (ExecutionMode.DEMO, ExecutionMode.TEST)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise WorkflowCancelledError("Workflow run was cancelled", node_id=self.node_id)

    def get_variable(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def get_secret(self, name: str, default: str | None = None) -> str | None:
        return self.secrets.get(name, default)

    def get_result(self, node_id: str) -> Any:
        """Retrieves the output of a previously completed node by its id."""
        return self._results[node_id]

    def has_result(self, node_id: str) -> bool:
        return node_id in self._results

    def set_result(self, node_id: str, output: Any) -> None:
        self._results[node_id] = output

    @property
    def results(self) -> Mapping[str, Any]:
        return MappingProxyType(self._results)

    def for_node(self, node_id: str) -> "ExecutionContext":
        """Return a view of this context whose logger is scoped to ``node_id``."""
        node_context = copy.copy(self)
        node_context.node_id = node_id
        node_context.logger = self.logger.for_node(node_id)
        return node_context


class TemplateResolver:
    """Resolves ``{{namespace.path}}`` placeholders in arbitrarily nested data structures.

    Rules:
    - If a string is exactly a single placeholder like "{{input.email}}", return the referenced value as-is (preserve type).
    - Otherwise, perform string interpolation; mappings and lists are rendered as JSON.
    - Namespaces: ``input``, ``variables``, ``secrets``, ``nodes.<id>``, ``workflow.id|executionId|mode``.
    - Placeholders that cannot be resolved are left untouched.
    """

    _pattern = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

    def __init__(self, ctx: ExecutionContext, input_data: Any = MISSING):
        self.ctx = ctx
        self.input = ctx.input if input_data is MISSING else input_data

    def resolve_any(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self.resolve_any(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_any(v) for v in value]
        if isinstance(value, str):
            return self._resolve_string(value)
        return value

    def _resolve_string(self, s: str) -> Any:
        # Exact single-token match => return raw value to preserve type
        m = self._pattern.fullmatch(s.strip())
        if m:
            found = self._lookup_token(m.group(1))
            return s if found is MISSING else found

        def repl(match: re.Match) -> str:
            found = self._lookup_token(match.group(1))
            if found is MISSING:
                return match.group(0)
            if isinstance(found, str):
                return found
            return msgspec.json.encode(found, enc_hook=str).decode()

        return self._pattern.sub(repl, s)

    def _lookup_token(self, token: str) -> Any:
        parts = _path_pattern.findall(token)
        if not parts:
            return MISSING
        namespace, rest = parts[0], parts[1:]
        if namespace == "input":
            return lookup_path(self.input, rest)
        if namespace == "variables":
            return lookup_path(dict(self.ctx.variables), rest) if rest else MISSING
        if namespace == "secrets":
            return lookup_path(dict(self.ctx.secrets), rest) if rest else MISSING
        if namespace == "nodes" and rest:
            if not self.ctx.has_result(rest[0]):
                return MISSING
            return lookup_path(self.ctx.get_result(rest[0]), rest[1:])
        if namespace == "workflow" and len(rest) == 1:
            return {
                "id": self.ctx.workflow_id,
                "executionId": self.ctx.execution_id,
                "mode": self.ctx.mode.value,
            }.get(rest[0], MISSING)
        return MISSING


class InputResolver:
    """Builds the input of every node from the outputs of its predecessors.

    Roots receive the workflow input, a node with one predecessor receives that
    predecessor's output, and a node with several receives a dict keyed by each
    edge's ``target_port`` (falling back to the source node id).
    """

    def __init__(self, workflow: WorkflowDefinition):
        self.incoming = incoming_edges(workflow)

    def resolve(self, node_id: str, outputs: Mapping[str, Any], workflow_input: Any) -> Any:
        edges = self.incoming.get(node_id, [])
        if not edges:
            return workflow_input
        if len(edges) == 1:
            return self.adapt(edges[0], outputs.get(edges[0].source))
        merged: dict[str, Any] = {}
        for edge in edges:
            merged[edge.target_port or edge.source] = self.adapt(edge, outputs.get(edge.source))
        return merged

    @staticmethod
    def adapt(edge: EdgeDefinition, value: Any) -> Any:
        if not edge.mapping:
            return value
        adapted = {}
        for target_field, source_path in edge.mapping.items():
            found = lookup_path(value, source_path)
            adapted[target_field] = None if found is MISSING else found
        return adapted


class _FailedAttempt(ExecutionError):
    """A block returned a failed result while its node has a retry policy."""

    def __init__(self, result: BlockExecutionResult, node_id: str, block_type: str):
        self.result = result
        super().__init__(result.error or "Block reported failure", node_id=node_id, block_type=block_type)


def _retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (InvalidBlockConfigError, WorkflowCancelledError))


class NodeExecutor:
    """Executes one node: resolves its block, interpolates its config and records the outcome."""

    def __init__(self, resolver: BlockResolver, runner: BlockRunner, sleep=asyncio.sleep):
        """Initializes with a block resolver and a block runner."""
        self.resolver = resolver
        self.runner = runner
        self._sleep = sleep

    async def execute(self, node: NodeDefinition, input_data: Any, context: ExecutionContext) -> BlockExecutionResult:
        """Executes the node and returns a structured result; never raises for block failures."""
        node_context = context.for_node(node.id)
        block = self.resolver.resolve(node.type)
        start_time = utcnow()
        started = time.perf_counter()
        retry_count = 0
        node_context.logger.debug("Executing block %s", node.type)
        try:
            config = TemplateResolver(node_context, input_data).resolve_any(node.config)
            if node.retry is not None:
                executor = RetryExecutor(
                    RetryConfig(
                        max_retries=node.retry.max_retries,
                        initial_delay=node.retry.initial_delay,
                        backoff_multiplier=node.retry.backoff_multiplier,
                        max_delay=node.retry.max_delay,
                        jitter=node.retry.jitter,
                        retry_condition=_retryable,
                        on_retry=lambda attempt, exc: node_context.logger.warning(
                            "Retry %d after error: %s", attempt, exc
                        ),
                    ),
                    sleep=self._sleep,
                )
                outcome, stats = await executor.execute_with_stats(
                    self._attempt, node, block, config, input_data, node_context, True
                )
                retry_count = stats.retries
            else:
                outcome = await self._attempt(node, block, config, input_data, node_context, False)
        except RetryExhaustedError as exc:
            retry_count = exc.stats.retries
            last = exc.last_error
            if isinstance(last, _FailedAttempt):
                outcome = last.result
            else:
                outcome = BlockExecutionResult(status=NodeStatus.FAILED, error=str(last) or type(last).__name__)
        except WorkflowCancelledError as exc:
            outcome = BlockExecutionResult(status=NodeStatus.SKIPPED, error=str(exc))
        except Exception as exc:
            logger.debug("Node %s raised", node.id, exc_info=True)
            outcome = BlockExecutionResult(status=NodeStatus.FAILED, error=str(exc) or type(exc).__name__)

        if not isinstance(outcome, BlockExecutionResult):
            outcome = BlockExecutionResult(status=NodeStatus.COMPLETED, output=outcome)
        if outcome.status is NodeStatus.FAILED:
            node_context.logger.error("Block %s failed: %s", node.type, outcome.error)
        elif outcome.status is NodeStatus.SKIPPED:
            node_context.logger.info("Block %s stopped: %s", node.type, outcome.error)
        else:
            node_context.logger.debug("Block %s completed", node.type)
        return structs.replace(
            outcome,
            node_id=node.id,
            input=input_data,
            retry_count=retry_count,
            start_time=start_time,
            end_time=utcnow(),
            execution_time=time.perf_counter() - started,
            logs=list(node_context.logger.events) + list(outcome.logs),
        )

    async def _attempt(self, node, block, config, input_data, node_context, raise_on_failure):
        outcome = await self.runner.run(block, config, input_data, node_context)
        if raise_on_failure and isinstance(outcome, BlockExecutionResult) and outcome.status is NodeStatus.FAILED:
            raise _FailedAttempt(outcome, node.id, node.type)
        return outcome
