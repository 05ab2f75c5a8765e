from typing import Any

from lumeflow.application.service import JobProcessor, WorkflowJobRunner
from lumeflow.backend import BackendType
from lumeflow.blocks.builtin import BUILTIN_BLOCKS
from lumeflow.client import Client
from lumeflow.config import Settings, get_settings, load_secrets_from_env
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import JobKind
from lumeflow.infrastructure.adapter.in_memory.block_registry import InMemoryBlockRegistry
from lumeflow.infrastructure.adapter.in_memory.block_runner import AsyncioBlockRunner
from lumeflow.infrastructure.adapter.in_memory.execution_store import InMemoryExecutionStore
from lumeflow.infrastructure.adapter.in_memory.job_store import InMemoryJobStore
from lumeflow.infrastructure.adapter.in_memory.workflow_engine import InMemoryWorkflowEngine
from lumeflow.infrastructure.adapter.sqlite.execution_store import SQLiteExecutionStore


def create(
    backend: BackendType | str | None = None,
    blocks: list[type[BlockBase] | BlockBase] | None = None,
    settings: Settings | None = None,
    **kwargs: Any,
) -> Client:
    """
    Factory function to create a Client with the specified execution record backend.

    The built-in blocks are always registered; ``blocks`` are registered after them.
    Jobs of kind ``workflow`` are pre-wired to a :class:`WorkflowJobRunner`.

    :param backend: Where execution records are kept; defaults to ``settings.execution_store``
    :type backend: BackendType | str | None
    :param blocks: Optional list of block classes or instances to pre-register
    :type blocks: list[type[BlockBase] | BlockBase] | None
    :param settings: Settings to use instead of the environment-derived ones
    :type settings: Settings | None
    :param kwargs: ``db_path`` for the SQLite backend, ``secrets`` and ``default_mode`` overrides
    :returns: A configured Client instance
    :rtype: Client
    :raises ValueError: If the backend type is unsupported
    """
    settings = settings or get_settings()
    backend = BackendType(backend) if backend is not None else settings.execution_store

    if backend == BackendType.IN_MEMORY:
        execution_store = InMemoryExecutionStore()
    elif backend == BackendType.SQLITE:
        execution_store = SQLiteExecutionStore(kwargs.get("db_path", settings.sqlite_path))
    else:
        raise ValueError(f"Unsupported backend: {backend}")

    registry = InMemoryBlockRegistry()
    for block in [*BUILTIN_BLOCKS, *(blocks or [])]:
        registry.register(block)

    engine = InMemoryWorkflowEngine(registry, AsyncioBlockRunner(), execution_store)
    job_processor = JobProcessor(
        InMemoryJobStore(),
        max_jobs=settings.max_jobs,
        cleanup_interval=settings.job_cleanup_interval,
        max_age=settings.job_max_age,
    )
    secrets = kwargs.get("secrets")
    if secrets is None:
        secrets = load_secrets_from_env(settings.secret_prefix)
    default_mode = kwargs.get("default_mode", settings.default_mode)

    client = Client(
        engine=engine,
        resolver=registry,
        job_processor=job_processor,
        execution_store=execution_store,
        secrets=secrets,
        default_mode=default_mode,
    )
    client.register_runner(JobKind.WORKFLOW, WorkflowJobRunner(engine, secrets=secrets, default_mode=default_mode))
    return client
