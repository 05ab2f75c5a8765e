"""
Lumeflow - job lifecycle management and block-graph workflows

Run workflows of pluggable blocks in the foreground or as tracked background jobs,
with cache, rate limiting, circuit breaking and retries for blocks that call
external services.
"""

from lumeflow.application.adapter import ExecutionContext
from lumeflow.application.service import dump_workflow, load_workflow, load_workflow_file
from lumeflow.backend import BackendType
from lumeflow.blocks import ServiceBlock
from lumeflow.client import Client
from lumeflow.config import Settings
from lumeflow.domain.entity import (
    BlockExecutionResult,
    Job,
    WorkflowDefinition,
    WorkflowExecutionResult,
)
from lumeflow.domain.port import BlockBase
from lumeflow.domain.value_object import ExecutionMode, JobKind, JobStatus, NodeStatus, WorkflowStatus
from lumeflow.factory import create

__all__ = [
    "BackendType",
    "BlockBase",
    "BlockExecutionResult",
    "Client",
    "ExecutionContext",
    "ExecutionMode",
    "Job",
    "JobKind",
    "JobStatus",
    "NodeStatus",
    "ServiceBlock",
    "Settings",
    "WorkflowDefinition",
    "WorkflowExecutionResult",
    "WorkflowStatus",
    "create",
    "dump_workflow",
    "load_workflow",
    "load_workflow_file",
]
