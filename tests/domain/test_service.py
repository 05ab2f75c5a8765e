"""
Tests for domain services.

This module tests workflow validation and dependency planning.
"""

import msgspec
import pytest

from lumeflow.domain.entity import WorkflowDefinition
from lumeflow.domain.exception import WorkflowValidationError
from lumeflow.domain.service import (
    incoming_edges,
    plan_layers,
    sink_nodes,
    topological_order,
    validate_workflow,
)


def workflow(nodes, edges=(), **extra) -> WorkflowDefinition:
    document = {
        "workflowId": extra.pop("workflow_id", "wf"),
        "nodes": [{"id": node_id, "type": node_type} for node_id, node_type in nodes],
        "edges": [{"source": source, "target": target} for source, target in edges],
        **extra,
    }
    return msgspec.convert(document, WorkflowDefinition)


class TestValidateWorkflow:
    """Test cases for validate_workflow."""

    def test_valid_linear_workflow(self):
        """Test a valid chain passes."""
        wf = workflow([("a", "t"), ("b", "t")], [("a", "b")])

        assert validate_workflow(wf, known_types={"t"}) is True

    def test_block_types_are_skipped_without_registry(self):
        """Test unknown block types are only reported when known types are given."""
        wf = workflow([("a", "unregistered")])

        assert validate_workflow(wf) is True

    def test_unknown_block_type(self):
        """Test nodes referencing unregistered block types are rejected."""
        wf = workflow([("a", "t"), ("b", "missing.block")])

        with pytest.raises(WorkflowValidationError) as exc_info:
            validate_workflow(wf, known_types=["t"])

        assert exc_info.value.errors == ["Unknown block type 'missing.block' for node 'b'"]

    def test_empty_workflow(self):
        """Test a workflow without nodes is rejected."""
        wf = workflow([])

        with pytest.raises(WorkflowValidationError, match="no nodes"):
            validate_workflow(wf)

    def test_missing_workflow_id(self):
        """Test an empty workflow id is rejected."""
        wf = workflow([("a", "t")], workflow_id="")

        with pytest.raises(WorkflowValidationError, match="no workflowId"):
            validate_workflow(wf)

    def test_duplicate_node_ids(self):
        """Test duplicate node ids are rejected."""
        wf = workflow([("a", "t"), ("a", "t")])

        with pytest.raises(WorkflowValidationError, match="Duplicate node id found: a"):
            validate_workflow(wf)

    def test_dangling_edge(self):
        """Test edges must reference declared nodes."""
        wf = workflow([("a", "t")], [("a", "ghost")])

        with pytest.raises(WorkflowValidationError, match="missing node 'ghost'"):
            validate_workflow(wf)

    def test_cycle(self):
        """Test cyclic graphs are rejected and the cycle is named."""
        wf = workflow([("a", "t"), ("b", "t"), ("c", "t")], [("a", "b"), ("b", "c"), ("c", "b")])

        with pytest.raises(WorkflowValidationError, match="cycle involving nodes: b, c"):
            validate_workflow(wf)

    def test_self_loop(self):
        """Test a node depending on itself is a cycle."""
        wf = workflow([("a", "t")], [("a", "a")])

        with pytest.raises(WorkflowValidationError, match="cycle"):
            validate_workflow(wf)

    def test_invalid_parallelism(self):
        """Test maxParallelNodes must be positive."""
        wf = workflow([("a", "t")], globals={"maxParallelNodes": 0})

        with pytest.raises(WorkflowValidationError, match="maxParallelNodes"):
            validate_workflow(wf)

    def test_invalid_retry_policy(self):
        """Test node retry policies are validated."""
        wf = msgspec.convert(
            {"workflowId": "wf", "nodes": [{"id": "a", "type": "t", "retryConfig": {"maxRetries": -1}}]},
            WorkflowDefinition,
        )

        with pytest.raises(WorkflowValidationError, match="Node 'a': maxRetries"):
            validate_workflow(wf)

    def test_collects_every_error(self):
        """Test all problems are reported together."""
        wf = workflow([("a", "x"), ("a", "y")], [("a", "ghost")])

        with pytest.raises(WorkflowValidationError) as exc_info:
            validate_workflow(wf, known_types=[])

        assert len(exc_info.value.errors) == 4
        assert str(exc_info.value).startswith("Invalid workflow: ")

    def test_validation_error_is_value_error(self):
        """Test callers may catch ValueError."""
        with pytest.raises(ValueError):
            validate_workflow(workflow([]))


class TestPlanning:
    """Test cases for layer planning helpers."""

    def setup_method(self):
        """Set up a diamond workflow a -> (b, c) -> d plus an isolated node e."""
        self.wf = workflow(
            [("a", "t"), ("b", "t"), ("c", "t"), ("d", "t"), ("e", "t")],
            [("a", "b"), ("a", "c"), ("c", "d"), ("b", "d")],
        )

    def test_plan_layers(self):
        """Test nodes are grouped by dependency depth in declaration order."""
        assert plan_layers(self.wf) == [["a", "e"], ["b", "c"], ["d"]]

    def test_topological_order(self):
        """Test every edge source precedes its target."""
        order = topological_order(self.wf)

        assert order == ["a", "e", "b", "c", "d"]
        for edge in self.wf.edges:
            assert order.index(edge.source) < order.index(edge.target)

    def test_incoming_edges(self):
        """Test incoming edges keep declaration order."""
        incoming = incoming_edges(self.wf)

        assert [edge.source for edge in incoming["d"]] == ["c", "b"]
        assert incoming["a"] == []

    def test_sink_nodes(self):
        """Test sinks are nodes without outgoing edges."""
        assert sink_nodes(self.wf) == ["d", "e"]
