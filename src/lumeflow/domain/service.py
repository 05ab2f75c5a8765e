from collections.abc import Iterable

from lumeflow.domain.entity import EdgeDefinition, WorkflowDefinition
from lumeflow.domain.exception import WorkflowValidationError


def validate_workflow(data: WorkflowDefinition, known_types: Iterable[str] | None = None) -> bool:
    """
    Validates the workflow structure and, when ``known_types`` is given, its block types.

    :param data: The WorkflowDefinition instance to validate
    :type data: WorkflowDefinition
    :param known_types: Registered block types; skipped when None
    :type known_types: Iterable[str] | None
    :returns: True if the workflow is valid
    :rtype: bool
    :raises WorkflowValidationError: Listing every problem found
    """
    errors: list[str] = []
    if not data.workflow_id:
        errors.append("Workflow has no workflowId")
    if not data.nodes:
        errors.append("Workflow has no nodes")
    if data.globals.max_parallel_nodes < 1:
        errors.append("globals.maxParallelNodes must be >= 1")

    seen_ids: set[str] = set()
    for node in data.nodes:
        if not node.id:
            errors.append("Node with empty id")
        elif node.id in seen_ids:
            errors.append(f"Duplicate node id found: {node.id}")
        seen_ids.add(node.id)
        if node.retry is not None:
            errors.extend(f"Node '{node.id}': {problem}" for problem in node.retry.validate())

    if known_types is not None:
        known = set(known_types)
        for node in data.nodes:
            if node.type not in known:
                errors.append(f"Unknown block type '{node.type}' for node '{node.id}'")

    dangling = False
    for edge in data.edges:
        for end in (edge.source, edge.target):
            if end not in seen_ids:
                dangling = True
                errors.append(f"Edge {edge.source} -> {edge.target} references missing node '{end}'")

    if errors:
        raise WorkflowValidationError(errors)
    if not dangling:
        plan_layers(data)
    return True


def incoming_edges(data: WorkflowDefinition) -> dict[str, list[EdgeDefinition]]:
    """Map every node id to its incoming edges, in declaration order."""
    incoming: dict[str, list[EdgeDefinition]] = {node.id: [] for node in data.nodes}
    for edge in data.edges:
        incoming.setdefault(edge.target, []).append(edge)
    return incoming


def sink_nodes(data: WorkflowDefinition) -> list[str]:
    """Return the ids of nodes without outgoing edges."""
    sources = {edge.source for edge in data.edges}
    return [node.id for node in data.nodes if node.id not in sources]


def plan_layers(data: WorkflowDefinition) -> list[list[str]]:
    """
    Groups the nodes into dependency layers with Kahn's algorithm.

    Every node of a layer depends only on nodes of earlier layers. Within a layer
    nodes keep their declaration order.

    :param data: The workflow to plan
    :type data: WorkflowDefinition
    :returns: The layers, roots first
    :rtype: list[list[str]]
    :raises WorkflowValidationError: If the graph contains a cycle
    """
    order = [node.id for node in data.nodes]
    in_degree = {node_id: 0 for node_id in order}
    successors: dict[str, list[str]] = {node_id: [] for node_id in order}
    for edge in data.edges:
        successors[edge.source].append(edge.target)
        in_degree[edge.target] += 1

    layers: list[list[str]] = []
    current = [node_id for node_id in order if in_degree[node_id] == 0]
    placed = 0
    while current:
        layers.append(current)
        placed += len(current)
        ready = set()
        for node_id in current:
            for target in successors[node_id]:
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    ready.add(target)
        current = [node_id for node_id in order if node_id in ready]

    if placed != len(order):
        cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
        raise WorkflowValidationError(f"Workflow contains a cycle involving nodes: {', '.join(cyclic)}")
    return layers


def topological_order(data: WorkflowDefinition) -> list[str]:
    """Flatten :func:`plan_layers` into a single execution order."""
    return [node_id for layer in plan_layers(data) for node_id in layer]
