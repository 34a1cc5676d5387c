from __future__ import annotations

from collections import Counter, defaultdict, deque

from .errors import GraphValidationError
from .models import Edge, Node, NodeType, ValidationReport, Workflow

CONDITION_LABELS = {"true", "false", "default"}
TIMEOUT_LABEL = "timeout"
SINGLE_EXIT_TYPES = {
    NodeType.START,
    NodeType.AGENT_SESSION,
    NodeType.WORK_TASK,
    NodeType.DELAY,
    NodeType.TRANSFORM,
    NodeType.JOIN,
}


def validate_workflow(workflow: Workflow) -> None:
    """Raise :class:`GraphValidationError` naming the first structural defect."""
    nodes = workflow.nodes
    edges = workflow.edges

    _check_unique_ids(nodes, edges)
    node_map = {node.id: node for node in nodes}

    starts = [node for node in nodes if node.type == NodeType.START]
    if not starts:
        raise GraphValidationError("Workflow has no start node")
    if len(starts) > 1:
        raise GraphValidationError(
            f"Workflow has {len(starts)} start nodes; exactly one is required"
        )
    if not any(node.type == NodeType.END for node in nodes):
        raise GraphValidationError("Workflow has no end node")

    for edge in edges:
        if edge.source_node_id not in node_map:
            raise GraphValidationError(
                f"Edge '{edge.id}' references unknown source node '{edge.source_node_id}'"
            )
        if edge.target_node_id not in node_map:
            raise GraphValidationError(
                f"Edge '{edge.id}' references unknown target node '{edge.target_node_id}'"
            )

    outgoing: dict[str, list[Edge]] = defaultdict(list)
    incoming: dict[str, list[Edge]] = defaultdict(list)
    for edge in edges:
        outgoing[edge.source_node_id].append(edge)
        incoming[edge.target_node_id].append(edge)

    start = starts[0]
    if incoming[start.id]:
        raise GraphValidationError(f"Start node '{start.id}' must not have incoming edges")

    _check_acyclic(nodes, outgoing)
    _check_reachable(start, node_map, outgoing)

    for node in nodes:
        _check_exits(node, outgoing[node.id])
        _check_config(node)

    _check_fork_regions(node_map, outgoing, incoming)


def validation_report(workflow: Workflow) -> ValidationReport:
    try:
        validate_workflow(workflow)
    except GraphValidationError as exc:
        return ValidationReport(ok=False, reason=exc.reason)
    return ValidationReport(ok=True)


def _check_unique_ids(nodes: list[Node], edges: list[Edge]) -> None:
    for kind, ids in (("node", [n.id for n in nodes]), ("edge", [e.id for e in edges])):
        duplicates = sorted(key for key, count in Counter(ids).items() if count > 1)
        if duplicates:
            raise GraphValidationError(f"Duplicate {kind} id: {duplicates[0]}")


def _check_acyclic(nodes: list[Node], outgoing: dict[str, list[Edge]]) -> None:
    indegree = {node.id: 0 for node in nodes}
    for edges in outgoing.values():
        for edge in edges:
            indegree[edge.target_node_id] += 1

    queue = deque(node_id for node_id, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        node_id = queue.popleft()
        visited += 1
        for edge in outgoing.get(node_id, []):
            indegree[edge.target_node_id] -= 1
            if indegree[edge.target_node_id] == 0:
                queue.append(edge.target_node_id)

    if visited != len(nodes):
        cyclic = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
        raise GraphValidationError(f"Workflow graph has a cycle through node '{cyclic[0]}'")


def _check_reachable(start: Node, node_map: dict[str, Node], outgoing: dict[str, list[Edge]]) -> None:
    seen = {start.id}
    stack = [start.id]
    while stack:
        for edge in outgoing.get(stack.pop(), []):
            if edge.target_node_id not in seen:
                seen.add(edge.target_node_id)
                stack.append(edge.target_node_id)

    orphans = [node_id for node_id in node_map if node_id not in seen]
    if orphans:
        raise GraphValidationError(f"Node '{orphans[0]}' is unreachable from the start node")


def _check_exits(node: Node, exits: list[Edge]) -> None:
    if node.type == NodeType.END:
        if exits:
            raise GraphValidationError(f"End node '{node.id}' must not have outgoing edges")
        return
    if not exits:
        raise GraphValidationError(f"Node '{node.id}' has no outgoing edge")

    labels = [edge.label or None for edge in exits]
    if node.type in SINGLE_EXIT_TYPES and len(exits) != 1:
        raise GraphValidationError(
            f"Node '{node.id}' of type {node.type.value} must have exactly one outgoing edge"
        )
    if node.type == NodeType.CONDITION:
        unknown = [label for label in labels if label is not None and label not in CONDITION_LABELS]
        if unknown:
            raise GraphValidationError(
                f"Condition node '{node.id}' has edge label '{unknown[0]}'; use true, false or default"
            )
        normalized = [label or "default" for label in labels]
        if len(set(normalized)) != len(normalized):
            raise GraphValidationError(f"Condition node '{node.id}' has duplicate edge labels")
    if node.type == NodeType.WEBHOOK_WAIT:
        regular = [label for label in labels if label != TIMEOUT_LABEL]
        timeouts = [label for label in labels if label == TIMEOUT_LABEL]
        if len(regular) != 1 or len(timeouts) > 1:
            raise GraphValidationError(
                f"Webhook wait node '{node.id}' needs one outgoing edge and at most one timeout edge"
            )


def _check_config(node: Node) -> None:
    config = node.config
    if node.type == NodeType.CONDITION and not isinstance(config.get("expression", "true"), str):
        raise GraphValidationError(f"Condition node '{node.id}' expression must be a string")
    if node.type == NodeType.DELAY and not any(
        key in config for key in ("seconds", "delay_ms", "seconds_expression")
    ):
        raise GraphValidationError(
            f"Delay node '{node.id}' needs seconds, delay_ms or seconds_expression"
        )
    if node.type == NodeType.WEBHOOK_WAIT and not config.get("correlation_key"):
        raise GraphValidationError(f"Webhook wait node '{node.id}' needs a correlation_key")
    if node.type == NodeType.TRANSFORM and not isinstance(config.get("mapping", {}), dict):
        raise GraphValidationError(f"Transform node '{node.id}' mapping must be an object")


def _check_fork_regions(
    node_map: dict[str, Node],
    outgoing: dict[str, list[Edge]],
    incoming: dict[str, list[Edge]],
) -> None:
    joins_by_parallel: dict[str, list[Node]] = defaultdict(list)
    for node in node_map.values():
        if node.type != NodeType.JOIN:
            continue
        target = node.joins_parallel_node_id
        if not target:
            raise GraphValidationError(f"Join node '{node.id}' does not name its parallel node")
        paired = node_map.get(target)
        if paired is None or paired.type != NodeType.PARALLEL:
            raise GraphValidationError(
                f"Join node '{node.id}' names '{target}', which is not a parallel node"
            )
        joins_by_parallel[target].append(node)

    for node in node_map.values():
        if node.type != NodeType.PARALLEL:
            continue
        joins = joins_by_parallel.get(node.id, [])
        if len(joins) != 1:
            raise GraphValidationError(
                f"Parallel node '{node.id}' must have exactly one matching join (found {len(joins)})"
            )
        _check_region(node, joins[0], node_map, outgoing, incoming)


def _check_region(
    parallel: Node,
    join: Node,
    node_map: dict[str, Node],
    outgoing: dict[str, list[Edge]],
    incoming: dict[str, list[Edge]],
) -> None:
    region: set[str] = set()
    stack = [edge.target_node_id for edge in outgoing[parallel.id]]
    while stack:
        node_id = stack.pop()
        if node_id == join.id or node_id in region:
            continue
        node = node_map[node_id]
        if node.type == NodeType.END:
            raise GraphValidationError(
                f"Branch of parallel node '{parallel.id}' reaches end node '{node_id}' "
                f"before join '{join.id}'"
            )
        region.add(node_id)
        stack.extend(edge.target_node_id for edge in outgoing[node_id])

    for node_id in region:
        node = node_map[node_id]
        if node.type == NodeType.JOIN and node.joins_parallel_node_id not in region:
            raise GraphValidationError(
                f"Branch of parallel node '{parallel.id}' enters join '{node_id}' "
                f"which belongs to another parallel node"
            )

    allowed_sources = region | {parallel.id}
    for node_id in region | {join.id}:
        for edge in incoming[node_id]:
            if edge.source_node_id not in allowed_sources:
                raise GraphValidationError(
                    f"Edge '{edge.id}' enters the region of parallel node '{parallel.id}' "
                    f"from outside it"
                )
