"""Test configuration and fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from graphflow.engine import WorkflowEngine
from graphflow.models import Edge, Node, Workflow, WorkflowStatus
from graphflow.nodes import NodeRegistry, register_builtin_nodes
from graphflow.store import SQLiteStore

WorkflowFactory = Callable[..., Workflow]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Provide a temporary SQLite file path."""
    return tmp_path / "workflows.db"


@pytest.fixture
def store(db_path: Path) -> SQLiteStore:
    return SQLiteStore(db_path)


@pytest.fixture
def registry() -> NodeRegistry:
    registry = NodeRegistry()
    register_builtin_nodes(registry)
    return registry


@pytest.fixture
def engine(registry: NodeRegistry, store: SQLiteStore) -> WorkflowEngine:
    """Inline engine: every public call drains the ready queue before returning."""
    return WorkflowEngine(registry, store, workers=0)


@pytest.fixture
def make_workflow() -> WorkflowFactory:
    """Build a workflow from node dicts and (source, target[, label]) edge tuples."""

    def _make(
        nodes: list[dict[str, Any]],
        edges: list[tuple[str, ...]],
        *,
        workflow_id: str = "wf-1",
        status: WorkflowStatus = WorkflowStatus.ACTIVE,
        **fields: Any,
    ) -> Workflow:
        return Workflow(
            id=workflow_id,
            name=f"Workflow {workflow_id}",
            status=status,
            nodes=[Node.model_validate(node) for node in nodes],
            edges=[
                Edge(
                    id=f"{workflow_id}-e{index}",
                    source_node_id=edge[0],
                    target_node_id=edge[1],
                    label=edge[2] if len(edge) > 2 else None,
                )
                for index, edge in enumerate(edges)
            ],
            **fields,
        )

    return _make


@pytest.fixture
def deploy(store: SQLiteStore, make_workflow: WorkflowFactory) -> WorkflowFactory:
    """Build a workflow and save it to the store."""

    def _deploy(nodes: list[dict[str, Any]], edges: list[tuple[str, ...]], **kwargs: Any) -> Workflow:
        workflow = make_workflow(nodes, edges, **kwargs)
        store.create_workflow(workflow)
        return workflow

    return _deploy
