from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    START = "start"
    END = "end"
    AGENT_SESSION = "agent_session"
    WORK_TASK = "work_task"
    CONDITION = "condition"
    DELAY = "delay"
    WEBHOOK_WAIT = "webhook_wait"
    TRANSFORM = "transform"
    PARALLEL = "parallel"
    JOIN = "join"


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class BranchStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    FORKED = "forked"
    JOINED = "joined"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_BRANCH_STATUSES


TERMINAL_BRANCH_STATUSES = frozenset(
    {BranchStatus.JOINED, BranchStatus.COMPLETED, BranchStatus.FAILED, BranchStatus.CANCELLED}
)


class WaitKind(str, Enum):
    TIMER = "timer"
    WEBHOOK = "webhook"
    AGENT_SESSION = "agent_session"
    WORK_TASK = "work_task"


class Node(BaseModel):
    id: str
    type: NodeType
    label: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    joins_parallel_node_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    id: str
    source_node_id: str
    target_node_id: str
    label: str | None = None


class Workflow(BaseModel):
    id: str
    name: str
    description: str = ""
    agent_id: str | None = None
    default_project_id: str | None = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    max_concurrency: int = Field(default=2, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class GraphSnapshot(BaseModel):
    """The parts of a workflow a run needs, frozen at trigger time."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    max_concurrency: int = Field(default=2, ge=1)
    agent_id: str | None = None
    default_project_id: str | None = None

    @classmethod
    def of(cls, workflow: Workflow) -> GraphSnapshot:
        return cls(
            nodes=[node.model_copy(deep=True) for node in workflow.nodes],
            edges=[edge.model_copy(deep=True) for edge in workflow.edges],
            max_concurrency=workflow.max_concurrency,
            agent_id=workflow.agent_id,
            default_project_id=workflow.default_project_id,
        )

    def node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(f"Unknown node: {node_id}")

    def outgoing(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source_node_id == node_id]

    def start_node(self) -> Node:
        for node in self.nodes:
            if node.type == NodeType.START:
                return node
        raise KeyError("Workflow has no start node")


class WaitDescriptor(BaseModel):
    kind: WaitKind
    node_id: str
    deadline: datetime | None = None
    correlation_key: str | None = None
    ref: str | None = None
    request: dict[str, Any] = Field(default_factory=dict)


class Branch(BaseModel):
    id: str
    run_id: str
    seq: int
    current_node_id: str
    status: BranchStatus = BranchStatus.QUEUED
    parent_id: str | None = None
    fork_node_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    wait: WaitDescriptor | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Run(BaseModel):
    id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    graph: GraphSnapshot = Field(default_factory=GraphSnapshot)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: datetime | None = None
    error: str | None = None
    # Set by a user pause; cleared only by resume.
    held: bool = False
    branches: list[Branch] = Field(default_factory=list)


class RunRequest(BaseModel):
    input_data: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    ok: bool
    reason: str | None = None


class SessionCompletion(BaseModel):
    result: Any = None
    error: str | None = None


class TaskCompletion(BaseModel):
    status: str
    summary: str | None = None
    error: str | None = None


class EventDelivery(BaseModel):
    correlation_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
