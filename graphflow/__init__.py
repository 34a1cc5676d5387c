"""Graph-based workflow orchestration engine."""

from .engine import EngineEvent, WorkflowEngine
from .models import Branch, Run, Workflow
from .nodes import NodeRegistry, register_builtin_nodes
from .store import SQLiteStore

__all__ = [
    "Branch",
    "EngineEvent",
    "NodeRegistry",
    "Run",
    "SQLiteStore",
    "Workflow",
    "WorkflowEngine",
    "register_builtin_nodes",
]
