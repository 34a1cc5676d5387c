from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Union

from ..context import ContextStore
from ..models import Branch, Node, NodeType, WaitDescriptor, WaitKind


@dataclass(frozen=True, slots=True)
class Advance:
    """Move along the outgoing edge(s) whose label matches ``label``.

    ``fan_out`` takes every outgoing edge and forks one branch per edge. When
    no edge carries ``label`` the unlabelled/default edge is used, unless
    ``otherwise`` is set, in which case the branch fails with that error.
    """

    label: str | None = None
    fan_out: bool = False
    otherwise: Exception | None = None


@dataclass(frozen=True, slots=True)
class Suspend:
    wait: WaitDescriptor


@dataclass(frozen=True, slots=True)
class Fail:
    error: Exception


@dataclass(frozen=True, slots=True)
class Complete:
    pass


Outcome = Union[Advance, Suspend, Fail, Complete]


@dataclass(frozen=True, slots=True)
class WakeEvent:
    """What an external collaborator delivered to a suspended branch."""

    kind: WaitKind
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    timed_out: bool = False


NodeHandler = Callable[[Node, ContextStore, Branch], Outcome]
ResumeHandler = Callable[[Node, ContextStore, Branch, WakeEvent], Outcome]


@dataclass(slots=True)
class NodeSpec:
    type_name: NodeType
    description: str
    handler: NodeHandler
    resume: ResumeHandler | None = None


class NodeRegistry:
    def __init__(self) -> None:
        self._nodes: dict[NodeType, NodeSpec] = {}

    def register(self, spec: NodeSpec) -> None:
        self._nodes[spec.type_name] = spec

    def get(self, type_name: NodeType | str) -> NodeSpec:
        try:
            key = NodeType(type_name)
        except ValueError:
            raise KeyError(f"Unknown node type: {type_name}") from None
        if key not in self._nodes:
            raise KeyError(f"Unknown node type: {type_name}")
        return self._nodes[key]

    def list_types(self) -> list[str]:
        return sorted(key.value for key in self._nodes)

    def list_specs(self) -> list[dict[str, str]]:
        return [
            {"type": spec.type_name.value, "description": spec.description}
            for spec in sorted(self._nodes.values(), key=lambda spec: spec.type_name.value)
        ]
