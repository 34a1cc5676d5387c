from .base import Advance, Complete, Fail, NodeRegistry, NodeSpec, Outcome, Suspend, WakeEvent
from .builtin import register_builtin_nodes

__all__ = [
    "Advance",
    "Complete",
    "Fail",
    "NodeRegistry",
    "NodeSpec",
    "Outcome",
    "Suspend",
    "WakeEvent",
    "register_builtin_nodes",
]
