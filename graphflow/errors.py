from __future__ import annotations


class WorkflowError(Exception):
    pass


class GraphValidationError(WorkflowError, ValueError):
    """A workflow graph breaks a structural rule and cannot be activated."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class WorkflowNotActiveError(WorkflowError, ValueError):
    pass


class HandlerError(WorkflowError, RuntimeError):
    """A node's execution logic could not produce an outcome."""


class CollaboratorError(HandlerError):
    """An agent session or work task reported failure."""


class WaitTimeoutError(HandlerError):
    pass


class ExpressionError(HandlerError, ValueError):
    pass
