from __future__ import annotations

from datetime import timedelta
from typing import Any

from ..context import ContextStore
from ..errors import CollaboratorError, HandlerError, WaitTimeoutError
from ..expressions import evaluate
from ..models import Branch, Node, NodeType, WaitDescriptor, WaitKind, utc_now
from .base import Advance, Complete, Fail, NodeRegistry, NodeSpec, Outcome, Suspend, WakeEvent

DEFAULT_SESSION_PROMPT = "Execute workflow step"
DEFAULT_TASK_DESCRIPTION = "Workflow work task"


def start_handler(_node: Node, _context: ContextStore, _branch: Branch) -> Outcome:
    return Advance()


def end_handler(_node: Node, _context: ContextStore, _branch: Branch) -> Outcome:
    return Complete()


def agent_session_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    config = node.config
    prompt = config.get("prompt", DEFAULT_SESSION_PROMPT)
    if not isinstance(prompt, str):
        raise HandlerError("agent_session.prompt must be a string")

    context_keys = config.get("context_keys", [])
    if not isinstance(context_keys, list):
        raise HandlerError("agent_session.context_keys must be a list of paths")

    session_config: dict[str, Any] = {
        "node_label": node.display_name,
        "variables": {str(key): context.lookup(str(key)) for key in context_keys},
    }
    for key in ("max_turns", "tools", "model", "system_prompt"):
        if key in config:
            session_config[key] = config[key]

    return Suspend(
        WaitDescriptor(
            kind=WaitKind.AGENT_SESSION,
            node_id=node.id,
            request={
                "agent_id": config.get("agent_id"),
                "project_id": config.get("project_id"),
                "prompt": context.render(prompt),
                "config": session_config,
            },
        )
    )


def agent_session_resume(node: Node, context: ContextStore, branch: Branch, event: WakeEvent) -> Outcome:
    if event.error is not None:
        return Fail(CollaboratorError(f"Agent session failed: {event.error}"))
    context.set(
        node.id,
        {
            "session_id": branch.wait.ref if branch.wait else None,
            "output": event.payload.get("result"),
        },
    )
    return Advance()


def work_task_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    config = node.config
    description = config.get("description", DEFAULT_TASK_DESCRIPTION)
    if not isinstance(description, str):
        raise HandlerError("work_task.description must be a string")

    return Suspend(
        WaitDescriptor(
            kind=WaitKind.WORK_TASK,
            node_id=node.id,
            request={
                "agent_id": config.get("agent_id"),
                "project_id": config.get("project_id"),
                "description": context.render(description),
            },
        )
    )


def work_task_resume(node: Node, context: ContextStore, branch: Branch, event: WakeEvent) -> Outcome:
    status = event.payload.get("status")
    if event.error is not None or status != "completed":
        reason = event.error or f"status {status}"
        return Fail(CollaboratorError(f"Work task failed: {reason}"))
    context.set(
        node.id,
        {
            "task_id": branch.wait.ref if branch.wait else None,
            "status": status,
            "summary": event.payload.get("summary"),
        },
    )
    return Advance()


def condition_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    expression = node.config.get("expression", "true")
    result = evaluate(expression, context.snapshot())
    context.set(node.id, {"condition_result": result})
    return Advance(label="true" if result else "false")


def _delay_seconds(node: Node, context: ContextStore) -> float:
    config = node.config
    if "seconds" in config:
        raw: Any = config["seconds"]
    elif "delay_ms" in config:
        raw = config["delay_ms"] / 1000 if isinstance(config["delay_ms"], (int, float)) else None
    else:
        expression = config.get("seconds_expression")
        raw = context.lookup(expression) if isinstance(expression, str) else expression

    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        raise HandlerError(f"Delay node '{node.id}' has no numeric duration")
    try:
        seconds = float(raw)
    except ValueError:
        raise HandlerError(f"Delay node '{node.id}' duration {raw!r} is not a number") from None
    if seconds < 0:
        raise HandlerError(f"Delay node '{node.id}' duration must not be negative")
    return seconds


def delay_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    seconds = _delay_seconds(node, context)
    return Suspend(
        WaitDescriptor(
            kind=WaitKind.TIMER,
            node_id=node.id,
            deadline=utc_now() + timedelta(seconds=seconds),
        )
    )


def delay_resume(node: Node, context: ContextStore, branch: Branch, _event: WakeEvent) -> Outcome:
    wait = branch.wait
    now = utc_now()
    if wait is not None and wait.deadline is not None and now < wait.deadline:
        # Woken early; park again until the requested wake time.
        return Suspend(wait.model_copy(update={"ref": None}))
    context.set(
        node.id,
        {
            "wake_at": wait.deadline.isoformat() if wait and wait.deadline else None,
            "resumed_at": now.isoformat(),
        },
    )
    return Advance()


def webhook_wait_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    template = node.config.get("correlation_key")
    if not isinstance(template, str) or not template:
        raise HandlerError("webhook_wait.correlation_key must be a non-empty string")
    key = context.render(template)
    if not key:
        raise HandlerError(f"Correlation key template {template!r} rendered empty")

    timeout = node.config.get("timeout_seconds")
    deadline = None
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise HandlerError("webhook_wait.timeout_seconds must be a positive number")
        deadline = utc_now() + timedelta(seconds=timeout)

    return Suspend(
        WaitDescriptor(
            kind=WaitKind.WEBHOOK,
            node_id=node.id,
            correlation_key=key,
            deadline=deadline,
        )
    )


def webhook_wait_resume(node: Node, context: ContextStore, branch: Branch, event: WakeEvent) -> Outcome:
    if event.timed_out:
        key = branch.wait.correlation_key if branch.wait else None
        context.set(node.id, {"timed_out": True})
        return Advance(
            label="timeout",
            otherwise=WaitTimeoutError(f"No event for correlation key '{key}' before timeout"),
        )
    context.set(node.id, dict(event.payload))
    return Advance()


def transform_handler(node: Node, context: ContextStore, _branch: Branch) -> Outcome:
    mapping = node.config.get("mapping", {})
    if not isinstance(mapping, dict):
        raise HandlerError("transform.mapping must be a dictionary")

    output: dict[str, Any] = {}
    for key, path in mapping.items():
        if not isinstance(path, str):
            raise HandlerError(f"transform.mapping['{key}'] must be a path string")
        output[key] = context.lookup(path)

    template = node.config.get("template")
    if template is not None:
        if not isinstance(template, str):
            raise HandlerError("transform.template must be a string")
        output["text"] = context.render(template)

    if node.config.get("merge"):
        context.update({key: value for key, value in output.items() if key in mapping})
    context.set(node.id, output)
    return Advance()


def parallel_handler(_node: Node, _context: ContextStore, _branch: Branch) -> Outcome:
    return Advance(fan_out=True)


def join_handler(_node: Node, _context: ContextStore, _branch: Branch) -> Outcome:
    return Advance()


def register_builtin_nodes(registry: NodeRegistry) -> None:
    registry.register(
        NodeSpec(
            type_name=NodeType.START,
            description="Entry point; passes trigger input straight through.",
            handler=start_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.END,
            description="Terminal node; completes the branch that reaches it.",
            handler=end_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.AGENT_SESSION,
            description="Starts an agent session and waits for its result.",
            handler=agent_session_handler,
            resume=agent_session_resume,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.WORK_TASK,
            description="Creates a work task and waits for it to finish.",
            handler=work_task_handler,
            resume=work_task_resume,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.CONDITION,
            description="Evaluates an expression and follows the true/false edge.",
            handler=condition_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.DELAY,
            description="Waits for a fixed or computed duration.",
            handler=delay_handler,
            resume=delay_resume,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.WEBHOOK_WAIT,
            description="Waits for an external event matching a correlation key.",
            handler=webhook_wait_handler,
            resume=webhook_wait_resume,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.TRANSFORM,
            description="Projects and renames context fields.",
            handler=transform_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.PARALLEL,
            description="Forks one branch per outgoing edge.",
            handler=parallel_handler,
        )
    )
    registry.register(
        NodeSpec(
            type_name=NodeType.JOIN,
            description="Rendezvous for the branches of its parallel node.",
            handler=join_handler,
        )
    )
