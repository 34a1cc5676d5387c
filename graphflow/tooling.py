from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable

from langchain_core.tools import StructuredTool


def _utc_time() -> str:
    return datetime.now(timezone.utc).isoformat()


def _build_variables_tool(variables: dict[str, Any]) -> Callable[[str], str]:
    def _workflow_variables(name: str = "") -> str:
        if not name:
            return json.dumps(variables, ensure_ascii=True, default=str)
        if name not in variables:
            return f"Unknown variable '{name}'. Available: {sorted(variables)}"
        return json.dumps(variables[name], ensure_ascii=True, default=str)

    return _workflow_variables


def tool_catalog() -> list[dict[str, str]]:
    return [
        {"name": "utc_time", "description": "Get current UTC timestamp."},
        {
            "name": "workflow_variables",
            "description": "Read the context values the workflow passed to the session.",
        },
    ]


def build_session_tools(selected: list[str], variables: dict[str, Any] | None = None) -> list[StructuredTool]:
    registry: dict[str, StructuredTool] = {
        "utc_time": StructuredTool.from_function(
            func=_utc_time,
            name="utc_time",
            description="Return the current UTC timestamp.",
        ),
        "workflow_variables": StructuredTool.from_function(
            func=_build_variables_tool(dict(variables or {})),
            name="workflow_variables",
            description="Return one workflow variable by name, or all of them as JSON when name is empty.",
        ),
    }

    resolved: list[StructuredTool] = []
    for tool_name in selected:
        tool = registry.get(tool_name)
        if tool is not None:
            resolved.append(tool)
    return resolved
