"""Agent sessions run locally as LangGraph react agents on Ollama."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .collaborators import SessionListener, _Listeners
from .tooling import build_session_tools

logger = logging.getLogger(__name__)


def _extract_text_from_agent_result(result: dict[str, Any]) -> str:
    messages = result.get("messages")
    if not isinstance(messages, list) or not messages:
        return str(result)

    last = messages[-1]
    content = getattr(last, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        if parts:
            return "\n".join(parts)

    return str(last)


def _validate_settings(settings: dict[str, Any]) -> dict[str, Any]:
    model = settings.get("model")
    if not isinstance(model, str) or not model:
        raise ValueError("agent_session.model must be a non-empty string")
    tools = settings.get("tools", [])
    if not isinstance(tools, list) or any(not isinstance(item, str) for item in tools):
        raise ValueError("agent_session.tools must be a list of tool names")
    max_turns = settings.get("max_turns", settings.get("max_tool_calls", 6))
    if not isinstance(max_turns, int) or max_turns <= 0:
        raise ValueError("agent_session.max_turns must be a positive integer")
    if not isinstance(settings.get("system_prompt"), str):
        raise ValueError("agent_session.system_prompt must be a string")
    return {**settings, "tools": list(tools), "max_turns": max_turns}


def run_agent_session(prompt: str, settings: dict[str, Any]) -> str:
    """Run one react-agent conversation and return its final answer text."""
    settings = _validate_settings(settings)
    variables = settings.get("variables") or {}
    selected_tools = build_session_tools(settings["tools"], variables if isinstance(variables, dict) else {})

    from langchain_ollama import ChatOllama
    from langgraph.prebuilt import create_react_agent

    llm = ChatOllama(
        model=settings["model"],
        num_ctx=int(settings.get("num_ctx", 2048)),
        num_predict=int(settings.get("num_predict", 256)),
        temperature=float(settings.get("temperature", 0.2)),
    )
    agent = create_react_agent(model=llm, tools=selected_tools, prompt=settings["system_prompt"])
    result = agent.invoke(
        {"messages": [{"role": "user", "content": prompt}]},
        {"recursion_limit": max(8, (settings["max_turns"] * 2) + 2)},
    )
    return _extract_text_from_agent_result(result)


class LangGraphSessions:
    """Session service that answers prompts with a local agent on a thread pool."""

    def __init__(self, defaults: dict[str, Any], max_workers: int = 2) -> None:
        self.defaults = dict(defaults)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="graphflow-session")
        self._lock = threading.Lock()
        self._futures: dict[str, Future[str]] = {}
        self._cancelled: set[str] = set()
        self._listeners = _Listeners()

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.subscribe(listener)

    def start_session(self, agent_id: str | None, prompt: str, config: dict[str, Any]) -> str:
        session_id = uuid.uuid4().hex
        settings = {**self.defaults, **{k: v for k, v in config.items() if v is not None}}
        future = self._executor.submit(run_agent_session, prompt, settings)
        with self._lock:
            self._futures[session_id] = future
        future.add_done_callback(lambda done: self._finished(session_id, done))
        logger.info(
            "Agent session started",
            extra={"session_id": session_id, "agent_id": agent_id, "model": settings.get("model")},
        )
        return session_id

    def reattach(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._futures

    def cancel(self, session_id: str) -> None:
        with self._lock:
            self._cancelled.add(session_id)
            future = self._futures.pop(session_id, None)
        if future is not None:
            future.cancel()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _finished(self, session_id: str, future: Future[str]) -> None:
        with self._lock:
            self._futures.pop(session_id, None)
            if session_id in self._cancelled or future.cancelled():
                self._cancelled.discard(session_id)
                return
        exc = future.exception()
        if exc is not None:
            logger.warning("Agent session failed", extra={"session_id": session_id, "error": str(exc)})
            if isinstance(exc, ImportError):
                error = "Missing agent dependencies. Install with: pip install langgraph langchain-ollama"
            else:
                error = str(exc) or type(exc).__name__
            self._listeners.emit(session_id, None, error)
            return
        logger.info("Agent session finished", extra={"session_id": session_id})
        self._listeners.emit(session_id, future.result(), None)
