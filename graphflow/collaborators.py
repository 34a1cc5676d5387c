"""Interfaces of the services a run waits on, plus in-process implementations.

Every collaborator hands out an id synchronously and reports completion
later through the listener the engine subscribes.
"""

from __future__ import annotations

import heapq
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Protocol

from .models import utc_now

logger = logging.getLogger(__name__)

SessionListener = Callable[[str, Any, str | None], None]
TaskListener = Callable[[str, str, str | None, str | None], None]
TimerListener = Callable[[str], None]
WaiterListener = Callable[[str, dict[str, Any] | None, bool], None]


class AgentSessionService(Protocol):
    def subscribe(self, listener: SessionListener) -> None: ...

    def start_session(self, agent_id: str | None, prompt: str, config: dict[str, Any]) -> str: ...

    def reattach(self, session_id: str) -> bool: ...

    def cancel(self, session_id: str) -> None: ...


class WorkTaskService(Protocol):
    def subscribe(self, listener: TaskListener) -> None: ...

    def create_task(self, agent_id: str | None, description: str, project_id: str | None) -> str: ...

    def reattach(self, task_id: str) -> bool: ...

    def cancel(self, task_id: str) -> None: ...


class _Listeners:
    def __init__(self) -> None:
        self._listeners: list[Callable[..., None]] = []

    def subscribe(self, listener: Callable[..., None]) -> None:
        self._listeners.append(listener)

    def emit(self, *args: Any) -> None:
        for listener in list(self._listeners):
            listener(*args)


@dataclass
class SessionRecord:
    session_id: str
    agent_id: str | None
    prompt: str
    config: dict[str, Any]
    status: str = "running"
    result: Any = None
    error: str | None = None


class ExternalSessions:
    """Sessions run elsewhere; their owner reports back through :meth:`complete`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._listeners = _Listeners()

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.subscribe(listener)

    def start_session(self, agent_id: str | None, prompt: str, config: dict[str, Any]) -> str:
        session_id = uuid.uuid4().hex
        with self._lock:
            self._sessions[session_id] = SessionRecord(session_id, agent_id, prompt, dict(config))
        logger.info("Agent session requested", extra={"session_id": session_id, "agent_id": agent_id})
        return session_id

    def reattach(self, session_id: str) -> bool:
        """Track a session issued before a restart so its completion is accepted."""
        with self._lock:
            self._sessions.setdefault(session_id, SessionRecord(session_id, None, "", {}))
        return True

    def get(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._sessions.get(session_id)

    def complete(self, session_id: str, result: Any = None, error: str | None = None) -> bool:
        """Record the outcome of a session; returns False for unknown or finished ids."""
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None or record.status != "running":
                return False
            record.status = "error" if error is not None else "completed"
            record.result = result
            record.error = error
        self._listeners.emit(session_id, result, error)
        return True

    def cancel(self, session_id: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is not None and record.status == "running":
                record.status = "cancelled"


@dataclass
class TaskRecord:
    task_id: str
    agent_id: str | None
    description: str
    project_id: str | None
    status: str = "pending"
    summary: str | None = None
    error: str | None = None


class TaskBoard:
    """In-memory registry of work tasks whose completion is reported by callers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, TaskRecord] = {}
        self._listeners = _Listeners()

    def subscribe(self, listener: TaskListener) -> None:
        self._listeners.subscribe(listener)

    def create_task(self, agent_id: str | None, description: str, project_id: str | None) -> str:
        task_id = uuid.uuid4().hex
        with self._lock:
            self._tasks[task_id] = TaskRecord(task_id, agent_id, description, project_id)
        logger.info("Work task created", extra={"task_id": task_id, "project_id": project_id})
        return task_id

    def reattach(self, task_id: str) -> bool:
        with self._lock:
            self._tasks.setdefault(task_id, TaskRecord(task_id, None, "", None))
        return True

    def get(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            return self._tasks.get(task_id)

    def complete(
        self,
        task_id: str,
        status: str,
        summary: str | None = None,
        error: str | None = None,
    ) -> bool:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is None or record.status != "pending":
                return False
            record.status = status
            record.summary = summary
            record.error = error
        self._listeners.emit(task_id, status, summary, error)
        return True

    def cancel(self, task_id: str) -> None:
        with self._lock:
            record = self._tasks.get(task_id)
            if record is not None and record.status == "pending":
                record.status = "cancelled"


class TimerService:
    """Deadline heap fired by whoever polls :meth:`run_due`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._heap: list[tuple[datetime, int, str]] = []
        self._cancelled: set[str] = set()
        self._seq = 0
        self._listeners = _Listeners()

    def subscribe(self, listener: TimerListener) -> None:
        self._listeners.subscribe(listener)

    def schedule_at(self, timestamp: datetime) -> str:
        timer_id = uuid.uuid4().hex
        with self._lock:
            self._seq += 1
            heapq.heappush(self._heap, (timestamp, self._seq, timer_id))
        return timer_id

    def cancel(self, timer_id: str) -> None:
        with self._lock:
            self._cancelled.add(timer_id)

    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, timer_id in self._heap if timer_id not in self._cancelled)

    def run_due(self, now: datetime | None = None) -> list[str]:
        now = now or utc_now()
        fired: list[str] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, timer_id = heapq.heappop(self._heap)
                if timer_id in self._cancelled:
                    self._cancelled.discard(timer_id)
                    continue
                fired.append(timer_id)
        for timer_id in fired:
            self._listeners.emit(timer_id)
        return fired


@dataclass
class Waiter:
    waiter_id: str
    correlation_key: str
    deadline: datetime | None = None
    registered_at: datetime = field(default_factory=utc_now)


class WebhookBus:
    """Matches incoming events to registered waiters by correlation key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._waiters: dict[str, Waiter] = {}
        self._listeners = _Listeners()

    def subscribe(self, listener: WaiterListener) -> None:
        self._listeners.subscribe(listener)

    def register_waiter(self, correlation_key: str, deadline: datetime | None = None) -> str:
        waiter = Waiter(uuid.uuid4().hex, correlation_key, deadline)
        with self._lock:
            self._waiters[waiter.waiter_id] = waiter
        return waiter.waiter_id

    def unregister(self, waiter_id: str) -> None:
        with self._lock:
            self._waiters.pop(waiter_id, None)

    def waiting_keys(self) -> list[str]:
        with self._lock:
            return sorted({waiter.correlation_key for waiter in self._waiters.values()})

    def deliver(self, correlation_key: str, payload: dict[str, Any]) -> int:
        """Wake every waiter registered for ``correlation_key``; returns how many."""
        with self._lock:
            matched = [w for w in self._waiters.values() if w.correlation_key == correlation_key]
            for waiter in matched:
                del self._waiters[waiter.waiter_id]
        if not matched:
            logger.info("No waiter for event", extra={"correlation_key": correlation_key})
        for waiter in matched:
            self._listeners.emit(waiter.waiter_id, dict(payload), False)
        return len(matched)

    def expire_due(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        with self._lock:
            expired = [
                w for w in self._waiters.values() if w.deadline is not None and w.deadline <= now
            ]
            for waiter in expired:
                del self._waiters[waiter.waiter_id]
        for waiter in expired:
            self._listeners.emit(waiter.waiter_id, None, True)
        return len(expired)
