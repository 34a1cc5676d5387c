"""Run scheduler: drives the branches of every run through the graph.

Branches become ready by being put on one queue of step callables. Worker
threads (or the calling thread in inline mode, ``workers=0``) drain it. All
state changes of one run happen under that run's lock and are persisted
before any collaborator is called.
"""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable

from .collaborators import AgentSessionService, ExternalSessions, TaskBoard, TimerService, WebhookBus, WorkTaskService
from .context import ContextStore
from .errors import CollaboratorError, HandlerError, WorkflowNotActiveError
from .models import (
    Branch,
    BranchStatus,
    Edge,
    GraphSnapshot,
    Node,
    NodeType,
    Run,
    RunStatus,
    WaitDescriptor,
    WaitKind,
    WorkflowStatus,
    utc_now,
)
from .nodes.base import Advance, Complete, Fail, NodeRegistry, Outcome, Suspend, WakeEvent
from .store import SQLiteStore
from .validator import TIMEOUT_LABEL, validate_workflow

logger = logging.getLogger(__name__)

LIVE_BRANCH_STATUSES = (BranchStatus.ACTIVE, BranchStatus.QUEUED)
WAITING_BRANCH_STATUSES = (BranchStatus.SUSPENDED, BranchStatus.FORKED)


class ConcurrencyScope(str, Enum):
    RUN = "run"
    WORKFLOW = "workflow"


@dataclass(frozen=True, slots=True)
class EngineEvent:
    type: str
    run_id: str
    data: dict[str, Any] = field(default_factory=dict)


EngineListener = Callable[[EngineEvent], None]


class WorkflowEngine:
    def __init__(
        self,
        registry: NodeRegistry,
        store: SQLiteStore,
        *,
        sessions: AgentSessionService | None = None,
        tasks: WorkTaskService | None = None,
        timers: TimerService | None = None,
        webhooks: WebhookBus | None = None,
        workers: int = 0,
        tick_seconds: float = 1.0,
        concurrency_scope: ConcurrencyScope | str = ConcurrencyScope.RUN,
    ) -> None:
        self.registry = registry
        self.store = store
        self.sessions = sessions if sessions is not None else ExternalSessions()
        self.tasks = tasks if tasks is not None else TaskBoard()
        self.timers = timers if timers is not None else TimerService()
        self.webhooks = webhooks if webhooks is not None else WebhookBus()
        self.workers = workers
        self.tick_seconds = tick_seconds
        self.concurrency_scope = ConcurrencyScope(concurrency_scope)

        self.sessions.subscribe(self.complete_session)
        self.tasks.subscribe(self.complete_task)
        self.timers.subscribe(self.fire_timer)
        self.webhooks.subscribe(self.resolve_waiter)

        self._ready: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._run_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._admission = threading.Lock()
        self._early: dict[tuple[WaitKind, str], WakeEvent] = {}
        self._early_lock = threading.Lock()
        self._listeners: list[EngineListener] = []
        self._local = threading.local()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # Lifecycle

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        self.recover()
        for index in range(self.workers):
            thread = threading.Thread(target=self._work, name=f"graphflow-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        poller = threading.Thread(target=self._poll, name="graphflow-poller", daemon=True)
        poller.start()
        self._threads.append(poller)
        logger.info("Workflow engine started", extra={"workers": self.workers, "tick_seconds": self.tick_seconds})

    def stop(self) -> None:
        self._stop.set()
        for _ in range(self.workers):
            self._ready.put(None)
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads.clear()
        logger.info("Workflow engine stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def subscribe(self, listener: EngineListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def run_until_idle(self) -> int:
        """Drain the ready queue in the calling thread; returns steps taken."""
        steps = 0
        self._local.draining = True
        try:
            while True:
                try:
                    item = self._ready.get_nowait()
                except queue.Empty:
                    return steps
                if item is None:
                    self._ready.put(None)
                    return steps
                self._dispatch(item)
                steps += 1
        finally:
            self._local.draining = False

    def tick(self, now: Any = None) -> None:
        """Fire due timers and expire overdue webhook waiters."""
        self.timers.run_due(now)
        self.webhooks.expire_due(now)
        self._kick()

    # Public operations

    def trigger(self, workflow_id: str, input_data: dict[str, Any] | None = None) -> Run:
        workflow = self.store.get_workflow(workflow_id)
        if workflow is None:
            raise KeyError(f"Workflow not found: {workflow_id}")
        if workflow.status != WorkflowStatus.ACTIVE:
            raise WorkflowNotActiveError(
                f"Workflow is not active (status: {workflow.status.value}). Activate it first."
            )
        validate_workflow(workflow)

        payload = dict(input_data or {})
        run = Run(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            status=RunStatus.PENDING,
            input=payload,
            context=dict(payload),
            graph=GraphSnapshot.of(workflow),
        )
        self.store.persist(run)
        self._emit_run(run)
        logger.info(
            "Workflow run created",
            extra={"run_id": run.id, "workflow_id": workflow_id, "workflow_name": workflow.name},
        )

        if self.concurrency_scope == ConcurrencyScope.WORKFLOW:
            self._ready.put(partial(self._admit, workflow_id))
        else:
            self._start_run(run.id)
        self._kick()

        current = self.store.get_run(run.id, with_branches=True)
        if current is None:
            raise KeyError(f"Run not found: {run.id}")
        return current

    def cancel(self, run_id: str) -> bool:
        with self._lock_for(run_id):
            run = self._require_run(run_id)
            if run.status.terminal:
                self._release(run_id)
                return False
            run.status = RunStatus.CANCELLED
            run.finished_at = utc_now()
            self._close_run(run, BranchStatus.CANCELLED)
            logger.info("Workflow run cancelled", extra={"run_id": run_id})
        self._kick()
        return True

    def pause(self, run_id: str) -> bool:
        """Hold a started run. Waits stay armed; nothing steps until resumed."""
        with self._lock_for(run_id):
            run = self._require_run(run_id)
            if run.status.terminal:
                self._release(run_id)
                return False
            if run.held or run.status not in (RunStatus.RUNNING, RunStatus.PAUSED):
                return False
            run.held = True
            run.status = RunStatus.PAUSED
            self.store.persist(run)
            self._emit_run(run)
            logger.info("Workflow run paused", extra={"run_id": run_id})
        return True

    def resume_run(self, run_id: str) -> bool:
        with self._lock_for(run_id):
            run = self._require_run(run_id)
            if run.status.terminal:
                self._release(run_id)
                return False
            if not run.held:
                return False
            run.held = False
            self.store.persist(run)
            self._emit_run(run)
            for branch in self.store.list_branches(run_id):
                if branch.status == BranchStatus.ACTIVE:
                    self._enqueue(branch)
            self._settle(run)
            logger.info("Workflow run resumed", extra={"run_id": run_id})
        self._kick()
        return True

    def get_run(self, run_id: str) -> Run | None:
        return self.store.get_run(run_id, with_branches=True)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "workers": self.workers,
            "concurrency_scope": self.concurrency_scope.value,
            "active_runs": self.store.count_runs(statuses=(RunStatus.RUNNING, RunStatus.PAUSED)),
            "pending_runs": self.store.count_runs(statuses=(RunStatus.PENDING,)),
            "suspended_branches": self.store.count_branches(BranchStatus.SUSPENDED),
            "queued_steps": self._ready.qsize(),
            "total_workflows": self.store.count_workflows(),
        }

    def recover(self) -> int:
        """Reload unfinished runs: re-arm their waits and requeue their branches."""
        runs = self.store.list_unfinished_runs()
        for run in runs:
            with self._lock_for(run.id):
                branches = self.store.list_branches(run.id)
                if not branches:
                    if self.concurrency_scope == ConcurrencyScope.WORKFLOW:
                        self._ready.put(partial(self._admit, run.workflow_id))
                    else:
                        self._start_run(run.id)
                    continue
                for branch in branches:
                    if branch.status == BranchStatus.ACTIVE:
                        self._enqueue(branch)
                    elif branch.status == BranchStatus.SUSPENDED and branch.wait is not None:
                        if not self._reattach(branch.wait):
                            self._arm(run, branch)
                self._settle(run)
            logger.info("Recovered workflow run", extra={"run_id": run.id, "status": run.status.value})
        self._kick()
        return len(runs)

    # Collaborator callbacks

    def complete_session(self, session_id: str, result: Any = None, error: str | None = None) -> bool:
        event = WakeEvent(WaitKind.AGENT_SESSION, payload={"result": result}, error=error)
        return self._wake(WaitKind.AGENT_SESSION, session_id, event)

    def complete_task(
        self,
        task_id: str,
        status: str,
        summary: str | None = None,
        error: str | None = None,
    ) -> bool:
        event = WakeEvent(WaitKind.WORK_TASK, payload={"status": status, "summary": summary}, error=error)
        return self._wake(WaitKind.WORK_TASK, task_id, event)

    def fire_timer(self, timer_id: str) -> bool:
        return self._wake(WaitKind.TIMER, timer_id, WakeEvent(WaitKind.TIMER))

    def resolve_waiter(self, waiter_id: str, payload: dict[str, Any] | None, timed_out: bool = False) -> bool:
        event = WakeEvent(WaitKind.WEBHOOK, payload=dict(payload or {}), timed_out=timed_out)
        return self._wake(WaitKind.WEBHOOK, waiter_id, event)

    def deliver_event(self, correlation_key: str, payload: dict[str, Any]) -> int:
        return self.webhooks.deliver(correlation_key, payload)


    # Scheduling internals

    def _lock_for(self, run_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._run_locks.get(run_id)
            if lock is None:
                lock = self._run_locks[run_id] = threading.RLock()
            return lock

    def _require_run(self, run_id: str) -> Run:
        run = self.store.get_run(run_id)
        if run is None:
            self._release(run_id)
            raise KeyError(f"Run not found: {run_id}")
        return run

    def _kick(self) -> None:
        if self.workers == 0 and not getattr(self._local, "draining", False):
            self.run_until_idle()

    def _work(self) -> None:
        while not self._stop.is_set():
            item = self._ready.get()
            if item is None:
                break
            self._dispatch(item)

    def _poll(self) -> None:
        while not self._stop.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Timer poll failed")

    def _dispatch(self, item: Callable[[], None]) -> None:
        try:
            item()
        except Exception:
            logger.exception("Scheduler step failed")

    def _enqueue(self, branch: Branch) -> None:
        self._ready.put(partial(self._step, branch.run_id, branch.id, branch.current_node_id))

    def _admit(self, workflow_id: str) -> None:
        """Start pending runs of a workflow while it has free run slots."""
        with self._admission:
            pending = self.store.list_runs(
                workflow_id=workflow_id, statuses=(RunStatus.PENDING,), limit=None, oldest_first=True
            )
            if not pending:
                return
            busy = self.store.count_runs(workflow_id=workflow_id, statuses=(RunStatus.RUNNING, RunStatus.PAUSED))
            slots = pending[0].graph.max_concurrency - busy
            for run in pending[: max(0, slots)]:
                self._start_run(run.id)

    def _start_run(self, run_id: str) -> None:
        with self._lock_for(run_id):
            run = self.store.get_run(run_id)
            if run is None or run.status != RunStatus.PENDING:
                return
            start = run.graph.start_node()
            branch = Branch(
                id=str(uuid.uuid4()),
                run_id=run.id,
                seq=1,
                current_node_id=start.id,
                status=BranchStatus.QUEUED,
                context=dict(run.input),
            )
            run.status = RunStatus.RUNNING
            self.store.persist(run, [branch])
            self._emit_run(run)
            self._emit_branch(branch)
            logger.info("Workflow run started", extra={"run_id": run.id, "workflow_id": run.workflow_id})
            self._settle(run)

    def _step(self, run_id: str, branch_id: str, node_id: str) -> None:
        with self._lock_for(run_id):
            run = self.store.get_run(run_id)
            if run is None or run.status.terminal:
                self._release(run_id)
                return
            if run.held:
                return
            branch = self.store.get_branch(branch_id)
            # A step queued twice for one node runs once.
            if branch is None or branch.status != BranchStatus.ACTIVE or branch.current_node_id != node_id:
                return

            node = run.graph.node(branch.current_node_id)
            if node.type == NodeType.JOIN:
                self._arrive_at_join(run, branch, node)
                return

            context = ContextStore(branch.context)
            outcome = self._invoke(self.registry.get(node.type).handler, node, context, branch)
            branch.context = context.snapshot()
            logger.debug(
                "Branch stepped",
                extra={"run_id": run_id, "branch_id": branch_id, "node_id": node.id, "outcome": type(outcome).__name__},
            )
            self._apply(run, branch, node, outcome)

    def _wake(self, kind: WaitKind, ref: str, event: WakeEvent) -> bool:
        # The collaborator may answer before the reference is persisted.
        with self._early_lock:
            branch = self.store.find_suspended_branch(kind, ref)
            if branch is None:
                self._early[(kind, ref)] = event
        if branch is None:
            logger.debug("Holding callback for unknown wait", extra={"kind": kind.value, "ref": ref})
            return False
        resumed = self._resume(branch.run_id, branch.id, kind, ref, event)
        self._kick()
        return resumed

    def _resume(self, run_id: str, branch_id: str, kind: WaitKind, ref: str, event: WakeEvent) -> bool:
        with self._lock_for(run_id):
            run = self.store.get_run(run_id)
            branch = self.store.get_branch(branch_id)
            if (
                run is None
                or branch is None
                or run.status.terminal
                or branch.status != BranchStatus.SUSPENDED
                or branch.wait is None
                or branch.wait.kind != kind
                or branch.wait.ref != ref
            ):
                if run is None or run.status.terminal:
                    self._release(run_id)
                logger.info(
                    "Ignoring stale callback",
                    extra={"run_id": run_id, "branch_id": branch_id, "kind": kind.value, "ref": ref},
                )
                return False

            node = run.graph.node(branch.current_node_id)
            spec = self.registry.get(node.type)
            if spec.resume is None:
                outcome: Outcome = Fail(HandlerError(f"Node type {node.type.value} cannot be resumed"))
            else:
                context = ContextStore(branch.context)
                outcome = self._invoke(spec.resume, node, context, branch, event)
                branch.context = context.snapshot()

            logger.info(
                "Branch resumed",
                extra={"run_id": run_id, "branch_id": branch_id, "node_id": node.id, "kind": kind.value},
            )
            # A resumed branch needs a free slot before it steps again.
            branch.status = BranchStatus.QUEUED
            self._apply(run, branch, node, outcome)
            return True

    def _invoke(self, handler: Callable[..., Outcome], *args: Any) -> Outcome:
        try:
            return handler(*args)
        except HandlerError as exc:
            return Fail(exc)
        except Exception as exc:
            logger.warning("Node handler raised", exc_info=True)
            return Fail(HandlerError(str(exc) or type(exc).__name__))

    def _apply(self, run: Run, branch: Branch, node: Node, outcome: Outcome, carry: tuple[Branch, ...] = ()) -> None:
        """Apply a handler outcome; ``carry`` branches are written in the same transaction."""
        if isinstance(outcome, Advance):
            self._advance(run, branch, node, outcome, carry)
        elif isinstance(outcome, Suspend):
            self._suspend(run, branch, outcome.wait, carry)
        elif isinstance(outcome, Complete):
            branch.status = BranchStatus.COMPLETED
            branch.wait = None
            self._save(branch, *carry)
            self._settle(run)
        elif isinstance(outcome, Fail):
            self._fail(run, branch, node, outcome.error, carry)
        else:
            self._fail(run, branch, node, HandlerError(f"Unknown outcome {outcome!r}"), carry)

    def _select_edges(self, graph: GraphSnapshot, node: Node, advance: Advance) -> list[Edge]:
        edges = graph.outgoing(node.id)
        if advance.fan_out:
            matched = edges
        elif advance.label is not None:
            matched = [edge for edge in edges if edge.label == advance.label]
            if not matched:
                if advance.otherwise is not None:
                    raise advance.otherwise
                matched = [edge for edge in edges if not edge.label or edge.label == "default"]
        else:
            matched = [edge for edge in edges if edge.label != TIMEOUT_LABEL]

        if not matched:
            selector = advance.label or "default"
            raise HandlerError(f"No outgoing edge of node '{node.id}' matches '{selector}'")
        if not advance.fan_out and len(matched) > 1:
            raise HandlerError(f"Node '{node.id}' has {len(matched)} candidate edges; expected one")
        return matched

    def _advance(self, run: Run, branch: Branch, node: Node, advance: Advance, carry: tuple[Branch, ...]) -> None:
        try:
            edges = self._select_edges(run.graph, node, advance)
        except Exception as exc:
            self._fail(run, branch, node, exc, carry)
            return

        branch.wait = None
        if advance.fan_out:
            self._fork(run, branch, node, edges, carry)
            return

        branch.current_node_id = edges[0].target_node_id
        self._save(branch, *carry)
        if branch.status == BranchStatus.ACTIVE:
            self._enqueue(branch)
        self._settle(run)

    def _fork(self, run: Run, parent: Branch, node: Node, edges: list[Edge], carry: tuple[Branch, ...]) -> None:
        next_seq = max((b.seq for b in self.store.list_branches(run.id)), default=0) + 1
        parent.status = BranchStatus.FORKED
        children = [
            Branch(
                id=str(uuid.uuid4()),
                run_id=run.id,
                seq=next_seq + offset,
                current_node_id=edge.target_node_id,
                status=BranchStatus.QUEUED,
                parent_id=parent.id,
                fork_node_id=node.id,
                context=ContextStore(parent.context).snapshot(),
            )
            for offset, edge in enumerate(edges)
        ]
        self._save(parent, *children, *carry)
        logger.info(
            "Branch forked",
            extra={"run_id": run.id, "branch_id": parent.id, "node_id": node.id, "children": len(children)},
        )
        self._settle(run)

    def _arrive_at_join(self, run: Run, branch: Branch, node: Node) -> None:
        parallel_id = node.joins_parallel_node_id
        if branch.parent_id is None or branch.fork_node_id != parallel_id:
            self._fail(run, branch, node, HandlerError(f"Branch reached join '{node.id}' outside its parallel region"))
            return

        branch.status = BranchStatus.JOINED
        siblings = [
            branch if b.id == branch.id else b
            for b in self.store.list_branches(run.id)
            if b.parent_id == branch.parent_id
        ]
        arrived = sorted(
            (b for b in siblings if b.status == BranchStatus.JOINED and b.current_node_id == node.id),
            key=lambda b: b.seq,
        )
        expected = len(run.graph.outgoing(parallel_id or ""))
        logger.debug(
            "Branch arrived at join",
            extra={"run_id": run.id, "node_id": node.id, "arrived": len(arrived), "expected": expected},
        )
        if len(arrived) < expected:
            self._save(branch)
            self._settle(run)
            return

        parent = self.store.get_branch(branch.parent_id)
        if parent is None:
            raise RuntimeError(f"Parent branch {branch.parent_id} of run {run.id} is missing")
        merged = ContextStore.merged(parent.context, [b.context for b in arrived])
        parent.current_node_id = node.id
        parent.status = BranchStatus.QUEUED
        outcome = self._invoke(self.registry.get(NodeType.JOIN).handler, node, merged, parent)
        parent.context = merged.snapshot()
        logger.info("Join fired", extra={"run_id": run.id, "node_id": node.id, "branch_id": parent.id})
        # The last arrival is written together with the parent's next state.
        self._apply(run, parent, node, outcome, carry=(branch,))

    def _suspend(self, run: Run, branch: Branch, wait: WaitDescriptor, carry: tuple[Branch, ...]) -> None:
        branch.status = BranchStatus.SUSPENDED
        branch.wait = wait
        self._save(branch, *carry)
        logger.info(
            "Branch suspended",
            extra={"run_id": run.id, "branch_id": branch.id, "node_id": wait.node_id, "kind": wait.kind.value},
        )
        if self._arm(run, branch):
            self._settle(run)

    def _arm(self, run: Run, branch: Branch) -> bool:
        """Hand a persisted wait to its collaborator and record the reference."""
        wait = branch.wait
        if wait is None:
            raise RuntimeError(f"Branch {branch.id} has no wait to arm")
        request = wait.request
        agent_id = request.get("agent_id") or run.graph.agent_id
        project_id = request.get("project_id") or run.graph.default_project_id
        try:
            if wait.kind == WaitKind.TIMER:
                ref = self.timers.schedule_at(wait.deadline or utc_now())
            elif wait.kind == WaitKind.WEBHOOK:
                ref = self.webhooks.register_waiter(wait.correlation_key or "", wait.deadline)
            elif wait.kind == WaitKind.AGENT_SESSION:
                config = dict(request.get("config") or {})
                config["project_id"] = project_id
                ref = self.sessions.start_session(agent_id, request.get("prompt", ""), config)
            else:
                ref = self.tasks.create_task(agent_id, request.get("description", ""), project_id)
        except Exception as exc:
            node = run.graph.node(wait.node_id)
            self._fail(run, branch, node, CollaboratorError(f"Could not start {wait.kind.value}: {exc}"))
            return False

        branch.wait = wait.model_copy(update={"ref": ref})
        branch.updated_at = utc_now()
        with self._early_lock:
            self.store.persist(branches=[branch])
            early = self._early.pop((wait.kind, ref), None)
        self._emit_branch(branch)
        if early is not None:
            self._ready.put(partial(self._resume, run.id, branch.id, wait.kind, ref, early))
        return True

    def _fail(
        self,
        run: Run,
        branch: Branch,
        node: Node,
        error: BaseException,
        carry: tuple[Branch, ...] = (),
    ) -> None:
        message = str(error) or type(error).__name__
        branch.status = BranchStatus.FAILED
        branch.error = message
        run.status = RunStatus.FAILED
        run.error = f'Node "{node.display_name}" failed: {message}'
        run.finished_at = utc_now()
        self._close_run(run, BranchStatus.CANCELLED, branch, *carry)
        logger.error(
            "Workflow run failed",
            extra={"run_id": run.id, "branch_id": branch.id, "node_id": node.id, "error": message},
        )

    def _close_run(self, run: Run, status: BranchStatus, *settled: Branch) -> None:
        """Write a terminal run with its settled branches; other open branches close in the same write."""
        keep = {b.id for b in settled}
        closing = [b for b in self.store.list_branches(run.id) if not b.status.terminal and b.id not in keep]
        waits = [b.wait for b in closing if b.status == BranchStatus.SUSPENDED and b.wait is not None]
        for b in closing:
            b.status = status
        self._save(*settled, *closing, run=run)
        for wait in waits:
            self._detach(wait)
        self._emit_run(run)
        self._run_finished(run)

    def _reattach(self, wait: WaitDescriptor) -> bool:
        """True when the collaborator still owns the wait after a restart."""
        if wait.ref is None or wait.kind in (WaitKind.TIMER, WaitKind.WEBHOOK):
            return False
        service: Any = self.sessions if wait.kind == WaitKind.AGENT_SESSION else self.tasks
        try:
            return bool(service.reattach(wait.ref))
        except Exception:
            logger.warning(
                "Could not reattach wait", exc_info=True, extra={"kind": wait.kind.value, "ref": wait.ref}
            )
            return False

    def _detach(self, wait: WaitDescriptor) -> None:
        if wait.ref is None:
            return
        try:
            if wait.kind == WaitKind.TIMER:
                self.timers.cancel(wait.ref)
            elif wait.kind == WaitKind.WEBHOOK:
                self.webhooks.unregister(wait.ref)
            elif wait.kind == WaitKind.AGENT_SESSION:
                self.sessions.cancel(wait.ref)
            else:
                self.tasks.cancel(wait.ref)
        except Exception:
            logger.warning("Could not detach wait", exc_info=True, extra={"kind": wait.kind.value, "ref": wait.ref})

    def _settle(self, run: Run) -> None:
        """Activate queued branches into free slots and derive the run status."""
        if run.status.terminal:
            return
        branches = self.store.list_branches(run.id)
        failed = next((b for b in branches if b.status == BranchStatus.FAILED), None)
        if failed is not None:
            # A failed branch in a live run means its failure was never fully written.
            node = run.graph.node(failed.current_node_id)
            self._fail(run, failed, node, HandlerError(failed.error or "Branch failed"))
            return
        self._fill_slots(run, branches)

        statuses = {branch.status for branch in branches}
        previous = (run.status, run.context)
        run.context = ContextStore.merged(
            run.input, [b.context for b in sorted(branches, key=lambda b: (b.updated_at, b.seq))]
        ).snapshot()
        if statuses & set(LIVE_BRANCH_STATUSES) and not run.held:
            run.status = RunStatus.RUNNING
        elif statuses & set(LIVE_BRANCH_STATUSES + WAITING_BRANCH_STATUSES):
            run.status = RunStatus.PAUSED
        else:
            run.status = RunStatus.COMPLETED
            run.finished_at = utc_now()

        if (run.status, run.context) != previous:
            self.store.persist(run)
            self._emit_run(run)
        if run.status == RunStatus.COMPLETED:
            logger.info("Workflow run completed", extra={"run_id": run.id, "workflow_id": run.workflow_id})
            self._run_finished(run)

    def _fill_slots(self, run: Run, branches: list[Branch]) -> None:
        if run.held:
            return
        if self.concurrency_scope == ConcurrencyScope.RUN:
            limit = run.graph.max_concurrency
        else:
            limit = len(branches)
        active = sum(1 for b in branches if b.status == BranchStatus.ACTIVE)
        for branch in sorted((b for b in branches if b.status == BranchStatus.QUEUED), key=lambda b: b.seq):
            if active >= limit:
                break
            branch.status = BranchStatus.ACTIVE
            active += 1
            self._save(branch)
            self._enqueue(branch)

    def _run_finished(self, run: Run) -> None:
        self._release(run.id)
        if self.concurrency_scope == ConcurrencyScope.WORKFLOW:
            self._ready.put(partial(self._admit, run.workflow_id))

    def _release(self, run_id: str) -> None:
        # Late steps and callbacks find the run terminal in the store.
        with self._locks_guard:
            self._run_locks.pop(run_id, None)

    def _save(self, *branches: Branch, run: Run | None = None) -> None:
        now = utc_now()
        for branch in branches:
            branch.updated_at = now
        self.store.persist(run, branches)
        for branch in branches:
            logger.debug(
                "Branch transition",
                extra={"run_id": branch.run_id, "branch_id": branch.id, "status": branch.status.value},
            )
            self._emit_branch(branch)

    def _emit_run(self, run: Run) -> None:
        self._emit(EngineEvent("run_update", run.id, run.model_dump(mode="json", exclude={"branches", "graph"})))

    def _emit_branch(self, branch: Branch) -> None:
        self._emit(EngineEvent("branch_update", branch.run_id, branch.model_dump(mode="json")))

    def _emit(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Engine listener failed", extra={"event_type": event.type})
