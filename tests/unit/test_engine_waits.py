"""Suspension, resumption, cancellation and recovery of runs."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from graphflow.engine import WorkflowEngine
from graphflow.models import Branch, BranchStatus, GraphSnapshot, Run, RunStatus, WaitDescriptor, WaitKind, utc_now
from graphflow.store import SQLiteStore

START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}


def _session_workflow(deploy, **kwargs):
    return deploy(
        [
            START,
            {
                "id": "ask",
                "type": "agent_session",
                "label": "Summarise",
                "config": {"prompt": "Summarise {{topic}}", "context_keys": ["topic"], "max_turns": 3},
            },
            END,
        ],
        [("start", "ask"), ("ask", "end")],
        agent_id="agent-7",
        default_project_id="proj-1",
        **kwargs,
    )


def _task_workflow(deploy):
    return deploy(
        [START, {"id": "fix", "type": "work_task", "config": {"description": "Fix {{issue}}"}}, END],
        [("start", "fix"), ("fix", "end")],
        default_project_id="proj-1",
    )


def _delay_workflow(deploy, seconds: float):
    return deploy(
        [START, {"id": "pause", "type": "delay", "config": {"seconds": seconds}}, END],
        [("start", "pause"), ("pause", "end")],
    )


def _webhook_workflow(deploy, with_timeout_edge: bool):
    nodes = [
        START,
        {"id": "wait", "type": "webhook_wait", "config": {"correlation_key": "pr-{{pr}}", "timeout_seconds": 30}},
        {"id": "late", "type": "transform", "config": {"template": "gave up"}},
        END,
    ]
    edges = [("start", "wait"), ("wait", "end"), ("late", "end")]
    if with_timeout_edge:
        edges.append(("wait", "late", "timeout"))
    else:
        nodes.remove(nodes[2])
        edges.remove(("late", "end"))
    return deploy(nodes, edges)


def _wait_ref(engine: WorkflowEngine, run_id: str) -> str:
    branch = next(b for b in engine.get_run(run_id).branches if b.status == BranchStatus.SUSPENDED)
    assert branch.wait is not None and branch.wait.ref is not None
    return branch.wait.ref


def test_agent_session_suspends_and_resumes(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)

    run = engine.trigger(workflow.id, {"topic": "graphs"})

    assert run.status == RunStatus.PAUSED
    session_id = _wait_ref(engine, run.id)
    record = engine.sessions.get(session_id)
    assert record.agent_id == "agent-7"
    assert record.prompt == "Summarise graphs"
    assert record.config["variables"] == {"topic": "graphs"}
    assert record.config["project_id"] == "proj-1"
    assert record.config["max_turns"] == 3

    assert engine.sessions.complete(session_id, result="Graphs are nodes and edges.") is True

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.context["ask"] == {"session_id": session_id, "output": "Graphs are nodes and edges."}


def test_agent_session_error_fails_the_run(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    run = engine.trigger(workflow.id, {"topic": "graphs"})

    engine.sessions.complete(_wait_ref(engine, run.id), error="model unavailable")

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert failed.error == 'Node "Summarise" failed: Agent session failed: model unavailable'


def test_work_task_uses_workflow_project_default(engine: WorkflowEngine, deploy) -> None:
    workflow = _task_workflow(deploy)
    run = engine.trigger(workflow.id, {"issue": "#12"})

    task_id = _wait_ref(engine, run.id)
    task = engine.tasks.get(task_id)
    assert task.description == "Fix #12"
    assert task.project_id == "proj-1"

    engine.tasks.complete(task_id, "completed", summary="patched")

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.context["fix"] == {"task_id": task_id, "status": "completed", "summary": "patched"}


def test_work_task_failure_fails_the_run(engine: WorkflowEngine, deploy) -> None:
    workflow = _task_workflow(deploy)
    run = engine.trigger(workflow.id, {"issue": "#12"})

    engine.tasks.complete(_wait_ref(engine, run.id), "failed", error="tests red")

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert "Work task failed: tests red" in failed.error


def test_zero_delay_suspends_until_the_timer_fires(engine: WorkflowEngine, deploy) -> None:
    workflow = _delay_workflow(deploy, 0)

    run = engine.trigger(workflow.id, {})
    assert run.status == RunStatus.PAUSED
    assert run.branches[0].wait.kind == WaitKind.TIMER

    engine.tick()

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    pause = finished.context["pause"]
    assert datetime.fromisoformat(pause["resumed_at"]) >= datetime.fromisoformat(pause["wake_at"])


def test_early_timer_wake_parks_the_branch_again(engine: WorkflowEngine, deploy) -> None:
    workflow = _delay_workflow(deploy, 60)
    run = engine.trigger(workflow.id, {})
    first_ref = _wait_ref(engine, run.id)

    engine.tick(utc_now())
    assert _wait_ref(engine, run.id) == first_ref

    # The timer service believes the deadline passed; the wall clock does not.
    engine.tick(utc_now() + timedelta(seconds=61))

    current = engine.get_run(run.id)
    assert current.status == RunStatus.PAUSED
    assert _wait_ref(engine, run.id) != first_ref
    assert engine.timers.pending() == 1


def test_webhook_timeout_takes_timeout_edge(engine: WorkflowEngine, deploy) -> None:
    workflow = _webhook_workflow(deploy, with_timeout_edge=True)
    run = engine.trigger(workflow.id, {"pr": 5})
    assert engine.webhooks.waiting_keys() == ["pr-5"]

    engine.tick(utc_now() + timedelta(seconds=31))

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.context["wait"] == {"timed_out": True}
    assert finished.context["late"] == {"text": "gave up"}


def test_webhook_timeout_without_timeout_edge_fails(engine: WorkflowEngine, deploy) -> None:
    workflow = _webhook_workflow(deploy, with_timeout_edge=False)
    run = engine.trigger(workflow.id, {"pr": 5})

    engine.tick(utc_now() + timedelta(seconds=31))

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert "No event for correlation key 'pr-5' before timeout" in failed.error


def test_webhook_event_before_timeout_takes_regular_edge(engine: WorkflowEngine, deploy) -> None:
    workflow = _webhook_workflow(deploy, with_timeout_edge=True)
    run = engine.trigger(workflow.id, {"pr": 5})

    assert engine.deliver_event("pr-4", {"merged": True}) == 0
    assert engine.deliver_event("pr-5", {"merged": True}) == 1

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.context["wait"] == {"merged": True}
    assert "late" not in finished.context


def test_cancel_detaches_waits_and_ignores_late_callbacks(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    run = engine.trigger(workflow.id, {"topic": "graphs"})
    session_id = _wait_ref(engine, run.id)

    assert engine.cancel(run.id) is True

    cancelled = engine.get_run(run.id)
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert [b.status for b in cancelled.branches] == [BranchStatus.CANCELLED]
    assert engine.sessions.get(session_id).status == "cancelled"

    assert engine.complete_session(session_id, "too late") is False
    assert engine.get_run(run.id).status == RunStatus.CANCELLED
    assert engine.cancel(run.id) is False


def test_cancel_unknown_run_raises(engine: WorkflowEngine) -> None:
    with pytest.raises(KeyError):
        engine.cancel("missing")


def _sibling_failure_workflow(deploy):
    return deploy(
        [
            START,
            {"id": "fork", "type": "parallel"},
            {"id": "bad", "type": "delay", "config": {"seconds": -1}},
            {"id": "slow", "type": "webhook_wait", "config": {"correlation_key": "never"}},
            {"id": "join", "type": "join", "joins_parallel_node_id": "fork"},
            END,
        ],
        [
            ("start", "fork"),
            ("fork", "slow"),
            ("fork", "bad"),
            ("slow", "join"),
            ("bad", "join"),
            ("join", "end"),
        ],
    )


def test_failure_cancels_sibling_branches(engine: WorkflowEngine, deploy) -> None:
    workflow = _sibling_failure_workflow(deploy)

    run = engine.trigger(workflow.id, {})

    assert run.status == RunStatus.FAILED
    by_node = {b.current_node_id: b.status for b in run.branches if b.parent_id is not None}
    assert by_node == {"bad": BranchStatus.FAILED, "slow": BranchStatus.CANCELLED}
    assert engine.webhooks.waiting_keys() == []


def test_failure_writes_run_and_branches_together(engine: WorkflowEngine, deploy, store, monkeypatch) -> None:
    workflow = _sibling_failure_workflow(deploy)
    writes: list[tuple[RunStatus | None, dict[str, BranchStatus]]] = []
    persist = store.persist

    def _recording(run=None, branches=()):
        branches = list(branches)
        writes.append((run.status if run else None, {b.current_node_id: b.status for b in branches}))
        persist(run, branches)

    monkeypatch.setattr(store, "persist", _recording)
    engine.trigger(workflow.id, {})

    failed_writes = [branches for status, branches in writes if status == RunStatus.FAILED]
    assert failed_writes == [
        {"bad": BranchStatus.FAILED, "fork": BranchStatus.CANCELLED, "slow": BranchStatus.CANCELLED}
    ]


def test_recover_fails_run_whose_failure_was_not_fully_written(engine: WorkflowEngine, deploy, store) -> None:
    workflow = _sibling_failure_workflow(deploy)
    run = Run(id="run-1", workflow_id=workflow.id, status=RunStatus.RUNNING, graph=GraphSnapshot.of(workflow))
    parent = Branch(id="b-1", run_id=run.id, seq=1, current_node_id="fork", status=BranchStatus.FORKED)
    bad = Branch(
        id="b-2",
        run_id=run.id,
        seq=2,
        current_node_id="bad",
        status=BranchStatus.FAILED,
        parent_id=parent.id,
        fork_node_id="fork",
        error="boom",
    )
    slow = Branch(
        id="b-3",
        run_id=run.id,
        seq=3,
        current_node_id="slow",
        status=BranchStatus.SUSPENDED,
        parent_id=parent.id,
        fork_node_id="fork",
        wait=WaitDescriptor(kind=WaitKind.WEBHOOK, node_id="slow", correlation_key="never", ref="old-waiter"),
    )
    store.persist(run, [parent, bad, slow])

    assert engine.recover() == 1

    recovered = engine.get_run(run.id)
    assert recovered.status == RunStatus.FAILED
    assert recovered.error == 'Node "bad" failed: boom'
    assert recovered.finished_at is not None
    assert {b.id: b.status for b in recovered.branches} == {
        "b-1": BranchStatus.CANCELLED,
        "b-2": BranchStatus.FAILED,
        "b-3": BranchStatus.CANCELLED,
    }
    assert engine.webhooks.waiting_keys() == []


def test_pause_holds_run_until_resumed(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    run = engine.trigger(workflow.id, {"topic": "graphs"})
    session_id = _wait_ref(engine, run.id)

    assert engine.pause(run.id) is True
    assert engine.pause(run.id) is False
    assert engine.sessions.complete(session_id, result="done") is True

    held = engine.get_run(run.id)
    assert held.status == RunStatus.PAUSED
    assert held.held is True
    assert [(b.current_node_id, b.status) for b in held.branches] == [("end", BranchStatus.QUEUED)]
    assert held.branches[0].context["ask"]["output"] == "done"

    assert engine.resume_run(run.id) is True

    finished = engine.get_run(run.id)
    assert finished.status == RunStatus.COMPLETED
    assert finished.held is False
    assert engine.resume_run(run.id) is False
    assert engine.pause(run.id) is False


def test_pause_and_resume_reject_unknown_or_unheld_runs(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    run = engine.trigger(workflow.id, {"topic": "graphs"})

    assert engine.resume_run(run.id) is False
    with pytest.raises(KeyError):
        engine.pause("missing")
    with pytest.raises(KeyError):
        engine.resume_run("missing")


def test_cancel_releases_a_held_run(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    run = engine.trigger(workflow.id, {"topic": "graphs"})
    engine.pause(run.id)

    assert engine.cancel(run.id) is True

    assert engine.get_run(run.id).status == RunStatus.CANCELLED
    assert engine.resume_run(run.id) is False


def test_finished_runs_drop_their_locks(engine: WorkflowEngine, deploy) -> None:
    workflow = _session_workflow(deploy)
    completed = engine.trigger(workflow.id, {"topic": "one"})
    engine.sessions.complete(_wait_ref(engine, completed.id), result="ok")
    cancelled = engine.trigger(workflow.id, {"topic": "two"})
    session_id = _wait_ref(engine, cancelled.id)
    engine.cancel(cancelled.id)
    engine.complete_session(session_id, "too late")

    assert engine.get_run(completed.id).status == RunStatus.COMPLETED
    assert engine._run_locks == {}


def test_recover_resumes_suspended_task_in_new_engine(registry, db_path, deploy) -> None:
    first = WorkflowEngine(registry, SQLiteStore(db_path))
    workflow = _task_workflow(deploy)
    run = first.trigger(workflow.id, {"issue": "#3"})
    task_id = _wait_ref(first, run.id)

    second = WorkflowEngine(registry, SQLiteStore(db_path))
    assert second.recover() == 1
    assert second.tasks.complete(task_id, "completed", summary="done") is True

    assert second.get_run(run.id).status == RunStatus.COMPLETED


def test_recover_rearms_timers(registry, db_path, deploy) -> None:
    first = WorkflowEngine(registry, SQLiteStore(db_path))
    workflow = _delay_workflow(deploy, 0)
    run = first.trigger(workflow.id, {})

    second = WorkflowEngine(registry, SQLiteStore(db_path))
    second.recover()
    assert second.timers.pending() == 1
    second.tick()

    assert second.get_run(run.id).status == RunStatus.COMPLETED


def test_recover_continues_active_branch(engine: WorkflowEngine, deploy, store) -> None:
    workflow = deploy(
        [START, {"id": "t", "type": "transform", "config": {"template": "again"}}, END],
        [("start", "t"), ("t", "end")],
    )
    run = Run(id="run-1", workflow_id=workflow.id, status=RunStatus.RUNNING, graph=GraphSnapshot.of(workflow))
    branch = Branch(id="branch-1", run_id=run.id, seq=1, current_node_id="t", status=BranchStatus.ACTIVE)
    store.persist(run, [branch])

    assert engine.recover() == 1

    recovered = engine.get_run(run.id)
    assert recovered.status == RunStatus.COMPLETED
    assert recovered.context["t"] == {"text": "again"}


def test_workflow_scope_queues_runs_beyond_max_concurrency(registry, store, deploy) -> None:
    engine = WorkflowEngine(registry, store, concurrency_scope="workflow")
    workflow = _session_workflow(deploy, max_concurrency=1)

    first = engine.trigger(workflow.id, {"topic": "one"})
    second = engine.trigger(workflow.id, {"topic": "two"})

    assert first.status == RunStatus.PAUSED
    assert second.status == RunStatus.PENDING
    assert second.branches == []

    engine.sessions.complete(_wait_ref(engine, first.id), result="ok")

    assert engine.get_run(first.id).status == RunStatus.COMPLETED
    admitted = engine.get_run(second.id)
    assert admitted.status == RunStatus.PAUSED
    assert engine.sessions.get(_wait_ref(engine, second.id)).prompt == "Summarise two"
