from __future__ import annotations

from datetime import timedelta

from graphflow.models import (
    Branch,
    BranchStatus,
    GraphSnapshot,
    Run,
    RunStatus,
    WaitDescriptor,
    WaitKind,
    utc_now,
)
from graphflow.store import SQLiteStore

START = {"id": "start", "type": "start"}
END = {"id": "end", "type": "end"}


def test_workflow_crud(store: SQLiteStore, make_workflow) -> None:
    workflow = make_workflow([START, END], [("start", "end")], agent_id="agent-1")

    store.create_workflow(workflow)
    loaded = store.get_workflow(workflow.id)
    assert loaded == workflow

    renamed = workflow.model_copy(update={"name": "Renamed"})
    assert store.update_workflow(workflow.id, renamed) is not None
    assert store.get_workflow(workflow.id).name == "Renamed"
    assert store.update_workflow("missing", renamed) is None

    assert store.count_workflows() == 1
    assert store.delete_workflow(workflow.id) is True
    assert store.delete_workflow(workflow.id) is False
    assert store.get_workflow(workflow.id) is None


def test_persist_upserts_run_and_branches(store: SQLiteStore, make_workflow) -> None:
    workflow = make_workflow([START, END], [("start", "end")])
    run = Run(id="run-1", workflow_id=workflow.id, input={"a": 1}, graph=GraphSnapshot.of(workflow))
    branch = Branch(id="b-1", run_id=run.id, seq=1, current_node_id="start")
    store.persist(run, [branch])

    run.status = RunStatus.PAUSED
    run.held = True
    run.context = {"a": 1, "start": {}}
    branch.status = BranchStatus.SUSPENDED
    branch.wait = WaitDescriptor(kind=WaitKind.WEBHOOK, node_id="start", correlation_key="k", ref="waiter-1")
    store.persist(run, [branch])

    loaded = store.get_run(run.id, with_branches=True)
    assert loaded.status == RunStatus.PAUSED
    assert loaded.held is True
    assert loaded.input == {"a": 1}
    assert loaded.context == {"a": 1, "start": {}}
    assert [node.id for node in loaded.graph.nodes] == ["start", "end"]
    assert loaded.branches[0].wait.correlation_key == "k"

    found = store.find_suspended_branch(WaitKind.WEBHOOK, "waiter-1")
    assert found is not None and found.id == "b-1"
    assert store.find_suspended_branch(WaitKind.TIMER, "waiter-1") is None
    assert store.count_branches(BranchStatus.SUSPENDED) == 1


def test_list_runs_orders_filters_and_limits(store: SQLiteStore) -> None:
    now = utc_now()
    for index, status in enumerate([RunStatus.COMPLETED, RunStatus.RUNNING, RunStatus.PENDING]):
        store.persist(
            Run(
                id=f"run-{index}",
                workflow_id="wf-a" if index < 2 else "wf-b",
                status=status,
                started_at=now + timedelta(seconds=index),
            )
        )

    assert [run.id for run in store.list_runs()] == ["run-2", "run-1", "run-0"]
    assert [run.id for run in store.list_runs(limit=1)] == ["run-2"]
    assert [run.id for run in store.list_runs(workflow_id="wf-a")] == ["run-1", "run-0"]
    assert [run.id for run in store.list_unfinished_runs()] == ["run-1", "run-2"]
    assert [run.id for run in store.list_runs(statuses=[RunStatus.COMPLETED])] == ["run-0"]


def test_count_runs_filters_without_loading_runs(store: SQLiteStore) -> None:
    for index, status in enumerate([RunStatus.COMPLETED, RunStatus.RUNNING, RunStatus.PAUSED]):
        store.persist(Run(id=f"run-{index}", workflow_id="wf-a" if index else "wf-b", status=status))

    assert store.count_runs() == 3
    assert store.count_runs(workflow_id="wf-a") == 2
    assert store.count_runs(statuses=[RunStatus.RUNNING, RunStatus.PAUSED]) == 2
    assert store.count_runs(workflow_id="wf-b", statuses=[RunStatus.RUNNING]) == 0
