from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from graphflow.api import create_app
from graphflow.config import AppConfig


def _workflow_body(workflow_id: str, middle: dict | None = None) -> dict:
    nodes = [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}]
    edges = [{"id": "e1", "source_node_id": "start", "target_node_id": "end"}]
    if middle is not None:
        nodes.insert(1, middle)
        edges = [
            {"id": "e1", "source_node_id": "start", "target_node_id": middle["id"]},
            {"id": "e2", "source_node_id": middle["id"], "target_node_id": "end"},
        ]
    return {"id": workflow_id, "name": f"Workflow {workflow_id}", "nodes": nodes, "edges": edges}


@pytest.fixture
def client(tmp_path: Path) -> TestClient:
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[store]\n"
        f"db_path = {tmp_path / 'api.db'}\n"
        "[engine]\n"
        "workers = 0\n"
        "default_max_concurrency = 3\n",
        encoding="utf-8",
    )
    return TestClient(create_app(AppConfig(config_path)))


def _deploy(client: TestClient, body: dict) -> dict:
    assert client.post("/workflows", json=body).status_code == 200
    response = client.post(f"/workflows/{body['id']}/activate")
    assert response.status_code == 200
    return response.json()


def test_catalog_endpoints(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}
    node_types = client.get("/node-types").json()
    assert "parallel" in node_types and "webhook_wait" in node_types
    assert len(client.get("/node-catalog").json()) == 10
    assert {tool["name"] for tool in client.get("/tool-catalog").json()} == {"utc_time", "workflow_variables"}
    assert client.get("/config").json()["engine"]["workers"] == 0


def test_workflow_crud(client: TestClient) -> None:
    created = client.post("/workflows", json=_workflow_body("wf-crud"))
    assert created.status_code == 200
    assert created.json()["max_concurrency"] == 3
    assert created.json()["status"] == "draft"
    assert client.post("/workflows", json=_workflow_body("wf-crud")).status_code == 409

    generated = client.post("/workflows/new", json=_workflow_body("ignored")).json()
    assert generated["id"] != "ignored"
    assert len(client.get("/workflows").json()) == 2

    body = _workflow_body("wf-crud") | {"name": "Renamed"}
    assert client.put("/workflows/wf-crud", json=body).json()["name"] == "Renamed"
    assert client.put("/workflows/other", json=body).status_code == 400

    assert client.delete("/workflows/wf-crud").json() == {"deleted": True}
    assert client.get("/workflows/wf-crud").status_code == 404
    assert client.delete("/workflows/wf-crud").status_code == 404


def test_validate_and_activate_report_structural_reason(client: TestClient) -> None:
    body = _workflow_body("wf-bad")
    body["nodes"] = body["nodes"][:1]
    body["edges"] = []
    client.post("/workflows", json=body)

    report = client.post("/workflows/wf-bad/validate").json()
    assert report == {"ok": False, "reason": "Workflow has no end node"}

    response = client.post("/workflows/wf-bad/activate")
    assert response.status_code == 400
    assert response.json()["detail"] == "Workflow has no end node"


def test_trigger_runs_workflow_and_lists_runs(client: TestClient) -> None:
    client.post("/workflows", json=_workflow_body("wf-run"))
    assert client.post("/workflows/wf-run/trigger", json={"input_data": {}}).status_code == 400
    assert client.post("/workflows/missing/trigger", json={"input_data": {}}).status_code == 404

    client.post("/workflows/wf-run/activate")
    run = client.post("/workflows/wf-run/trigger", json={"input_data": {"ticket": 9}}).json()

    assert run["status"] == "completed"
    assert run["context"]["ticket"] == 9
    assert [item["id"] for item in client.get("/workflows/wf-run/runs").json()] == [run["id"]]
    assert [item["id"] for item in client.get("/runs?limit=5").json()] == [run["id"]]
    assert client.get(f"/runs/{run['id']}").json()["branches"][0]["status"] == "completed"
    assert client.get("/runs/missing").status_code == 404


def test_session_completion_resumes_run(client: TestClient) -> None:
    _deploy(client, _workflow_body("wf-agent", {"id": "ask", "type": "agent_session", "config": {"prompt": "Hi"}}))

    run = client.post("/workflows/wf-agent/trigger", json={"input_data": {}}).json()
    assert run["status"] == "paused"
    session_id = run["branches"][0]["wait"]["ref"]

    assert client.post("/sessions/unknown/complete", json={"result": "x"}).status_code == 404
    assert client.post(f"/sessions/{session_id}/complete", json={"result": "hello"}).json() == {"accepted": True}

    finished = client.get(f"/runs/{run['id']}").json()
    assert finished["status"] == "completed"
    assert finished["context"]["ask"]["output"] == "hello"


def test_work_task_completion_and_event_delivery(client: TestClient) -> None:
    _deploy(client, _workflow_body("wf-task", {"id": "job", "type": "work_task", "config": {"description": "Do"}}))
    _deploy(
        client,
        _workflow_body("wf-hook", {"id": "hook", "type": "webhook_wait", "config": {"correlation_key": "k-{{n}}"}}),
    )

    task_run = client.post("/workflows/wf-task/trigger", json={"input_data": {}}).json()
    task_id = task_run["branches"][0]["wait"]["ref"]
    response = client.post(f"/work-tasks/{task_id}/complete", json={"status": "completed", "summary": "done"})
    assert response.json() == {"accepted": True}
    assert client.get(f"/runs/{task_run['id']}").json()["status"] == "completed"

    hook_run = client.post("/workflows/wf-hook/trigger", json={"input_data": {"n": 1}}).json()
    assert client.post("/events", json={"correlation_key": "k-1", "payload": {"ok": True}}).json() == {"delivered": 1}
    assert client.get(f"/runs/{hook_run['id']}").json()["context"]["hook"] == {"ok": True}


def test_cancel_run(client: TestClient) -> None:
    _deploy(client, _workflow_body("wf-cancel", {"id": "ask", "type": "agent_session"}))
    run = client.post("/workflows/wf-cancel/trigger", json={"input_data": {}}).json()

    cancelled = client.post(f"/runs/{run['id']}/cancel").json()

    assert cancelled["status"] == "cancelled"
    assert cancelled["branches"][0]["status"] == "cancelled"
    assert client.post("/runs/missing/cancel").status_code == 404
    assert client.get("/stats").json()["active_runs"] == 0


def test_creating_an_active_workflow_validates_it(client: TestClient) -> None:
    body = _workflow_body("wf-active") | {"status": "active"}
    body["nodes"] = body["nodes"][1:]
    body["edges"] = []

    response = client.post("/workflows", json=body)
    assert response.status_code == 400
    assert response.json()["detail"] == "Workflow has no start node"
    assert client.post("/workflows/new", json=body).status_code == 400
    assert client.get("/workflows/wf-active").status_code == 404

    valid = _workflow_body("wf-active") | {"status": "active"}
    assert client.post("/workflows", json=valid).json()["status"] == "active"


def test_pause_and_resume_run(client: TestClient) -> None:
    _deploy(client, _workflow_body("wf-hold", {"id": "ask", "type": "agent_session"}))
    run = client.post("/workflows/wf-hold/trigger", json={"input_data": {}}).json()
    session_id = run["branches"][0]["wait"]["ref"]

    paused = client.post(f"/runs/{run['id']}/pause").json()
    assert paused["status"] == "paused"
    assert paused["held"] is True
    assert client.post(f"/runs/{run['id']}/pause").status_code == 400
    assert client.get("/stats").json()["active_runs"] == 1

    client.post(f"/sessions/{session_id}/complete", json={"result": "hi"})
    assert client.get(f"/runs/{run['id']}").json()["status"] == "paused"

    resumed = client.post(f"/runs/{run['id']}/resume").json()
    assert resumed["status"] == "completed"
    assert client.post(f"/runs/{run['id']}/resume").status_code == 400
    assert client.post("/runs/missing/pause").status_code == 404
    assert client.post("/runs/missing/resume").status_code == 404
