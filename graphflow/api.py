from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .collaborators import ExternalSessions, TaskBoard
from .config import AppConfig, app_config
from .engine import WorkflowEngine
from .errors import GraphValidationError, WorkflowNotActiveError
from .logging import configure_logging
from .models import (
    EventDelivery,
    Run,
    RunRequest,
    SessionCompletion,
    TaskCompletion,
    ValidationReport,
    Workflow,
    WorkflowStatus,
    utc_now,
)
from .nodes import NodeRegistry, register_builtin_nodes
from .sessions import LangGraphSessions
from .store import SQLiteStore
from .tooling import tool_catalog
from .validator import validate_workflow, validation_report


def build_engine(config: AppConfig) -> WorkflowEngine:
    registry = NodeRegistry()
    register_builtin_nodes(registry)
    store = SQLiteStore(str(config.store_settings()["db_path"]))
    engine_settings = config.engine_settings()

    session_settings = config.agent_session_settings()
    if session_settings["backend"] == "langgraph":
        sessions: Any = LangGraphSessions(config.agent_defaults(), int(session_settings["max_workers"]))
    else:
        sessions = ExternalSessions()

    return WorkflowEngine(
        registry,
        store,
        sessions=sessions,
        tasks=TaskBoard(),
        workers=int(engine_settings["workers"]),
        tick_seconds=float(engine_settings["tick_seconds"]),
        concurrency_scope=str(engine_settings["concurrency_scope"]),
    )


def create_app(config: AppConfig | None = None, engine: WorkflowEngine | None = None) -> FastAPI:
    """Build the HTTP app; run it with ``uvicorn graphflow.api:create_app --factory``."""
    config = config or app_config
    engine = engine or build_engine(config)
    store = engine.store
    registry = engine.registry
    default_max_concurrency = int(config.engine_settings()["default_max_concurrency"])

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logging_settings = config.logging_settings()
        configure_logging(str(logging_settings["level"]), bool(logging_settings["json"]))
        engine.start()
        try:
            yield
        finally:
            engine.stop()
            if isinstance(engine.sessions, LangGraphSessions):
                engine.sessions.shutdown()

    app = FastAPI(title="Graphflow", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.engine = engine

    def _with_defaults(workflow: Workflow) -> Workflow:
        if "max_concurrency" not in workflow.model_fields_set:
            return workflow.model_copy(update={"max_concurrency": default_max_concurrency})
        return workflow

    def _require_valid(workflow: Workflow) -> None:
        if workflow.status != WorkflowStatus.ACTIVE:
            return
        try:
            validate_workflow(workflow)
        except GraphValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.reason) from exc

    def _require_workflow(workflow_id: str) -> Workflow:
        workflow = store.get_workflow(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow

    def _current_run(run_id: str) -> Run:
        run = engine.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/node-types")
    def list_node_types() -> list[str]:
        return registry.list_types()

    @app.get("/node-catalog")
    def node_catalog() -> list[dict[str, str]]:
        return registry.list_specs()

    @app.get("/tool-catalog")
    def tools() -> list[dict[str, str]]:
        return tool_catalog()

    @app.get("/config")
    def get_config() -> dict[str, dict[str, object]]:
        return {
            "engine": config.engine_settings(),
            "agent_sessions": config.agent_session_settings(),
            "agent_defaults": config.agent_defaults(),
        }

    @app.get("/stats")
    def stats() -> dict[str, Any]:
        return engine.stats()

    @app.post("/workflows", response_model=Workflow)
    def create_workflow(workflow: Workflow) -> Workflow:
        existing = store.get_workflow(workflow.id)
        if existing:
            raise HTTPException(status_code=409, detail="Workflow id already exists")
        _require_valid(workflow)
        return store.create_workflow(_with_defaults(workflow))

    @app.post("/workflows/new", response_model=Workflow)
    def create_workflow_with_generated_id(workflow: Workflow) -> Workflow:
        created = _with_defaults(workflow).model_copy(update={"id": str(uuid.uuid4())})
        _require_valid(created)
        return store.create_workflow(created)

    @app.get("/workflows", response_model=list[Workflow])
    def list_workflows() -> list[Workflow]:
        return store.list_workflows()

    @app.get("/workflows/{workflow_id}", response_model=Workflow)
    def get_workflow(workflow_id: str) -> Workflow:
        return _require_workflow(workflow_id)

    @app.put("/workflows/{workflow_id}", response_model=Workflow)
    def update_workflow(workflow_id: str, workflow: Workflow) -> Workflow:
        if workflow.id != workflow_id:
            raise HTTPException(status_code=400, detail="Workflow id mismatch")
        existing = _require_workflow(workflow_id)
        changed = workflow.model_copy(update={"created_at": existing.created_at, "updated_at": utc_now()})
        _require_valid(changed)
        updated = store.update_workflow(workflow_id, changed)
        if updated is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return updated

    @app.delete("/workflows/{workflow_id}")
    def delete_workflow(workflow_id: str) -> dict[str, bool]:
        if not store.delete_workflow(workflow_id):
            raise HTTPException(status_code=404, detail="Workflow not found")
        return {"deleted": True}

    @app.post("/workflows/{workflow_id}/validate", response_model=ValidationReport)
    def validate(workflow_id: str) -> ValidationReport:
        return validation_report(_require_workflow(workflow_id))

    @app.post("/workflows/{workflow_id}/activate", response_model=Workflow)
    def activate(workflow_id: str) -> Workflow:
        workflow = _require_workflow(workflow_id)
        try:
            validate_workflow(workflow)
        except GraphValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.reason) from exc
        activated = workflow.model_copy(update={"status": WorkflowStatus.ACTIVE, "updated_at": utc_now()})
        store.update_workflow(workflow_id, activated)
        return activated

    @app.post("/workflows/{workflow_id}/trigger", response_model=Run)
    def trigger(workflow_id: str, request: RunRequest) -> Run:
        try:
            return engine.trigger(workflow_id, request.input_data)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Workflow not found") from exc
        except GraphValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.reason) from exc
        except WorkflowNotActiveError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/workflows/{workflow_id}/runs", response_model=list[Run])
    def list_workflow_runs(workflow_id: str, limit: int = 50) -> list[Run]:
        _require_workflow(workflow_id)
        return store.list_runs(workflow_id=workflow_id, limit=limit)

    @app.get("/runs", response_model=list[Run])
    def list_runs(limit: int = 50) -> list[Run]:
        return store.list_runs(limit=limit)

    @app.get("/runs/{run_id}", response_model=Run)
    def get_run(run_id: str) -> Run:
        return _current_run(run_id)

    @app.post("/runs/{run_id}/cancel", response_model=Run)
    def cancel_run(run_id: str) -> Run:
        try:
            engine.cancel(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Run not found") from exc
        return _current_run(run_id)

    @app.post("/runs/{run_id}/pause", response_model=Run)
    def pause_run(run_id: str) -> Run:
        try:
            paused = engine.pause(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Run not found") from exc
        if not paused:
            raise HTTPException(status_code=400, detail="Run is not running")
        return _current_run(run_id)

    @app.post("/runs/{run_id}/resume", response_model=Run)
    def resume_run(run_id: str) -> Run:
        try:
            resumed = engine.resume_run(run_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Run not found") from exc
        if not resumed:
            raise HTTPException(status_code=400, detail="Run is not paused")
        return _current_run(run_id)

    @app.post("/sessions/{session_id}/complete")
    def complete_session(session_id: str, completion: SessionCompletion) -> dict[str, bool]:
        sessions = engine.sessions
        if not isinstance(sessions, ExternalSessions):
            raise HTTPException(status_code=409, detail="Agent sessions are not managed externally")
        if not sessions.complete(session_id, completion.result, completion.error):
            raise HTTPException(status_code=404, detail="Session not found or already finished")
        return {"accepted": True}

    @app.post("/work-tasks/{task_id}/complete")
    def complete_task(task_id: str, completion: TaskCompletion) -> dict[str, bool]:
        tasks = engine.tasks
        if not isinstance(tasks, TaskBoard):
            raise HTTPException(status_code=409, detail="Work tasks are not managed locally")
        if not tasks.complete(task_id, completion.status, completion.summary, completion.error):
            raise HTTPException(status_code=404, detail="Work task not found or already finished")
        return {"accepted": True}

    @app.post("/events")
    def deliver_event(event: EventDelivery) -> dict[str, int]:
        return {"delivered": engine.deliver_event(event.correlation_key, event.payload)}

    return app
