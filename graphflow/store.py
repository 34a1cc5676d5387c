from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from .models import Branch, BranchStatus, GraphSnapshot, Run, RunStatus, WaitDescriptor, WaitKind, Workflow

UNFINISHED_RUN_STATUSES = (RunStatus.PENDING, RunStatus.RUNNING, RunStatus.PAUSED)


class SQLiteStore:
    def __init__(self, db_path: str | Path = "data/workflows.db") -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    definition TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT NOT NULL,
                    context TEXT NOT NULL,
                    graph TEXT NOT NULL,
                    error TEXT,
                    held INTEGER NOT NULL DEFAULT 0,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS branches (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    parent_id TEXT,
                    fork_node_id TEXT,
                    context TEXT NOT NULL,
                    wait TEXT,
                    wait_kind TEXT,
                    wait_ref TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY(run_id) REFERENCES runs(id)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id, started_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_branches_run ON branches(run_id, seq)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_branches_status ON branches(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_branches_wait ON branches(wait_kind, wait_ref)")

    # Workflows

    def create_workflow(self, workflow: Workflow) -> Workflow:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, status, definition, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow.id,
                    workflow.name,
                    workflow.status.value,
                    workflow.model_dump_json(),
                    workflow.created_at.isoformat(),
                    workflow.updated_at.isoformat(),
                ),
            )
        return workflow

    def update_workflow(self, workflow_id: str, workflow: Workflow) -> Workflow | None:
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()
            if not existing:
                return None
            conn.execute(
                "UPDATE workflows SET name = ?, status = ?, definition = ?, updated_at = ? WHERE id = ?",
                (
                    workflow.name,
                    workflow.status.value,
                    workflow.model_dump_json(),
                    workflow.updated_at.isoformat(),
                    workflow_id,
                ),
            )
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM workflows WHERE id = ?",
                (workflow_id,),
            ).fetchone()

        if not row:
            return None
        return Workflow.model_validate_json(row["definition"])

    def list_workflows(self) -> list[Workflow]:
        with self._connect() as conn:
            rows = conn.execute("SELECT definition FROM workflows ORDER BY updated_at DESC").fetchall()

        return [Workflow.model_validate_json(row["definition"]) for row in rows]

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
        return cursor.rowcount > 0

    def count_workflows(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM workflows").fetchone()
        return int(row["count"])

    # Runs and branches

    def persist(self, run: Run | None = None, branches: Iterable[Branch] = ()) -> None:
        """Write a run and any number of its branches in one transaction."""
        with self._connect() as conn:
            if run is not None:
                self._upsert_run(conn, run)
            for branch in branches:
                self._upsert_branch(conn, branch)

    def _upsert_run(self, conn: sqlite3.Connection, run: Run) -> None:
        conn.execute(
            """
            INSERT INTO runs (id, workflow_id, status, input, context, graph, error, held, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                context = excluded.context,
                error = excluded.error,
                held = excluded.held,
                finished_at = excluded.finished_at
            """,
            (
                run.id,
                run.workflow_id,
                run.status.value,
                _dumps(run.input),
                _dumps(run.context),
                run.graph.model_dump_json(),
                run.error,
                int(run.held),
                run.started_at.isoformat(),
                run.finished_at.isoformat() if run.finished_at else None,
            ),
        )

    def _upsert_branch(self, conn: sqlite3.Connection, branch: Branch) -> None:
        wait = branch.wait
        conn.execute(
            """
            INSERT INTO branches (
                id, run_id, seq, status, node_id, parent_id, fork_node_id, context,
                wait, wait_kind, wait_ref, error, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                node_id = excluded.node_id,
                context = excluded.context,
                wait = excluded.wait,
                wait_kind = excluded.wait_kind,
                wait_ref = excluded.wait_ref,
                error = excluded.error,
                updated_at = excluded.updated_at
            """,
            (
                branch.id,
                branch.run_id,
                branch.seq,
                branch.status.value,
                branch.current_node_id,
                branch.parent_id,
                branch.fork_node_id,
                _dumps(branch.context),
                wait.model_dump_json() if wait else None,
                wait.kind.value if wait else None,
                wait.ref if wait else None,
                branch.error,
                branch.created_at.isoformat(),
                branch.updated_at.isoformat(),
            ),
        )

    def get_run(self, run_id: str, with_branches: bool = False) -> Run | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()

        if not row:
            return None
        run = _row_to_run(row)
        if with_branches:
            run.branches = self.list_branches(run_id)
        return run

    def list_runs(
        self,
        workflow_id: str | None = None,
        statuses: Iterable[RunStatus] | None = None,
        limit: int | None = 50,
        oldest_first: bool = False,
    ) -> list[Run]:
        where, params = _run_filter(workflow_id, statuses)
        query = "SELECT * FROM runs" + where
        query += " ORDER BY started_at " + ("ASC" if oldest_first else "DESC")
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_run(row) for row in rows]

    def count_runs(self, workflow_id: str | None = None, statuses: Iterable[RunStatus] | None = None) -> int:
        where, params = _run_filter(workflow_id, statuses)
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM runs" + where, params).fetchone()
        return int(row["count"])

    def list_unfinished_runs(self) -> list[Run]:
        return self.list_runs(statuses=UNFINISHED_RUN_STATUSES, limit=None, oldest_first=True)

    def get_branch(self, branch_id: str) -> Branch | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM branches WHERE id = ?", (branch_id,)).fetchone()
        return _row_to_branch(row) if row else None

    def list_branches(self, run_id: str) -> list[Branch]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM branches WHERE run_id = ? ORDER BY seq",
                (run_id,),
            ).fetchall()
        return [_row_to_branch(row) for row in rows]

    def find_suspended_branch(self, kind: WaitKind, ref: str) -> Branch | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM branches WHERE wait_kind = ? AND wait_ref = ? ORDER BY updated_at DESC LIMIT 1",
                (kind.value, ref),
            ).fetchone()
        return _row_to_branch(row) if row else None

    def count_branches(self, status: BranchStatus) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM branches WHERE status = ?",
                (status.value,),
            ).fetchone()
        return int(row["count"])


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _run_filter(workflow_id: str | None, statuses: Iterable[RunStatus] | None) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if workflow_id is not None:
        clauses.append("workflow_id = ?")
        params.append(workflow_id)
    if statuses is not None:
        values = [status.value for status in statuses]
        clauses.append(f"status IN ({', '.join('?' for _ in values)})")
        params.extend(values)
    return (" WHERE " + " AND ".join(clauses) if clauses else ""), params


def _row_to_run(row: sqlite3.Row) -> Run:
    return Run(
        id=row["id"],
        workflow_id=row["workflow_id"],
        status=RunStatus(row["status"]),
        input=json.loads(row["input"]),
        context=json.loads(row["context"]),
        graph=GraphSnapshot.model_validate_json(row["graph"]),
        error=row["error"],
        held=bool(row["held"]),
        started_at=datetime.fromisoformat(row["started_at"]),
        finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
    )


def _row_to_branch(row: sqlite3.Row) -> Branch:
    return Branch(
        id=row["id"],
        run_id=row["run_id"],
        seq=row["seq"],
        current_node_id=row["node_id"],
        status=BranchStatus(row["status"]),
        parent_id=row["parent_id"],
        fork_node_id=row["fork_node_id"],
        context=json.loads(row["context"]),
        wait=WaitDescriptor.model_validate_json(row["wait"]) if row["wait"] else None,
        error=row["error"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
