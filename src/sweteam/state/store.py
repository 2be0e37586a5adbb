"""SQLite-backed run state using aiosqlite.

Holds three tables: repos, workflow_runs and subtasks. Every workflow
phase transition goes through :meth:`StateStore.advance_workflow`, which
is what makes runs resumable after a restart.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from sweteam.errors import RunNotFoundError
from sweteam.protocol.models import (
    PlanTask,
    Repo,
    RunStatus,
    Subtask,
    SubtaskStatus,
    WorkflowRun,
    WorkflowStep,
    status_for_step,
    step_ordinal,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS repos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    path TEXT DEFAULT '',
    url TEXT DEFAULT '',
    repo_spec TEXT DEFAULT '',
    default_branch TEXT DEFAULT 'main',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    repo_id INTEGER NOT NULL,
    user_request TEXT DEFAULT '',
    conversation_id TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    workflow_step TEXT NOT NULL DEFAULT 'queued',
    working_branch TEXT DEFAULT '',
    base_branch TEXT DEFAULT 'main',
    workspace_path TEXT DEFAULT '',
    plan_json TEXT DEFAULT '',
    current_parallel_group INTEGER DEFAULT 0,
    worker_count INTEGER DEFAULT 0,
    error_message TEXT DEFAULT '',
    clarification_log TEXT DEFAULT '[]',
    pr_url TEXT DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    FOREIGN KEY (repo_id) REFERENCES repos(id)
);

CREATE TABLE IF NOT EXISTS subtasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    run_id INTEGER NOT NULL,
    title TEXT DEFAULT '',
    description TEXT DEFAULT '',
    files TEXT DEFAULT '[]',
    dependencies TEXT DEFAULT '[]',
    order_index INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    outcome TEXT DEFAULT '',
    step TEXT DEFAULT '',
    assigned_worker TEXT DEFAULT '',
    retry_count INTEGER DEFAULT 0,
    error_message TEXT DEFAULT '',
    created_at REAL NOT NULL,
    FOREIGN KEY (run_id) REFERENCES workflow_runs(id)
);

CREATE INDEX IF NOT EXISTS idx_runs_status ON workflow_runs(status);
CREATE INDEX IF NOT EXISTS idx_subtasks_run ON subtasks(run_id, order_index);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""

RUN_FIELDS = frozenset({
    "user_request", "conversation_id", "working_branch", "base_branch",
    "workspace_path", "plan_json", "current_parallel_group", "worker_count",
    "error_message", "clarification_log", "pr_url",
})

SUBTASK_FIELDS = frozenset({
    "title", "description", "files", "dependencies", "status", "outcome", "step",
    "assigned_worker", "retry_count", "error_message",
})

REPO_FIELDS = frozenset({"path", "url", "repo_spec", "default_branch"})


def _check_fields(fields: dict[str, Any], allowed: frozenset[str], table: str) -> None:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown {table} field(s): {', '.join(sorted(unknown))}")


def _encode(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


class StateStore:
    """Async SQLite store for repos, workflow runs and subtasks."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(CREATE_TABLES_SQL)
        await self._db.execute(
            "INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,),
        )
        await self._db.commit()
        self._write_lock = asyncio.Lock()

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> StateStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None or self._write_lock is None:
            raise RuntimeError("StateStore not initialized. Call initialize() first.")
        return self._db

    async def _fetchone(self, query: str, params: Iterable[Any] = ()) -> aiosqlite.Row | None:
        db = self._ensure_db()
        async with db.execute(query, tuple(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        db = self._ensure_db()
        async with db.execute(query, tuple(params)) as cursor:
            return list(await cursor.fetchall())

    # --- Repos ---

    async def get_or_create_repo(
        self,
        name: str,
        *,
        path: str = "",
        url: str = "",
        repo_spec: str = "",
        default_branch: str = "main",
    ) -> Repo:
        db = self._ensure_db()
        row = await self._fetchone("SELECT * FROM repos WHERE name = ?", (name,))
        if row is not None:
            return self._row_to_repo(row)
        await db.execute(
            "INSERT OR IGNORE INTO repos (name, path, url, repo_spec, default_branch, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (name, path, url, repo_spec, default_branch, time.time()),
        )
        await db.commit()
        row = await self._fetchone("SELECT * FROM repos WHERE name = ?", (name,))
        assert row is not None
        return self._row_to_repo(row)

    async def get_repo(self, repo_id: int) -> Repo | None:
        row = await self._fetchone("SELECT * FROM repos WHERE id = ?", (repo_id,))
        return self._row_to_repo(row) if row is not None else None

    async def update_repo(self, repo_id: int, **fields: Any) -> None:
        _check_fields(fields, REPO_FIELDS, "repo")
        if not fields:
            return
        db = self._ensure_db()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        await db.execute(
            f"UPDATE repos SET {assignments} WHERE id = ?",
            [*fields.values(), repo_id],
        )
        await db.commit()

    # --- Workflow runs ---

    async def create_run(self, repo_id: int, user_request: str, conversation_id: str) -> WorkflowRun:
        db = self._ensure_db()
        now = time.time()
        external_id = uuid.uuid4().hex[:8]
        cursor = await db.execute(
            "INSERT INTO workflow_runs (external_id, repo_id, user_request, conversation_id, "
            "status, workflow_step, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (external_id, repo_id, user_request, conversation_id,
             RunStatus.PENDING.value, WorkflowStep.QUEUED.value, now, now),
        )
        await db.commit()
        run_id = cursor.lastrowid
        logger.info("Created run %s (%s) for repo %s", run_id, external_id, repo_id)
        run = await self.get_run(run_id)
        assert run is not None
        return run

    async def get_run(self, run_id: int) -> WorkflowRun | None:
        row = await self._fetchone("SELECT * FROM workflow_runs WHERE id = ?", (run_id,))
        return self._row_to_run(row) if row is not None else None

    async def get_run_by_external_id(self, external_id: str) -> WorkflowRun | None:
        row = await self._fetchone("SELECT * FROM workflow_runs WHERE external_id = ?", (external_id,))
        return self._row_to_run(row) if row is not None else None

    async def require_run(self, run_id: int) -> WorkflowRun:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def advance_workflow(self, run_id: int, step: WorkflowStep, **fields: Any) -> WorkflowRun:
        """Move a run to *step*, updating *fields* in the same write.

        The persisted step never moves backwards: a lower-ordinal *step* keeps
        the current one (the fields still apply). ``failed`` is always taken.
        Status follows the resulting step, except that ``cancelled`` sticks.
        """
        _check_fields(fields, RUN_FIELDS, "workflow run")
        db = self._ensure_db()
        assert self._write_lock is not None
        async with self._write_lock:
            current = await self.require_run(run_id)
            new_step = WorkflowStep(step)
            if new_step != WorkflowStep.FAILED and step_ordinal(new_step) < current.step_ordinal:
                logger.debug(
                    "Run %s: not moving step back from %s to %s", run_id, current.workflow_step, new_step,
                )
                new_step = WorkflowStep(current.workflow_step)
            status = (
                RunStatus.CANCELLED
                if current.status == RunStatus.CANCELLED
                else status_for_step(new_step)
            )

            updates = ["workflow_step = ?", "status = ?", "updated_at = ?"]
            params: list[Any] = [new_step.value, str(status), time.time()]
            for key, value in fields.items():
                updates.append(f"{key} = ?")
                params.append(_encode(value))
            params.append(run_id)
            await db.execute(f"UPDATE workflow_runs SET {', '.join(updates)} WHERE id = ?", params)
            await db.commit()
        return await self.require_run(run_id)

    async def update_run(self, run_id: int, **fields: Any) -> None:
        """Update run fields without touching step or status."""
        _check_fields(fields, RUN_FIELDS, "workflow run")
        db = self._ensure_db()
        updates = ["updated_at = ?"]
        params: list[Any] = [time.time()]
        for key, value in fields.items():
            updates.append(f"{key} = ?")
            params.append(_encode(value))
        params.append(run_id)
        await db.execute(f"UPDATE workflow_runs SET {', '.join(updates)} WHERE id = ?", params)
        await db.commit()

    async def cancel_run(self, run_id: int) -> None:
        db = self._ensure_db()
        assert self._write_lock is not None
        async with self._write_lock:
            await db.execute(
                "UPDATE workflow_runs SET status = ?, updated_at = ? WHERE id = ?",
                (RunStatus.CANCELLED.value, time.time(), run_id),
            )
            await db.commit()

    async def list_runs(self, *, status: str | None = None, limit: int = 20) -> list[WorkflowRun]:
        """List runs, newest first."""
        if status:
            rows = await self._fetchall(
                "SELECT * FROM workflow_runs WHERE status = ? ORDER BY id DESC LIMIT ?", (status, limit),
            )
        else:
            rows = await self._fetchall("SELECT * FROM workflow_runs ORDER BY id DESC LIMIT ?", (limit,))
        return [self._row_to_run(r) for r in rows]

    async def get_active_runs(self) -> list[WorkflowRun]:
        rows = await self._fetchall(
            "SELECT * FROM workflow_runs WHERE status IN (?, ?) ORDER BY id",
            (RunStatus.PENDING.value, RunStatus.IN_PROGRESS.value),
        )
        return [self._row_to_run(r) for r in rows]

    async def get_incomplete_runs(self) -> list[WorkflowRun]:
        """Runs a restart should pick up again: pending or in progress, oldest first."""
        return await self.get_active_runs()

    # --- Subtasks ---

    async def replace_subtasks(self, run_id: int, tasks: list[PlanTask]) -> list[Subtask]:
        """Replace every subtask of *run_id* with *tasks* (in plan order)."""
        db = self._ensure_db()
        now = time.time()
        assert self._write_lock is not None
        async with self._write_lock:
            await db.execute("DELETE FROM subtasks WHERE run_id = ?", (run_id,))
            await db.executemany(
                "INSERT INTO subtasks (external_id, run_id, title, description, files, dependencies, "
                "order_index, status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (t.id, run_id, t.title, t.description, json.dumps(t.files),
                     json.dumps(t.dependencies), i, SubtaskStatus.PENDING.value, now)
                    for i, t in enumerate(tasks)
                ],
            )
            await db.commit()
        return await self.get_subtasks(run_id)

    async def update_subtask(self, subtask_id: int, **fields: Any) -> None:
        _check_fields(fields, SUBTASK_FIELDS, "subtask")
        if not fields:
            return
        db = self._ensure_db()
        assignments = ", ".join(f"{k} = ?" for k in fields)
        await db.execute(
            f"UPDATE subtasks SET {assignments} WHERE id = ?",
            [*(_encode(v) for v in fields.values()), subtask_id],
        )
        await db.commit()

    async def get_subtasks(self, run_id: int) -> list[Subtask]:
        rows = await self._fetchall(
            "SELECT * FROM subtasks WHERE run_id = ? ORDER BY order_index", (run_id,),
        )
        return [self._row_to_subtask(r) for r in rows]

    # --- Row mapping ---

    @staticmethod
    def _row_to_repo(row: aiosqlite.Row) -> Repo:
        return Repo(
            id=row["id"],
            name=row["name"],
            path=row["path"] or "",
            url=row["url"] or "",
            repo_spec=row["repo_spec"] or "",
            default_branch=row["default_branch"] or "main",
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            external_id=row["external_id"],
            repo_id=row["repo_id"],
            user_request=row["user_request"] or "",
            conversation_id=row["conversation_id"] or "",
            status=row["status"],
            workflow_step=row["workflow_step"],
            working_branch=row["working_branch"] or "",
            base_branch=row["base_branch"] or "main",
            workspace_path=row["workspace_path"] or "",
            plan_json=row["plan_json"] or "",
            current_parallel_group=row["current_parallel_group"] or 0,
            worker_count=row["worker_count"] or 0,
            error_message=row["error_message"] or "",
            clarification_log=row["clarification_log"] or "[]",
            pr_url=row["pr_url"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_subtask(row: aiosqlite.Row) -> Subtask:
        return Subtask(
            id=row["id"],
            external_id=row["external_id"],
            run_id=row["run_id"],
            title=row["title"] or "",
            description=row["description"] or "",
            files=json.loads(row["files"] or "[]"),
            dependencies=json.loads(row["dependencies"] or "[]"),
            order_index=row["order_index"],
            status=row["status"],
            outcome=row["outcome"] or "",
            step=row["step"] or "",
            assigned_worker=row["assigned_worker"] or "",
            retry_count=row["retry_count"] or 0,
            error_message=row["error_message"] or "",
            created_at=row["created_at"],
        )
