"""AgentPool: a bounded set of agent workers, each in its own worktree.

Workers are created by :meth:`AgentPool.spawn`, handed subtasks round-robin
and destroyed together by :meth:`AgentPool.cleanup`. A worker runs at most
one agent call at a time; callers hold :meth:`AgentWorker.busy` around the
work for a subtask.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence, TypeVar

from sweteam.agents.base import WorkerCapability
from sweteam.workspace.worktree import Workspace

logger = logging.getLogger(__name__)

T = TypeVar("T")

AgentFactory = Callable[[str], WorkerCapability]


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class WorkerStatus:
    """Status snapshot of a pool worker."""

    worker_id: str
    status: str             # "idle" | "busy" | "removed"
    task_id: str = ""
    changed_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class AgentWorker:
    worker_id: str
    agent: WorkerCapability
    workspace: Workspace
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    on_status: Callable[[str, str, str], None] | None = None

    @property
    def branch(self) -> str:
        return self.workspace.branch

    @contextlib.asynccontextmanager
    async def busy(self, task_id: str = "") -> AsyncIterator[AgentWorker]:
        """Hold the worker exclusively while working on *task_id*."""
        async with self.lock:
            if self.on_status:
                self.on_status(self.worker_id, "busy", task_id)
            try:
                yield self
            finally:
                if self.on_status:
                    self.on_status(self.worker_id, "idle", "")


# ---------------------------------------------------------------------------
# AgentPool
# ---------------------------------------------------------------------------


class AgentPool:
    """Owns up to ``max_workers`` workers for one workflow run."""

    def __init__(
        self,
        max_workers: int,
        agent_factory: AgentFactory,
        workspace_factory: type[Workspace] = Workspace,
    ) -> None:
        self._max_workers = max_workers
        self._agent_factory = agent_factory
        self._workspace_factory = workspace_factory
        self._workers: dict[str, AgentWorker] = {}
        self._status_callbacks: list[Callable[[WorkerStatus], Any]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def max_workers(self) -> int:
        return self._max_workers

    async def spawn(
        self,
        requested: int,
        origin_path: str | Path,
        workspace_base: str | Path,
        run_key: str,
        branch_prefix: str,
        base_ref: str,
        *,
        reuse_existing: bool = False,
    ) -> list[AgentWorker]:
        """Create ``min(requested, max_workers)`` workers.

        Worker ``i`` is ``worker-i`` on branch ``{branch_prefix}-worker-i``
        with workspace run key ``{run_key}-worker-i``. With *reuse_existing*,
        worktrees left by an interrupted run are picked up again.
        """
        count = min(requested, self._max_workers)
        for i in range(count):
            worker_id = f"worker-{i}"
            if worker_id in self._workers:
                continue
            branch = f"{branch_prefix}-{worker_id}"
            key = f"{run_key}-{worker_id}"
            if reuse_existing:
                workspace = await self._workspace_factory.open_or_create(
                    origin_path, workspace_base, key, branch, base_ref,
                )
            else:
                workspace = await self._workspace_factory.create(
                    origin_path, workspace_base, key, branch, base_ref,
                )
            self._workers[worker_id] = AgentWorker(
                worker_id=worker_id,
                agent=self._agent_factory(worker_id),
                workspace=workspace,
                on_status=self._emit_status,
            )
            self._emit_status(worker_id, "idle", "")
        logger.info("Spawned %d worker(s) for run %s", count, run_key)
        return self.workers

    def assign_tasks(self, tasks: Sequence[T]) -> list[tuple[WorkerCapability, Workspace, T]]:
        """Pair each task with a worker, round-robin by position."""
        workers = self.workers
        if not workers:
            return []
        return [
            (workers[i % len(workers)].agent, workers[i % len(workers)].workspace, task)
            for i, task in enumerate(tasks)
        ]

    def worker_for(self, index: int) -> AgentWorker:
        workers = self.workers
        if not workers:
            raise LookupError("AgentPool has no workers; call spawn() first")
        return workers[index % len(workers)]

    @property
    def worker_ids(self) -> list[str]:
        return list(self._workers)

    @property
    def workers(self) -> list[AgentWorker]:
        return list(self._workers.values())

    def __len__(self) -> int:
        return len(self._workers)

    async def cleanup(self) -> None:
        """Remove every worker's workspace, continuing past failures."""
        for worker in self.workers:
            try:
                await worker.workspace.cleanup()
            except Exception as exc:
                logger.warning("Cleanup of %s (%s) failed: %s", worker.worker_id, worker.workspace.path, exc)
            self._emit_status(worker.worker_id, "removed", "")
        self._workers.clear()

    def on_status_change(self, callback: Callable[[WorkerStatus], Any]) -> None:
        """Register a callback for worker status changes."""
        self._status_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _emit_status(self, worker_id: str, status: str, task_id: str) -> None:
        s = WorkerStatus(worker_id=worker_id, status=status, task_id=task_id)
        for cb in self._status_callbacks:
            try:
                cb(s)
            except Exception as exc:
                logger.debug("Status callback error: %s", exc)
