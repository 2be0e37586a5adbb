"""Tests for sweteam.coordinator.agent_pool."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from sweteam.coordinator.agent_pool import AgentPool, AgentWorker, WorkerStatus
from tests.helpers import AgentScript, make_workspace_factory


async def _spawn(pool: AgentPool, n: int, tmp_path: Path, **kw: Any) -> list[AgentWorker]:
    return await pool.spawn(n, tmp_path / "origin", tmp_path / "ws", "7", "swe-team/feature", "swe-team/feature", **kw)


@pytest.mark.asyncio
async def test_spawn_is_capped_by_capacity(tmp_path: Path) -> None:
    factory = make_workspace_factory()
    pool = AgentPool(1, AgentScript(), factory)
    await _spawn(pool, 5, tmp_path)
    assert len(pool) == 1
    assert pool.worker_ids == ["worker-0"]
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_spawn_names_branches_and_workspaces(tmp_path: Path) -> None:
    factory = make_workspace_factory()
    script = AgentScript()
    pool = AgentPool(4, script, factory)
    workers = await _spawn(pool, 2, tmp_path)

    assert [w.branch for w in workers] == ["swe-team/feature-worker-0", "swe-team/feature-worker-1"]
    assert [ws.path.name for ws in factory.created] == [
        "7-worker-0-swe-team-feature-worker-0",
        "7-worker-1-swe-team-feature-worker-1",
    ]
    assert set(script.workers) == {"worker-0", "worker-1"}


@pytest.mark.asyncio
async def test_spawn_reuse_existing_goes_through_open_or_create(tmp_path: Path) -> None:
    factory = make_workspace_factory()
    pool = AgentPool(2, AgentScript(), factory)
    await _spawn(pool, 2, tmp_path, reuse_existing=True)
    assert len(factory.reused) == 2
    assert factory.created == []


@pytest.mark.asyncio
async def test_assign_tasks_round_robin(tmp_path: Path) -> None:
    pool = AgentPool(3, AgentScript(), make_workspace_factory())
    await _spawn(pool, 3, tmp_path)

    pairs = pool.assign_tasks(["t0", "t1", "t2", "t3", "t4"])
    owners = [agent.worker_id for agent, _ws, _task in pairs]  # type: ignore[attr-defined]
    assert owners == ["worker-0", "worker-1", "worker-2", "worker-0", "worker-1"]
    assert [task for _a, _w, task in pairs] == ["t0", "t1", "t2", "t3", "t4"]


@pytest.mark.asyncio
async def test_assign_tasks_without_workers_is_empty() -> None:
    pool = AgentPool(3, AgentScript(), make_workspace_factory())
    assert pool.assign_tasks(["t0"]) == []
    with pytest.raises(LookupError):
        pool.worker_for(0)


@pytest.mark.asyncio
async def test_cleanup_continues_past_failures(tmp_path: Path) -> None:
    factory = make_workspace_factory(failing_cleanup={"swe-team/feature-worker-0"})
    pool = AgentPool(3, AgentScript(), factory)
    await _spawn(pool, 3, tmp_path)
    seen: list[tuple[str, str]] = []
    pool.on_status_change(lambda s: seen.append((s.worker_id, s.status)))

    await pool.cleanup()

    assert len(pool) == 0
    assert factory.removed == ["swe-team/feature-worker-1", "swe-team/feature-worker-2"]
    assert seen == [("worker-0", "removed"), ("worker-1", "removed"), ("worker-2", "removed")]


@pytest.mark.asyncio
async def test_busy_serialises_one_worker(tmp_path: Path) -> None:
    pool = AgentPool(1, AgentScript(), make_workspace_factory())
    await _spawn(pool, 1, tmp_path)
    worker = pool.worker_for(0)
    events: list[str] = []

    async def job(name: str) -> None:
        async with worker.busy(name):
            events.append(f"{name}:in")
            await asyncio.sleep(0.01)
            events.append(f"{name}:out")

    await asyncio.gather(job("a"), job("b"))
    assert events == ["a:in", "a:out", "b:in", "b:out"]


@pytest.mark.asyncio
async def test_status_callbacks(tmp_path: Path) -> None:
    pool = AgentPool(1, AgentScript(), make_workspace_factory())
    seen: list[WorkerStatus] = []
    pool.on_status_change(seen.append)
    await _spawn(pool, 1, tmp_path)

    async with pool.worker_for(0).busy("task-1"):
        pass

    assert [(s.status, s.task_id) for s in seen] == [("idle", ""), ("busy", "task-1"), ("idle", "")]
