"""Tests for sweteam.state.store.StateStore."""

from __future__ import annotations

from pathlib import Path

import pytest

from sweteam.errors import RunNotFoundError
from sweteam.protocol.models import PlanTask, RunStatus, SubtaskOutcome, SubtaskStatus, WorkflowStep
from sweteam.state.store import StateStore


async def _new_run(store: StateStore, request: str = "add a health endpoint"):  # noqa: ANN202
    repo = await store.get_or_create_repo("acme/widgets")
    return await store.create_run(repo.id, request, "chat-1")


class TestRepos:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, store: StateStore) -> None:
        first = await store.get_or_create_repo("acme/widgets")
        second = await store.get_or_create_repo("acme/widgets")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_update_repo(self, store: StateStore) -> None:
        repo = await store.get_or_create_repo("acme/widgets")
        await store.update_repo(repo.id, path="/srv/repos/acme-widgets", default_branch="develop")
        updated = await store.get_repo(repo.id)
        assert updated is not None
        assert updated.path == "/srv/repos/acme-widgets"
        assert updated.default_branch == "develop"

    @pytest.mark.asyncio
    async def test_update_repo_rejects_unknown_fields(self, store: StateStore) -> None:
        repo = await store.get_or_create_repo("acme/widgets")
        with pytest.raises(ValueError):
            await store.update_repo(repo.id, name="other")


class TestRuns:
    @pytest.mark.asyncio
    async def test_create_run_defaults(self, store: StateStore) -> None:
        run = await _new_run(store)
        assert run.status == RunStatus.PENDING
        assert run.workflow_step == WorkflowStep.QUEUED
        assert len(run.external_id) == 8
        assert (await store.get_run_by_external_id(run.external_id)).id == run.id  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_require_run_missing(self, store: StateStore) -> None:
        with pytest.raises(RunNotFoundError):
            await store.require_run(999)

    @pytest.mark.asyncio
    async def test_advance_sets_status_from_step(self, store: StateStore) -> None:
        run = await _new_run(store)
        run = await store.advance_workflow(run.id, WorkflowStep.REPO_SYNC, base_branch="develop")
        assert run.status == RunStatus.IN_PROGRESS
        assert run.base_branch == "develop"
        run = await store.advance_workflow(run.id, WorkflowStep.COMPLETED)
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_step_never_moves_backwards_but_fields_apply(self, store: StateStore) -> None:
        run = await _new_run(store)
        await store.advance_workflow(run.id, WorkflowStep.PLANNED)
        run = await store.advance_workflow(run.id, WorkflowStep.CLARIFYING, clarification_log="[]", worker_count=3)
        assert run.workflow_step == WorkflowStep.PLANNED
        assert run.worker_count == 3

    @pytest.mark.asyncio
    async def test_failed_is_always_taken(self, store: StateStore) -> None:
        run = await _new_run(store)
        await store.advance_workflow(run.id, WorkflowStep.CREATING_PR)
        run = await store.advance_workflow(run.id, WorkflowStep.FAILED, error_message="boom")
        assert run.workflow_step == WorkflowStep.FAILED
        assert run.status == RunStatus.FAILED
        assert run.error_message == "boom"

    @pytest.mark.asyncio
    async def test_cancelled_status_sticks(self, store: StateStore) -> None:
        run = await _new_run(store)
        await store.advance_workflow(run.id, WorkflowStep.PLANNING)
        await store.cancel_run(run.id)
        run = await store.advance_workflow(run.id, WorkflowStep.PLANNED)
        assert run.status == RunStatus.CANCELLED
        assert run.workflow_step == WorkflowStep.PLANNED
        assert run.is_terminal

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, store: StateStore) -> None:
        run = await _new_run(store)
        with pytest.raises(ValueError):
            await store.advance_workflow(run.id, WorkflowStep.PLANNING, status="completed")

    @pytest.mark.asyncio
    async def test_list_and_active_runs(self, store: StateStore) -> None:
        a = await _new_run(store, "a")
        b = await _new_run(store, "b")
        c = await _new_run(store, "c")
        await store.advance_workflow(b.id, WorkflowStep.REPO_SYNC)
        await store.advance_workflow(c.id, WorkflowStep.COMPLETED)

        assert [r.id for r in await store.list_runs()] == [c.id, b.id, a.id]
        assert [r.id for r in await store.list_runs(limit=1)] == [c.id]
        assert [r.id for r in await store.list_runs(status="completed")] == [c.id]
        assert [r.id for r in await store.get_active_runs()] == [a.id, b.id]
        assert [r.id for r in await store.get_incomplete_runs()] == [a.id, b.id]

    @pytest.mark.asyncio
    async def test_transcript_round_trip(self, store: StateStore) -> None:
        run = await _new_run(store)
        log = '[{"role": "assistant", "text": "Which DB?"}, {"role": "user", "text": "sqlite"}]'
        run = await store.advance_workflow(run.id, WorkflowStep.CLARIFYING, clarification_log=log)
        assert run.transcript()[1] == {"role": "user", "text": "sqlite"}


class TestSubtasks:
    @pytest.mark.asyncio
    async def test_replace_subtasks(self, store: StateStore) -> None:
        run = await _new_run(store)
        await store.replace_subtasks(run.id, [PlanTask(id="old")])
        subtasks = await store.replace_subtasks(run.id, [
            PlanTask(id="task-1", title="Model", files=["models.py"]),
            PlanTask(id="task-2", title="View", dependencies=["task-1"]),
        ])
        assert [s.external_id for s in subtasks] == ["task-1", "task-2"]
        assert subtasks[0].files == ["models.py"]
        assert subtasks[1].dependencies == ["task-1"]
        assert all(s.status == SubtaskStatus.PENDING for s in subtasks)

    @pytest.mark.asyncio
    async def test_update_subtask(self, store: StateStore) -> None:
        run = await _new_run(store)
        (subtask,) = await store.replace_subtasks(run.id, [PlanTask(id="task-1")])
        await store.update_subtask(
            subtask.id,
            status=SubtaskStatus.COMPLETED,
            outcome=SubtaskOutcome.COMPLETED_UNAPPROVED,
            step=WorkflowStep.SUBTASK_DONE,
            assigned_worker="worker-0",
        )
        (updated,) = await store.get_subtasks(run.id)
        assert updated.status == SubtaskStatus.COMPLETED
        assert updated.outcome == SubtaskOutcome.COMPLETED_UNAPPROVED
        assert updated.step == WorkflowStep.SUBTASK_DONE
        assert updated.assigned_worker == "worker-0"


@pytest.mark.asyncio
async def test_state_survives_reopen(tmp_path: Path) -> None:
    db = tmp_path / "state" / "runs.db"
    async with StateStore(db) as store:
        run = await _new_run(store)
        await store.advance_workflow(run.id, WorkflowStep.PLANNED, current_parallel_group=2)

    async with StateStore(db) as store:
        reopened = await store.require_run(run.id)
        assert reopened.workflow_step == WorkflowStep.PLANNED
        assert reopened.current_parallel_group == 2
