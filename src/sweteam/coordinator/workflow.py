"""WorkflowEngine: drives one workflow run from task to pull request.

The run moves through the phases below, each recorded in the store before
the next begins::

    repo_sync -> workspace_created -> branch_created -> clarified -> planned
      -> agents_spawned -> subtask groups -> merging_agents -> creating_pr
      -> completed

Every phase is skipped when the persisted step already reached its
completion step, so calling :meth:`WorkflowEngine.run` on an interrupted run
resumes it. Within the subtask phase the group cursor
(``current_parallel_group``) is the resume point. Any exception ends the run
in ``failed``; cancellation is checked only between phases and groups. A
task cancelled mid-phase leaves the run in progress with its worker
worktrees in place.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sweteam.agents.base import PlannerCapability, WorkerCapability
from sweteam.config.schema import SWETeamConfig
from sweteam.coordinator.agent_pool import AgentPool, AgentWorker
from sweteam.coordinator.cancellation import CancellationToken
from sweteam.coordinator.event_bus import EventBus, RunEvent
from sweteam.coordinator.repo_locks import RepoLockRegistry
from sweteam.errors import GitError, PlanningError, SubtaskError, WorkspaceError
from sweteam.interfaces import messaging
from sweteam.interfaces.base import InterfaceAdapter
from sweteam.protocol.models import (
    PlanResult,
    RunStatus,
    Subtask,
    SubtaskOutcome,
    SubtaskStatus,
    WorkflowRun,
    WorkflowStep,
    step_ordinal,
)
from sweteam.state.store import StateStore
from sweteam.workspace.git_ops import GitOps, RepoSyncResult, get_or_create_repo
from sweteam.workspace.worktree import Workspace

logger = logging.getLogger(__name__)

RepoSync = Callable[[str, SWETeamConfig], Awaitable[RepoSyncResult]]
GitFactory = Callable[[str], GitOps]


async def default_repo_sync(repo_name: str, config: SWETeamConfig) -> RepoSyncResult:
    return await get_or_create_repo(
        repo_name, config.repos.base_path, config.git, clone_timeout=config.repos.clone_timeout,
    )


def make_branch_name(repo_name: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]", "-", repo_name)[:30]
    return f"swe-team/{slug}-{uuid.uuid4().hex[:8]}"


@dataclass
class _RunContext:
    run_id: int
    repo_name: str
    token: CancellationToken | None
    origin_path: str = ""
    repo_spec: str = ""
    pool: AgentPool | None = None
    subtask_total: int = 0
    interrupted: bool = False


class WorkflowEngine:
    """Runs workflow phases for any number of runs; all per-run state is local."""

    def __init__(
        self,
        *,
        store: StateStore,
        interface: InterfaceAdapter,
        architect: PlannerCapability,
        config: SWETeamConfig,
        agent_factory: Callable[[str], WorkerCapability],
        locks: RepoLockRegistry | None = None,
        event_bus: EventBus | None = None,
        repo_sync: RepoSync = default_repo_sync,
        git_factory: GitFactory | None = None,
        workspace_factory: type[Workspace] = Workspace,
    ) -> None:
        self.store = store
        self.interface = interface
        self.architect = architect
        self.config = config
        self.agent_factory = agent_factory
        self.locks = locks if locks is not None else RepoLockRegistry(config.processing.max_idle_repo_locks)
        self.event_bus = event_bus if event_bus is not None else EventBus()
        self.repo_sync = repo_sync
        self.git_factory: GitFactory = git_factory or self._default_git
        self.workspace_factory = workspace_factory

    def _default_git(self, path: str) -> GitOps:
        return GitOps(path, github_token=self.config.git.github_token, timeout=self.config.git.command_timeout)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, run_id: int, repo_name: str, token: CancellationToken | None = None) -> WorkflowRun | None:
        """Drive *run_id* to a terminal state (or to a cancellation point)."""
        async with self.locks.hold(repo_name):
            ctx = _RunContext(run_id=run_id, repo_name=repo_name, token=token)
            try:
                await self._run_phases(ctx)
            except asyncio.CancelledError:
                ctx.interrupted = True
                raise
            except Exception as exc:
                await self._fail(ctx, exc)
            finally:
                # An interrupted run keeps its worker worktrees for resumption.
                if ctx.pool is not None and not ctx.interrupted:
                    await ctx.pool.cleanup()
                ctx.pool = None
            return await self.store.get_run(run_id)

    async def _run_phases(self, ctx: _RunContext) -> None:
        run = await self.store.require_run(ctx.run_id)
        if run.is_terminal:
            logger.info("Run %s already %s; nothing to do", run.id, run.status)
            return
        await self._load_repo(ctx, run)

        phases: list[tuple[WorkflowStep, Callable[[_RunContext], Awaitable[None]]]] = [
            (WorkflowStep.REPO_SYNC, self._do_repo_sync),
            (WorkflowStep.WORKSPACE_CREATED, self._do_create_workspace),
            (WorkflowStep.BRANCH_CREATED, self._do_verify_branch),
            (WorkflowStep.CLARIFIED, self._do_clarify),
            (WorkflowStep.PLANNED, self._do_plan),
            (WorkflowStep.AGENTS_SPAWNED, self._do_spawn_workers),
            (WorkflowStep.MERGING_AGENTS, self._do_subtasks),
            (WorkflowStep.CREATING_PR, self._do_merge_workers),
            (WorkflowStep.COMPLETED, self._do_create_pr),
        ]
        for done_step, phase in phases:
            if await self._cancelled(ctx):
                return
            run = await self.store.require_run(ctx.run_id)
            if run.step_ordinal >= step_ordinal(done_step):
                if done_step == WorkflowStep.AGENTS_SPAWNED and run.step_ordinal < step_ordinal(WorkflowStep.CREATING_PR):
                    await self._reattach_workers(ctx, run)
                continue
            await phase(ctx)

        run = await self._advance(ctx, WorkflowStep.COMPLETED)
        self._emit(ctx, "complete", message=run.pr_url)
        await self._send(ctx, messaging.format_completed(ctx.repo_name, run.pr_url))

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _do_repo_sync(self, ctx: _RunContext) -> None:
        run = await self.store.require_run(ctx.run_id)
        await self._send(ctx, messaging.format_task_received(ctx.repo_name, run.user_request))

        result = await self.repo_sync(ctx.repo_name, self.config)
        await self.store.update_repo(
            run.repo_id,
            path=result.repo_path,
            url=result.repo_url,
            repo_spec=result.repo_spec,
            default_branch=result.base_branch,
        )
        ctx.origin_path = result.repo_path
        ctx.repo_spec = result.repo_spec
        await self._advance(ctx, WorkflowStep.REPO_SYNC, base_branch=result.base_branch)

    async def _do_create_workspace(self, ctx: _RunContext) -> None:
        run = await self.store.require_run(ctx.run_id)
        branch = make_branch_name(ctx.repo_name)
        workspace = await self.workspace_factory.create(
            ctx.origin_path,
            self.config.repos.workspaces_path,
            str(ctx.run_id),
            branch,
            run.base_branch,
        )
        await self._advance(
            ctx,
            WorkflowStep.WORKSPACE_CREATED,
            workspace_path=str(workspace.path),
            working_branch=branch,
        )

    async def _do_verify_branch(self, ctx: _RunContext) -> None:
        run = await self.store.require_run(ctx.run_id)
        workspace = self.workspace_factory.from_existing(ctx.origin_path, run.workspace_path, run.working_branch)
        await workspace.verify_branch()
        await self._advance(ctx, WorkflowStep.BRANCH_CREATED)

    async def _do_clarify(self, ctx: _RunContext) -> None:
        wf = self.config.workflow
        if wf.skip_clarification:
            await self._advance(ctx, WorkflowStep.CLARIFIED)
            return

        run = await self._advance(ctx, WorkflowStep.CLARIFYING)
        await self._send(ctx, messaging.format_clarifying(ctx.repo_name))
        transcript = run.transcript()
        timeout = self.config.processing.response_timeout

        for _ in range(wf.max_clarification_rounds):
            if await self._cancelled(ctx):
                return
            result = await self.architect.clarify_requirements(run.workspace_path, run.user_request, transcript)
            question = result.message or "The requirement looks clear."
            await self._send(ctx, question)

            if result.status == "ready":
                await self._send(ctx, messaging.SATISFIED_PROMPT)
                reply = await self.interface.wait_for_response(run.conversation_id, timeout)
                if messaging.is_affirmative(reply):
                    await self._advance(
                        ctx,
                        WorkflowStep.CLARIFIED,
                        user_request=result.message.strip() or run.user_request,
                        clarification_log=json.dumps(transcript),
                    )
                    return
            else:
                reply = await self.interface.wait_for_response(run.conversation_id, timeout)

            transcript.append({"role": "assistant", "text": question})
            transcript.append({"role": "user", "text": reply})
            await self._advance(ctx, WorkflowStep.CLARIFYING, clarification_log=json.dumps(transcript))

        logger.info("Run %s: clarification rounds exhausted, proceeding", ctx.run_id)
        await self._advance(ctx, WorkflowStep.CLARIFIED)

    async def _do_plan(self, ctx: _RunContext) -> None:
        run = await self._advance(ctx, WorkflowStep.PLANNING)
        await self._send(ctx, messaging.format_planning(ctx.repo_name))

        analysis = ""
        if self.config.workflow.analyze_codebase:
            analysis = await self.architect.analyze_codebase(run.workspace_path)
        plan = await self.architect.plan_and_queue_tasks(run.workspace_path, run.user_request, analysis)
        if not plan.tasks:
            raise PlanningError("Empty plan generated")

        await self.store.replace_subtasks(ctx.run_id, plan.tasks)
        await self._advance(
            ctx,
            WorkflowStep.PLANNED,
            plan_json=plan.to_json(),
            worker_count=plan.recommended_workers,
            current_parallel_group=0,
        )
        self._emit(ctx, "phase", step=WorkflowStep.PLANNED, data={
            "tasks": len(plan.tasks), "groups": len(plan.parallel_groups),
        })
        await self._send(ctx, messaging.format_plan_created(
            ctx.repo_name, [t.label for t in plan.tasks], plan.recommended_workers,
        ))

    async def _do_spawn_workers(self, ctx: _RunContext) -> None:
        run = await self.store.require_run(ctx.run_id)
        ctx.pool = self._new_pool(ctx)
        count = min(max(run.worker_count, 1), ctx.pool.max_workers)
        await ctx.pool.spawn(
            count,
            ctx.origin_path,
            self.config.repos.workspaces_path,
            str(ctx.run_id),
            run.working_branch,
            run.working_branch,
        )
        self._emit(ctx, "spawn", data={"workers": ctx.pool.worker_ids})
        await self._advance(ctx, WorkflowStep.AGENTS_SPAWNED, worker_count=count)

    async def _reattach_workers(self, ctx: _RunContext, run: WorkflowRun) -> None:
        ctx.pool = self._new_pool(ctx)
        count = min(max(run.worker_count, 1), ctx.pool.max_workers)
        await ctx.pool.spawn(
            count,
            ctx.origin_path,
            self.config.repos.workspaces_path,
            str(ctx.run_id),
            run.working_branch,
            run.working_branch,
            reuse_existing=True,
        )
        logger.info("Run %s: re-attached %d worker(s)", ctx.run_id, count)

    async def _do_subtasks(self, ctx: _RunContext) -> None:
        run = await self._advance(ctx, WorkflowStep.SUBTASK_IMPLEMENTING)
        self._require_pool(ctx)
        subtasks = await self.store.get_subtasks(ctx.run_id)
        by_external = {s.external_id: s for s in subtasks}
        plan = run.plan() or PlanResult()
        groups = plan.parallel_groups or [[s.external_id for s in subtasks]]
        ctx.subtask_total = len(subtasks)

        for g in range(run.current_parallel_group, len(groups)):
            if await self._cancelled(ctx):
                return
            pending = [
                by_external[tid] for tid in groups[g]
                if tid in by_external and by_external[tid].status != SubtaskStatus.COMPLETED
            ]
            results = await asyncio.gather(
                *(self._execute_subtask(ctx, run, s) for s in pending),
                return_exceptions=True,
            )
            for subtask, result in zip(pending, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    await self._handle_subtask_failure(ctx, run, subtask, result)

            await self._advance(ctx, WorkflowStep.SUBTASK_DONE, current_parallel_group=g + 1)

    async def _handle_subtask_failure(
        self, ctx: _RunContext, run: WorkflowRun, subtask: Subtask, exc: Exception,
    ) -> None:
        policy = self.config.workflow.on_subtask_failure
        await self._mark_failed(ctx, subtask, exc)
        if policy == "stop":
            raise SubtaskError(f"Subtask {subtask.external_id} failed: {exc}", subtask_id=subtask.external_id) from exc
        if policy != "retry":
            return

        subtask.retry_count += 1
        await self.store.update_subtask(subtask.id, retry_count=subtask.retry_count, error_message="")
        logger.info("Run %s: retrying subtask %s", ctx.run_id, subtask.external_id)
        try:
            await self._execute_subtask(ctx, run, subtask)
        except Exception as retry_exc:
            await self._mark_failed(ctx, subtask, retry_exc)

    async def _mark_failed(self, ctx: _RunContext, subtask: Subtask, exc: Exception) -> None:
        logger.warning("Run %s: subtask %s failed: %s", ctx.run_id, subtask.external_id, exc)
        await self.store.update_subtask(
            subtask.id,
            status=SubtaskStatus.FAILED,
            outcome=SubtaskOutcome.FAILED,
            error_message=str(exc),
        )
        self._emit(ctx, "subtask", subtask_id=subtask.external_id, message=f"failed: {exc}")
        await self._send(ctx, messaging.format_error(ctx.repo_name, subtask.title or subtask.external_id, str(exc)))

    async def _execute_subtask(self, ctx: _RunContext, run: WorkflowRun, subtask: Subtask) -> None:
        worker = self._require_pool(ctx).worker_for(subtask.id)
        async with worker.busy(subtask.external_id):
            await self._implement_and_review(ctx, run, subtask, worker)

    async def _implement_and_review(
        self, ctx: _RunContext, run: WorkflowRun, subtask: Subtask, worker: AgentWorker,
    ) -> None:
        agent = worker.agent
        workspace = worker.workspace
        path = str(workspace.path)
        description = subtask.description or subtask.title

        await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_IMPLEMENTING,
                                 status=SubtaskStatus.IN_PROGRESS, assigned_worker=worker.worker_id)
        done = sum(1 for s in await self.store.get_subtasks(ctx.run_id) if s.status == SubtaskStatus.COMPLETED)
        await self._send(ctx, messaging.format_progress(ctx.repo_name, done + 1, ctx.subtask_total, description[:60]))

        ok = await agent.implement_task(path, description, files=subtask.files, overall_goal=run.user_request)
        if not ok:
            raise SubtaskError(agent.last_error or "Agent could not implement the task", subtask_id=subtask.external_id)

        await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_COMMITTING)
        await workspace.harvest_uncommitted()

        await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_TESTING)
        tests = await agent.run_tests(path)
        if not tests.passed:
            await agent.apply_feedback(path, description, f"Tests failed: {tests.summary}")
            await workspace.harvest_uncommitted()

        approved = False
        feedback_history: list[str] = []
        iterations = self.config.workflow.max_review_iterations
        for iteration in range(1, iterations + 1):
            await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_REVIEWING)
            try:
                diff = await workspace.git.diff_against(run.base_branch)
            except GitError as exc:
                logger.debug("Diff for %s failed: %s", subtask.external_id, exc)
                diff = ""
            review = await self.architect.review_code(path, description, diff, feedback_history)
            self._emit(ctx, "review", subtask_id=subtask.external_id, worker_id=worker.worker_id, data={
                "iteration": iteration, "approved": review.approved, "quality": review.quality,
            })
            await self._send(ctx, messaging.format_review(ctx.repo_name, description[:40], iteration))
            if self.architect.should_approve(review):
                approved = True
                break

            feedback_history.append(review.feedback)
            await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_FEEDBACK)
            await agent.apply_feedback(path, description, review.feedback, diff)
            await workspace.harvest_uncommitted()

        outcome = SubtaskOutcome.APPROVED if approved else SubtaskOutcome.COMPLETED_UNAPPROVED
        await self._subtask_step(ctx, subtask, WorkflowStep.SUBTASK_DONE,
                                 status=SubtaskStatus.COMPLETED, outcome=outcome, error_message="")
        subtask.status = SubtaskStatus.COMPLETED
        self._emit(ctx, "subtask", subtask_id=subtask.external_id, worker_id=worker.worker_id, message=str(outcome))
        if not approved:
            await self._send(ctx, messaging.format_unapproved(ctx.repo_name, description[:40], iterations))

    async def _do_merge_workers(self, ctx: _RunContext) -> None:
        run = await self._advance(ctx, WorkflowStep.MERGING_AGENTS)
        if ctx.pool is None:
            return
        integration = self.git_factory(run.workspace_path)
        for worker in sorted(ctx.pool.workers, key=lambda w: w.worker_id):
            head = await integration.head()
            try:
                await integration.merge(worker.branch)
            except GitError as exc:
                logger.warning("Run %s: merge of %s failed, rolling back: %s", ctx.run_id, worker.branch, exc)
                self._emit(ctx, "merge", worker_id=worker.worker_id, message=f"conflict: {exc}")
                await integration.reset_hard(head)
            else:
                self._emit(ctx, "merge", worker_id=worker.worker_id, message="merged")
        await ctx.pool.cleanup()
        ctx.pool = None

    async def _do_create_pr(self, ctx: _RunContext) -> None:
        run = await self._advance(ctx, WorkflowStep.CREATING_PR)
        if run.pr_url:
            return
        git = self.git_factory(run.workspace_path)
        try:
            await git.push("origin", run.working_branch)
        except GitError as exc:
            logger.warning("Run %s: push failed: %s", ctx.run_id, exc)
            self._emit(ctx, "warning", step=WorkflowStep.CREATING_PR, message=f"push failed: {exc}")

        try:
            pr_url = await git.create_pr(
                f"[SWE Team] {run.user_request[:60]}",
                f"Automated PR by SWE Team\n\nTask: {run.user_request}\n\nGenerated by SWE Team orchestrator.",
                run.base_branch,
                run.working_branch,
                ctx.repo_spec,
            )
        except GitError as exc:
            logger.warning("Run %s: PR creation failed: %s", ctx.run_id, exc)
            self._emit(ctx, "warning", step=WorkflowStep.CREATING_PR, message=f"PR creation failed: {exc}")
            return
        await self._advance(ctx, WorkflowStep.CREATING_PR, pr_url=pr_url)
        self._emit(ctx, "pr", message=pr_url)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_pool(self, ctx: _RunContext) -> AgentPool:
        if ctx.pool is None:
            raise WorkspaceError(f"Run {ctx.run_id} has no worker pool")
        return ctx.pool

    def _new_pool(self, ctx: _RunContext) -> AgentPool:
        pool = AgentPool(self.config.pool.max_workers, self.agent_factory, self.workspace_factory)
        pool.on_status_change(lambda s: logger.debug("Run %s: %s %s %s", ctx.run_id, s.worker_id, s.status, s.task_id))
        return pool

    async def _load_repo(self, ctx: _RunContext, run: WorkflowRun) -> None:
        repo = await self.store.get_repo(run.repo_id)
        if repo is not None:
            ctx.origin_path = repo.path
            ctx.repo_spec = repo.repo_spec

    async def _advance(self, ctx: _RunContext, step: WorkflowStep, **fields: Any) -> WorkflowRun:
        run = await self.store.advance_workflow(ctx.run_id, step, **fields)
        self._emit(ctx, "phase", step=run.workflow_step)
        return run

    async def _subtask_step(self, ctx: _RunContext, subtask: Subtask, step: WorkflowStep, **fields: Any) -> None:
        await self.store.update_subtask(subtask.id, step=step, **fields)
        await self.store.advance_workflow(ctx.run_id, step)

    async def _cancelled(self, ctx: _RunContext) -> bool:
        run = await self.store.get_run(ctx.run_id)
        if run is not None and run.status == RunStatus.CANCELLED:
            reason = "cancelled"
        elif ctx.token is not None and ctx.token.is_cancelled:
            reason = ctx.token.reason
            ctx.interrupted = True
        else:
            return False
        logger.info("Run %s: stopping (%s)", ctx.run_id, reason)
        self._emit(ctx, "cancel", message=reason)
        return True

    async def _fail(self, ctx: _RunContext, exc: Exception) -> None:
        logger.error("Run %s failed: %s", ctx.run_id, exc, exc_info=not isinstance(exc, (GitError, SubtaskError)))
        if await self.store.get_run(ctx.run_id) is None:
            return
        await self.store.advance_workflow(ctx.run_id, WorkflowStep.FAILED, error_message=str(exc))
        self._emit(ctx, "fail", step=WorkflowStep.FAILED, message=str(exc))
        await self._send(ctx, messaging.format_error(ctx.repo_name, "workflow", str(exc)))

    async def _send(self, ctx: _RunContext, text: str) -> None:
        run = await self.store.get_run(ctx.run_id)
        if run is not None and run.conversation_id:
            await self.interface.send_message(run.conversation_id, text)

    def _emit(self, ctx: _RunContext, event_type: str, **kwargs: Any) -> None:
        self.event_bus.emit(RunEvent(event_type=event_type, run_id=ctx.run_id, **kwargs))
