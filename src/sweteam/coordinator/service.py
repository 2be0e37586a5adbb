"""SWETeam service: intake, dispatch, recovery and cancellation of runs.

The service owns every long-lived collaborator (store, transport, engine,
locks, cancellation root) and wires them together once::

    team = SWETeam(config)
    await team.start()          # opens the store, resumes runs, starts the transport
    ...                         # serve until a signal arrives
    await team.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable

from sweteam.adapters.registry import backend_for
from sweteam.agents.architect import ArchitectAgent
from sweteam.agents.base import PlannerCapability, WorkerCapability
from sweteam.agents.swe import SWEAgent
from sweteam.config.schema import SWETeamConfig
from sweteam.coordinator.cancellation import CancellationToken, CancellationTokenSource
from sweteam.coordinator.event_bus import EventBus, RunEvent, log_event
from sweteam.coordinator.repo_locks import RepoLockRegistry
from sweteam.coordinator.workflow import GitFactory, RepoSync, WorkflowEngine, default_repo_sync
from sweteam.interfaces import messaging
from sweteam.interfaces.base import InterfaceAdapter, create_interface
from sweteam.protocol.models import WorkflowRun, WorkflowStep
from sweteam.state.store import StateStore
from sweteam.workspace.worktree import Workspace

logger = logging.getLogger(__name__)

RunFn = Callable[[int, str, CancellationToken], Awaitable[object]]


class RunDispatcher:
    """Runs workflow coroutines as tasks, at most ``max_concurrent`` at a time.

    An exception escaping a run is recorded on that run as a failure; other
    runs are unaffected.
    """

    def __init__(self, run_fn: RunFn, store: StateStore, max_concurrent: int = 4) -> None:
        self._run_fn = run_fn
        self._store = store
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: dict[int, asyncio.Task[None]] = {}

    def submit(self, run_id: int, repo_name: str, token: CancellationToken) -> asyncio.Task[None]:
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._run(run_id, repo_name, token), name=f"run-{run_id}")
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t, rid=run_id: self._tasks.pop(rid, None))
        return task

    async def _run(self, run_id: int, repo_name: str, token: CancellationToken) -> None:
        async with self._semaphore:
            try:
                await self._run_fn(run_id, repo_name, token)
            except Exception as exc:
                logger.exception("Run %s escaped the workflow engine", run_id)
                await self._store.advance_workflow(run_id, WorkflowStep.FAILED, error_message=f"Internal error: {exc}")

    def is_active(self, run_id: int) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def drain(self, timeout: float) -> None:
        """Wait up to *timeout* for running tasks, then cancel the rest."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class SWETeam:
    def __init__(
        self,
        config: SWETeamConfig,
        *,
        store: StateStore | None = None,
        interface: InterfaceAdapter | None = None,
        architect: PlannerCapability | None = None,
        agent_factory: Callable[[str], WorkerCapability] | None = None,
        event_bus: EventBus | None = None,
        locks: RepoLockRegistry | None = None,
        repo_sync: RepoSync = default_repo_sync,
        git_factory: GitFactory | None = None,
        workspace_factory: type[Workspace] = Workspace,
    ) -> None:
        self.config = config
        self.store = store if store is not None else StateStore(config.database.path)
        self.event_bus = event_bus if event_bus is not None else EventBus(
            persist_path=str(Path(config.database.path).parent / "events.jsonl")
            if config.database.path != ":memory:" else None,
        )
        self.event_bus.subscribe(log_event)
        self.interface = interface if interface is not None else create_interface(
            config.interface, config, self.handle_inbound_task, self.handle_command,
        )
        self.locks = locks if locks is not None else RepoLockRegistry(config.processing.max_idle_repo_locks)
        self.engine = WorkflowEngine(
            store=self.store,
            interface=self.interface,
            architect=architect or ArchitectAgent(config.agents.architect, config.workflow),
            config=config,
            agent_factory=agent_factory or self._default_agent,
            locks=self.locks,
            event_bus=self.event_bus,
            repo_sync=repo_sync,
            git_factory=git_factory,
            workspace_factory=workspace_factory,
        )
        self.dispatcher = RunDispatcher(self.engine.run, self.store, config.processing.max_concurrent_runs)
        self._root = CancellationTokenSource()
        self._run_sources: dict[int, CancellationTokenSource] = {}
        self._started = False

    def _default_agent(self, worker_id: str) -> WorkerCapability:
        return SWEAgent(worker_id, self.config.agents.swe, self.config.workflow)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def setup(self) -> None:
        for directory in (self.config.repos.base_path, self.config.repos.workspaces_path):
            Path(directory).mkdir(parents=True, exist_ok=True)
        await self.store.initialize()
        for tool, ok in (await self.validate_tools()).items():
            if not ok:
                logger.warning("%s not found; runs that need it will fail", tool)

    async def start(self) -> None:
        await self.setup()
        await self.interface.start()
        self._started = True
        resumed = await self.recover_incomplete_runs()
        if resumed:
            logger.info("Resumed %d run(s)", len(resumed))

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop at the next phase boundary; interrupted runs resume on the next start."""
        logger.info("Shutting down")
        self._root.cancel("shutdown")
        await self.dispatcher.drain(timeout)
        if self._started:
            await self.interface.stop()
            self._started = False
        self._root.dispose()
        await self.store.close()

    async def validate_tools(self) -> dict[str, bool]:
        tools = {"git": shutil.which("git") is not None, "gh": shutil.which("gh") is not None}
        for role in (self.config.agents.architect, self.config.agents.swe):
            backend = backend_for(role)
            if backend.binary not in tools:
                tools[backend.binary] = await backend.check_available()
        return tools

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def handle_inbound_task(self, repo_name: str, task: str, conversation_id: str) -> WorkflowRun:
        repo = await self.store.get_or_create_repo(repo_name)
        run = await self.store.create_run(repo.id, task, conversation_id)
        self.event_bus.emit(RunEvent(event_type="queued", run_id=run.id, message=task))
        self._dispatch(run.id, repo_name)
        return run

    def _dispatch(self, run_id: int, repo_name: str) -> asyncio.Task[None]:
        source = self._root.create_linked()
        self._run_sources[run_id] = source
        task = self.dispatcher.submit(run_id, repo_name, source.token)
        task.add_done_callback(lambda _t, rid=run_id: self._release(rid))
        return task

    def _release(self, run_id: int) -> None:
        source = self._run_sources.pop(run_id, None)
        if source is not None:
            self._root.release(source)

    async def handle_command(self, command: str, args: list[str], conversation_id: str) -> str:
        if command == "list":
            return messaging.format_list(await self.store.list_runs(limit=10))
        if command == "status":
            if args:
                run = await self._lookup(args[0])
                return messaging.format_run_detail(run) if run else f"Run {args[0]} not found."
            return messaging.format_status(await self.store.get_active_runs())
        if command == "stop":
            if not args:
                return "Usage: stop <id>"
            run = await self._lookup(args[0])
            if run is None:
                return f"Run {args[0]} not found."
            if await self.cancel_run(run.id):
                return f"Run #{run.id} cancelled."
            return f"Run #{run.id} is already {run.status}."
        return f"Unknown command: {command}"

    async def _lookup(self, ref: str) -> WorkflowRun | None:
        ref = ref.lstrip("#")
        if ref.isdigit():
            run = await self.store.get_run(int(ref))
            if run is not None:
                return run
        return await self.store.get_run_by_external_id(ref)

    # ------------------------------------------------------------------
    # Cancellation and recovery
    # ------------------------------------------------------------------

    async def cancel_run(self, run_id: int) -> bool:
        """Mark a run cancelled; it stops at its next phase or group boundary."""
        run = await self.store.get_run(run_id)
        if run is None or run.is_terminal:
            return False
        await self.store.cancel_run(run_id)
        source = self._run_sources.get(run_id)
        if source is not None:
            source.cancel("stopped by user")
        self.event_bus.emit(RunEvent(event_type="cancel", run_id=run_id, message="stopped by user"))
        return True

    async def recover_incomplete_runs(self) -> list[int]:
        """Resume pending / in-progress runs; cancel stale ones and orphans."""
        resumed: list[int] = []
        now = time.time()
        for run in await self.store.get_incomplete_runs():
            if self.dispatcher.is_active(run.id):
                continue
            age = now - run.created_at
            if age > self.config.processing.workflow_timeout:
                logger.info("Cancelling stale run #%s (%.0fs old)", run.id, age)
                await self.store.cancel_run(run.id)
                continue
            repo = await self.store.get_repo(run.repo_id)
            if repo is None:
                logger.warning("Cannot resume run #%s: repo %s not found", run.id, run.repo_id)
                await self.store.cancel_run(run.id)
                continue
            logger.info("Resuming run #%s for %s at %s", run.id, repo.name, run.workflow_step)
            self._dispatch(run.id, repo.name)
            resumed.append(run.id)
        return resumed

    async def wait_idle(self) -> None:
        await self.dispatcher.wait_idle()
